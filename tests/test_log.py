import json
import logging

from assettree.graph import Node, RelationKind
from assettree.hierarchy import ReconcileStats
from assettree.utils.log import JsonFormatter
from assettree.utils.run_ctx import get_run_ctx, run_ctx


def make_record(msg: str, **extra) -> logging.LogRecord:
    return logging.getLogger("test").makeRecord(
        "test", logging.WARNING, __file__, 10, msg, None, None, func="reconcile", extra=extra
    )


def test_json_lines_carry_extra_fields():
    formatter = JsonFormatter({"service": "assettree"})
    node = Node(name="Branch00000001", template="Branch", container="BranchElements")

    line = formatter.format(make_record(
        "[HierarchySynchronizer] repaired",
        kind=RelationKind.WEAK,
        stats=ReconcileStats(leaves=2, repaired=1),
        node_ref=node,
    ))
    record = json.loads(line)

    assert record["level"] == "WARNING"
    assert record["msg"] == "[HierarchySynchronizer] repaired"
    assert record["function"] == "reconcile"
    assert record["service"] == "assettree"
    assert record["kind"] == "weak"
    assert record["stats"]["repaired"] == 1
    assert record["node_ref"] == "\\BranchElements\\Branch00000001"


def test_run_context_fields():
    formatter = JsonFormatter()

    with run_ctx(run_id="abc", phase="rollup"):
        with run_ctx(node="SubTree00000001"):
            assert get_run_ctx("phase") == "rollup"
            record = json.loads(formatter.format(make_record("failed")))

        assert get_run_ctx("node") is None

    assert record["run_id"] == "abc"
    assert record["phase"] == "rollup"
    assert record["node"] == "SubTree00000001"
    assert get_run_ctx("phase") is None
