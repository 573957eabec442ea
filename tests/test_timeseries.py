import asyncio
from datetime import timedelta

import pytest

from assettree.errors import PagingStoppedError, PagingTimeoutError, QueryCancelledError, WriteError
from assettree.graph import Attribute, AttributeTemplate, Node
from assettree.timeseries import CalculationBasis, PagingConfig, PgTimeSeriesStore, SummaryType, TimedValue
from assettree.timeseries.points import (
    format_config_string,
    parse_config_string,
    point_for,
    substitute_point_name
)
from assettree.timeseries.summary import bucket_starts, summarize, summarize_buckets

from conftest import POINT_PATTERN, STARTED_AT, add_leaf, series

#-----------------------------------------------------------------------------

def hours(n: float):
    return STARTED_AT + timedelta(hours=n)


def test_summarize_kinds():
    values = [TimedValue(hours(0), 2), TimedValue(hours(1), 9), TimedValue(hours(2), 5), TimedValue(hours(2.5), 100, False)]

    assert summarize(values, hours(0), hours(3), SummaryType.TOTAL).value == 16
    assert summarize(values, hours(0), hours(3), SummaryType.RANGE).value == 7
    assert summarize(values, hours(0), hours(3), SummaryType.MINIMUM).value == 2
    assert summarize(values, hours(0), hours(3), SummaryType.MAXIMUM).value == 9
    assert summarize(values, hours(0), hours(3), SummaryType.COUNT).value == 3

    # Time weighted totals are in hour units.
    assert summarize(values, hours(0), hours(3), SummaryType.TOTAL, CalculationBasis.TIME_WEIGHTED).value == 16


def test_summarize_without_values_is_bad():
    value = summarize([], hours(0), hours(1), SummaryType.TOTAL)
    assert not value.is_good
    assert value.timestamp == hours(0)

    count = summarize([], hours(0), hours(1), SummaryType.COUNT)
    assert count.is_good and count.value == 0


def test_summarize_buckets():
    values = [TimedValue(hours(0.5), 1), TimedValue(hours(0.75), 2), TimedValue(hours(2.25), 4)]

    buckets = summarize_buckets(values, hours(0), hours(3), timedelta(hours=1), SummaryType.TOTAL)

    assert [b.timestamp for b in buckets] == [hours(0), hours(1), hours(2)]
    assert [b.value for b in buckets] == [3, None, 4]
    assert bucket_starts(hours(1), hours(0), timedelta(hours=1)) == []

#-----------------------------------------------------------------------------

def test_paging_records_the_stop_cause():
    stop = asyncio.Event()
    paging = PagingConfig(page_size=2, stop_event=stop)

    pages = paging.pages([1, 2, 3, 4, 5])
    assert next(pages) == [1, 2]

    stop.set()
    with pytest.raises(QueryCancelledError) as e:
        next(pages)

    assert isinstance(paging.error, PagingStoppedError)
    assert e.value.cause is paging.error


def test_paging_records_the_timeout_cause():
    paging = PagingConfig(page_size=1, max_wait=0.001)
    paging.begin()
    paging._started_at -= 1

    with pytest.raises(QueryCancelledError):
        paging.check()

    assert isinstance(paging.error, PagingTimeoutError)

#-----------------------------------------------------------------------------

def test_parse_config_string():
    info = parse_config_string("\\\\archive1\\Leaf001.Value;pointtype=float32;compressing=0")
    assert info.archive == "archive1"
    assert info.name == "Leaf001.Value"
    assert info.point_attributes == {"pointtype": "float32", "compressing": "0"}
    assert not info.is_pattern

    assert parse_config_string("Leaf001.Value").name == "Leaf001.Value"
    assert parse_config_string("") is None

    assert format_config_string("archive1", "Leaf001.Value") == "\\\\archive1\\Leaf001.Value"


def test_point_name_substitution():
    node = Node(name="Branch00000001", template="Branch")
    node.attributes["Area"] = Attribute(node=node, name="Area", value="North")

    assert substitute_point_name("%Element%.%Attribute%", node, "Rollup_Sum") == "Branch00000001.Rollup_Sum"
    assert substitute_point_name("%@Area%.%Element%", node, "Rollup_Sum") == "North.Branch00000001"


def test_point_for_template_bound_attribute():
    node = Node(name="Branch00000001", template="Branch")
    attribute = Attribute(node=node, name="Rollup_Sum", template=series("Rollup_Sum", POINT_PATTERN))

    info = point_for(attribute, "server1")
    assert info.archive == "server1"
    assert info.name == "Branch00000001.Rollup_Sum"
    assert info.point_attributes == {"pointtype": "float64"}

    scalar = Attribute(node=node, name="Threshold", template=AttributeTemplate(name="Threshold"))
    assert point_for(scalar, "server1") is None

#-----------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_memory_store_points(graph, timeseries):
    leaf = add_leaf(graph, timeseries, "Leaf001", 1, 1, [(hours(0), 1)])
    container = await graph.create_container("BranchElements")
    branch = await graph.create_node(container, "Branch00000001", "Branch")

    # Unknown until created.
    errors = await timeseries.resolve_points([leaf.attributes["Value"], branch.attributes["Rollup_Sum"]])
    assert [e.target for e in errors] == [branch.attributes["Rollup_Sum"]]
    assert leaf.attributes["Value"].point == "Leaf001.Value"

    assert await timeseries.create_points([branch.attributes["Rollup_Sum"]]) == []
    assert branch.attributes["Rollup_Sum"].config_string == "\\\\test\\Branch00000001.Rollup_Sum"
    assert await timeseries.resolve_points([branch.attributes["Rollup_Sum"]]) == []


@pytest.mark.asyncio
async def test_memory_store_write_without_point(graph, timeseries):
    leaf = graph.add_node("LeafElements", "Leaf001", "Leaf", {"Branch": 1})

    with pytest.raises(WriteError):
        await timeseries.write_value(leaf.attributes["Value"], TimedValue(hours(0), 1))

    errors = await timeseries.replace_values(leaf.attributes["Value"], [TimedValue(hours(0), 1)])
    assert len(errors) == 1
    assert "Leaf001|Value" in str(errors[0])

#-----------------------------------------------------------------------------

class RecordingPipeline:
    def __init__(self, calls: list):
        self.calls = calls

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        return False

    def xadd(self, name, fields, **kwargs):
        self.calls.append((name, fields, kwargs))

    async def execute(self):
        return [f"{i}-0" for i in range(len(self.calls))]


class RecordingRedis:
    def __init__(self):
        self.calls = []

    def pipeline(self, transaction: bool = True):
        return RecordingPipeline(self.calls)


@pytest.mark.asyncio
async def test_value_changes_are_published_to_a_capped_stream():
    client = RecordingRedis()
    store = PgTimeSeriesStore(engine=None, client=client, stream="changes", maxlen=500)

    await store._publish("Leaf001.Value", [TimedValue(hours(0), 1.5), TimedValue(hours(1), 2.5)], "update")

    assert len(client.calls) == 2
    for name, fields, kwargs in client.calls:
        assert name == "changes"
        assert fields["point"] == "Leaf001.Value"
        assert kwargs == {"maxlen": 500, "approximate": True}
