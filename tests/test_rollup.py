import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from assettree.analytics import (
    RollupEngine,
    chunkify,
    fluctuation_index,
    rollup_window,
    sum_child_series
)
from assettree.errors import PagingStoppedError, PagingTimeoutError
from assettree.graph import RelationKind
from assettree.timeseries import TimedValue
from assettree.utils.config import AnalyticsConfig

from conftest import LEVELS, STARTED_AT, add_leaf

#-----------------------------------------------------------------------------

def at(hour: int, minute: int = 0) -> datetime:
    return STARTED_AT.replace(hour=hour, minute=minute)


def values(timeseries, point: str) -> dict:
    return {v.timestamp: v.value for v in timeseries.values_of(point)}

#-----------------------------------------------------------------------------

def test_rollup_window():
    times = rollup_window(datetime(2026, 10, 19, 12, 34, 56, tzinfo=timezone.utc), 3)
    assert times == [at(10), at(11), at(12)]

    assert len(rollup_window(STARTED_AT, 336)) == 336
    assert rollup_window(STARTED_AT, 336)[-1] == STARTED_AT


def test_sum_child_series_counts_good_values_only():
    times = [at(10), at(11), at(12)]
    children = [
        [TimedValue(at(10), 1), TimedValue(at(11), 2), TimedValue(at(12), None, False)],
        [TimedValue(at(10), 3), TimedValue(at(11), 5, False), TimedValue(at(12), None, False)],
        # Incomplete, left out entirely.
        [TimedValue(at(10), 100)],
    ]

    summed, good = sum_child_series(times, children)

    assert [v.value for v in summed] == [4, 2, None]
    assert [v.is_good for v in summed] == [True, True, False]
    assert [(v.timestamp, v.value) for v in good] == [(at(10), 4), (at(11), 2)]


def test_sum_child_series_without_children():
    summed, good = sum_child_series([at(10)], [])
    assert not summed[0].is_good
    assert good == []


def test_chunkify_round_robin():
    assert chunkify([0, 1, 2, 3, 4], 2) == [[0, 3], [1, 4], [2]]
    assert chunkify([0, 1], 10) == [[0, 1]]
    assert chunkify([], 10) == [[]]


def test_fluctuation_index():
    assert fluctuation_index(9 - 2) == 1.0
    assert fluctuation_index(3, days=3) == 1.0

#-----------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_rollup_pass_sums_hourly_totals(graph, timeseries, synchronizer, engine):
    add_leaf(graph, timeseries, "Leaf001", 1, 1, [(at(9, 15), 5), (at(10, 30), 7)])
    add_leaf(graph, timeseries, "Leaf002", 1, 1, [(at(9, 45), 3)])
    add_leaf(graph, timeseries, "Leaf003", 2, 1, [(at(10, 10), 4)])
    await synchronizer.build_hierarchy()

    stats = await engine.run_rollup_pass(asyncio.Event())

    assert stats.roots == 1
    assert stats.leaf_attributes == 3
    assert stats.unresolved == 0
    assert stats.write_errors == 0
    assert stats.nodes_written == 3

    # Hour ending totals, the last hour has no good value and is not written.
    assert values(timeseries, "Branch00000001.Rollup_Sum") == {at(10): 8, at(11): 7}
    assert values(timeseries, "Branch00000002.Rollup_Sum") == {at(11): 4}
    assert values(timeseries, "SubTree00000001.Rollup_Sum") == {at(10): 8, at(11): 11}


@pytest.mark.asyncio
async def test_rollup_replaces_stored_values(graph, timeseries, synchronizer, engine):
    add_leaf(graph, timeseries, "Leaf001", 1, 1, [(at(9, 15), 5)])
    await synchronizer.build_hierarchy()
    timeseries.add_values("Branch00000001.Rollup_Sum", [(at(10), 999)])

    await engine.run_rollup_pass(asyncio.Event())

    assert values(timeseries, "Branch00000001.Rollup_Sum") == {at(10): 5}


@pytest.mark.asyncio
async def test_template_bound_leaves_are_skipped(graph, timeseries, synchronizer, engine):
    add_leaf(graph, timeseries, "Leaf001", 1, 1, [(at(9, 15), 5)])
    unbound = graph.add_node("LeafElements", "Leaf002", "Leaf", {"Branch": 1, "SubTree": 1})
    await synchronizer.build_hierarchy()

    stats = await engine.run_rollup_pass(asyncio.Event())

    assert unbound.attributes["Value"].is_template_bound
    assert stats.leaf_attributes == 1


@pytest.mark.asyncio
async def test_write_errors_do_not_stop_the_pass(graph, timeseries, synchronizer, engine):
    add_leaf(graph, timeseries, "Leaf001", 1, 1, [(at(9, 15), 5)])
    await synchronizer.build_hierarchy()
    timeseries.rejected_points.add("Branch00000001.Rollup_Sum")

    stats = await engine.run_rollup_pass(asyncio.Event())

    assert stats.write_errors == 1
    assert values(timeseries, "Branch00000001.Rollup_Sum") == {}
    assert values(timeseries, "SubTree00000001.Rollup_Sum") == {at(10): 5}

#-----------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_fluctuation_report(graph, timeseries, synchronizer, engine, reports):
    day = timedelta(days=1)
    add_leaf(graph, timeseries, "Leaf002", 1, 1, [(STARTED_AT - day, 4)])
    add_leaf(graph, timeseries, "Leaf001", 1, 1, [
        (STARTED_AT - 3 * day, 2),
        (STARTED_AT - 2 * day, 9),
        (STARTED_AT - day, 5),
    ])
    # Nothing inside the window.
    add_leaf(graph, timeseries, "Leaf003", 2, 1, [(STARTED_AT - 10 * day, 50)])
    await synchronizer.build_hierarchy()

    stats = await engine.run_rollup_pass(asyncio.Event())

    assert stats.fluctuation_rows == 2
    assert reports.fluctuation_path.name == "FluctuationIndexReport_10192026_1200.csv"

    lines = reports.fluctuation_path.read_text(encoding="utf-8").splitlines()
    assert lines == ["Name, Fluctuation Index", "Leaf001, 1", "Leaf002, 0"]


@pytest.mark.asyncio
async def test_chunks_flush_at_threshold_and_at_end(graph, timeseries, synchronizer, reports):
    add_leaf(graph, timeseries, "Leaf001", 1, 1, [(at(9, 15), 1)])
    add_leaf(graph, timeseries, "Leaf002", 2, 2, [(at(9, 15), 2)])
    add_leaf(graph, timeseries, "Leaf003", 3, 2, [(at(9, 15), 3)])
    add_leaf(graph, timeseries, "Leaf004", 4, 3, [(at(9, 15), 4)])
    await synchronizer.build_hierarchy()

    config = AnalyticsConfig(levels=LEVELS, rollup_window_hours=3, chunk_size=2, max_parallel=1)
    engine = RollupEngine(graph, timeseries, config, reports, STARTED_AT)

    stats = await engine.run_rollup_pass(asyncio.Event())

    assert stats.roots == 3
    assert stats.chunk_sizes == [3, 1]
    assert stats.leaf_attributes == 4
    assert values(timeseries, "SubTree00000003.Rollup_Sum") == {at(10): 4}


@pytest.mark.asyncio
async def test_stop_drops_the_unflushed_chunk(graph, timeseries, synchronizer, engine, reports, monkeypatch):
    add_leaf(graph, timeseries, "Leaf001", 1, 1, [(at(9, 15), 1)])
    add_leaf(graph, timeseries, "Leaf002", 2, 2, [(at(9, 15), 2)])
    await synchronizer.build_hierarchy()

    stop = asyncio.Event()
    get_children = graph.get_children

    async def stopping_get_children(parent, kind=RelationKind.WEAK):
        stop.set()
        return await get_children(parent, kind)

    monkeypatch.setattr(graph, "get_children", stopping_get_children)

    stats = await engine.run_rollup_pass(stop)

    assert stats.stopped
    assert stats.chunk_sizes == []
    assert stats.nodes_written == 0
    assert values(timeseries, "Branch00000001.Rollup_Sum") == {}
    assert not reports.fluctuation_path.exists()


@pytest.mark.asyncio
async def test_stopped_query_surfaces_the_recorded_error(graph, timeseries, synchronizer, engine):
    leaf = add_leaf(graph, timeseries, "Leaf001", 1, 1, [(at(9, 15), 1)])
    await synchronizer.build_hierarchy()

    stop = asyncio.Event()
    stop.set()

    with pytest.raises(PagingStoppedError):
        await engine.compute_fluctuation_index([leaf.attributes["Value"]], stop)


@pytest.mark.asyncio
async def test_leaf_linked_twice_is_counted_once(graph, timeseries, synchronizer, engine):
    leaf = add_leaf(graph, timeseries, "Leaf001", 1, 1, [(at(9, 15), 5)])
    add_leaf(graph, timeseries, "Leaf002", 1, 1, [(at(9, 45), 3)])
    add_leaf(graph, timeseries, "Leaf003", 2, 1, [(at(10, 10), 4)])
    await synchronizer.build_hierarchy()

    # A broken relationship, Leaf001 sits under both branches of one subtree.
    await graph.add_child(synchronizer.index(1).get(2), leaf, RelationKind.WEAK)

    stats = await engine.run_rollup_pass(asyncio.Event())

    assert stats.leaf_attributes == 3
    assert values(timeseries, "Branch00000001.Rollup_Sum") == {at(10): 8}
    assert values(timeseries, "Branch00000002.Rollup_Sum") == {at(11): 4}
    assert values(timeseries, "SubTree00000001.Rollup_Sum") == {at(10): 8, at(11): 4}


@pytest.mark.asyncio
async def test_header_only_fluctuation_report(graph, timeseries, synchronizer, engine, reports):
    add_leaf(graph, timeseries, "Leaf001", 1, 1, [(STARTED_AT - timedelta(days=10), 50)])
    await synchronizer.build_hierarchy()

    stats = await engine.run_rollup_pass(asyncio.Event())

    assert stats.chunk_sizes == [1]
    assert stats.fluctuation_rows == 0
    assert reports.fluctuation_path.read_text(encoding="utf-8").splitlines() == ["Name, Fluctuation Index"]

#-----------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_bulk_operations_respect_max_parallel(engine):
    active = 0
    peak = 0

    async def operation(chunk):
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.01)
        active -= 1
        return chunk

    results = await engine._bulk(list(range(10)), 1, operation)

    assert sorted(results) == list(range(10))
    assert peak == 2


@pytest.mark.asyncio
async def test_failed_chunk_cancels_and_joins_its_siblings(graph, timeseries, reports):
    config = AnalyticsConfig(levels=LEVELS, max_parallel=4)
    engine = RollupEngine(graph, timeseries, config, reports, STARTED_AT)

    tasks = []
    finished = []

    async def operation(chunk):
        tasks.append(asyncio.current_task())
        if 0 in chunk:
            raise PagingTimeoutError("Paged query timed out.")
        await asyncio.sleep(0.2)
        finished.extend(chunk)
        return chunk

    with pytest.raises(PagingTimeoutError):
        await engine._bulk(list(range(4)), 1, operation)

    assert len(tasks) == 4
    assert all(task.done() for task in tasks)
    assert sum(task.cancelled() for task in tasks) == 3

    await asyncio.sleep(0.3)
    assert finished == []
