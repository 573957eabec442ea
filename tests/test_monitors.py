import asyncio
from datetime import timedelta

import pytest

from assettree.analytics import ModeTransitionRecorder, ObservationMonitor, OutlierDetector
from assettree.analytics.transitions import interval_name
from assettree.errors import SubscriptionError
from assettree.timeseries import TimedValue, ValueChangeEvent

from conftest import STARTED_AT, add_leaf

#-----------------------------------------------------------------------------

def add_branch(graph, timeseries, name: str = "Branch00000001", threshold=None):
    values = {"Rollup_Sum": {"point": f"{name}.Rollup_Sum"}}
    if threshold is not None:
        values["Threshold"] = threshold

    branch = graph.add_node("BranchElements", name, "Branch", values)
    timeseries.add_point(f"{name}.Rollup_Sum")
    return branch


async def wait_until(predicate, timeout: float = 1.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate() and loop.time() < deadline:
        await asyncio.sleep(0.01)
    return predicate()

#-----------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_monitor_drains_events_in_order(graph, timeseries):
    leaf = add_leaf(graph, timeseries, "Leaf001", 1, 1)
    attribute = leaf.attributes["Value"]
    received = []

    monitor = ObservationMonitor(timeseries, [attribute], lambda e: received.append(e.value.value), backoff=0.05)
    await monitor.start()

    for i in range(5):
        await timeseries.write_value(attribute, TimedValue(STARTED_AT + timedelta(minutes=i), i))

    assert await wait_until(lambda: len(received) == 5)
    assert received == [0, 1, 2, 3, 4]

    await monitor.close()
    assert not monitor.running
    assert monitor.dispatched == 5


@pytest.mark.asyncio
async def test_monitor_survives_failing_callback(graph, timeseries):
    leaf = add_leaf(graph, timeseries, "Leaf001", 1, 1)
    attribute = leaf.attributes["Value"]
    received = []

    async def callback(event):
        if event.value.value == 1:
            raise ValueError("bad value")
        received.append(event.value.value)

    async with ObservationMonitor(timeseries, [attribute], callback, backoff=0.05) as monitor:
        for i in range(3):
            await timeseries.write_value(attribute, TimedValue(STARTED_AT + timedelta(minutes=i), i))

        assert await wait_until(lambda: monitor.dispatched + monitor.failed == 3)

    assert received == [0, 2]
    assert monitor.failed == 1


@pytest.mark.asyncio
async def test_monitor_stops_within_backoff(graph, timeseries):
    leaf = add_leaf(graph, timeseries, "Leaf001", 1, 1)
    stop = asyncio.Event()

    monitor = ObservationMonitor(timeseries, [leaf.attributes["Value"]], lambda e: None, backoff=0.2, stop=stop)
    await monitor.start()
    assert monitor.running

    stop.set()
    assert await wait_until(lambda: not monitor.running, timeout=0.5)

    await monitor.close()


@pytest.mark.asyncio
async def test_monitor_signup_failure(graph, timeseries):
    leaf = graph.add_node("LeafElements", "Leaf001", "Leaf", {"Branch": 1})

    monitor = ObservationMonitor(timeseries, [leaf.attributes["Value"]], lambda e: None)
    with pytest.raises(SubscriptionError):
        await monitor.start()

    await monitor.close()

#-----------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_outlier_above_threshold(graph, timeseries, reports):
    branch = add_branch(graph, timeseries)
    detector = OutlierDetector(graph, reports)
    attribute = branch.attributes["Rollup_Sum"]

    assert await detector.report_outlier(ValueChangeEvent(attribute, TimedValue(STARTED_AT, 1200)))
    assert not await detector.report_outlier(ValueChangeEvent(attribute, TimedValue(STARTED_AT, 900)))
    assert not await detector.report_outlier(ValueChangeEvent(attribute, TimedValue(STARTED_AT, None, False)))

    lines = reports.outlier_path.read_text(encoding="utf-8").splitlines()
    assert lines == ["Found outlier in Branch element Branch00000001 at 2026-10-19T12:00:00+00:00"]
    assert detector.outliers == 1


@pytest.mark.asyncio
async def test_outlier_reads_current_threshold(graph, timeseries, reports):
    branch = add_branch(graph, timeseries, threshold=1000)
    detector = OutlierDetector(graph, reports)
    attribute = branch.attributes["Rollup_Sum"]

    await graph.set_attribute_value(branch, "Threshold", 1500)

    assert not await detector.report_outlier(ValueChangeEvent(attribute, TimedValue(STARTED_AT, 1200)))
    assert not reports.outlier_path.exists()


@pytest.mark.asyncio
async def test_outliers_through_monitor(graph, timeseries, reports):
    branch = add_branch(graph, timeseries)
    attribute = branch.attributes["Rollup_Sum"]
    detector = OutlierDetector(graph, reports)

    async with ObservationMonitor(timeseries, [attribute], detector.report_outlier, backoff=0.05) as monitor:
        await timeseries.replace_values(attribute, [
            TimedValue(STARTED_AT, 900),
            TimedValue(STARTED_AT + timedelta(hours=1), 1200),
        ])
        assert await wait_until(lambda: monitor.dispatched == 2)

    assert len(reports.outlier_path.read_text(encoding="utf-8").splitlines()) == 1

#-----------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_mode_transition_creates_interval(graph, timeseries):
    leaf = add_leaf(graph, timeseries, "Leaf001", 1, 1)
    attribute = leaf.attributes["Mode"]
    end = STARTED_AT + timedelta(minutes=30)

    recorder = ModeTransitionRecorder(graph, "Prog-Auto", now=lambda: end)

    record = await recorder.on_mode_change(ValueChangeEvent(attribute, TimedValue(STARTED_AT, "prog-auto")))

    assert record is not None
    assert record.name == "Leaf001_2026_10_19_12_00_Prog-Auto"
    assert record.node == leaf
    assert record.start == STARTED_AT
    assert record.end == end
    assert graph.intervals == [record]


@pytest.mark.asyncio
async def test_other_modes_create_nothing(graph, timeseries):
    leaf = add_leaf(graph, timeseries, "Leaf001", 1, 1)
    attribute = leaf.attributes["Mode"]
    recorder = ModeTransitionRecorder(graph, "Prog-Auto")

    assert await recorder.on_mode_change(ValueChangeEvent(attribute, TimedValue(STARTED_AT, "Manual"))) is None
    assert await recorder.on_mode_change(ValueChangeEvent(attribute, TimedValue(STARTED_AT, None))) is None

    record = await recorder.on_mode_change(
        ValueChangeEvent(attribute, TimedValue(STARTED_AT, {"name": "Prog-Auto", "value": 3}))
    )
    assert record is not None
    assert recorder.created == 1
    assert len(graph.intervals) == 1


def test_interval_name():
    assert interval_name("Leaf007", STARTED_AT.replace(minute=5), "Prog-Auto") == "Leaf007_2026_10_19_12_05_Prog-Auto"
