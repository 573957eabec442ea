"""Shared fixtures over the in-memory stores."""

from datetime import datetime, timezone

import pytest

from assettree.analytics import ReportWriter, RollupEngine
from assettree.graph import (
    AttributeKind,
    AttributeTemplate,
    MemoryAssetGraph,
    NodeTemplate
)
from assettree.hierarchy import HierarchySynchronizer
from assettree.timeseries import MemoryTimeSeriesStore
from assettree.utils.config import AnalyticsConfig, HierarchyConfig

LEVELS = ["Leaf", "Branch", "SubTree"]

STARTED_AT = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)

POINT_PATTERN = "\\\\%Server%\\%Element%.%Attribute%;pointtype=float64"

#-----------------------------------------------------------------------------

def series(name: str, pattern: str = "") -> AttributeTemplate:
    return AttributeTemplate(name=name, kind=AttributeKind.SERIES, point_pattern=pattern)


def build_graph() -> MemoryAssetGraph:
    graph = MemoryAssetGraph(name="test")

    graph.add_template(NodeTemplate(name="Leaf", attributes={
        "Value"     : series("Value"),
        "Mode"      : series("Mode"),
        "Branch"    : AttributeTemplate(name="Branch"),
        "SubTree"   : AttributeTemplate(name="SubTree"),
    }))
    graph.add_template(NodeTemplate(name="PumpLeaf", base="Leaf"))
    graph.add_template(NodeTemplate(name="Branch", attributes={
        "Rollup_Sum": series("Rollup_Sum", POINT_PATTERN),
        "Threshold" : AttributeTemplate(name="Threshold", default=1000),
    }))
    graph.add_template(NodeTemplate(name="SubTree", attributes={
        "Rollup_Sum": series("Rollup_Sum", POINT_PATTERN),
        "Threshold" : AttributeTemplate(name="Threshold", default=5000),
    }))

    graph.add_container("LeafElements")
    return graph


def add_leaf(
    graph       : MemoryAssetGraph,
    timeseries  : MemoryTimeSeriesStore,
    name        : str,
    branch,
    subtree,
    values      : list | None = None,
    template    : str = "Leaf"
):
    """Seed a leaf with bound value and mode points."""
    leaf = graph.add_node("LeafElements", name, template, {
        "Value"     : {"point": f"{name}.Value"},
        "Mode"      : {"point": f"{name}.Mode"},
        "Branch"    : branch,
        "SubTree"   : subtree,
    })
    timeseries.add_values(f"{name}.Value", values or [])
    timeseries.add_point(f"{name}.Mode")
    return leaf

#-----------------------------------------------------------------------------

@pytest.fixture
def graph() -> MemoryAssetGraph:
    return build_graph()


@pytest.fixture
def timeseries() -> MemoryTimeSeriesStore:
    return MemoryTimeSeriesStore(server="test")


@pytest.fixture
def hierarchy_config() -> HierarchyConfig:
    return HierarchyConfig(graph_location="test", levels=LEVELS, chunk_size=2, refresh_interval=0.05)


@pytest.fixture
def analytics_config(tmp_path) -> AnalyticsConfig:
    return AnalyticsConfig(
        levels              = LEVELS,
        rollup_window_hours = 3,
        chunk_size          = 10,
        page_size           = 10,
        max_parallel        = 2,
        observer_backoff    = 0.05,
        report_dir          = str(tmp_path)
    )


@pytest.fixture
def synchronizer(graph, timeseries, hierarchy_config) -> HierarchySynchronizer:
    return HierarchySynchronizer(graph, timeseries, hierarchy_config)


@pytest.fixture
def reports(analytics_config) -> ReportWriter:
    return ReportWriter(analytics_config.report_dir, STARTED_AT)


@pytest.fixture
def engine(graph, timeseries, analytics_config, reports) -> RollupEngine:
    return RollupEngine(graph, timeseries, analytics_config, reports, STARTED_AT)
