"""
Rollup & analytics engine

Walks the hierarchy depth first from the top level, collects the value
attributes of the leaves below each top-level node, and analyses them in
bounded chunks: hourly totals are rolled up bottom-up into every non-leaf
node, and a fluctuation index is computed per leaf.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set, Tuple, TypeVar

from ..errors import PagingStoppedError, PagingTimeoutError, QueryCancelledError, WriteError
from ..graph.base import AssetGraphStore
from ..graph.models import (
    LEAF_MODE_ATTRIBUTE,
    LEAF_VALUE_ATTRIBUTE,
    ROLLUP_SUM_ATTRIBUTE,
    THRESHOLD_ATTRIBUTE,
    Attribute,
    Node,
    RelationKind,
)
from ..timeseries.base import TimeSeriesStore
from ..timeseries.models import CalculationBasis, SummaryType, TimedValue
from ..timeseries.paging import PagingConfig
from ..utils.config import AnalyticsConfig
from ..utils.run_ctx import run_ctx
from .reports import ReportWriter
from .rollup import chunkify, fluctuation_index, rollup_window, sum_child_series

T = TypeVar("T")


@dataclass
class RollupStats:
    """Progress of one rollup pass"""
    started_at: datetime
    roots: int = 0
    leaf_attributes: int = 0
    chunk_sizes: List[int] = field(default_factory=list)
    unresolved: int = 0
    nodes_written: int = 0
    values_written: int = 0
    write_errors: int = 0
    fluctuation_rows: int = 0
    stopped: bool = False
    cancelled_by: Optional[str] = None
    execution_time_ms: float = 0.0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "roots": self.roots,
            "leaf_attributes": self.leaf_attributes,
            "chunks": len(self.chunk_sizes),
            "unresolved": self.unresolved,
            "nodes_written": self.nodes_written,
            "values_written": self.values_written,
            "write_errors": self.write_errors,
            "fluctuation_rows": self.fluctuation_rows,
            "stopped": self.stopped,
            "cancelled_by": self.cancelled_by,
            "execution_time_ms": self.execution_time_ms,
            "errors": self.errors[:20],
        }


class RollupEngine:
    def __init__(
        self,
        graph       : AssetGraphStore,
        timeseries  : TimeSeriesStore,
        config      : AnalyticsConfig,
        reports     : Optional[ReportWriter] = None,
        started_at  : Optional[datetime] = None
    ):
        self._graph = graph
        self._timeseries = timeseries
        self._config = config

        self.started_at = started_at or datetime.now(timezone.utc)
        self.reports = reports or ReportWriter(config.report_dir, self.started_at)

        self.leaf_nodes: List[Node] = []
        self.non_leaf_nodes: List[Tuple[int, str, List[Node]]] = []

    @property
    def levels(self) -> List[str]:
        return self._config.levels

    @property
    def top_level(self) -> int:
        return len(self.levels) - 1

    def _paging(self, stop: Optional[asyncio.Event]) -> PagingConfig:
        return PagingConfig(
            page_size=self._config.page_size,
            max_wait=self._config.page_max_wait,
            stop_event=stop,
        )

    #-----------------------------------------------------
    # Node loading

    async def find_nodes(self, template: str, attribute_names: Sequence[str]) -> List[Node]:
        """All nodes of a template and its derived templates, with the named attributes loaded"""
        results: List[Node] = []
        start = 0

        while True:
            nodes, total = await self._graph.find_nodes_by_template(
                template, start, self._config.chunk_size, include_derived=True
            )
            if not nodes:
                break

            await self._graph.load_attributes(nodes, attribute_names)
            results.extend(nodes)

            start += len(nodes)
            if start >= total:
                break

        return results

    async def load_nodes(self):
        """Load every leaf and every non-leaf node of the rollup levels"""
        logging.info(f"[RollupEngine] Started to search for leaf nodes of {self.levels[0]}")
        self.leaf_nodes = await self.find_nodes(self.levels[0], [LEAF_VALUE_ATTRIBUTE, LEAF_MODE_ATTRIBUTE])
        logging.info(f"[RollupEngine] Found {len(self.leaf_nodes)} leaf nodes")

        non_leaf = []
        for level, template in enumerate(self.levels[1:], start=1):
            nodes = await self.find_nodes(template, [THRESHOLD_ATTRIBUTE, ROLLUP_SUM_ATTRIBUTE])
            non_leaf.append((level, template, nodes))
        self.non_leaf_nodes = non_leaf

        logging.info(f"[RollupEngine] Found {sum(len(t[2]) for t in non_leaf)} non-leaf nodes")

    def nodes_at(self, level: int) -> List[Node]:
        if level == 0:
            return self.leaf_nodes
        for lvl, _, nodes in self.non_leaf_nodes:
            if lvl == level:
                return nodes
        return []

    #-----------------------------------------------------
    # Pass driver

    async def run_rollup_pass(self, stop: asyncio.Event) -> RollupStats:
        """
        Walk the top-level nodes and analyse their leaves chunk by chunk

        A chunk is flushed once it holds chunk_size * max_parallel leaf
        attributes and once more at the end. When stop is set the walk ends
        before the next top-level node and the unflushed chunk is dropped.
        """
        stats = RollupStats(started_at=self.started_at)
        start_time = time.time()

        if not self.non_leaf_nodes:
            await self.load_nodes()

        threshold = self._config.chunk_size * self._config.max_parallel
        level = self.top_level

        leaf_attributes: List[Attribute] = []
        roots: List[Node] = []
        fluctuation: List[Tuple[str, float]] = []
        index = 0

        with run_ctx(phase="rollup_pass"):
            try:
                for root in self.nodes_at(level):
                    if stop.is_set():
                        logging.info(
                            f"[RollupEngine] Stop requested, dropping a chunk of {len(leaf_attributes)} leaf attributes"
                        )
                        leaf_attributes, roots = [], []
                        stats.stopped = True
                        break

                    await self.collect_leaf_attributes(level, root, LEAF_VALUE_ATTRIBUTE, leaf_attributes, set(), stats)
                    roots.append(root)
                    stats.roots += 1

                    if len(leaf_attributes) >= threshold:
                        fluctuation.extend(await self._run_chunk(index, level, roots, leaf_attributes, stop, stats))
                        index += len(leaf_attributes)
                        leaf_attributes, roots = [], []

                if leaf_attributes and stop.is_set():
                    logging.info(
                        f"[RollupEngine] Stop requested, dropping a chunk of {len(leaf_attributes)} leaf attributes"
                    )
                    stats.stopped = True

                elif not stats.stopped and leaf_attributes:
                    fluctuation.extend(await self._run_chunk(index, level, roots, leaf_attributes, stop, stats))

            except (PagingStoppedError, PagingTimeoutError) as e:
                logging.warning(f"[RollupEngine] Rollup pass aborted: {str(e)}")
                stats.cancelled_by = type(e).__name__
                stats.stopped = stats.stopped or isinstance(e, PagingStoppedError)

        # Any analysed chunk gives a report, header only when no leaf had a good range.
        # Rows computed before a cancellation are kept.
        if stats.chunk_sizes:
            fluctuation.sort(key=lambda row: row[0])
            self.reports.write_fluctuation(fluctuation)
            stats.fluctuation_rows = len(fluctuation)

        stats.execution_time_ms = round((time.time() - start_time) * 1000, 2)
        logging.info("[RollupEngine] Rollup pass finished", extra={"stats": stats.to_dict()})
        return stats

    async def _run_chunk(
        self,
        index           : int,
        level           : int,
        roots           : List[Node],
        leaf_attributes : List[Attribute],
        stop            : asyncio.Event,
        stats           : RollupStats
    ) -> List[Tuple[str, float]]:
        logging.info(
            f"[RollupEngine] StartIndex = {index} | Started historical data analyses for {len(leaf_attributes)} leaf nodes"
        )
        stats.chunk_sizes.append(len(leaf_attributes))
        stats.leaf_attributes += len(leaf_attributes)

        errors = await self.resolve_points(leaf_attributes)
        stats.unresolved += len(errors)

        await self.perform_rollup(level, roots, leaf_attributes, stop, stats)
        rows = await self.compute_fluctuation_index(leaf_attributes, stop)

        logging.info(
            f"[RollupEngine] StartIndex = {index} | Finished historical data analyses for {len(leaf_attributes)} leaf nodes"
        )
        return rows

    #-----------------------------------------------------
    # Collection

    async def collect_leaf_attributes(
        self,
        level       : int,
        node        : Node,
        name        : str,
        out         : List[Attribute],
        visited     : Set[str],
        stats       : Optional[RollupStats] = None
    ):
        """
        Append the `name` attribute of every leaf under `node`

        Recursion is bounded by the level count. A node met twice in one
        walk has a broken relationship and is not descended again.
        """
        if node.id in visited:
            logging.warning(
                f"[RollupEngine] Node {node.name} reached twice, its weak relationships need repair",
                extra={"node": node.name}
            )
            return
        visited.add(node.id)

        try:
            if level > 0:
                children = await self._graph.get_children(node, RelationKind.WEAK)
                if level == 1:
                    await self._graph.load_attributes(
                        [c for c in children if name not in c.attributes], [name]
                    )
                for child in children:
                    await self.collect_leaf_attributes(level - 1, child, name, out, visited, stats)
                return

            attribute = node.attributes.get(name)
            if attribute is not None and not attribute.is_template_bound:
                out.append(attribute)

        except Exception as e:
            # The subtree is skipped, the walk goes on.
            with run_ctx(node=node.name):
                logging.error(f"[RollupEngine] Failed to collect leaf attributes: {str(e)}", exc_info=True)
            if stats is not None:
                stats.errors.append(f"{node.name}: {e}")

    #-----------------------------------------------------
    # Bulk operations

    async def _bulk(
        self,
        items       : Sequence[T],
        chunk_size  : int,
        operation   : Callable[[List[T]], Awaitable[List[Any]]]
    ) -> List[Any]:
        """Run an operation over round-robin chunks, at most max_parallel at a time"""
        semaphore = asyncio.Semaphore(self._config.max_parallel)

        async def run(chunk: List[T]) -> List[Any]:
            if not chunk:
                return []
            async with semaphore:
                return await operation(chunk)

        # A failing chunk cancels its siblings, and all of them have exited before this returns.
        try:
            async with asyncio.TaskGroup() as group:
                tasks = [group.create_task(run(chunk)) for chunk in chunkify(items, chunk_size)]
        except ExceptionGroup as eg:
            raise eg.exceptions[0]

        return [item for task in tasks for item in task.result()]

    async def resolve_points(self, attributes: Sequence[Attribute]) -> List[WriteError]:
        """Resolve the storage points of attributes, chunk_size at a time in parallel"""
        errors = await self._bulk(attributes, self._config.chunk_size, self._timeseries.resolve_points)
        for error in errors[:20]:
            logging.warning(f"[RollupEngine] Failed to resolve point: {error}")
        if len(errors) > 20:
            logging.warning(f"[RollupEngine] Failed to resolve {len(errors)} points in total")
        return errors

    async def _summarize(
        self,
        attributes  : Sequence[Attribute],
        stop        : Optional[asyncio.Event],
        query       : Callable[[List[Attribute], PagingConfig], Awaitable[List[Any]]],
        phase       : str
    ) -> List[Any]:
        async def operation(chunk: List[Attribute]) -> List[Any]:
            paging = self._paging(stop)
            try:
                return await query(chunk, paging)
            except QueryCancelledError as e:
                logging.error(f"[RollupEngine] Exception reported at {phase}: {paging.error}")
                raise (paging.error or PagingStoppedError(str(e))) from e

        return await self._bulk(attributes, self._config.page_size, operation)

    #-----------------------------------------------------
    # Rollup

    async def perform_rollup(
        self,
        level           : int,
        roots           : Sequence[Node],
        leaf_attributes : Sequence[Attribute],
        stop            : Optional[asyncio.Event] = None,
        stats           : Optional[RollupStats] = None
    ):
        """
        Roll the hourly totals of the leaves up into every node under `roots`

        New totals replace stored values at the same timestamps.
        """
        stats = stats or RollupStats(started_at=self.started_at)
        times = rollup_window(self.started_at, self._config.rollup_window_hours)
        hour = timedelta(hours=1)

        results = await self._summarize(
            leaf_attributes,
            stop,
            lambda chunk, paging: self._timeseries.summaries(
                chunk, times[0] - hour, times[-1], hour,
                SummaryType.TOTAL, CalculationBasis.EVENT_WEIGHTED, paging
            ),
            "perform_rollup",
        )

        totals: Dict[str, List[TimedValue]] = {r.attribute.node.id: r.values for r in results}

        with run_ctx(phase="rollup"):
            for root in roots:
                try:
                    await self._rollup_recursively(level, root, times, totals, set(), stats)
                except Exception as e:
                    stats.errors.append(f"{root.name}: {e}")

    async def _rollup_recursively(
        self,
        level   : int,
        node    : Node,
        times   : Sequence[datetime],
        totals  : Dict[str, List[TimedValue]],
        visited : Set[str],
        stats   : RollupStats
    ) -> List[TimedValue]:
        try:
            if level > 0:
                values_to_sum = []
                for child in await self._graph.get_children(node, RelationKind.WEAK):
                    if child.id in visited:
                        logging.warning(f"[RollupEngine] Node {child.name} reached twice, skipped in rollup")
                        continue
                    visited.add(child.id)
                    values_to_sum.append(
                        await self._rollup_recursively(level - 1, child, times, totals, visited, stats)
                    )
                return await self._update_totals(node, times, values_to_sum, stats)

            # Leaves without a total have an empty, thus incomplete, series.
            return totals.get(node.id, [])

        except Exception as e:
            with run_ctx(node=node.name):
                logging.error(f"[RollupEngine] Exception reported at rollup: {str(e)}", exc_info=True)
            raise

    async def _update_totals(
        self,
        parent  : Node,
        times   : Sequence[datetime],
        children: Sequence[Sequence[TimedValue]],
        stats   : RollupStats
    ) -> List[TimedValue]:
        summed, to_set = sum_child_series(times, children)

        attribute = parent.attributes.get(ROLLUP_SUM_ATTRIBUTE)
        if attribute is None:
            await self._graph.load_attributes([parent], [ROLLUP_SUM_ATTRIBUTE])
            attribute = parent.attributes.get(ROLLUP_SUM_ATTRIBUTE)

        if to_set and attribute is not None:
            errors = await self._timeseries.replace_values(attribute, to_set)
            for error in errors:
                logging.error(f"[RollupEngine] Exception reported at update totals: {error}")
            stats.write_errors += len(errors)
            stats.nodes_written += 1
            stats.values_written += len(to_set) if not errors else 0

        return summed

    #-----------------------------------------------------
    # Fluctuation

    async def compute_fluctuation_index(
        self,
        leaf_attributes : Sequence[Attribute],
        stop            : Optional[asyncio.Event] = None
    ) -> List[Tuple[str, float]]:
        """
        (max - min) / days over the trailing window, per leaf with a good range

        Returns:
            (leaf name, index) rows sorted by name
        """
        days = self._config.fluctuation_window_days
        end = self.started_at
        start = end - timedelta(days=days)

        results = await self._summarize(
            leaf_attributes,
            stop,
            lambda chunk, paging: self._timeseries.summary(
                chunk, start, end, SummaryType.RANGE, CalculationBasis.EVENT_WEIGHTED, paging
            ),
            "compute_fluctuation_index",
        )

        rows = [
            (r.attribute.node.name, fluctuation_index(float(r.value.value), days))
            for r in results if r.value.is_good
        ]
        rows.sort(key=lambda row: row[0])
        return rows
