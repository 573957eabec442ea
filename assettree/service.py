"""
Service runner

Builds the configured stores and runs the hierarchy synchronizer and the
analytics activities side by side until a shared stop event is set.
"""

import asyncio
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Awaitable, List, Optional, Tuple

from .errors import ConfigurationError, SubscriptionError
from .graph import (
    LEAF_MODE_ATTRIBUTE,
    ROLLUP_SUM_ATTRIBUTE,
    AssetGraphStore,
    MemoryAssetGraph,
    PgAssetGraph
)
from .hierarchy import HierarchySynchronizer
from .analytics import (
    ModeTransitionRecorder,
    ObservationMonitor,
    OutlierDetector,
    ReportWriter,
    RollupEngine,
    RollupStats
)
from .timeseries import MemoryTimeSeriesStore, PgTimeSeriesStore, TimeSeriesStore
from .utils.config import Config
from .utils.db import dispose_engines, get_engine
from .utils.run_ctx import run_ctx

#-----------------------------------------------------------------------------

ACTIVITIES = ("hierarchy", "analytics")

#-----------------------------------------------------------------------------

async def create_stores(config: Config) -> Tuple[AssetGraphStore, TimeSeriesStore]:
    location = config.hierarchy.graph_location

    if config.store_backend == "memory":
        graph = MemoryAssetGraph.from_yaml(location)
        timeseries = MemoryTimeSeriesStore.from_yaml(location)
        return graph, timeseries

    if config.store_backend == "pgsql":
        pg_config = config.get_postgresql()
        graph = await PgAssetGraph.connect(location)

        redis_config = config.get_redis()
        client = await redis_config.get_async_client()
        if client is None:
            logging.warning("[Service] Redis is unavailable, live value changes are disabled.")

        timeseries = PgTimeSeriesStore(
            engine  = get_engine(schema=location),
            client  = client,
            stream  = redis_config.stream,
            server  = pg_config.host,
            maxlen  = redis_config.stream_maxlen
        )
        return graph, timeseries

    raise ConfigurationError(f"Unknown store backend: {config.store_backend}")

#-----------------------------------------------------------------------------

class Service:
    def __init__(
        self,
        config      : Config,
        graph       : AssetGraphStore,
        timeseries  : TimeSeriesStore,
        only        : str = "",
        started_at  : Optional[datetime] = None
    ):
        only = only.strip().lower() if only else ""
        if only and only not in ACTIVITIES:
            raise ConfigurationError(f"--only must be one of {', '.join(ACTIVITIES)}, not '{only}'.")

        self.config = config
        self.graph = graph
        self.timeseries = timeseries
        self.only = only

        self.started_at = started_at or datetime.now(timezone.utc)

        self.synchronizer = HierarchySynchronizer(graph, timeseries, config.hierarchy)
        self.reports = ReportWriter(config.analytics.report_dir, self.started_at)
        self.engine = RollupEngine(graph, timeseries, config.analytics, self.reports, self.started_at)
        self.outliers = OutlierDetector(graph, self.reports)
        self.transitions = ModeTransitionRecorder(graph, config.analytics.target_mode)

        self.monitors: List[ObservationMonitor] = []
        self.rollup_stats: Optional[RollupStats] = None

        # Set once the full hierarchy build is done, so a rollup pass never walks a half built tree.
        self.built = asyncio.Event()

    @property
    def runs_hierarchy(self) -> bool:
        return self.only in ("", "hierarchy")

    @property
    def runs_analytics(self) -> bool:
        return self.only in ("", "analytics")

    #-----------------------------------------------------

    async def run(self, stop: asyncio.Event):
        """
        Run the selected activities until `stop` is set.

        Raises:
            ConfigurationError: the graph lacks a configured level template or container
        """
        tasks = []

        if self.runs_hierarchy:
            # Configuration problems surface here, before any activity starts.
            await self.synchronizer.start_monitoring()
            await self.synchronizer.build_containers()

            tasks.append(asyncio.create_task(
                self._guard("hierarchy", self._run_hierarchy(stop)), name="hierarchy"
            ))
        else:
            self.built.set()

        if self.runs_analytics:
            tasks.append(asyncio.create_task(
                self._guard("analytics", self._run_analytics(stop)), name="analytics"
            ))

        logging.info(f"[Service] Started {len(tasks)} activities", extra={"only": self.only or "all"})

        try:
            await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _guard(self, name: str, coro: Awaitable):
        # Activities fail on their own; the others keep running until stop.
        try:
            await coro
        except asyncio.CancelledError:
            logging.info(f"[Service] Activity {name} cancelled")
            raise
        except Exception as e:
            logging.error(f"[Service] Activity {name} failed: {str(e)}", exc_info=True)

    #-----------------------------------------------------

    async def _run_hierarchy(self, stop: asyncio.Event):
        try:
            stats = await self.synchronizer.build_hierarchy(stop)
            logging.info("[Service] Hierarchy built", extra={"stats": stats.to_dict()})
        finally:
            self.built.set()

        if not stop.is_set():
            await self.synchronizer.listen(stop)

    async def _run_analytics(self, stop: asyncio.Event):
        await self._wait_either(self.built, stop)
        if stop.is_set():
            return

        await self.engine.load_nodes()

        branches = [
            node.attributes[ROLLUP_SUM_ATTRIBUTE]
            for node in self.engine.nodes_at(1)
            if ROLLUP_SUM_ATTRIBUTE in node.attributes and not node.attributes[ROLLUP_SUM_ATTRIBUTE].is_template_bound
        ]
        leaves = [
            node.attributes[LEAF_MODE_ATTRIBUTE]
            for node in self.engine.leaf_nodes
            if LEAF_MODE_ATTRIBUTE in node.attributes and not node.attributes[LEAF_MODE_ATTRIBUTE].is_template_bound
        ]

        # Monitors sign up before the rollup pass so they see the values it writes.
        await self._start_monitor("OutlierMonitor", branches, self.outliers.report_outlier)
        await self._start_monitor("ModeMonitor", leaves, self.transitions.on_mode_change)

        try:
            start_time = time.perf_counter()
            self.rollup_stats = await self.engine.run_rollup_pass(stop)
            logging.info(
                f"[Service] Rollup pass finished in {round((time.perf_counter()-start_time)*1e3, 2)}ms",
                extra={"stats": self.rollup_stats.to_dict()}
            )

            await stop.wait()
        finally:
            await self._close_monitors()

    async def _start_monitor(self, name: str, attributes, callback):
        """Sign up a monitor, it is stopped by _close_monitors once the shared stop is set"""
        if not attributes:
            logging.warning(f"[{name}] No attributes to monitor")
            return

        monitor = ObservationMonitor(
            timeseries  = self.timeseries,
            attributes  = attributes,
            callback    = callback,
            name        = name,
            backoff     = self.config.analytics.observer_backoff,
            batch_size  = self.config.analytics.observer_batch_size
        )
        try:
            await monitor.start()
        except SubscriptionError as e:
            logging.error(f"[{name}] {str(e)}")
            await monitor.close()
            return

        self.monitors.append(monitor)

    async def _close_monitors(self):
        monitors, self.monitors = self.monitors, []
        for monitor in monitors:
            await monitor.close()

    @staticmethod
    async def _wait_either(event: asyncio.Event, stop: asyncio.Event):
        waiters = {asyncio.ensure_future(event.wait()), asyncio.ensure_future(stop.wait())}
        _, pending = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        for waiter in pending:
            waiter.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

    #-----------------------------------------------------

    async def close(self):
        await self._close_monitors()
        await self.synchronizer.close()

        for store in (self.timeseries, self.graph):
            try:
                await store.close()
            except Exception as e:
                logging.warning(f"[Service] Failed to close {type(store).__name__}: {str(e)}")

        await dispose_engines()

        logging.info("[Service] Closed")

    #-----------------------------------------------------

    @staticmethod
    async def start(
        yaml_files  : list[str] | None = None,
        only        : str = "",
        stop        : Optional[asyncio.Event] = None
    ) -> "Service":
        """Load the configuration, build the stores and run until `stop` is set."""
        config = Config.init(yaml_filenames=yaml_files, log_extra={"service": "assettree"})
        config.validate_runtime()
        config.print()

        graph, timeseries = await create_stores(config)

        service = Service(config, graph, timeseries, only=only)
        stop = stop or asyncio.Event()

        # Tasks copy the context, so every activity logs the same run id.
        with run_ctx(run_id=uuid.uuid4().hex[:12]):
            try:
                await service.run(stop)
            finally:
                await service.close()

        return service

#-----------------------------------------------------------------------------
