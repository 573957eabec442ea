"""
Hierarchy synchronizer

Builds an N-level hierarchy from flat leaf nodes whose attributes name their
ancestors, then keeps it in line with leaf changes.

Each leaf carries one key attribute per level above it, named after that
level's template. Non-leaf nodes are created on demand through the level's
ElementContainerIndex and linked to their children with weak relationships.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from ..errors import GraphLocationError, TemplateNotFoundError
from ..graph.base import AssetGraphStore
from ..graph.models import Node, RelationKind, container_name
from ..timeseries.base import TimeSeriesStore
from ..utils.config import HierarchyConfig
from ..utils.run_ctx import run_ctx
from .container import ElementContainerIndex


class SyncState(Enum):
    UNINITIALIZED = "uninitialized"
    CONTAINERS_BUILT = "containers_built"
    FULLY_BUILT = "fully_built"
    LISTENING = "listening"
    RECONCILING = "reconciling"
    STOPPED = "stopped"


@dataclass
class ReconcileStats:
    """Outcome of reconciling one batch of leaves"""
    leaves: int = 0
    created: int = 0
    attached: int = 0
    moved: int = 0
    repaired: int = 0
    unchanged: int = 0
    skipped_keys: int = 0
    points_created: int = 0
    errors: List[str] = field(default_factory=list)

    def merge(self, other: "ReconcileStats"):
        self.leaves += other.leaves
        self.created += other.created
        self.attached += other.attached
        self.moved += other.moved
        self.repaired += other.repaired
        self.unchanged += other.unchanged
        self.skipped_keys += other.skipped_keys
        self.points_created += other.points_created
        self.errors.extend(other.errors)

    @property
    def structural_changes(self) -> int:
        return self.created + self.attached + self.moved + self.repaired

    def to_dict(self) -> Dict[str, Any]:
        return {
            "leaves": self.leaves,
            "created": self.created,
            "attached": self.attached,
            "moved": self.moved,
            "repaired": self.repaired,
            "unchanged": self.unchanged,
            "skipped_keys": self.skipped_keys,
            "points_created": self.points_created,
            "errors": self.errors[:20],
        }


@dataclass
class BuildStats:
    """Outcome of one full build"""
    total: int = 0
    chunks: int = 0
    execution_time_ms: float = 0.0
    stopped: bool = False
    reconcile: ReconcileStats = field(default_factory=ReconcileStats)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "chunks": self.chunks,
            "execution_time_ms": self.execution_time_ms,
            "stopped": self.stopped,
            **self.reconcile.to_dict(),
        }


class HierarchySynchronizer:
    """
    Full build and incremental reconciliation of the hierarchy

    State machine:
        UNINITIALIZED -> CONTAINERS_BUILT -> FULLY_BUILT -> LISTENING
    LISTENING enters RECONCILING for each change batch or refresh tick.
    close() moves any state to STOPPED.
    """

    def __init__(
        self,
        graph       : AssetGraphStore,
        timeseries  : TimeSeriesStore,
        config      : HierarchyConfig,
        owns_graph  : bool = False
    ):
        self._graph = graph
        self._timeseries = timeseries
        self._config = config
        self._owns_graph = owns_graph

        self._indexes: List[ElementContainerIndex] = []
        self._cursor = None

        # Serializes change handling and refresh ticks.
        self._lock = asyncio.Lock()
        self._closing = asyncio.Event()

        self.state = SyncState.UNINITIALIZED

    @property
    def levels(self) -> List[str]:
        return self._config.levels

    @property
    def leaf_template(self) -> str:
        return self._config.leaf_template

    def index(self, level: int) -> ElementContainerIndex:
        return self._indexes[level]

    #-----------------------------------------------------

    async def start_monitoring(self):
        """Take the change cursor, changes made before this point are not replayed"""
        if self._cursor is None:
            _, self._cursor = await self._graph.find_changes(None)

    async def build_containers(self):
        """Ensure a container and an index exist for every level"""
        with run_ctx(phase="build_containers"):
            leaf = self.leaf_template
            if await self._graph.get_template(leaf) is None:
                raise TemplateNotFoundError(leaf)

            leaf_container = await self._graph.find_container(container_name(leaf))
            if leaf_container is None:
                raise GraphLocationError(
                    f"Leaf container '{container_name(leaf)}' does not exist in the asset graph."
                )

            indexes = [await ElementContainerIndex.load(self._graph, leaf, leaf_container, is_leaf=True)]

            top = len(self.levels) - 1
            for i, template in enumerate(self.levels[1:], start=1):
                if await self._graph.get_template(template) is None:
                    raise TemplateNotFoundError(template)

                # The top level container has a fixed name so the entry point is easy to find.
                name = container_name(template, is_top=(i == top))
                container = await self._graph.find_container(name)
                if container is None:
                    container = await self._graph.create_container(name)
                    logging.info(f"[HierarchySynchronizer] Created container {name}")

                indexes.append(await ElementContainerIndex.load(self._graph, template, container))

            await self._graph.commit()

            self._indexes = indexes
            self.state = SyncState.CONTAINERS_BUILT

    async def build_hierarchy(self, stop: Optional[asyncio.Event] = None) -> BuildStats:
        """Reconcile every leaf, one page of leaves at a time"""
        if not self._indexes:
            await self.build_containers()

        stats = BuildStats()
        start_time = time.time()

        chunk_size = self._config.chunk_size
        index = 0

        with run_ctx(phase="build_hierarchy"):
            while True:
                if stop is not None and stop.is_set():
                    stats.stopped = True
                    break

                leaves, total = await self._graph.find_nodes_by_template(
                    self.leaf_template, index, chunk_size, include_derived=True
                )
                stats.total = total
                if not leaves:
                    break

                logging.info(
                    f"[HierarchySynchronizer] StartIndex = {index} | Found a chunk of {len(leaves)} leaf nodes"
                )

                stats.reconcile.merge(await self.reconcile_batch(leaves))
                stats.chunks += 1

                index += chunk_size

                # The total is re-read with each page since leaves may be added during the scan.
                if index >= total:
                    break

        stats.execution_time_ms = round((time.time() - start_time) * 1000, 2)
        if not stats.stopped:
            self.state = SyncState.FULLY_BUILT

        logging.info(
            f"[HierarchySynchronizer] Finished hierarchy building for {stats.reconcile.leaves} of {stats.total} leaf nodes",
            extra={"stats": stats.to_dict()}
        )
        return stats

    #-----------------------------------------------------

    def _key_of(self, leaf: Node, level: int) -> str:
        attribute = leaf.attributes.get(self.levels[level])
        if attribute is None or attribute.value is None:
            return ""
        return str(attribute.value).strip()

    async def reconcile_batch(self, leaves: Sequence[Node]) -> ReconcileStats:
        """
        Bring the weak relationships above a batch of leaves in line with
        their key attributes, level by level from the bottom

        Each level is committed before the next one reads it.
        """
        stats = ReconcileStats(leaves=len(leaves))
        if not leaves:
            return stats

        if not self._indexes:
            await self.build_containers()

        await self._graph.load_attributes(leaves, self.levels[1:])

        for level in range(1, len(self.levels)):
            with run_ctx(phase=f"reconcile_{self.levels[level]}"):
                await self._reconcile_level(level, leaves, stats)

            logging.debug(f"[HierarchySynchronizer] Finished building hierarchy at {self.levels[level]} level")

        logging.info(
            f"[HierarchySynchronizer] Finished building hierarchy for {len(leaves)} leaf nodes",
            extra={"stats": stats.to_dict()}
        )
        return stats

    async def _reconcile_level(self, level: int, leaves: Sequence[Node], stats: ReconcileStats):
        index = self._indexes[level]
        lower = self._indexes[level - 1]

        groups: Dict[str, List[Node]] = {}
        for leaf in leaves:
            key = self._key_of(leaf, level)
            if not key:
                stats.skipped_keys += 1
                continue
            groups.setdefault(key, []).append(leaf)

        needs_points: List[Node] = []
        for key, group in groups.items():
            parent, created = await index.get_or_create(key)
            if created:
                stats.created += 1
            if parent.has_template_bound_attributes():
                needs_points.append(parent)

            if level == 1:
                children = group
            else:
                children = []
                for child_key in dict.fromkeys(self._key_of(leaf, level - 1) for leaf in group):
                    if not child_key:
                        continue
                    child, child_created = await lower.get_or_create(child_key)
                    if child_created:
                        stats.created += 1
                    children.append(child)

            for child in children:
                await self._attach(parent, child, stats)

        if needs_points:
            await self._create_points(needs_points, stats)

        await self._graph.commit()

    async def _attach(self, parent: Node, child: Node, stats: ReconcileStats):
        """Make `parent` the only weak parent of `child`"""
        parents = await self._graph.get_parents(child, RelationKind.WEAK)

        if not parents:
            await self._graph.add_child(parent, child, RelationKind.WEAK)
            stats.attached += 1

        elif len(parents) == 1:
            if parents[0] == parent:
                stats.unchanged += 1
                return
            await self._graph.remove_child(parents[0], child)
            await self._graph.add_child(parent, child, RelationKind.WEAK)
            stats.moved += 1

        else:
            logging.warning(
                f"[HierarchySynchronizer] The node, {child.name}, had more than one weak parents. "
                f"Any invalid parents will be removed in the hierarchy",
                extra={"node": child.name, "parents": [p.name for p in parents], "target": parent.name}
            )
            for invalid in parents:
                if invalid != parent:
                    await self._graph.remove_child(invalid, child)
            if parent not in parents:
                await self._graph.add_child(parent, child, RelationKind.WEAK)
            stats.repaired += 1

    async def _create_points(self, nodes: Sequence[Node], stats: ReconcileStats):
        attributes = [a for node in nodes for a in node.attributes.values() if a.is_template_bound]
        if not attributes:
            return

        errors = await self._timeseries.create_points(attributes)
        for error in errors:
            logging.error(f"[HierarchySynchronizer] Failed to create point: {error}")
            stats.errors.append(str(error))

        failed = {id(e.target) for e in errors}
        bound = [a for a in attributes if id(a) not in failed]
        await self._graph.set_point_bindings(bound)
        stats.points_created += len(bound)

    #-----------------------------------------------------

    async def _process_changes(self) -> Optional[ReconcileStats]:
        if self._cursor is None:
            await self.start_monitoring()
            return None

        changes, self._cursor = await self._graph.find_changes(self._cursor)
        if not changes:
            return None

        await self._graph.refresh(changes)

        ids = []
        for change in changes:
            base = await self._graph.base_template_name(change.template)
            if base.lower() == self.leaf_template.lower() and change.node_id not in ids:
                ids.append(change.node_id)

        leaves = await self._graph.get_nodes(ids)
        for leaf in leaves:
            logging.info(f"[HierarchySynchronizer] Change in leaf node {leaf.name} detected")

        return await self.reconcile_batch(leaves)

    async def on_changed(self) -> Optional[ReconcileStats]:
        """Reconcile the leaves changed since the last cursor"""
        async with self._lock:
            if self.state == SyncState.STOPPED:
                return None

            previous = self.state
            self.state = SyncState.RECONCILING
            try:
                with run_ctx(phase="on_changed"):
                    return await self._process_changes()
            finally:
                if self.state == SyncState.RECONCILING:
                    self.state = previous

    async def on_refresh(self) -> Optional[ReconcileStats]:
        """Timer tick, refresh cached objects and pick up missed changes"""
        async with self._lock:
            if self.state == SyncState.STOPPED:
                return None

            previous = self.state
            self.state = SyncState.RECONCILING
            try:
                with run_ctx(phase="on_refresh"):
                    logging.debug("[HierarchySynchronizer] Refreshing asset graph for changes")
                    await self._graph.refresh()
                    return await self._process_changes()
            finally:
                if self.state == SyncState.RECONCILING:
                    self.state = previous

    async def listen(self, stop: asyncio.Event):
        """
        React to change notifications and refresh ticks until stopped

        The refresh timer is re-armed only after a tick's work is done.
        """
        await self.start_monitoring()
        self.state = SyncState.LISTENING

        loop = asyncio.get_running_loop()
        interval = self._config.refresh_interval
        next_refresh = loop.time() + interval

        logging.info(f"[HierarchySynchronizer] Listening for changes, refresh every {interval}s")

        while not stop.is_set() and not self._closing.is_set():
            try:
                timeout = max(0.0, next_refresh - loop.time())
                changed = await self._wait(stop, timeout)
                if stop.is_set() or self._closing.is_set():
                    break

                if changed:
                    await self.on_changed()

                if loop.time() >= next_refresh:
                    await self.on_refresh()
                    next_refresh = loop.time() + interval

            except asyncio.CancelledError:
                logging.info("[HierarchySynchronizer] Listen loop cancelled")
                break
            except Exception as e:
                logging.error(f"[HierarchySynchronizer] Listen loop error: {str(e)}", exc_info=True)
                next_refresh = loop.time() + interval
                await asyncio.sleep(min(interval, 1.0))

        logging.info("[HierarchySynchronizer] Stopped listening")

    async def _wait(self, stop: asyncio.Event, timeout: float) -> bool:
        change_waiter = asyncio.ensure_future(self._graph.wait_for_change(timeout))
        waiters = {
            change_waiter,
            asyncio.ensure_future(stop.wait()),
            asyncio.ensure_future(self._closing.wait()),
        }
        done, pending = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)

        for waiter in pending:
            waiter.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        return change_waiter in done and change_waiter.result() is True

    async def close(self):
        """Stop listening and release the store, safe to call in any state"""
        self._closing.set()

        async with self._lock:
            self.state = SyncState.STOPPED
            if self._owns_graph:
                await self._graph.close()
