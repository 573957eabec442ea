"""
In-memory time-series store
"""

import asyncio
import bisect
import logging
from collections import defaultdict, deque
from datetime import datetime, timedelta, timezone
from typing import Any, Deque, Dict, List, Optional, Sequence, Set, Tuple

from ruamel.yaml import YAML

from ..errors import SubscriptionError, WriteError
from ..graph.models import Attribute
from .models import (
    AttributeSeries,
    AttributeValue,
    CalculationBasis,
    SummaryType,
    TimedValue,
    ValueChangeEvent,
)
from .paging import PagingConfig
from .points import format_config_string, point_for
from .summary import summarize, summarize_buckets


def _as_datetime(value) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    parsed = datetime.fromisoformat(str(value))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class MemorySubscription:
    def __init__(self, store: "MemoryTimeSeriesStore", by_point: Dict[str, List[Attribute]]):
        self._store = store
        self._by_point = by_point
        self._queue: Deque[ValueChangeEvent] = deque()
        self.closed = False

    @property
    def points(self) -> Set[str]:
        return set(self._by_point.keys())

    def push(self, point: str, value: TimedValue, action: str):
        for attribute in self._by_point.get(point, []):
            self._queue.append(ValueChangeEvent(attribute=attribute, value=value, action=action))

    async def get_events(self, max_events: int = 1000) -> Tuple[List[ValueChangeEvent], bool]:
        events = []
        while self._queue and len(events) < max_events:
            events.append(self._queue.popleft())
        return events, len(self._queue) > 0

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._store.unsubscribe(self)


class MemoryTimeSeriesStore:
    """Dict backed TimeSeriesStore"""

    def __init__(self, server: str = "memory"):
        self.server = server

        self._points: Dict[str, Dict[str, str]] = {}
        self._values: Dict[str, List[TimedValue]] = defaultdict(list)
        self._subscriptions: List[MemorySubscription] = []

        # Points whose writes fail, to exercise error paths.
        self.rejected_points: Set[str] = set()

        self.query_count = 0
        self.closed = False

    #-----------------------------------------------------
    # Seeding

    def add_point(self, name: str, **point_attributes) -> str:
        self._points.setdefault(name, dict(point_attributes))
        return name

    def add_values(self, point: str, values: Sequence[Tuple[datetime, Any]]):
        self.add_point(point)
        for timestamp, value in values:
            self._insert(point, TimedValue(timestamp, value, True))

    def values_of(self, point: str) -> List[TimedValue]:
        return list(self._values.get(point, []))

    @classmethod
    def from_yaml(cls, filename: str, server: str = "memory") -> "MemoryTimeSeriesStore":
        """Seed points from the `points` section of a graph seed file

            points:
              Leaf001.Value:
                - {ts: 2026-10-19T10:00:00+00:00, value: 12.5}
        """
        with open(filename, "r", encoding="utf-8") as f:
            data = YAML(typ="safe").load(f) or {}

        store = cls(server=server)
        for name, values in (data.get("points") or {}).items():
            store.add_values(str(name), [(_as_datetime(v["ts"]), v.get("value")) for v in values or []])

        logging.info(f"[MemoryTimeSeriesStore] Loaded {len(store._points)} points from {filename}")
        return store

    #-----------------------------------------------------

    def _insert(self, point: str, value: TimedValue):
        series = self._values[point]
        keys = [v.timestamp for v in series]
        i = bisect.bisect_left(keys, value.timestamp)
        if i < len(series) and series[i].timestamp == value.timestamp:
            series[i] = value
        else:
            series.insert(i, value)

    def _publish(self, point: str, value: TimedValue, action: str):
        for subscription in self._subscriptions:
            subscription.push(point, value, action)

    def _point_name(self, attribute: Attribute) -> Optional[str]:
        if attribute.point:
            return attribute.point

        info = point_for(attribute, self.server)
        if info is None or info.is_pattern or info.name not in self._points:
            return None
        return info.name

    def unsubscribe(self, subscription: MemorySubscription):
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    #-----------------------------------------------------

    async def resolve_points(self, attributes: Sequence[Attribute]) -> List[WriteError]:
        errors = []
        for attribute in attributes:
            name = self._point_name(attribute)
            if name is None:
                errors.append(WriteError(attribute, "Storage point not found."))
                continue
            attribute.point = name
        return errors

    async def create_points(self, attributes: Sequence[Attribute]) -> List[WriteError]:
        errors = []
        for attribute in attributes:
            info = point_for(attribute, self.server)
            if info is None or info.is_pattern or not info.name:
                errors.append(WriteError(attribute, "Point name pattern cannot be resolved."))
                continue

            self.add_point(info.name, **info.point_attributes)
            attribute.config_string = format_config_string(info.archive, info.name)
            attribute.point = info.name
        return errors

    async def _series_of(self, attribute: Attribute) -> Optional[List[TimedValue]]:
        name = self._point_name(attribute)
        if name is None:
            return None
        attribute.point = name
        return self._values.get(name, [])

    async def summaries(
        self,
        attributes  : Sequence[Attribute],
        start       : datetime,
        end         : datetime,
        interval    : timedelta,
        kind        : SummaryType,
        basis       : CalculationBasis,
        paging      : PagingConfig
    ) -> List[AttributeSeries]:
        paging.begin()

        results = []
        for page in paging.pages(attributes):
            self.query_count += 1
            for attribute in page:
                values = await self._series_of(attribute)
                if values is None:
                    # Unresolved attributes get an empty series.
                    results.append(AttributeSeries(attribute, []))
                    continue
                results.append(AttributeSeries(attribute, summarize_buckets(values, start, end, interval, kind, basis)))

            # Lets the stop signal and other activities in between pages.
            await asyncio.sleep(0)

        return results

    async def summary(
        self,
        attributes  : Sequence[Attribute],
        start       : datetime,
        end         : datetime,
        kind        : SummaryType,
        basis       : CalculationBasis,
        paging      : PagingConfig
    ) -> List[AttributeValue]:
        paging.begin()

        results = []
        for page in paging.pages(attributes):
            self.query_count += 1
            for attribute in page:
                values = await self._series_of(attribute)
                value = summarize(values or [], start, end, kind, basis)
                if values is None:
                    value = TimedValue(start, None, False)
                results.append(AttributeValue(attribute, value))

            await asyncio.sleep(0)

        return results

    async def replace_values(self, attribute: Attribute, values: Sequence[TimedValue]) -> List[WriteError]:
        name = self._point_name(attribute)
        if name is None:
            return [WriteError(attribute, "Storage point not found.")]

        if name in self.rejected_points:
            return [WriteError(attribute, f"Write to {name} at {v.timestamp.isoformat()} rejected.") for v in values]

        for value in values:
            self._insert(name, value)
            self._publish(name, value, "replace")
        return []

    async def write_value(self, attribute: Attribute, value: TimedValue) -> None:
        name = self._point_name(attribute)
        if name is None:
            raise WriteError(attribute, "Storage point not found.")

        self._insert(name, value)
        self._publish(name, value, "update")

    async def subscribe(self, attributes: Sequence[Attribute]) -> MemorySubscription:
        by_point: Dict[str, List[Attribute]] = defaultdict(list)
        failed = []
        for attribute in attributes:
            name = self._point_name(attribute)
            if name is None:
                failed.append(attribute)
                continue
            attribute.point = name
            by_point[name].append(attribute)

        if failed:
            raise SubscriptionError(
                f"Failed to sign up {len(failed)} of {len(attributes)} attributes, e.g. {failed[0].path}."
            )

        subscription = MemorySubscription(self, dict(by_point))
        self._subscriptions.append(subscription)

        logging.debug(f"[MemoryTimeSeriesStore] Subscribed to {len(by_point)} points")
        return subscription

    async def close(self) -> None:
        self._subscriptions = []
        self.closed = True
