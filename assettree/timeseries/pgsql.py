"""
PostgreSQL time-series store with a Redis stream of value changes

Values live in `ts_values`. Every write is also appended to a Redis stream
that subscriptions read from, filtered by their own points.
"""

import json
import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Set, Tuple

import redis.asyncio
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from ..errors import SubscriptionError, WriteError
from ..graph.models import Attribute
from ..utils.db import execute_query
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


def _encode_event(point: str, value: TimedValue, action: str) -> Dict[str, str]:
    return {
        "point"     : point,
        "ts"        : value.timestamp.isoformat(),
        "value"     : json.dumps(value.value),
        "good"      : "1" if value.good else "0",
        "action"    : action,
    }


def _decode_value(fields: Dict[str, str]) -> TimedValue:
    return TimedValue(
        timestamp=datetime.fromisoformat(fields["ts"]),
        value=json.loads(fields.get("value", "null")),
        good=fields.get("good", "1") == "1",
    )


class PgSubscription:
    def __init__(
        self,
        client      : redis.asyncio.Redis,
        stream      : str,
        by_point    : Dict[str, List[Attribute]],
        last_id     : str
    ):
        self._client = client
        self._stream = stream
        self._by_point = by_point
        self._last_id = last_id
        self.closed = False

    @property
    def points(self) -> Set[str]:
        return set(self._by_point.keys())

    async def get_events(self, max_events: int = 1000) -> Tuple[List[ValueChangeEvent], bool]:
        if self.closed:
            return [], False

        response = await self._client.xread({self._stream: self._last_id}, count=max_events)
        if not response:
            return [], False

        events = []
        entries = response[0][1]
        for entry_id, fields in entries:
            self._last_id = entry_id
            for attribute in self._by_point.get(fields.get("point", ""), []):
                events.append(ValueChangeEvent(
                    attribute=attribute,
                    value=_decode_value(fields),
                    action=fields.get("action", "update"),
                ))

        return events, len(entries) >= max_events

    async def close(self) -> None:
        self.closed = True


class PgTimeSeriesStore:
    """TimeSeriesStore over SQLAlchemy async + psycopg and redis.asyncio"""

    def __init__(
        self,
        engine  : AsyncEngine,
        client  : Optional[redis.asyncio.Redis],
        stream  : str,
        server  : str = "pgsql",
        maxlen  : int = 100000
    ):
        self._engine = engine
        self._client = client
        self._stream = stream
        self._maxlen = maxlen
        self.server = server

    #-----------------------------------------------------

    async def _existing_points(self, names: Sequence[str]) -> Set[str]:
        if not names:
            return set()
        rows = await execute_query(
            "SELECT name FROM ts_points WHERE name = ANY(:names)",
            {"names": list(set(names))},
            engine=self._engine,
        )
        return {row["name"] for row in rows}

    async def _publish(self, point: str, values: Sequence[TimedValue], action: str):
        if self._client is None or not values:
            return

        try:
            async with self._client.pipeline(transaction=False) as pipe:
                for value in values:
                    pipe.xadd(
                        self._stream, _encode_event(point, value, action),
                        maxlen=self._maxlen, approximate=True
                    )
                await pipe.execute()
        except RedisError as e:
            logging.error(f"[PgTimeSeriesStore] Failed to publish {len(values)} changes of {point}: {e}")

    async def _fetch(self, points: Sequence[str], start: datetime, end: datetime) -> Dict[str, List[TimedValue]]:
        values: Dict[str, List[TimedValue]] = defaultdict(list)
        if not points:
            return values

        rows = await execute_query(
            "SELECT point, ts, value, good FROM ts_values "
            "WHERE point = ANY(:points) AND ts >= :start AND ts < :end ORDER BY point, ts",
            {"points": list(points), "start": start, "end": end},
            engine=self._engine,
        )
        for row in rows:
            values[row["point"]].append(TimedValue(row["ts"], row["value"], row["good"]))
        return values

    async def _resolve_page(self, attributes: Sequence[Attribute]) -> Dict[str, Optional[str]]:
        names = {}
        for attribute in attributes:
            info = point_for(attribute, self.server) if not attribute.point else None
            names[attribute.path] = attribute.point or (info.name if info and not info.is_pattern else None)

        existing = await self._existing_points([n for n in names.values() if n])
        for attribute in attributes:
            name = names[attribute.path]
            if name in existing:
                attribute.point = name
            else:
                names[attribute.path] = None
        return names

    #-----------------------------------------------------

    async def resolve_points(self, attributes: Sequence[Attribute]) -> List[WriteError]:
        names = await self._resolve_page(attributes)
        return [WriteError(a, "Storage point not found.") for a in attributes if names[a.path] is None]

    async def create_points(self, attributes: Sequence[Attribute]) -> List[WriteError]:
        errors = []
        rows = []
        for attribute in attributes:
            info = point_for(attribute, self.server)
            if info is None or info.is_pattern or not info.name:
                errors.append(WriteError(attribute, "Point name pattern cannot be resolved."))
                continue

            rows.append({"name": info.name, "point_attributes": json.dumps(info.point_attributes)})
            attribute.config_string = format_config_string(info.archive, info.name)
            attribute.point = info.name

        if rows:
            await execute_query(
                "INSERT INTO ts_points (name, point_attributes) VALUES (:name, CAST(:point_attributes AS jsonb)) "
                "ON CONFLICT (name) DO NOTHING",
                rows,
                engine=self._engine,
            )
        return errors

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
            names = await self._resolve_page(page)
            values = await self._fetch([n for n in names.values() if n], start, end)

            for attribute in page:
                name = names[attribute.path]
                if name is None:
                    results.append(AttributeSeries(attribute, []))
                    continue
                results.append(AttributeSeries(
                    attribute, summarize_buckets(values.get(name, []), start, end, interval, kind, basis)
                ))

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
            names = await self._resolve_page(page)
            values = await self._fetch([n for n in names.values() if n], start, end)

            for attribute in page:
                name = names[attribute.path]
                if name is None:
                    results.append(AttributeValue(attribute, TimedValue(start, None, False)))
                    continue
                results.append(AttributeValue(attribute, summarize(values.get(name, []), start, end, kind, basis)))

        return results

    async def replace_values(self, attribute: Attribute, values: Sequence[TimedValue]) -> List[WriteError]:
        names = await self._resolve_page([attribute])
        name = names[attribute.path]
        if name is None:
            return [WriteError(attribute, "Storage point not found.")]
        if not values:
            return []

        rows = [
            {"point": name, "ts": v.timestamp, "value": json.dumps(v.value), "good": v.good}
            for v in values
        ]
        try:
            await execute_query(
                "INSERT INTO ts_values (point, ts, value, good) VALUES (:point, :ts, CAST(:value AS jsonb), :good) "
                "ON CONFLICT (point, ts) DO UPDATE SET value = EXCLUDED.value, good = EXCLUDED.good",
                rows,
                engine=self._engine,
            )
        except SQLAlchemyError as e:
            return [WriteError(attribute, f"Failed to write {len(rows)} values: {e}")]

        await self._publish(name, values, "replace")
        return []

    async def write_value(self, attribute: Attribute, value: TimedValue) -> None:
        errors = await self.replace_values(attribute, [value])
        if errors:
            raise errors[0]

    async def subscribe(self, attributes: Sequence[Attribute]) -> PgSubscription:
        if self._client is None:
            raise SubscriptionError("Live subscriptions need a Redis connection.")

        names = await self._resolve_page(attributes)

        by_point: Dict[str, List[Attribute]] = defaultdict(list)
        failed = []
        for attribute in attributes:
            name = names[attribute.path]
            if name is None:
                failed.append(attribute)
            else:
                by_point[name].append(attribute)

        if failed:
            raise SubscriptionError(
                f"Failed to sign up {len(failed)} of {len(attributes)} attributes, e.g. {failed[0].path}."
            )

        try:
            latest = await self._client.xrevrange(self._stream, count=1)
        except RedisError as e:
            raise SubscriptionError(f"Failed to read stream {self._stream}: {e}") from e

        last_id = latest[0][0] if latest else "0-0"
        return PgSubscription(self._client, self._stream, dict(by_point), last_id)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
