"""
Mode-transition recorder

Records an interval each time a leaf switches into the target mode.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from ..graph.base import AssetGraphStore
from ..graph.models import IntervalRecord
from ..timeseries.models import ValueChangeEvent


def interval_name(leaf: str, timestamp: datetime, mode: str) -> str:
    return f"{leaf}_{timestamp.strftime('%Y_%m_%d_%H_%M')}_{mode}"


def mode_name(value: Any) -> str:
    """Name of a mode value, plain or an enumeration entry like {"name": "Prog-Auto", "value": 3}"""
    if isinstance(value, dict):
        value = value.get("name", "")
    return "" if value is None else str(value).strip()


class ModeTransitionRecorder:
    def __init__(
        self,
        graph       : AssetGraphStore,
        target_mode : str,
        now         : Optional[Callable[[], datetime]] = None
    ):
        self._graph = graph
        self._now = now or (lambda: datetime.now(timezone.utc))

        self.target_mode = target_mode
        self.created = 0

    async def on_mode_change(self, event: ValueChangeEvent) -> Optional[IntervalRecord]:
        if mode_name(event.value.value).lower() != self.target_mode.lower():
            return None

        leaf = event.attribute.node
        start = event.value.timestamp

        record = IntervalRecord(
            name=interval_name(leaf.name, start, self.target_mode),
            node=leaf,
            start=start,
            end=self._now(),
        )
        await self._graph.create_interval(record)
        self.created += 1

        logging.info(f"[ModeTransitionRecorder] Created interval {record.name}", extra={"interval": record.to_dict()})
        return record
