"""
Outlier detector

Compares each branch rollup value with the branch's threshold attribute and
reports values above it.
"""

import asyncio
import logging

from ..graph.base import AssetGraphStore
from ..graph.models import THRESHOLD_ATTRIBUTE
from ..timeseries.models import ValueChangeEvent
from ..timeseries.summary import as_number
from .reports import ReportWriter, outlier_line


class OutlierDetector:
    def __init__(self, graph: AssetGraphStore, reports: ReportWriter):
        self._graph = graph
        self._reports = reports

        # Lines from concurrent callbacks must not interleave.
        self._file_lock = asyncio.Lock()

        self.outliers = 0

    async def report_outlier(self, event: ValueChangeEvent) -> bool:
        """Append an outlier line when the value exceeds the threshold"""
        if not event.value.is_good:
            return False

        value = as_number(event.value.value)
        if value is None:
            return False

        node = event.attribute.node
        threshold = as_number(await self._graph.get_attribute_value(node, THRESHOLD_ATTRIBUTE))
        if threshold is None:
            logging.debug(f"[OutlierDetector] No threshold on {node.name}")
            return False

        if value <= threshold:
            return False

        line = outlier_line(node.name, event.value.timestamp)
        async with self._file_lock:
            await asyncio.to_thread(self._reports.append_outlier, line)
            self.outliers += 1

        logging.info(f"[OutlierDetector] {line}", extra={"value": value, "threshold": threshold})
        return True
