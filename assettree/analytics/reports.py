"""
Report files

Both reports are UTF-8, line oriented and comma separated. Their names carry
the run start time, e.g. FluctuationIndexReport_10192026_1400.csv.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Iterable, Tuple

FLUCTUATION_REPORT = "FluctuationIndexReport"
OUTLIER_REPORT = "BranchOutlierReport"

FLUCTUATION_HEADER = "Name, Fluctuation Index"


def report_name(prefix: str, started_at: datetime) -> str:
    return f"{prefix}{started_at.strftime('_%m%d%Y_%H%M')}.csv"


def format_number(value: float) -> str:
    return f"{value:g}"


def outlier_line(name: str, timestamp: datetime) -> str:
    return f"Found outlier in Branch element {name} at {timestamp.isoformat()}"


class ReportWriter:
    def __init__(self, report_dir: str, started_at: datetime):
        self._dir = Path(report_dir or ".")
        self.started_at = started_at

    @property
    def fluctuation_path(self) -> Path:
        return self._dir / report_name(FLUCTUATION_REPORT, self.started_at)

    @property
    def outlier_path(self) -> Path:
        return self._dir / report_name(OUTLIER_REPORT, self.started_at)

    def write_fluctuation(self, rows: Iterable[Tuple[str, float]]) -> Path:
        """Write the fluctuation report, rows must already be sorted by name"""
        path = self.fluctuation_path
        path.parent.mkdir(parents=True, exist_ok=True)

        count = 0
        with path.open("w", encoding="utf-8") as f:
            f.write(FLUCTUATION_HEADER + "\n")
            for name, value in rows:
                f.write(f"{name}, {format_number(value)}\n")
                count += 1

        logging.info(f"[ReportWriter] Wrote {count} fluctuation indexes to {path}")
        return path

    def append_outlier(self, line: str):
        """Append one line, callers serialize concurrent appends"""
        path = self.outlier_path
        path.parent.mkdir(parents=True, exist_ok=True)

        with path.open("a", encoding="utf-8") as f:
            f.write(line + "\n")
