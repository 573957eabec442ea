"""
Summary math shared by the time-series backends
"""

import math
from datetime import datetime, timedelta
from typing import List, Optional, Sequence, Tuple

from .models import CalculationBasis, SummaryType, TimedValue


def bucket_starts(start: datetime, end: datetime, interval: timedelta) -> List[datetime]:
    """Start times of the intervals covering [start, end)"""
    if interval <= timedelta(0) or end <= start:
        return []

    count = math.ceil((end - start) / interval)
    return [start + interval * i for i in range(count)]


def _numeric(values: Sequence[TimedValue]) -> List[Tuple[datetime, float]]:
    result = []
    for v in values:
        if not v.is_good:
            continue
        try:
            result.append((v.timestamp, float(v.value)))
        except (TypeError, ValueError):
            continue
    return result


def summarize(
    values  : Sequence[TimedValue],
    start   : datetime,
    end     : datetime,
    kind    : SummaryType,
    basis   : CalculationBasis = CalculationBasis.EVENT_WEIGHTED
) -> TimedValue:
    """
    Summarize the values falling in [start, end)

    Returns a bad value stamped at `start` when no good value exists,
    except for COUNT which is then 0.
    """
    points = [(t, v) for t, v in _numeric(values) if start <= t < end]

    if kind == SummaryType.COUNT:
        return TimedValue(start, len(points), True)

    if not points:
        return TimedValue(start, None, False)

    numbers = [v for _, v in points]

    if kind == SummaryType.TOTAL:
        if basis == CalculationBasis.TIME_WEIGHTED:
            # Step interpolation, each value holds until the next one, in hour units.
            total = 0.0
            for i, (t, v) in enumerate(points):
                until = points[i + 1][0] if i + 1 < len(points) else end
                total += v * (until - t).total_seconds() / 3600.0
            return TimedValue(start, total, True)
        return TimedValue(start, sum(numbers), True)

    if kind == SummaryType.RANGE:
        return TimedValue(start, max(numbers) - min(numbers), True)
    if kind == SummaryType.MINIMUM:
        return TimedValue(start, min(numbers), True)
    if kind == SummaryType.MAXIMUM:
        return TimedValue(start, max(numbers), True)

    raise ValueError(f"Unsupported summary type {kind}")


def summarize_buckets(
    values  : Sequence[TimedValue],
    start   : datetime,
    end     : datetime,
    interval: timedelta,
    kind    : SummaryType,
    basis   : CalculationBasis = CalculationBasis.EVENT_WEIGHTED
) -> List[TimedValue]:
    """One summary per interval, stamped with the interval start"""
    ordered = sorted(values, key=lambda v: v.timestamp)
    return [
        summarize(ordered, t, min(t + interval, end), kind, basis)
        for t in bucket_starts(start, end, interval)
    ]


def floor_hour(t: datetime) -> datetime:
    return t.replace(minute=0, second=0, microsecond=0)


def as_number(value) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None
