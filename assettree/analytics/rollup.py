"""
Rollup math

Pure functions shared by the rollup engine and its tests.
"""

from datetime import datetime, timedelta
from typing import List, Sequence, Tuple, TypeVar

from ..timeseries.models import TimedValue
from ..timeseries.summary import as_number, floor_hour

T = TypeVar("T")


def rollup_window(start: datetime, hours: int) -> List[datetime]:
    """
    Hourly timestamps of the rollup window, oldest first

    The window has `hours` entries and ends at `start` floored to the hour.
    """
    end = floor_hour(start)
    return [end - timedelta(hours=i - 1) for i in range(hours, 0, -1)]


def sum_child_series(
    times   : Sequence[datetime],
    children: Sequence[Sequence[TimedValue]]
) -> Tuple[List[TimedValue], List[TimedValue]]:
    """
    Per-timestamp sum of child series, matched by index

    Child series whose length differs from the window are incomplete and
    left out entirely. A timestamp with no good child value is bad.

    Returns:
        All summed values, one per timestamp, and only the good ones
    """
    complete = [series for series in children if len(series) == len(times)]

    summed = []
    good = []
    for i, t in enumerate(times):
        numbers = []
        for series in complete:
            if series[i].is_good:
                number = as_number(series[i].value)
                if number is not None:
                    numbers.append(number)

        if not numbers:
            summed.append(TimedValue(t, None, False))
            continue

        value = TimedValue(t, sum(numbers), True)
        summed.append(value)
        good.append(value)

    return summed, good


def chunkify(items: Sequence[T], size: int) -> List[List[T]]:
    """Deal items round robin into len(items) // size + 1 lists"""
    count = len(items) // max(size, 1) + 1
    chunks: List[List[T]] = [[] for _ in range(count)]
    for i, item in enumerate(items):
        chunks[i % count].append(item)
    return chunks


def fluctuation_index(value_range: float, days: int = 7) -> float:
    """(max - min) spread over the days of the window"""
    return value_range / days
