"""
Data models of the time-series store
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, List

from ..graph.models import Attribute


class SummaryType(Enum):
    """Aggregation applied over one summary interval"""
    TOTAL = "total"
    RANGE = "range"  # max - min
    MINIMUM = "minimum"
    MAXIMUM = "maximum"
    COUNT = "count"


class CalculationBasis(Enum):
    EVENT_WEIGHTED = "event_weighted"
    TIME_WEIGHTED = "time_weighted"


@dataclass
class TimedValue:
    timestamp: datetime
    value: Any = None
    good: bool = True

    @property
    def is_good(self) -> bool:
        return self.good and self.value is not None


@dataclass
class AttributeSeries:
    """Summary values of one attribute, one per interval"""
    attribute: Attribute
    values: List[TimedValue] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.values)


@dataclass
class AttributeValue:
    attribute: Attribute
    value: TimedValue


@dataclass
class ValueChangeEvent:
    """A live value change of a subscribed attribute"""
    attribute: Attribute
    value: TimedValue
    action: str = "update"  # update | replace
