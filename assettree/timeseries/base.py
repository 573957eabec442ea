"""
Protocols for time-series stores and live subscriptions
"""

from datetime import datetime, timedelta
from typing import List, Protocol, Sequence, Tuple

from ..errors import WriteError
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


class Subscription(Protocol):
    """Live value changes of a fixed set of attributes"""

    async def get_events(self, max_events: int = 1000) -> Tuple[List[ValueChangeEvent], bool]:
        """
        Drain pending events in arrival order

        Returns:
            The events and whether more are already waiting
        """
        ...

    async def close(self) -> None:
        ...


class TimeSeriesStore(Protocol):

    async def resolve_points(self, attributes: Sequence[Attribute]) -> List[WriteError]:
        """Bind attributes to their existing storage points"""
        ...

    async def create_points(self, attributes: Sequence[Attribute]) -> List[WriteError]:
        """Create the storage points of template-bound attributes and bind them"""
        ...

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
        """
        One summary value per interval in [start, end) for each attribute

        Raises:
            QueryCancelledError: the paging config was stopped or timed out
        """
        ...

    async def summary(
        self,
        attributes  : Sequence[Attribute],
        start       : datetime,
        end         : datetime,
        kind        : SummaryType,
        basis       : CalculationBasis,
        paging      : PagingConfig
    ) -> List[AttributeValue]:
        ...

    async def replace_values(self, attribute: Attribute, values: Sequence[TimedValue]) -> List[WriteError]:
        """Write values, replacing any stored at the same timestamps"""
        ...

    async def write_value(self, attribute: Attribute, value: TimedValue) -> None:
        ...

    async def subscribe(self, attributes: Sequence[Attribute]) -> Subscription:
        """
        Raises:
            SubscriptionError: some attributes could not be signed up
        """
        ...

    async def close(self) -> None:
        ...
