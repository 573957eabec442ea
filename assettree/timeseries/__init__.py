from .base import Subscription, TimeSeriesStore

from .models import (
    AttributeSeries,
    AttributeValue,
    CalculationBasis,
    SummaryType,
    TimedValue,
    ValueChangeEvent
)

from .paging import PagingConfig

from .memory import MemorySubscription, MemoryTimeSeriesStore
from .pgsql import PgSubscription, PgTimeSeriesStore
