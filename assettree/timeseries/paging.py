"""
Paging of bulk time-series queries

A query walks its attributes page by page. Between pages it checks the
shared stop signal and its max wait; when either trips, the cause is kept
in `error` and the store raises QueryCancelledError.
"""

import asyncio
import time
from typing import Iterator, List, Optional, Sequence, TypeVar

from ..errors import PagingStoppedError, PagingTimeoutError, QueryCancelledError

T = TypeVar("T")


class PagingConfig:
    def __init__(
        self,
        page_size   : int = 1000,
        max_wait    : float = 3600.0,
        stop_event  : Optional[asyncio.Event] = None
    ):
        self.page_size  = page_size if page_size > 0 else 1000
        self.max_wait   = max_wait if max_wait > 0 else 3600.0
        self.stop_event = stop_event

        self.error = None
        self._started_at = None

    def begin(self):
        self.error = None
        self._started_at = time.monotonic()

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self._started_at if self._started_at is not None else 0.0

    def check(self):
        if self.stop_event is not None and self.stop_event.is_set():
            self.error = PagingStoppedError("Paged query stopped by the stop signal.")
        elif self.elapsed > self.max_wait:
            self.error = PagingTimeoutError(
                f"Paged query exceeded its max wait of {self.max_wait}s."
            )

        if self.error is not None:
            raise QueryCancelledError(cause=self.error)

    def pages(self, items: Sequence[T]) -> Iterator[List[T]]:
        """Split items into pages, checking for cancellation before each"""
        if self._started_at is None:
            self.begin()

        for i in range(0, len(items), self.page_size):
            self.check()
            yield list(items[i:i + self.page_size])
