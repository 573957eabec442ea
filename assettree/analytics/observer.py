"""
Observation monitor

Signs up a set of attributes for live value changes and pumps the change
events to a callback on its own task, one at a time in arrival order.
"""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, Sequence, Union

from ..graph.models import Attribute
from ..timeseries.base import Subscription, TimeSeriesStore
from ..timeseries.models import ValueChangeEvent

Callback = Callable[[ValueChangeEvent], Union[None, Awaitable[Any]]]


class ObservationMonitor:
    def __init__(
        self,
        timeseries  : TimeSeriesStore,
        attributes  : Sequence[Attribute],
        callback    : Callback,
        name        : str = "",
        backoff     : float = 5.0,
        batch_size  : int = 1000,
        stop        : Optional[asyncio.Event] = None
    ):
        self._timeseries = timeseries
        self._attributes = list(attributes)
        self._callback = callback
        self._backoff = backoff
        self._batch_size = batch_size

        self._stop = stop or asyncio.Event()
        self._subscription: Optional[Subscription] = None
        self._task: Optional[asyncio.Task] = None
        self._closed = False

        self.name = name or "ObservationMonitor"
        self.dispatched = 0
        self.failed = 0

    async def __aenter__(self) -> "ObservationMonitor":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self):
        """
        Raises:
            SubscriptionError: some attributes could not be signed up
        """
        if self._closed:
            raise RuntimeError(f"{self.name} was closed.")
        if self._task is not None:
            return

        logging.info(f"[{self.name}] Signing up for updates for {len(self._attributes)} attributes")
        self._subscription = await self._timeseries.subscribe(self._attributes)
        logging.info(f"[{self.name}] Signed up for updates for {len(self._attributes)} attributes")

        self._task = asyncio.create_task(self._pump(), name=self.name)

    async def _pump(self):
        while not self._stop.is_set():
            try:
                events, has_more = await self._subscription.get_events(self._batch_size)

                for event in events:
                    await self._dispatch(event)

                if not has_more:
                    try:
                        await asyncio.wait_for(self._stop.wait(), self._backoff)
                    except asyncio.TimeoutError:
                        pass

            except asyncio.CancelledError:
                logging.info(f"[{self.name}] Pump cancelled")
                break
            except Exception as e:
                logging.error(f"[{self.name}] Errors in get_events: {str(e)}", exc_info=True)
                try:
                    await asyncio.wait_for(self._stop.wait(), self._backoff)
                except asyncio.TimeoutError:
                    pass

    async def _dispatch(self, event: ValueChangeEvent):
        try:
            result = self._callback(event)
            if inspect.isawaitable(result):
                await result
            self.dispatched += 1

        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.failed += 1
            logging.error(
                f"[{self.name}] Callback failed for {event.attribute.path}: {str(e)}",
                exc_info=True
            )

    async def stop(self):
        self._stop.set()

    async def close(self):
        """Stop the pump, wait for it and release the subscription"""
        if self._closed:
            return
        self._closed = True

        self._stop.set()
        if self._task is not None:
            try:
                await self._task
            except asyncio.CancelledError:
                logging.info(f"[{self.name}] Pump task cancelled")

        if self._subscription is not None:
            await self._subscription.close()
            self._subscription = None

        logging.info(f"[{self.name}] Closed after {self.dispatched} events")
