"""In-process event bus for monitor notifications.

Delivery is synchronous: ``publish`` hands the event to every subscriber, in
subscription order, before returning. Since poll cycles never overlap, this
gives FIFO order within a cycle and across cycles without any buffering.
Subscribers that need to do async work should use ``subscribe_queue`` and
consume the queue from their own task.

There is no persistence or replay. A subscriber only sees events published
after it subscribed.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass

from prwatch.models.enums import ErrorKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StateChanged:
    """A tracked pull request was observed closed."""

    number: int
    owner: str = ""
    repo: str = ""
    title: str = ""
    url: str = ""
    merged: bool = False


@dataclass(frozen=True)
class Failure:
    """A poll cycle could not check an entry (or the whole cycle failed)."""

    message: str
    kind: ErrorKind | None = None
    number: int | None = None


MonitorEvent = StateChanged | Failure
EventCallback = Callable[[MonitorEvent], None]


class Subscription:
    """Handle returned by ``EventBus.subscribe``."""

    def __init__(self, bus: "EventBus", callback: EventCallback) -> None:
        self._bus = bus
        self.callback = callback

    @property
    def active(self) -> bool:
        """Check if the subscription still receives events."""
        return self in self._bus._subscriptions

    def close(self) -> None:
        """Stop receiving events. Safe to call more than once."""
        self._bus._unsubscribe(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class QueueSubscription(Subscription):
    """Subscription that buffers events in an ``asyncio.Queue``."""

    def __init__(self, bus: "EventBus", maxsize: int = 0) -> None:
        self.queue: asyncio.Queue[MonitorEvent] = asyncio.Queue(maxsize=maxsize)
        super().__init__(bus, self.queue.put_nowait)

    async def get(self) -> MonitorEvent:
        """Wait for the next event."""
        return await self.queue.get()

    def drain(self) -> list[MonitorEvent]:
        """Return all buffered events without waiting."""
        events = []
        while not self.queue.empty():
            events.append(self.queue.get_nowait())
        return events


class EventBus:
    """Observer registry with ordered, synchronous delivery."""

    def __init__(self) -> None:
        self._subscriptions: list[Subscription] = []
        self._published = 0

    @property
    def subscriber_count(self) -> int:
        """Number of active subscriptions."""
        return len(self._subscriptions)

    @property
    def published_count(self) -> int:
        """Number of events published since creation."""
        return self._published

    def subscribe(self, callback: EventCallback) -> Subscription:
        """Register a callback for every subsequent event."""
        subscription = Subscription(self, callback)
        self._subscriptions.append(subscription)
        return subscription

    def subscribe_queue(self, maxsize: int = 0) -> QueueSubscription:
        """Register a queue that receives every subsequent event."""
        subscription = QueueSubscription(self, maxsize=maxsize)
        self._subscriptions.append(subscription)
        return subscription

    def _unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def publish(self, event: MonitorEvent) -> None:
        """Deliver ``event`` to all current subscribers in order.

        A failing subscriber is logged and skipped; the remaining subscribers
        still receive the event.
        """
        self._published += 1
        for subscription in list(self._subscriptions):
            try:
                subscription.callback(event)
            except Exception as e:
                logger.error(
                    f"Event subscriber {subscription.callback!r} failed on "
                    f"{type(event).__name__}: {e}",
                    exc_info=True,
                )
