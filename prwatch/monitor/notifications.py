"""User-facing notifications for closed pull requests.

``NotificationForwarder`` listens on the event bus and hands every
``StateChanged`` to a ``NotificationSink`` while the ``notifications_enabled``
setting is on. Failures are not forwarded; they reach the user through the
``error-event`` boundary event instead.
"""

import logging
from abc import ABC, abstractmethod

from .events import EventBus, MonitorEvent, StateChanged, Subscription
from .store import StateStore

logger = logging.getLogger(__name__)


class NotificationSink(ABC):
    """Destination for user notifications."""

    @abstractmethod
    def notify(self, title: str, body: str, url: str | None = None) -> None:
        """Show one notification."""
        pass


class LoggingNotificationSink(NotificationSink):
    """Sink that writes notifications to the log."""

    def __init__(self, level: int = logging.INFO) -> None:
        self.level = level

    def notify(self, title: str, body: str, url: str | None = None) -> None:
        suffix = f" ({url})" if url else ""
        logger.log(self.level, f"{title}: {body}{suffix}")


class NotificationForwarder:
    """Forward close events to a sink, honoring the notification toggle."""

    def __init__(
        self,
        store: StateStore,
        event_bus: EventBus,
        sink: NotificationSink | None = None,
    ) -> None:
        self._store = store
        self._bus = event_bus
        self.sink = sink or LoggingNotificationSink()
        self._subscription: Subscription | None = None
        self.forwarded = 0
        self.suppressed = 0

    @property
    def attached(self) -> bool:
        return self._subscription is not None

    def attach(self) -> None:
        """Start listening. Calling it twice has no effect."""
        if self._subscription is None:
            self._subscription = self._bus.subscribe(self._on_event)

    def detach(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None

    def _on_event(self, event: MonitorEvent) -> None:
        if not isinstance(event, StateChanged):
            return

        if not self._store.current_settings.notifications_enabled:
            self.suppressed += 1
            logger.debug(f"Notifications disabled, not announcing #{event.number}")
            return

        title = f"PR #{event.number} {'merged' if event.merged else 'closed'}"
        if event.owner and event.repo:
            body = f"{event.owner}/{event.repo}: {event.title}"
        else:
            body = event.title
        self.sink.notify(title, body, url=event.url or None)
        self.forwarded += 1
