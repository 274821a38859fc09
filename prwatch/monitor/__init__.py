"""Pull request monitoring: store, diff, scheduler, events and commands."""

from .diff import Decision, decide
from .events import (
    EventBus,
    Failure,
    MonitorEvent,
    QueueSubscription,
    StateChanged,
    Subscription,
)
from .exceptions import (
    DuplicateIdentityError,
    InvalidUrlError,
    MonitorError,
    SettingsValidationError,
    classify_error,
)
from .notifications import (
    LoggingNotificationSink,
    NotificationForwarder,
    NotificationSink,
)
from .scheduler import (
    CycleResult,
    MonitorScheduler,
    SchedulerBusyError,
    SchedulerConfig,
    SchedulerState,
    StateClient,
)
from .service import BoundaryEventEmitter, MonitorService
from .store import StateStore, StoreTransaction

__all__ = [
    "BoundaryEventEmitter",
    "CycleResult",
    "Decision",
    "DuplicateIdentityError",
    "EventBus",
    "Failure",
    "InvalidUrlError",
    "LoggingNotificationSink",
    "MonitorError",
    "MonitorEvent",
    "MonitorScheduler",
    "MonitorService",
    "NotificationForwarder",
    "NotificationSink",
    "QueueSubscription",
    "SchedulerBusyError",
    "SchedulerConfig",
    "SchedulerState",
    "SettingsValidationError",
    "StateChanged",
    "StateClient",
    "StateStore",
    "StoreTransaction",
    "Subscription",
    "classify_error",
    "decide",
]
