from .broker import QueueRegistry
from .clock import ClockSource, ManualClock, MonotonicClock
from .config import QueueConfig, RetryPolicy
from .consumer import ConsumerLoop, ConsumerStats
from .enum import ExhaustedPolicy, HandlerResult, MessageState, RedriveOutcome, StoreEventKind
from .exceptions import (
    GroupLockedError,
    MessageValidationError,
    NotFoundOrNotAvailableError,
    QueueConfigError,
    QueueError,
    QueueExistsError,
    QueueNotFoundError,
    RedriveTargetUnavailableError,
    RetentionExpiredError,
)
from .groups import DeliveryGroupCoordinator
from .message import ClaimResult, Message, QueueStats, StoreEvent
from .queue import MessageQueue
from .redrive import REDRIVE_REASON, RedriveController
from .scheduler import VisibilityScheduler
from .store import MessageStore

__all__ = (
    "REDRIVE_REASON",
    "ClaimResult",
    "ClockSource",
    "ConsumerLoop",
    "ConsumerStats",
    "DeliveryGroupCoordinator",
    "ExhaustedPolicy",
    "GroupLockedError",
    "HandlerResult",
    "ManualClock",
    "Message",
    "MessageQueue",
    "MessageState",
    "MessageStore",
    "MessageValidationError",
    "MonotonicClock",
    "NotFoundOrNotAvailableError",
    "QueueConfig",
    "QueueConfigError",
    "QueueError",
    "QueueExistsError",
    "QueueNotFoundError",
    "QueueRegistry",
    "QueueStats",
    "RedriveController",
    "RedriveOutcome",
    "RedriveTargetUnavailableError",
    "RetentionExpiredError",
    "RetryPolicy",
    "StoreEvent",
    "StoreEventKind",
    "VisibilityScheduler",
)
