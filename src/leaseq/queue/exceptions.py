"""Exception hierarchy for queue operations.

`NotFoundOrNotAvailableError` and `GroupLockedError` describe benign races
and are resolved inside the consumer; the rest surface to callers.
"""

from __future__ import annotations

__all__ = (
    "GroupLockedError",
    "MessageValidationError",
    "NotFoundOrNotAvailableError",
    "QueueConfigError",
    "QueueError",
    "QueueExistsError",
    "QueueNotFoundError",
    "RedriveTargetUnavailableError",
    "RetentionExpiredError",
)


class QueueError(Exception):
    """Base exception for all queue operations."""


class NotFoundOrNotAvailableError(QueueError):
    """The message does not exist or is not in the state the operation expects."""

    def __init__(self, message_id: str, reason: str = "not available") -> None:
        super().__init__(f"Message {message_id} is {reason}")
        self.message_id = message_id
        self.reason = reason


class GroupLockedError(QueueError):
    """The ordering group already has a message in flight."""

    def __init__(self, group_key: str) -> None:
        super().__init__(f"Group {group_key!r} has a message in flight")
        self.group_key = group_key


class RetentionExpiredError(NotFoundOrNotAvailableError):
    """The message outlived the retention period while available and was purged."""

    def __init__(self, message_id: str) -> None:
        super().__init__(message_id, "past its retention period")


class RedriveTargetUnavailableError(QueueError):
    """The dead-letter queue could not accept a redriven message."""


class MessageValidationError(QueueError):
    """Message validation failed during enqueue."""


class QueueConfigError(QueueError):
    """Queue configuration is malformed."""


class QueueNotFoundError(QueueError):
    """Raised when a queue does not exist."""


class QueueExistsError(QueueError):
    """Raised when trying to create a queue that already exists."""
