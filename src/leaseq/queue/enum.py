from enum import StrEnum, auto

__all__ = (
    "ExhaustedPolicy",
    "HandlerResult",
    "MessageState",
    "RedriveOutcome",
    "StoreEventKind",
)


class MessageState(StrEnum):
    """Message lifecycle state.

    Exactly one state holds at a time. The only backward transition is
    `IN_FLIGHT -> AVAILABLE` (visibility timeout or nack).
    """

    AVAILABLE = auto()
    """Eligible for delivery once `visible_at` has passed"""

    IN_FLIGHT = auto()
    """Leased to a consumer, hidden until acked, nacked or timed out"""

    DELETED = auto()
    """Acknowledged or purged, terminal"""

    DEAD_LETTERED = auto()
    """Redriven after exhausting its receive budget, terminal"""

    @property
    def is_terminal(self) -> bool:
        return self in (MessageState.DELETED, MessageState.DEAD_LETTERED)


class HandlerResult(StrEnum):
    """Outcome reported by a message handler."""

    ACK = auto()
    NACK = auto()


class ExhaustedPolicy(StrEnum):
    """What happens to an exhausted message when no dead-letter queue is set."""

    PURGE = auto()
    """Drop the message once it is dead-lettered"""

    RETAIN = auto()
    """Keep the dead-lettered record in the source store for inspection"""


class RedriveOutcome(StrEnum):
    """Result of a redrive evaluation."""

    SKIPPED = auto()
    """Below the receive threshold or no longer available"""

    REDRIVEN = auto()
    """Copied to the dead-letter queue"""

    PURGED = auto()
    """Dead-lettered without a target and dropped"""

    RETAINED = auto()
    """Dead-lettered without a target and kept"""

    DEFERRED = auto()
    """The dead-letter target was unavailable, retried later"""


class StoreEventKind(StrEnum):
    """State change notifications emitted by a message store."""

    ENQUEUED = auto()
    LEASED = auto()
    EXTENDED = auto()
    RELEASED = auto()
    EXPIRED = auto()
    DELETED = auto()
    DEAD_LETTERED = auto()
    PURGED = auto()
