import base64
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Self

from msgspec import Struct, json

from .enum import MessageState, StoreEventKind

__all__ = (
    "ClaimResult",
    "Message",
    "MessageRecord",
    "QueueStats",
    "StoreEvent",
)


@dataclass(frozen=True)
class Message:
    """Immutable snapshot of a message as seen by producers and consumers.

    Attributes:
        id: Unique identifier assigned at enqueue.
        body: Message payload.
        queue: Owning queue name.
        state: State at the time the snapshot was taken.
        receive_count: Successful deliveries so far.
        enqueue_time: Clock time of enqueue.
        visible_at: Clock time the message becomes (or became) eligible.
        sent_at: Wall-clock enqueue timestamp.
        group_key: Ordering group, if any.
        dedup_key: Deduplication key, if any.
        attributes: Metadata, including redrive annotations.
        receipt: Lease token of the delivery that produced this snapshot.
    """

    id: str
    body: bytes
    queue: str
    state: MessageState
    receive_count: int
    enqueue_time: float
    visible_at: float
    sent_at: datetime
    group_key: str | None = None
    dedup_key: str | None = None
    attributes: dict[str, str] = field(default_factory=dict)
    receipt: str | None = None

    def __str__(self) -> str:
        """String representation for debugging."""

        return (
            f"Message(id={self.id[:8]}..., queue={self.queue}, "
            f"state={self.state.value}, received={self.receive_count})"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "body": self.body,
            "queue": self.queue,
            "state": self.state.value,
            "receive_count": self.receive_count,
            "enqueue_time": self.enqueue_time,
            "visible_at": self.visible_at,
            "sent_at": self.sent_at.isoformat(),
            "group_key": self.group_key,
            "dedup_key": self.dedup_key,
            "attributes": self.attributes,
            "receipt": self.receipt,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        return cls(
            id=data["id"],
            body=data["body"],
            queue=data["queue"],
            state=MessageState(data["state"]),
            receive_count=data["receive_count"],
            enqueue_time=data["enqueue_time"],
            visible_at=data["visible_at"],
            sent_at=datetime.fromisoformat(data["sent_at"]),
            group_key=data["group_key"],
            dedup_key=data["dedup_key"],
            attributes=data["attributes"],
            receipt=data["receipt"],
        )

    def to_json(self) -> str:
        return json.encode(self.to_dict()).decode("utf-8")

    @classmethod
    def from_json(cls, data: str | bytes) -> Self:
        payload = json.decode(data)
        payload["body"] = base64.b64decode(payload["body"])
        return cls.from_dict(payload)


@dataclass
class MessageRecord:
    """Mutable store-side state of a message.

    Only the owning `MessageStore` mutates records, always under its lock.
    """

    body: bytes
    queue: str
    enqueue_time: float
    visible_at: float
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    group_key: str | None = None
    dedup_key: str | None = None
    attributes: dict[str, str] = field(default_factory=dict)
    state: MessageState = MessageState.AVAILABLE
    receive_count: int = 0
    receipt: str | None = None
    sequence: int = 0
    redrive_pending: bool = False
    terminal_at: float | None = None
    sent_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def is_visible(self, now: float) -> bool:
        return self.state is MessageState.AVAILABLE and not self.redrive_pending and now >= self.visible_at

    def snapshot(self) -> Message:
        return Message(
            id=self.id,
            body=self.body,
            queue=self.queue,
            state=self.state,
            receive_count=self.receive_count,
            enqueue_time=self.enqueue_time,
            visible_at=self.visible_at,
            sent_at=self.sent_at,
            group_key=self.group_key,
            dedup_key=self.dedup_key,
            attributes=dict(self.attributes),
            receipt=self.receipt,
        )


class StoreEvent(Struct, frozen=True):
    """State change emitted by a store to its listeners."""

    kind: StoreEventKind
    queue: str
    message_id: str
    visible_at: float
    receive_count: int = 0


class ClaimResult(Struct):
    """Messages leased by one claim plus exhausted ids that need redrive."""

    messages: list[Message] = []
    exhausted: list[str] = []


class QueueStats(Struct):
    """Point-in-time counters for a queue."""

    queue: str
    available: int = 0
    delayed: int = 0
    in_flight: int = 0
    deleted: int = 0
    dead_lettered: int = 0
    groups: int = 0
    locked_groups: int = 0

    @property
    def total(self) -> int:
        return self.available + self.delayed + self.in_flight
