"""In-memory message store.

The store is the single source of truth for message state. Every state
transition runs inside one short critical section guarded by a
`threading.Lock`: the lock is never held across an `await` or while a
handler runs, so the store can be shared by many asyncio consumers (and by
plain threads) without two of them ever leasing the same message.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import threading
import uuid
from collections.abc import Callable, Iterator
from typing import TYPE_CHECKING, Any

import structlog

from .clock import ClockSource, MonotonicClock
from .config import QueueConfig
from .enum import ExhaustedPolicy, MessageState, StoreEventKind
from .exceptions import MessageValidationError, NotFoundOrNotAvailableError, RetentionExpiredError
from .groups import DeliveryGroupCoordinator
from .message import ClaimResult, Message, MessageRecord, QueueStats, StoreEvent

if TYPE_CHECKING:
    from .types import MessageId, Receipt, StoreListener

__all__ = ("MessageStore",)

logger = structlog.stdlib.get_logger(__name__)

type MessageFilter = MessageId | Callable[[Message], bool] | None


class MessageStore:
    """Authoritative holder of message records for one queue.

    Example:
        >>> store = MessageStore("orders", QueueConfig(visibility_timeout=30))
        >>> message_id = store.enqueue(b"payload")
        >>> message = store.mark_in_flight(message_id)
        >>> store.delete(message.id, receipt=message.receipt)
        True
    """

    def __init__(
        self,
        name: str,
        config: QueueConfig | None = None,
        clock: ClockSource | None = None,
    ) -> None:
        """Initialize the store.

        Args:
            name: Queue name, copied onto every message.
            config: Queue configuration.
            clock: Time source for visibility, dedup and retention arithmetic.
        """
        self.name = name
        self.config = config or QueueConfig()
        self.clock = clock or MonotonicClock()

        self._lock = threading.Lock()
        self._records: dict[MessageId, MessageRecord] = {}
        self._dedup: dict[str, MessageId] = {}
        self._groups = DeliveryGroupCoordinator() if self.config.ordering_enabled else None
        self._sequence = itertools.count(1)
        self._listeners: list[StoreListener] = []
        self._waiters: set[asyncio.Future[None]] = set()
        self._version = 0

    def __len__(self) -> int:
        with self._lock:
            return sum(1 for record in self._records.values() if not record.state.is_terminal)

    def __repr__(self) -> str:
        return f"MessageStore(name={self.name!r}, ordering={self.config.ordering_enabled})"

    # Producers

    def enqueue(
        self,
        body: bytes,
        group_key: str | None = None,
        dedup_key: str | None = None,
        attributes: dict[str, str] | None = None,
        delay: float = 0,
    ) -> MessageId:
        """Add a message to the store.

        A `dedup_key` seen within the dedup window on a message that is not
        deleted suppresses the enqueue and returns the existing id.

        Args:
            body: Message payload.
            group_key: Ordering group, mandatory when ordering is enabled.
            dedup_key: Idempotency key.
            attributes: String metadata carried with the message, merged over the
                queue default attributes.
            delay: Seconds before the message becomes visible.

        Returns:
            Message ID.

        Raises:
            MessageValidationError: If the message is malformed for this queue.
        """
        body = self._validate(body, group_key, dedup_key, attributes, delay)

        with self._lock:
            now = self.clock.now()

            if dedup_key is not None and (existing := self._find_duplicate(dedup_key, now)) is not None:
                logger.debug(
                    "Duplicate message suppressed",
                    queue=self.name,
                    dedup_key=dedup_key,
                    message_id=existing.id,
                )
                return existing.id

            record = MessageRecord(
                body=body,
                queue=self.name,
                enqueue_time=now,
                visible_at=now + delay,
                group_key=group_key,
                dedup_key=dedup_key,
                attributes={**self.config.attributes, **(attributes or {})},
                sequence=next(self._sequence),
            )
            self._records[record.id] = record

            if dedup_key is not None:
                self._dedup[dedup_key] = record.id
            if self._groups is not None and group_key is not None:
                self._groups.add(group_key, record.id)

            self._emit(StoreEventKind.ENQUEUED, record)
            if delay <= 0:
                self._notify_locked()

        logger.debug("Message enqueued", queue=self.name, message_id=record.id, group_key=group_key)
        return record.id

    def _validate(
        self,
        body: Any,
        group_key: str | None,
        dedup_key: str | None,
        attributes: dict[str, str] | None,
        delay: float,
    ) -> bytes:
        if isinstance(body, bytearray | memoryview):
            body = bytes(body)
        if not isinstance(body, bytes):
            raise MessageValidationError(f"Message body must be bytes, got {type(body).__name__}")
        if len(body) > self.config.max_message_size:
            raise MessageValidationError(
                f"Message body of {len(body)} bytes exceeds the {self.config.max_message_size} byte limit"
            )
        if self.config.ordering_enabled and not group_key:
            raise MessageValidationError(f"Queue {self.name!r} has ordering enabled and requires a group_key")
        if group_key == "" or dedup_key == "":
            raise MessageValidationError("group_key and dedup_key cannot be empty strings")
        if delay < 0:
            raise MessageValidationError("delay cannot be negative")
        if attributes and not all(isinstance(k, str) and isinstance(v, str) for k, v in attributes.items()):
            raise MessageValidationError("Message attributes must map str to str")
        return body

    def _find_duplicate(self, dedup_key: str, now: float) -> MessageRecord | None:
        message_id = self._dedup.get(dedup_key)
        if message_id is None:
            return None

        record = self._records.get(message_id)
        if record is None or record.state is MessageState.DELETED:
            return None
        if now - record.enqueue_time >= self.config.dedup_window:
            return None
        return record

    # Lookups

    def peek(self, filter: MessageFilter = None) -> Message | None:  # noqa: A002
        """Read-only lookup, never mutates state.

        Args:
            filter: A message id, a predicate over snapshots, or `None` for
                the message that would be delivered next.
        """
        with self._lock:
            if isinstance(filter, str):
                record = self._records.get(filter)
                return record.snapshot() if record else None

            if filter is None:
                now = self.clock.now()
                record = next(self._deliverable(now), None)
                return record.snapshot() if record else None

            for record in self._records.values():
                if filter(snapshot := record.snapshot()):
                    return snapshot
            return None

    def messages(self, state: MessageState | None = None) -> list[Message]:
        """Snapshots of all known records, optionally filtered by state."""

        with self._lock:
            return [record.snapshot() for record in self._records.values() if state is None or record.state is state]

    def dead_letters(self) -> list[Message]:
        """Dead-lettered records retained in this store."""

        return self.messages(MessageState.DEAD_LETTERED)

    # Consumers

    def mark_in_flight(self, message_id: MessageId, visibility_timeout: float | None = None) -> Message:
        """Lease one available message.

        Raises:
            NotFoundOrNotAvailableError: If the message cannot be leased now.
            RetentionExpiredError: If the message aged out; it is purged.
            GroupLockedError: If its ordering group already has a message in flight.
        """
        with self._lock:
            now = self.clock.now()
            record = self._records.get(message_id)

            if record is None:
                raise NotFoundOrNotAvailableError(message_id, "not found")
            if record.state is not MessageState.AVAILABLE or record.redrive_pending:
                raise NotFoundOrNotAvailableError(message_id, f"{record.state.value}")
            if now < record.visible_at:
                raise NotFoundOrNotAvailableError(message_id, "not visible yet")
            if now - record.enqueue_time >= self.config.retention_period:
                self._purge(record, now)
                raise RetentionExpiredError(message_id)
            if record.receive_count >= self.config.max_receive_count:
                raise NotFoundOrNotAvailableError(message_id, "exhausted and awaiting redrive")

            if self._groups is not None and record.group_key is not None:
                head = self._groups.check(record.group_key)
                if head != record.id:
                    raise NotFoundOrNotAvailableError(message_id, "not the head of its group")

            return self._lease(record, now, visibility_timeout)

    def claim(self, batch_size: int = 1, visibility_timeout: float | None = None) -> ClaimResult:
        """Atomically lease up to `batch_size` deliverable messages.

        Messages that already reached `max_receive_count` are never leased;
        their ids are returned in `exhausted` so the caller can redrive them.
        """
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")

        result = ClaimResult()
        with self._lock:
            now = self.clock.now()
            expired: list[MessageRecord] = []

            for record in self._deliverable(now, expired):
                if record.receive_count >= self.config.max_receive_count:
                    result.exhausted.append(record.id)
                    continue

                result.messages.append(self._lease(record, now, visibility_timeout))
                if len(result.messages) >= batch_size:
                    break

            for record in expired:
                self._purge(record, now)

        return result

    def _deliverable(self, now: float, expired: list[MessageRecord] | None = None) -> Iterator[MessageRecord]:
        """Yield visible records in delivery order; caller holds the lock.

        Retention-expired records are skipped and collected into `expired`.
        """
        if self._groups is not None:
            candidates: Iterator[MessageRecord] = self._group_heads()
        else:
            candidates = iter(list(self._records.values()))

        for record in candidates:
            if not record.is_visible(now):
                continue
            if now - record.enqueue_time >= self.config.retention_period:
                if expired is not None:
                    expired.append(record)
                continue
            yield record

    def _group_heads(self) -> Iterator[MessageRecord]:
        assert self._groups is not None
        for _, head_id in self._groups.heads():
            yield self._records[head_id]

    def _lease(self, record: MessageRecord, now: float, visibility_timeout: float | None) -> Message:
        timeout = self.config.visibility_timeout if visibility_timeout is None else visibility_timeout
        if timeout < 0:
            raise ValueError("visibility_timeout cannot be negative")

        record.state = MessageState.IN_FLIGHT
        record.receive_count += 1
        record.visible_at = now + timeout
        record.receipt = uuid.uuid4().hex

        if self._groups is not None and record.group_key is not None:
            self._groups.lock(record.group_key, record.id)

        self._emit(StoreEventKind.LEASED, record)
        return record.snapshot()

    def delete(self, message_id: MessageId, receipt: Receipt | None = None) -> bool:
        """Delete a message, idempotently.

        Deleting an unknown or already deleted id is a successful no-op, as
        is deleting with a receipt that was superseded by a newer lease.

        Returns:
            True if this call deleted the message.
        """
        with self._lock:
            record = self._records.get(message_id)
            if record is None or record.state is MessageState.DELETED:
                return False

            if receipt is not None and record.receipt != receipt:
                logger.debug("Stale receipt ignored on delete", queue=self.name, message_id=message_id)
                return False

            self._terminate(record, MessageState.DELETED, self.clock.now())
            self._emit(StoreEventKind.DELETED, record)
            if self._groups is not None:
                self._notify_locked()

        logger.debug("Message deleted", queue=self.name, message_id=message_id)
        return True

    def release_to_available(
        self,
        message_id: MessageId,
        delay: float = 0,
        receipt: Receipt | None = None,
    ) -> Message:
        """Return an in-flight message to the queue without waiting for its timeout.

        Raises:
            NotFoundOrNotAvailableError: If the message is not in flight under `receipt`.
        """
        if delay < 0:
            raise ValueError("delay cannot be negative")

        with self._lock:
            record = self._in_flight(message_id, receipt)
            now = self.clock.now()

            record.state = MessageState.AVAILABLE
            record.visible_at = now + delay
            if self._groups is not None and record.group_key is not None:
                self._groups.unlock(record.group_key, record.id)

            self._emit(StoreEventKind.RELEASED, record)
            if delay <= 0:
                self._notify_locked()
            return record.snapshot()

    def extend_visibility(
        self,
        message_id: MessageId,
        new_timeout: float,
        receipt: Receipt | None = None,
    ) -> Message:
        """Move the visibility deadline of an in-flight message to `now + new_timeout`.

        Raises:
            NotFoundOrNotAvailableError: If the message is not in flight under `receipt`.
        """
        if new_timeout < 0:
            raise ValueError("new_timeout cannot be negative")

        with self._lock:
            record = self._in_flight(message_id, receipt)
            record.visible_at = self.clock.now() + new_timeout
            self._emit(StoreEventKind.EXTENDED, record)
            return record.snapshot()

    def _in_flight(self, message_id: MessageId, receipt: Receipt | None) -> MessageRecord:
        record = self._records.get(message_id)
        if record is None:
            raise NotFoundOrNotAvailableError(message_id, "not found")
        if record.state is not MessageState.IN_FLIGHT:
            raise NotFoundOrNotAvailableError(message_id, f"{record.state.value}")
        if receipt is not None and record.receipt != receipt:
            raise NotFoundOrNotAvailableError(message_id, "leased under a newer receipt")
        return record

    # Visibility scheduler hooks

    def expire(self, message_id: MessageId) -> bool:
        """Flip an in-flight message back to available once its deadline passed.

        The state and deadline are re-checked under the lock, so a timer that
        fires after a delete or an extension is a no-op.

        Returns:
            True if the message became available.
        """
        with self._lock:
            record = self._records.get(message_id)
            if record is None or record.state is not MessageState.IN_FLIGHT:
                return False

            now = self.clock.now()
            if now < record.visible_at:
                return False

            record.state = MessageState.AVAILABLE
            if self._groups is not None and record.group_key is not None:
                self._groups.unlock(record.group_key, record.id)

            self._emit(StoreEventKind.EXPIRED, record)
            self._notify_locked()

        logger.debug(
            "Visibility timeout expired",
            queue=self.name,
            message_id=message_id,
            receive_count=record.receive_count,
        )
        return True

    # Redrive hooks

    def begin_redrive(self, message_id: MessageId) -> Message | None:
        """Reserve an exhausted available message for redrive.

        Returns:
            Snapshot of the reserved message, or None when it does not need
            (or is already undergoing) redrive.
        """
        with self._lock:
            record = self._records.get(message_id)
            if (
                record is None
                or record.state is not MessageState.AVAILABLE
                or record.redrive_pending
                or record.receive_count < self.config.max_receive_count
            ):
                return None

            record.redrive_pending = True
            return record.snapshot()

    def complete_redrive(self, message_id: MessageId, reason: str) -> bool:
        """Mark a reserved message as dead-lettered."""

        with self._lock:
            record = self._records.get(message_id)
            if record is None or not record.redrive_pending or record.state is not MessageState.AVAILABLE:
                return False

            record.redrive_pending = False
            record.attributes["redrive_reason"] = reason
            self._terminate(record, MessageState.DEAD_LETTERED, self.clock.now())
            self._emit(StoreEventKind.DEAD_LETTERED, record)

            if self.config.dead_letter_target is None and self.config.exhausted_policy is ExhaustedPolicy.PURGE:
                del self._records[record.id]
            if self._groups is not None:
                self._notify_locked()
            return True

    def abort_redrive(self, message_id: MessageId, retry_delay: float | None = None) -> None:
        """Release a redrive reservation; the message stays available and hidden for `retry_delay`."""

        delay = self.config.redrive_retry_delay if retry_delay is None else retry_delay
        with self._lock:
            record = self._records.get(message_id)
            if record is None or not record.redrive_pending:
                return

            record.redrive_pending = False
            if record.state is MessageState.AVAILABLE:
                record.visible_at = max(record.visible_at, self.clock.now() + delay)
                self._emit(StoreEventKind.RELEASED, record)

    # Housekeeping

    def purge_expired(self) -> int:
        """Purge available messages older than the retention period.

        Returns:
            Number of messages purged.
        """
        with self._lock:
            now = self.clock.now()
            expired = [
                record
                for record in self._records.values()
                if record.state is MessageState.AVAILABLE
                and not record.redrive_pending
                and now - record.enqueue_time >= self.config.retention_period
            ]
            for record in expired:
                self._purge(record, now)

        return len(expired)

    def _purge(self, record: MessageRecord, now: float) -> None:
        self._terminate(record, MessageState.DELETED, now)
        self._emit(StoreEventKind.PURGED, record)
        logger.info(
            "Message retention expired",
            queue=self.name,
            message_id=record.id,
            age=round(now - record.enqueue_time, 3),
        )

    def collect_garbage(self) -> int:
        """Forget terminal records older than `tombstone_ttl` and stale dedup keys.

        Dead-lettered records kept by the `RETAIN` policy are never collected.

        Returns:
            Number of records removed.
        """
        retain = self.config.dead_letter_target is None and self.config.exhausted_policy is ExhaustedPolicy.RETAIN

        with self._lock:
            now = self.clock.now()
            stale = [
                record.id
                for record in self._records.values()
                if record.terminal_at is not None
                and now - record.terminal_at >= self.config.tombstone_ttl
                and not (retain and record.state is MessageState.DEAD_LETTERED)
            ]
            for message_id in stale:
                del self._records[message_id]

            for dedup_key, message_id in list(self._dedup.items()):
                record = self._records.get(message_id)
                if record is None or now - record.enqueue_time >= self.config.dedup_window:
                    del self._dedup[dedup_key]

        return len(stale)

    def _terminate(self, record: MessageRecord, state: MessageState, now: float) -> None:
        record.state = state
        record.terminal_at = now
        if self._groups is not None and record.group_key is not None:
            self._groups.remove(record.group_key, record.id)

    # Observation

    def stats(self) -> QueueStats:
        with self._lock:
            now = self.clock.now()
            stats = QueueStats(queue=self.name)
            for record in self._records.values():
                match record.state:
                    case MessageState.AVAILABLE if now >= record.visible_at and not record.redrive_pending:
                        stats.available += 1
                    case MessageState.AVAILABLE:
                        stats.delayed += 1
                    case MessageState.IN_FLIGHT:
                        stats.in_flight += 1
                    case MessageState.DELETED:
                        stats.deleted += 1
                    case MessageState.DEAD_LETTERED:
                        stats.dead_lettered += 1

            if self._groups is not None:
                stats.groups = len(self._groups)
                stats.locked_groups = self._groups.locked_count
            return stats

    def subscribe(self, listener: StoreListener) -> None:
        """Register a callback for state change events.

        Listeners run under the store lock and must not call back into the store.
        """
        with self._lock:
            self._listeners.append(listener)

    def unsubscribe(self, listener: StoreListener) -> None:
        with self._lock, contextlib.suppress(ValueError):
            self._listeners.remove(listener)

    def _emit(self, kind: StoreEventKind, record: MessageRecord) -> None:
        event = StoreEvent(
            kind=kind,
            queue=self.name,
            message_id=record.id,
            visible_at=record.visible_at,
            receive_count=record.receive_count,
        )
        for listener in self._listeners:
            try:
                listener(event)
            except Exception:  # noqa: BLE001 - A faulty listener must not break a state transition
                logger.exception("Store listener failed", queue=self.name, kind=kind.value)

    # Long polling

    @property
    def version(self) -> int:
        """Counter bumped whenever a message may have become deliverable."""
        return self._version

    def notify(self) -> None:
        """Wake consumers waiting in `wait_for_change`."""

        with self._lock:
            self._notify_locked()

    def _notify_locked(self) -> None:
        self._version += 1
        waiters, self._waiters = self._waiters, set()
        for waiter in waiters:
            loop = waiter.get_loop()
            if not loop.is_closed():
                loop.call_soon_threadsafe(_resolve_waiter, waiter)

    async def wait_for_change(self, since_version: int, timeout: float | None) -> bool:
        """Wait until `version` moves past `since_version` or `timeout` elapses.

        Returns:
            True if a change was observed.
        """
        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        with self._lock:
            if self._version != since_version:
                return True
            self._waiters.add(waiter)

        try:
            await asyncio.wait_for(waiter, timeout)
        except TimeoutError:
            return False
        finally:
            with self._lock:
                self._waiters.discard(waiter)

        return True


def _resolve_waiter(waiter: asyncio.Future[None]) -> None:
    if not waiter.done():
        waiter.set_result(None)
