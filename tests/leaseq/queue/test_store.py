"""Tests for MessageStore state transitions."""

from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor

import pytest

from leaseq.queue import (
    ManualClock,
    Message,
    MessageState,
    MessageStore,
    MessageValidationError,
    NotFoundOrNotAvailableError,
    QueueConfig,
    RetentionExpiredError,
    StoreEvent,
    StoreEventKind,
)


class TestEnqueue:
    """Test message creation."""

    def test_enqueue_creates_available_message(self, store: MessageStore, clock: ManualClock) -> None:
        message_id = store.enqueue(b"payload", attributes={"source": "test"})

        message = store.peek(message_id)
        assert message is not None
        assert message.state is MessageState.AVAILABLE
        assert message.receive_count == 0
        assert message.body == b"payload"
        assert message.enqueue_time == clock.now()
        assert message.attributes == {"source": "test"}
        assert message.receipt is None

    def test_queue_default_attributes_are_merged(self, clock: ManualClock) -> None:
        store = MessageStore("tagged", QueueConfig(attributes={"tenant": "acme", "source": "queue"}), clock)

        plain = store.peek(store.enqueue(b"a"))
        tagged = store.peek(store.enqueue(b"b", attributes={"source": "api"}))

        assert plain is not None
        assert plain.attributes == {"tenant": "acme", "source": "queue"}
        assert tagged is not None
        assert tagged.attributes == {"tenant": "acme", "source": "api"}
        assert store.config.attributes == {"tenant": "acme", "source": "queue"}

    def test_enqueue_assigns_unique_ids(self, store: MessageStore) -> None:
        ids = {store.enqueue(b"x") for _ in range(100)}
        assert len(ids) == 100

    def test_delayed_message_is_hidden(self, store: MessageStore, clock: ManualClock) -> None:
        message_id = store.enqueue(b"later", delay=10)

        assert store.claim(10).messages == []

        clock.advance(10)
        [message] = store.claim(10).messages
        assert message.id == message_id

    def test_bytearray_body_is_accepted(self, store: MessageStore) -> None:
        message_id = store.enqueue(bytearray(b"abc"))
        message = store.peek(message_id)
        assert message is not None
        assert message.body == b"abc"

    @pytest.mark.parametrize(
        ("body", "kwargs"),
        [
            ("text", {}),
            (b"x", {"delay": -1}),
            (b"x", {"dedup_key": ""}),
            (b"x", {"attributes": {"count": 1}}),
        ],
    )
    def test_invalid_message_is_rejected(self, store: MessageStore, body: object, kwargs: dict) -> None:
        with pytest.raises(MessageValidationError):
            store.enqueue(body, **kwargs)  # type: ignore[arg-type]

    def test_oversized_body_is_rejected(self, clock: ManualClock) -> None:
        store = MessageStore("small", QueueConfig(max_message_size=4), clock)

        with pytest.raises(MessageValidationError, match="exceeds"):
            store.enqueue(b"12345")

    def test_ordering_queue_requires_group_key(self, fifo_store: MessageStore) -> None:
        with pytest.raises(MessageValidationError, match="group_key"):
            fifo_store.enqueue(b"x")


class TestDeduplication:
    """Test dedup key suppression."""

    def test_duplicate_within_window_returns_existing_id(self, store: MessageStore) -> None:
        first = store.enqueue(b"a", dedup_key="order-1")
        second = store.enqueue(b"b", dedup_key="order-1")

        assert first == second
        assert len(store) == 1

    def test_duplicate_of_in_flight_message_is_suppressed(self, store: MessageStore) -> None:
        first = store.enqueue(b"a", dedup_key="order-1")
        store.mark_in_flight(first)

        assert store.enqueue(b"a", dedup_key="order-1") == first

    def test_key_is_reusable_after_window(self, store: MessageStore, clock: ManualClock) -> None:
        first = store.enqueue(b"a", dedup_key="order-1")
        clock.advance(store.config.dedup_window)

        assert store.enqueue(b"a", dedup_key="order-1") != first

    def test_key_is_reusable_after_delete(self, store: MessageStore) -> None:
        first = store.enqueue(b"a", dedup_key="order-1")
        store.delete(first)

        assert store.enqueue(b"a", dedup_key="order-1") != first


class TestLeasing:
    """Test mark_in_flight and claim."""

    def test_mark_in_flight_leases_message(self, store: MessageStore, clock: ManualClock) -> None:
        message_id = store.enqueue(b"x")

        message = store.mark_in_flight(message_id)

        assert message.state is MessageState.IN_FLIGHT
        assert message.receive_count == 1
        assert message.visible_at == clock.now() + 30
        assert message.receipt is not None

    def test_visibility_timeout_override(self, store: MessageStore, clock: ManualClock) -> None:
        message = store.mark_in_flight(store.enqueue(b"x"), visibility_timeout=5)
        assert message.visible_at == clock.now() + 5

    def test_in_flight_message_cannot_be_leased_again(self, store: MessageStore) -> None:
        message_id = store.enqueue(b"x")
        store.mark_in_flight(message_id)

        with pytest.raises(NotFoundOrNotAvailableError):
            store.mark_in_flight(message_id)

    def test_unknown_message_cannot_be_leased(self, store: MessageStore) -> None:
        with pytest.raises(NotFoundOrNotAvailableError, match="not found"):
            store.mark_in_flight("missing")

    def test_claim_respects_batch_size_and_order(self, store: MessageStore) -> None:
        ids = [store.enqueue(f"m{i}".encode()) for i in range(5)]

        result = store.claim(3)

        assert [m.id for m in result.messages] == ids[:3]
        assert result.exhausted == []
        assert [m.id for m in store.claim(10).messages] == ids[3:]
        assert store.claim(10).messages == []

    def test_claim_rejects_invalid_batch_size(self, store: MessageStore) -> None:
        with pytest.raises(ValueError):
            store.claim(0)

    def test_exhausted_message_is_never_leased(self, clock: ManualClock) -> None:
        store = MessageStore("q", QueueConfig(max_receive_count=1), clock)
        message = store.mark_in_flight(store.enqueue(b"x"))
        store.release_to_available(message.id)

        result = store.claim(10)

        assert result.messages == []
        assert result.exhausted == [message.id]
        with pytest.raises(NotFoundOrNotAvailableError, match="exhausted"):
            store.mark_in_flight(message.id)

    def test_concurrent_threads_never_share_a_message(self, store: MessageStore) -> None:
        for i in range(200):
            store.enqueue(str(i).encode())

        def drain() -> list[str]:
            leased = []
            while messages := store.claim(3).messages:
                leased.extend(m.id for m in messages)
            return leased

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda _: drain(), range(8)))

        leased = [message_id for batch in results for message_id in batch]
        assert len(leased) == 200
        assert len(set(leased)) == 200


class TestDelete:
    """Test acknowledgement semantics."""

    def test_delete_is_idempotent(self, store: MessageStore) -> None:
        message = store.mark_in_flight(store.enqueue(b"x"))

        assert store.delete(message.id, receipt=message.receipt) is True
        assert store.delete(message.id, receipt=message.receipt) is False
        assert store.delete("missing") is False

        deleted = store.peek(message.id)
        assert deleted is not None
        assert deleted.state is MessageState.DELETED

    def test_stale_receipt_is_ignored(self, store: MessageStore, clock: ManualClock) -> None:
        first = store.mark_in_flight(store.enqueue(b"x"))
        clock.advance(31)
        assert store.expire(first.id) is True
        second = store.mark_in_flight(first.id)

        assert store.delete(first.id, receipt=first.receipt) is False

        current = store.peek(first.id)
        assert current is not None
        assert current.state is MessageState.IN_FLIGHT
        assert store.delete(second.id, receipt=second.receipt) is True

    def test_available_message_can_be_deleted(self, store: MessageStore) -> None:
        message_id = store.enqueue(b"x")
        assert store.delete(message_id) is True
        assert store.claim().messages == []


class TestRelease:
    """Test release_to_available and extend_visibility."""

    def test_release_makes_message_visible(self, store: MessageStore) -> None:
        message = store.mark_in_flight(store.enqueue(b"x"))

        released = store.release_to_available(message.id, receipt=message.receipt)

        assert released.state is MessageState.AVAILABLE
        assert released.receive_count == 1
        [again] = store.claim().messages
        assert again.receive_count == 2
        assert again.receipt != message.receipt

    def test_release_with_delay(self, store: MessageStore, clock: ManualClock) -> None:
        message = store.mark_in_flight(store.enqueue(b"x"))
        store.release_to_available(message.id, delay=10)

        assert store.claim().messages == []
        clock.advance(10)
        assert len(store.claim().messages) == 1

    def test_release_requires_in_flight(self, store: MessageStore) -> None:
        message_id = store.enqueue(b"x")

        with pytest.raises(NotFoundOrNotAvailableError):
            store.release_to_available(message_id)

    def test_release_with_stale_receipt_fails(self, store: MessageStore) -> None:
        message = store.mark_in_flight(store.enqueue(b"x"))

        with pytest.raises(NotFoundOrNotAvailableError, match="newer receipt"):
            store.release_to_available(message.id, receipt="stale")

    def test_extend_visibility_moves_deadline(self, store: MessageStore, clock: ManualClock) -> None:
        message = store.mark_in_flight(store.enqueue(b"x"))
        clock.advance(20)

        extended = store.extend_visibility(message.id, 30, receipt=message.receipt)
        assert extended.visible_at == clock.now() + 30

        clock.advance(15)
        assert store.expire(message.id) is False
        clock.advance(15)
        assert store.expire(message.id) is True

    def test_expire_is_noop_for_deleted_message(self, store: MessageStore, clock: ManualClock) -> None:
        message = store.mark_in_flight(store.enqueue(b"x"))
        store.delete(message.id)
        clock.advance(60)

        assert store.expire(message.id) is False


class TestRetention:
    """Test retention purge and garbage collection."""

    @pytest.fixture
    def short_store(self, clock: ManualClock) -> MessageStore:
        return MessageStore("short", QueueConfig(retention_period=100, tombstone_ttl=10), clock)

    def test_expired_message_is_never_delivered(self, short_store: MessageStore, clock: ManualClock) -> None:
        message_id = short_store.enqueue(b"old")
        clock.advance(100)

        assert short_store.claim().messages == []

        purged = short_store.peek(message_id)
        assert purged is not None
        assert purged.state is MessageState.DELETED

    def test_mark_in_flight_raises_for_expired_message(self, short_store: MessageStore, clock: ManualClock) -> None:
        message_id = short_store.enqueue(b"old")
        clock.advance(150)

        with pytest.raises(RetentionExpiredError) as exc_info:
            short_store.mark_in_flight(message_id)

        assert isinstance(exc_info.value, NotFoundOrNotAvailableError)

    def test_purge_expired(self, short_store: MessageStore, clock: ManualClock) -> None:
        short_store.enqueue(b"old")
        clock.advance(50)
        short_store.enqueue(b"young")
        clock.advance(50)

        assert short_store.purge_expired() == 1
        assert short_store.stats().available == 1

    def test_collect_garbage_forgets_tombstones(self, short_store: MessageStore, clock: ManualClock) -> None:
        message_id = short_store.enqueue(b"x", dedup_key="k")
        short_store.delete(message_id)

        assert short_store.collect_garbage() == 0
        clock.advance(10)
        assert short_store.collect_garbage() == 1
        assert short_store.peek(message_id) is None


class TestObservation:
    """Test peek, stats and listeners."""

    def test_peek_without_filter_returns_next_deliverable(self, store: MessageStore) -> None:
        first = store.enqueue(b"a")
        store.enqueue(b"b")

        message = store.peek()
        assert message is not None
        assert message.id == first
        assert message.state is MessageState.AVAILABLE

    def test_peek_with_predicate(self, store: MessageStore) -> None:
        store.enqueue(b"a")
        store.enqueue(b"b", attributes={"kind": "special"})

        message = store.peek(lambda m: m.attributes.get("kind") == "special")
        assert message is not None
        assert message.body == b"b"

    def test_stats(self, store: MessageStore) -> None:
        store.enqueue(b"a")
        store.enqueue(b"b", delay=5)
        store.mark_in_flight(store.enqueue(b"c"))
        store.delete(store.enqueue(b"d"))

        stats = store.stats()
        assert (stats.available, stats.delayed, stats.in_flight, stats.deleted) == (1, 1, 1, 1)
        assert stats.total == 3

    def test_listeners_receive_events(self, store: MessageStore) -> None:
        events: list[StoreEvent] = []
        store.subscribe(events.append)

        message = store.mark_in_flight(store.enqueue(b"x"))
        store.delete(message.id)
        store.unsubscribe(events.append)
        store.enqueue(b"y")

        assert [e.kind for e in events] == [StoreEventKind.ENQUEUED, StoreEventKind.LEASED, StoreEventKind.DELETED]

    def test_failing_listener_does_not_break_transition(self, store: MessageStore) -> None:
        def broken(event: StoreEvent) -> None:
            raise RuntimeError("boom")

        store.subscribe(broken)
        message_id = store.enqueue(b"x")
        assert store.peek(message_id) is not None

    def test_message_json_round_trip(self, store: MessageStore) -> None:
        message = store.mark_in_flight(store.enqueue(b"\x00binary", group_key="g", attributes={"a": "b"}))

        assert Message.from_json(message.to_json()) == message


class TestLongPolling:
    """Test version counter and wait_for_change."""

    async def test_wait_wakes_on_enqueue(self, store: MessageStore) -> None:
        waiter = asyncio.create_task(store.wait_for_change(store.version, timeout=5))
        await asyncio.sleep(0)

        store.enqueue(b"x")

        assert await asyncio.wait_for(waiter, 1) is True

    async def test_wait_wakes_on_enqueue_from_thread(self, store: MessageStore) -> None:
        waiter = asyncio.create_task(store.wait_for_change(store.version, timeout=5))
        await asyncio.sleep(0)

        await asyncio.to_thread(store.enqueue, b"x")

        assert await asyncio.wait_for(waiter, 1) is True

    async def test_wait_times_out(self, store: MessageStore) -> None:
        assert await store.wait_for_change(store.version, timeout=0.01) is False

    async def test_wait_returns_immediately_on_missed_change(self, store: MessageStore) -> None:
        version = store.version
        store.enqueue(b"x")

        assert await store.wait_for_change(version, timeout=5) is True
