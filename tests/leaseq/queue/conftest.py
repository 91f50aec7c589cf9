"""Test fixtures for queue tests."""

from __future__ import annotations

from collections.abc import AsyncGenerator

import pytest

from leaseq.queue import ManualClock, MessageQueue, MessageStore, QueueConfig, QueueRegistry


@pytest.fixture
def clock() -> ManualClock:
    """Deterministic time source shared by a test's stores."""
    return ManualClock(start=1000.0)


@pytest.fixture
def store(clock: ManualClock) -> MessageStore:
    """Standard queue store with a 30 second visibility timeout."""
    return MessageStore("test-queue", QueueConfig(visibility_timeout=30), clock)


@pytest.fixture
def fifo_store(clock: ManualClock) -> MessageStore:
    """Ordering-enabled store."""
    return MessageStore("test-fifo", QueueConfig(visibility_timeout=30, ordering_enabled=True), clock)


@pytest.fixture
def registry(clock: ManualClock) -> QueueRegistry:
    return QueueRegistry(clock=clock, resolution=0.01)


@pytest.fixture
def orders(registry: QueueRegistry) -> MessageQueue:
    """Queue dead-lettering into `orders-dlq` after three receives."""
    registry.create_queue("orders-dlq")
    return registry.create_queue(
        "orders",
        QueueConfig(visibility_timeout=30, max_receive_count=3, dead_letter_target="orders-dlq"),
    )


@pytest.fixture
async def live_queue() -> AsyncGenerator[MessageQueue, None]:
    """Queue on the real monotonic clock with its timer loop running."""
    queue = MessageQueue("live-queue", QueueConfig(visibility_timeout=0.2), resolution=0.01)
    async with queue:
        yield queue
