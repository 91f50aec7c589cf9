from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, Self

import structlog

from .clock import ClockSource, MonotonicClock
from .config import QueueConfig
from .exceptions import QueueConfigError, QueueExistsError, QueueNotFoundError
from .queue import MessageQueue

if TYPE_CHECKING:
    from collections.abc import Iterator

    from .message import QueueStats
    from .types import QueueName

__all__ = ("QueueRegistry",)

logger = structlog.stdlib.get_logger(__name__)


class QueueRegistry:
    """Owns a set of named queues and resolves dead-letter targets by name.

    Queues created here receive `resolve` as their redrive resolver, so a
    dead-letter queue may be declared before or after the queues that use it.

    Example:
        >>> registry = QueueRegistry()
        >>> registry.create_queue("orders-dlq")
        >>> registry.create_queue("orders", QueueConfig(dead_letter_target="orders-dlq"))
        >>> async with registry:
        ...     registry.get("orders").enqueue(b"payload")
    """

    def __init__(self, clock: ClockSource | None = None, resolution: float = 0.5) -> None:
        self.clock = clock or MonotonicClock()
        self.resolution = resolution
        self._queues: dict[QueueName, MessageQueue] = {}

    def __contains__(self, name: object) -> bool:
        return name in self._queues

    def __iter__(self) -> Iterator[MessageQueue]:
        return iter(list(self._queues.values()))

    def __len__(self) -> int:
        return len(self._queues)

    @property
    def names(self) -> list[QueueName]:
        return list(self._queues)

    def create_queue(self, name: QueueName, config: QueueConfig | None = None) -> MessageQueue:
        """Create and register a queue.

        Raises:
            QueueExistsError: If the name is taken.
            QueueConfigError: If the queue names itself as dead-letter target.
        """
        if name in self._queues:
            raise QueueExistsError(f"Queue {name!r} already exists")

        config = config or QueueConfig()
        if config.dead_letter_target == name:
            raise QueueConfigError(f"Queue {name!r} cannot be its own dead-letter queue")

        queue = MessageQueue(name, config, clock=self.clock, resolver=self.resolve, resolution=self.resolution)
        self._queues[name] = queue

        logger.debug(
            "Queue created",
            queue=name,
            ordering=config.ordering_enabled,
            dead_letter_target=config.dead_letter_target,
        )
        return queue

    def get(self, name: QueueName) -> MessageQueue:
        """Get a queue by name.

        Raises:
            QueueNotFoundError: If no such queue is registered.
        """
        try:
            return self._queues[name]
        except KeyError:
            raise QueueNotFoundError(f"Queue {name!r} not found") from None

    def resolve(self, name: QueueName) -> MessageQueue:
        """Dead-letter target lookup handed to every queue's redrive controller."""
        return self.get(name)

    async def delete_queue(self, name: QueueName) -> MessageQueue:
        """Stop and unregister a queue; queues dead-lettering into it defer redrive until it returns."""

        queue = self.get(name)
        del self._queues[name]
        await queue.stop()
        logger.debug("Queue deleted", queue=name)
        return queue

    def stats(self) -> dict[QueueName, QueueStats]:
        return {name: queue.stats() for name, queue in self._queues.items()}

    async def start_all(self) -> None:
        for queue in self._queues.values():
            await queue.start()

    async def stop_all(self) -> None:
        await asyncio.gather(*(queue.stop() for queue in self._queues.values()))

    async def __aenter__(self) -> Self:
        await self.start_all()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.stop_all()
