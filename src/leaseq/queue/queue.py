from __future__ import annotations

from typing import TYPE_CHECKING, Any, Self

from .clock import ClockSource
from .config import QueueConfig
from .consumer import ConsumerLoop
from .exceptions import QueueConfigError
from .redrive import RedriveController
from .scheduler import VisibilityScheduler
from .store import MessageStore

if TYPE_CHECKING:
    from .message import QueueStats
    from .types import MessageHandler, MessageId, QueueResolver

__all__ = ("MessageQueue",)


class MessageQueue:
    """One queue: its store, visibility scheduler and redrive controller.

    Example:
        >>> async with MessageQueue("tasks", QueueConfig(visibility_timeout=5)) as queue:
        ...     queue.enqueue(b"work")
        ...     consumer = queue.consumer()
        ...     [message] = await consumer.receive(wait_timeout=1)
        ...     await consumer.ack(message)
    """

    def __init__(
        self,
        name: str,
        config: QueueConfig | None = None,
        clock: ClockSource | None = None,
        resolver: QueueResolver | None = None,
        resolution: float = 0.5,
    ) -> None:
        """Initialize the queue.

        Args:
            name: Queue name.
            config: Queue configuration.
            clock: Time source shared by the store and scheduler.
            resolver: Looks up the dead-letter queue by name at redrive time.
            resolution: Visibility timer period in seconds.
        """
        if not name:
            raise QueueConfigError("Queue name cannot be empty")

        config = config or QueueConfig()
        if config.dead_letter_target == name:
            raise QueueConfigError(f"Queue {name!r} cannot be its own dead-letter queue")

        self.store = MessageStore(name, config, clock)
        self.redrive = RedriveController(self.store, resolver)
        self.scheduler = VisibilityScheduler(self.store, on_available=self._on_available, resolution=resolution)

    def __repr__(self) -> str:
        return f"MessageQueue(name={self.name!r})"

    @property
    def name(self) -> str:
        return self.store.name

    @property
    def config(self) -> QueueConfig:
        return self.store.config

    @property
    def clock(self) -> ClockSource:
        return self.store.clock

    def enqueue(
        self,
        body: bytes,
        group_key: str | None = None,
        dedup_key: str | None = None,
        attributes: dict[str, str] | None = None,
        delay: float = 0,
    ) -> MessageId:
        """Add a message; see `MessageStore.enqueue`."""
        return self.store.enqueue(body, group_key=group_key, dedup_key=dedup_key, attributes=attributes, delay=delay)

    def consumer(self, handler: MessageHandler | None = None, **options: Any) -> ConsumerLoop:
        """Create a consumer loop bound to this queue."""
        return ConsumerLoop(self, handler, **options)

    def _on_available(self, message_id: MessageId) -> None:
        self.redrive.evaluate(message_id)

    def tick(self) -> int:
        """Run one scheduler pass synchronously.

        Returns:
            Number of messages whose visibility timeout expired.
        """
        expired = self.scheduler.tick()
        self.scheduler.housekeeping()
        return expired

    def stats(self) -> QueueStats:
        return self.store.stats()

    async def start(self) -> None:
        """Start the visibility timer loop."""
        self.scheduler.start()

    async def stop(self) -> None:
        """Stop the visibility timer loop."""
        await self.scheduler.stop()

    async def __aenter__(self) -> Self:
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.stop()
