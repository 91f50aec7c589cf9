import asyncio
import contextlib
import heapq
import itertools
import threading
from collections.abc import Callable

import structlog

from .enum import StoreEventKind
from .message import StoreEvent
from .store import MessageStore

__all__ = ("VisibilityScheduler",)

logger = structlog.stdlib.get_logger(__name__)

MAX_RESOLUTION = 1.0


class VisibilityScheduler:
    """Returns timed-out in-flight messages to the queue.

    Deadlines live in a min-heap fed by store events: a lease or extension
    pushes a timeout entry, a delayed release or enqueue pushes a wake-up
    entry. Entries are never removed eagerly; `MessageStore.expire`
    re-validates state and deadline under the store lock, so stale entries
    for deleted or extended messages fall through as no-ops.

    The heap has its own lock, which is never held while calling into the
    store.
    """

    def __init__(
        self,
        store: MessageStore,
        on_available: Callable[[str], None] | None = None,
        resolution: float = 0.5,
    ) -> None:
        """Initialize scheduler.

        Args:
            store: Store whose in-flight messages are tracked.
            on_available: Called once for every message flipped back to available.
            resolution: Timer loop period in seconds (capped at one second).
        """
        if resolution <= 0:
            raise ValueError("resolution must be positive")

        self.store = store
        self.on_available = on_available
        self.resolution = min(resolution, MAX_RESOLUTION)

        self._lock = threading.Lock()
        self._timeouts: list[tuple[float, int, str]] = []
        self._wakeups: list[tuple[float, int]] = []
        self._counter = itertools.count()
        self._task: asyncio.Task[None] | None = None
        self._running = False

        store.subscribe(self._on_event)

    def __len__(self) -> int:
        with self._lock:
            return len(self._timeouts)

    def _on_event(self, event: StoreEvent) -> None:
        match event.kind:
            case StoreEventKind.LEASED | StoreEventKind.EXTENDED:
                with self._lock:
                    heapq.heappush(self._timeouts, (event.visible_at, next(self._counter), event.message_id))
            case StoreEventKind.ENQUEUED | StoreEventKind.RELEASED if event.visible_at > self.store.clock.now():
                with self._lock:
                    heapq.heappush(self._wakeups, (event.visible_at, next(self._counter)))
            case _:
                pass

    def next_deadline(self) -> float | None:
        """Earliest pending timeout or wake-up, in store clock time."""

        with self._lock:
            candidates = [heap[0][0] for heap in (self._timeouts, self._wakeups) if heap]
        return min(candidates) if candidates else None

    def tick(self) -> int:
        """Expire every due in-flight message.

        Returns:
            Number of messages returned to the queue.
        """
        now = self.store.clock.now()

        with self._lock:
            due: list[str] = []
            while self._timeouts and self._timeouts[0][0] <= now:
                due.append(heapq.heappop(self._timeouts)[2])

            woke = False
            while self._wakeups and self._wakeups[0][0] <= now:
                heapq.heappop(self._wakeups)
                woke = True

        expired = 0
        for message_id in dict.fromkeys(due):
            if not self.store.expire(message_id):
                continue

            expired += 1
            if self.on_available is None:
                continue

            try:
                self.on_available(message_id)
            except Exception:  # noqa: BLE001 - Remaining due messages must still be expired
                logger.exception("Available callback failed", queue=self.store.name, message_id=message_id)

        if woke:
            self.store.notify()

        return expired

    def housekeeping(self) -> None:
        purged = self.store.purge_expired()
        collected = self.store.collect_garbage()
        if purged or collected:
            logger.debug("Store housekeeping", queue=self.store.name, purged=purged, collected=collected)

    async def run(self) -> None:
        """Timer loop; runs until `stop()` or cancellation."""

        self._running = True
        logger.debug("Visibility scheduler started", queue=self.store.name, resolution=self.resolution)

        try:
            while self._running:
                try:
                    self.tick()
                    self.housekeeping()
                except Exception:  # noqa: BLE001 - The timer loop must survive a failing callback
                    logger.exception("Visibility scheduler tick failed", queue=self.store.name)

                await asyncio.sleep(self.resolution)

        except asyncio.CancelledError:
            pass

        finally:
            self._running = False
            logger.debug("Visibility scheduler stopped", queue=self.store.name)

    def start(self) -> asyncio.Task[None]:
        """Start the timer loop on the running event loop."""

        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name=f"leaseq-visibility-{self.store.name}")
        return self._task

    async def stop(self) -> None:
        """Stop the timer loop."""

        self._running = False
        if self._task is not None and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        self._task = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()
