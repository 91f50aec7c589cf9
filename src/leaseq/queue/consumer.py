"""Consumer loop: receive, process and acknowledge messages.

A handler that raises, returns `HandlerResult.NACK` or returns anything
other than `HandlerResult.ACK` / `None` gets its message nacked. A consumer
that dies without acking or nacking leaves the message in flight until the
visibility timeout returns it to the queue, which is handled exactly like an
explicit failure.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
from typing import TYPE_CHECKING, Any

import structlog
from msgspec import Struct, structs

from .enum import HandlerResult
from .exceptions import NotFoundOrNotAvailableError
from .message import Message

if TYPE_CHECKING:
    from .queue import MessageQueue
    from .types import MessageHandler, MessageId, Receipt

__all__ = ("ConsumerLoop", "ConsumerStats")

logger = structlog.stdlib.get_logger(__name__)


class ConsumerStats(Struct):
    """Processing counters for one consumer loop."""

    received: int = 0
    acked: int = 0
    nacked: int = 0
    failed: int = 0
    renewals: int = 0


class ConsumerLoop:
    """Orchestrates receive / process / ack cycles against one queue.

    Example:
        >>> async def handler(message: Message) -> HandlerResult:
        ...     await process(message.body)
        ...     return HandlerResult.ACK
        >>> consumer = queue.consumer(handler, concurrency=4)
        >>> consumer.start()
        >>> await consumer.stop()
    """

    def __init__(
        self,
        queue: MessageQueue,
        handler: MessageHandler | None = None,
        *,
        batch_size: int = 1,
        wait_timeout: float = 1.0,
        visibility_timeout: float | None = None,
        concurrency: int = 1,
        renew_leases: bool = False,
    ) -> None:
        """Initialize the consumer.

        Args:
            queue: Queue to consume from.
            handler: Message handler used by `run` and `process`.
            batch_size: Messages per receive call in `run`.
            wait_timeout: Long polling wait in seconds for `run`.
            visibility_timeout: Lease duration, defaults to the queue setting.
            concurrency: Worker tasks started by `run`.
            renew_leases: Extend the lease in the background while the handler runs.
        """
        if batch_size < 1 or concurrency < 1:
            raise ValueError("batch_size and concurrency must be at least 1")

        self.queue = queue
        self.handler = handler
        self.batch_size = batch_size
        self.wait_timeout = wait_timeout
        self.visibility_timeout = visibility_timeout
        self.concurrency = concurrency
        self.renew_leases = renew_leases
        self.stats = ConsumerStats()

        self._stopping = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def lease_timeout(self) -> float:
        if self.visibility_timeout is not None:
            return self.visibility_timeout
        return self.queue.config.visibility_timeout

    # Receive side

    async def receive(
        self,
        batch_size: int = 1,
        wait_timeout: float = 0,
        *,
        cancel: asyncio.Event | None = None,
        visibility_timeout: float | None = None,
    ) -> list[Message]:
        """Receive up to `batch_size` messages, long-polling up to `wait_timeout` seconds.

        An empty list means nothing became deliverable in time, or that
        `cancel` was set; the event itself is the cancellation signal, so
        callers tell the two apart with `cancel.is_set()`. Cancelling the
        calling task raises `asyncio.CancelledError` instead. In every case
        no message is left leased.

        Args:
            batch_size: Maximum messages to return.
            wait_timeout: Long polling wait in seconds, 0 returns immediately.
            cancel: Event that aborts the wait.
            visibility_timeout: Lease duration override for this call.

        Returns:
            Leased messages, each carrying its receipt.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(wait_timeout, 0)
        timeout = self.visibility_timeout if visibility_timeout is None else visibility_timeout
        store = self.queue.store

        while True:
            if cancel is not None and cancel.is_set():
                return []

            version = store.version
            messages = self._claim(batch_size, timeout)
            if messages:
                self.stats.received += len(messages)
                return messages

            remaining = deadline - loop.time()
            if remaining <= 0:
                return []

            wait = min(remaining, self.queue.scheduler.resolution)
            if cancel is None:
                await store.wait_for_change(version, wait)
            else:
                await self._wait_or_cancel(version, wait, cancel)

    def _claim(self, batch_size: int, visibility_timeout: float | None) -> list[Message]:
        # Expire overdue leases first so delivery never depends on the timer loop's phase.
        self.queue.scheduler.tick()

        result = self.queue.store.claim(batch_size, visibility_timeout)
        for message_id in result.exhausted:
            self.queue.redrive.evaluate(message_id)
        return result.messages

    async def _wait_or_cancel(self, version: int, timeout: float, cancel: asyncio.Event) -> None:
        changed = asyncio.ensure_future(self.queue.store.wait_for_change(version, timeout))
        cancelled = asyncio.ensure_future(cancel.wait())
        try:
            await asyncio.wait({changed, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in (changed, cancelled):
                waiter.cancel()
            await asyncio.gather(changed, cancelled, return_exceptions=True)

    # Acknowledgement side

    async def ack(self, message: Message | MessageId, receipt: Receipt | None = None) -> bool:
        """Delete a processed message; idempotent.

        Returns:
            True if this call deleted the message, False for repeats and stale receipts.
        """
        message_id, receipt = _unpack(message, receipt)
        deleted = self.queue.store.delete(message_id, receipt=receipt)
        if deleted:
            self.stats.acked += 1
        return deleted

    async def nack(
        self,
        message: Message | MessageId,
        requeue_delay: float | None = None,
        receipt: Receipt | None = None,
    ) -> bool:
        """Return an in-flight message to the queue now (or after `requeue_delay`).

        Without an explicit delay the queue retry policy decides; without a
        policy the message is visible again immediately.

        Returns:
            False if the message was no longer leased under this receipt.
        """
        message_id, receipt = _unpack(message, receipt)
        delay = self._requeue_delay(message_id) if requeue_delay is None else requeue_delay

        try:
            self.queue.store.release_to_available(message_id, delay=delay, receipt=receipt)
        except NotFoundOrNotAvailableError as e:
            logger.debug("Nack ignored", queue=self.queue.name, message_id=message_id, reason=e.reason)
            return False

        self.stats.nacked += 1
        self.queue.redrive.evaluate(message_id)
        return True

    def _requeue_delay(self, message_id: MessageId) -> float:
        policy = self.queue.config.retry_policy
        if policy is None:
            return 0

        current = self.queue.store.peek(message_id)
        attempt = current.receive_count - 1 if current is not None else 0
        return policy.get_delay(attempt)

    async def extend_lease(
        self,
        message: Message | MessageId,
        new_timeout: float,
        receipt: Receipt | None = None,
    ) -> bool:
        """Push the visibility deadline of an in-flight message to `now + new_timeout`.

        Returns:
            False if the lease was already lost.
        """
        message_id, receipt = _unpack(message, receipt)
        try:
            self.queue.store.extend_visibility(message_id, new_timeout, receipt=receipt)
        except NotFoundOrNotAvailableError as e:
            logger.debug("Lease extension ignored", queue=self.queue.name, message_id=message_id, reason=e.reason)
            return False
        return True

    # Processing

    async def process(self, message: Message) -> HandlerResult:
        """Run the handler for one leased message and ack or nack it."""

        if self.handler is None:
            raise RuntimeError("Handler not set. Pass one to the consumer first.")

        with structlog.contextvars.bound_contextvars(
            queue=self.queue.name,
            message_id=message.id,
            receive_count=message.receive_count,
        ):
            renewal = asyncio.create_task(self._renew_lease(message)) if self.renew_leases else None
            try:
                result = await self._call_handler(message)
            except Exception:  # noqa: BLE001 - Handler errors become nacks
                self.stats.failed += 1
                logger.exception("Unhandled exception on message")
                await self.nack(message)
                return HandlerResult.NACK
            finally:
                if renewal is not None:
                    renewal.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await renewal

            if result is None or result is HandlerResult.ACK:
                await self.ack(message)
                logger.debug("Message successfully processed.")
                return HandlerResult.ACK

            logger.warning("Message processing will be retried later.", result=str(result))
            await self.nack(message)
            return HandlerResult.NACK

    async def _call_handler(self, message: Message) -> Any:
        assert self.handler is not None
        result = self.handler(message)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def _renew_lease(self, message: Message) -> None:
        timeout = self.lease_timeout
        interval = max(timeout / 2, 0.01)

        while True:
            await asyncio.sleep(interval)
            if not await self.extend_lease(message, timeout):
                logger.warning("Lease lost while processing")
                return
            self.stats.renewals += 1

    # Lifecycle

    async def run(self) -> None:
        """Consume until `stop()` is called, with `concurrency` worker tasks."""

        if self.handler is None:
            raise RuntimeError("Handler not set. Pass one to the consumer first.")

        workers = [
            asyncio.create_task(self._worker(index), name=f"leaseq-consumer-{self.queue.name}-{index}")
            for index in range(self.concurrency)
        ]
        logger.info("Consumer started", queue=self.queue.name, concurrency=self.concurrency)

        try:
            await asyncio.gather(*workers)
        finally:
            for worker in workers:
                worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            logger.info("Consumer stopped", queue=self.queue.name, **structs.asdict(self.stats))

    async def _worker(self, index: int) -> None:
        while not self._stopping.is_set():
            try:
                messages = await self.receive(
                    self.batch_size,
                    self.wait_timeout,
                    cancel=self._stopping,
                    visibility_timeout=self.visibility_timeout,
                )
            except Exception:  # noqa: BLE001 - Broad exception catching is intentional for resilience
                logger.exception("Error receiving messages", queue=self.queue.name, worker=index)
                await asyncio.sleep(1)
                continue

            for message in messages:
                await self.process(message)

    def start(self) -> asyncio.Task[None]:
        """Run the consumer in a background task."""

        if self._task is None or self._task.done():
            self._stopping.clear()
            self._task = asyncio.create_task(self.run(), name=f"leaseq-consumer-{self.queue.name}")
        return self._task

    async def stop(self, timeout: float | None = 30) -> None:
        """Stop gracefully, letting in-progress handlers finish within `timeout`."""

        self._stopping.set()
        if self._task is None:
            return

        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout)
        except TimeoutError:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        finally:
            self._task = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()


def _unpack(message: Message | MessageId, receipt: Receipt | None) -> tuple[MessageId, Receipt | None]:
    if isinstance(message, Message):
        return message.id, receipt if receipt is not None else message.receipt
    return message, receipt
