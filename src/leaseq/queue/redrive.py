"""Dead-letter redrive decisions."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from .enum import ExhaustedPolicy, RedriveOutcome
from .exceptions import QueueError, RedriveTargetUnavailableError

if TYPE_CHECKING:
    from .message import Message
    from .store import MessageStore
    from .types import MessageId, QueueResolver

__all__ = ("REDRIVE_REASON", "RedriveController")

logger = structlog.stdlib.get_logger(__name__)

REDRIVE_REASON = "max_receive_count_exceeded"


class RedriveController:
    """Moves exhausted messages out of a queue.

    `evaluate` is called once for every transition into `AVAILABLE`
    (visibility timeout or nack) and for exhausted messages a receive
    refused to lease. A message whose `receive_count` reached
    `max_receive_count` is copied into the dead-letter queue through the
    target's own `enqueue` and then marked `DEAD_LETTERED`. Without a
    dead-letter target the exhausted policy decides between purging and
    retaining the record; either way it is never delivered again.

    The dead-letter queue is addressed by name and looked up through
    `resolver` at redrive time, so queues never hold references to each
    other.
    """

    def __init__(self, store: MessageStore, resolver: QueueResolver | None = None) -> None:
        self.store = store
        self.resolver = resolver
        self.redriven = 0
        self.purged = 0
        self.retained = 0
        self.deferred = 0

    def evaluate(self, message_id: MessageId) -> RedriveOutcome:
        """Redrive `message_id` if it exhausted its receive budget."""

        message = self.store.begin_redrive(message_id)
        if message is None:
            return RedriveOutcome.SKIPPED

        target = self.store.config.dead_letter_target
        if target is None:
            return self._drop(message)

        try:
            copy_id = self._copy_to_target(message, target)
        except RedriveTargetUnavailableError as e:
            self.store.abort_redrive(message.id)
            self.deferred += 1
            logger.warning(
                "Redrive deferred",
                queue=self.store.name,
                message_id=message.id,
                target=target,
                error=str(e),
            )
            return RedriveOutcome.DEFERRED
        except Exception:  # noqa: BLE001 - Any target failure defers the redrive
            self.store.abort_redrive(message.id)
            self.deferred += 1
            logger.exception(
                "Redrive failed, deferred",
                queue=self.store.name,
                message_id=message.id,
                target=target,
            )
            return RedriveOutcome.DEFERRED

        if not self.store.complete_redrive(message.id, REDRIVE_REASON):
            logger.warning(
                "Message left the queue during redrive",
                queue=self.store.name,
                message_id=message.id,
                copy_id=copy_id,
            )

        self.redriven += 1
        logger.info(
            "Message dead-lettered",
            queue=self.store.name,
            message_id=message.id,
            target=target,
            copy_id=copy_id,
            receive_count=message.receive_count,
        )
        return RedriveOutcome.REDRIVEN

    def _copy_to_target(self, message: Message, target: str) -> MessageId:
        if self.resolver is None:
            raise RedriveTargetUnavailableError(f"No resolver configured for dead-letter queue {target!r}")

        attributes = {
            **message.attributes,
            "redrive_reason": REDRIVE_REASON,
            "source_queue": self.store.name,
            "source_message_id": message.id,
            "source_receive_count": str(message.receive_count),
        }
        if message.dedup_key is not None:
            attributes["source_dedup_key"] = message.dedup_key

        try:
            dead_letter_queue = self.resolver(target)
            return dead_letter_queue.enqueue(message.body, group_key=message.group_key, attributes=attributes)
        except QueueError as e:
            raise RedriveTargetUnavailableError(f"Dead-letter queue {target!r} rejected the message: {e}") from e

    def _drop(self, message: Message) -> RedriveOutcome:
        self.store.complete_redrive(message.id, REDRIVE_REASON)

        if self.store.config.exhausted_policy is ExhaustedPolicy.RETAIN:
            self.retained += 1
            outcome = RedriveOutcome.RETAINED
        else:
            self.purged += 1
            outcome = RedriveOutcome.PURGED

        logger.info(
            "Exhausted message dropped without dead-letter queue",
            queue=self.store.name,
            message_id=message.id,
            receive_count=message.receive_count,
            policy=self.store.config.exhausted_policy.value,
        )
        return outcome
