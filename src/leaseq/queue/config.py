"""Configuration classes for queue behavior and retry policies."""

from __future__ import annotations

import random
from dataclasses import dataclass, field

from .enum import ExhaustedPolicy
from .exceptions import QueueConfigError

__all__ = (
    "QueueConfig",
    "RetryPolicy",
)


@dataclass
class RetryPolicy:
    """Requeue delay applied when a message is nacked.

    Follows exponential backoff with jitter.

    Attributes:
        backoff_factor: Multiplier for exponential backoff (e.g., 2.0).
        max_delay: Maximum delay in seconds.
        min_delay: Minimum delay in seconds.
        jitter: Add random variation to delay.
    """

    backoff_factor: float = 2.0
    max_delay: float = 900
    min_delay: float = 1
    jitter: bool = True

    def __post_init__(self) -> None:
        if self.min_delay < 0 or self.max_delay < self.min_delay:
            raise QueueConfigError("Retry delays must satisfy 0 <= min_delay <= max_delay")
        if self.backoff_factor < 1:
            raise QueueConfigError("backoff_factor must be >= 1")

    def get_delay(self, attempt: int) -> float:
        """Calculate delay for retry attempt.

        Args:
            attempt: Retry attempt number (0-based).

        Returns:
            Delay in seconds.
        """
        delay = min(
            self.min_delay * (self.backoff_factor ** max(attempt, 0)),
            self.max_delay,
        )

        if self.jitter:
            delay *= random.uniform(0.9, 1.1)  # noqa: S311 - Random is fine for jitter

        return min(delay, self.max_delay)


@dataclass
class QueueConfig:
    """Configuration for queue behavior.

    Attributes:
        visibility_timeout: Seconds a received message stays hidden.
        max_receive_count: Deliveries allowed before redrive.
        retention_period: Seconds an available message is kept.
        dead_letter_target: Name of the dead-letter queue, if any.
        ordering_enabled: Enforce per-group FIFO and in-flight exclusivity.
        dedup_window: Seconds a deduplication key suppresses duplicates.
        exhausted_policy: Fate of exhausted messages without a dead-letter queue.
        max_message_size: Largest accepted body in bytes.
        retry_policy: Default requeue backoff for nacks.
        redrive_retry_delay: Seconds a message stays hidden after a failed redrive.
        tombstone_ttl: Seconds terminal records are kept before collection.
        attributes: Default attributes for every enqueued message; per-message values win.
    """

    visibility_timeout: float = 30
    max_receive_count: int = 3
    retention_period: float = 4 * 24 * 3600
    dead_letter_target: str | None = None
    ordering_enabled: bool = False
    dedup_window: float = 300
    exhausted_policy: ExhaustedPolicy = ExhaustedPolicy.PURGE
    max_message_size: int = 256 * 1024
    retry_policy: RetryPolicy | None = None
    redrive_retry_delay: float = 1
    tombstone_ttl: float = 60
    attributes: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.visibility_timeout <= 0:
            raise QueueConfigError("visibility_timeout must be positive")
        if self.max_receive_count < 1:
            raise QueueConfigError("max_receive_count must be at least 1")
        if self.retention_period <= 0:
            raise QueueConfigError("retention_period must be positive")
        if self.dedup_window < 0:
            raise QueueConfigError("dedup_window cannot be negative")
        if self.max_message_size <= 0:
            raise QueueConfigError("max_message_size must be positive")
        if self.redrive_retry_delay < 0 or self.tombstone_ttl < 0:
            raise QueueConfigError("redrive_retry_delay and tombstone_ttl cannot be negative")
        if self.dead_letter_target == "":
            raise QueueConfigError("dead_letter_target cannot be empty, use None")
        self.exhausted_policy = ExhaustedPolicy(self.exhausted_policy)
