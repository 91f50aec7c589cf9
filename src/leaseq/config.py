import os
from pathlib import Path
from typing import ClassVar, Final, Self

from msgspec import field, toml, yaml

from .base.types import BaseStruct
from .lib.toolkit import get_env
from .queue.broker import QueueRegistry
from .queue.clock import ClockSource
from .queue.config import QueueConfig, RetryPolicy
from .queue.enum import ExhaustedPolicy

__all__ = (
    "AppConfig",
    "LoggingConfig",
    "QueueSettings",
    "RetrySettings",
    "SchedulerConfig",
)

APP_NAME: Final[str] = "leaseq"

ROOT_DIR: Final[Path] = Path.cwd()


class LoggingConfig(BaseStruct):
    """Logging configurations."""

    level: str = field(default_factory=get_env("LEASEQ_LOG_LEVEL", "INFO"))
    """Root log level name."""
    json: bool = field(default_factory=get_env("LEASEQ_LOG_JSON", False))
    """Render JSON lines instead of the console format."""


class SchedulerConfig(BaseStruct):
    """Visibility scheduler configurations."""

    resolution: float = field(default_factory=get_env("LEASEQ_SCHEDULER_RESOLUTION", 0.5))
    """Timer loop period in seconds, capped at one second."""


class RetrySettings(BaseStruct):
    """Nack backoff settings for one queue."""

    backoff_factor: float = 2.0
    max_delay: float = 900
    min_delay: float = 1
    jitter: bool = True

    def to_policy(self) -> RetryPolicy:
        return RetryPolicy(
            backoff_factor=self.backoff_factor,
            max_delay=self.max_delay,
            min_delay=self.min_delay,
            jitter=self.jitter,
        )


class QueueSettings(BaseStruct):
    """One queue declared in the configuration file."""

    name: str
    visibility_timeout: float = 30
    max_receive_count: int = 3
    retention_period: float = 4 * 24 * 3600
    dead_letter_target: str | None = None
    ordering_enabled: bool = False
    dedup_window: float = 300
    exhausted_policy: ExhaustedPolicy = ExhaustedPolicy.PURGE
    max_message_size: int = 256 * 1024
    redrive_retry_delay: float = 1
    tombstone_ttl: float = 60
    retry: RetrySettings | None = None
    attributes: dict[str, str] = field(default_factory=dict)

    def to_queue_config(self) -> QueueConfig:
        return QueueConfig(
            visibility_timeout=self.visibility_timeout,
            max_receive_count=self.max_receive_count,
            retention_period=self.retention_period,
            dead_letter_target=self.dead_letter_target,
            ordering_enabled=self.ordering_enabled,
            dedup_window=self.dedup_window,
            exhausted_policy=self.exhausted_policy,
            max_message_size=self.max_message_size,
            retry_policy=self.retry.to_policy() if self.retry is not None else None,
            redrive_retry_delay=self.redrive_retry_delay,
            tombstone_ttl=self.tombstone_ttl,
            attributes=dict(self.attributes),
        )


class AppConfig(BaseStruct):
    """Application configurations."""

    _instance: ClassVar["AppConfig | None"] = None

    logging: LoggingConfig = field(default_factory=LoggingConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    queues: list[QueueSettings] = field(default_factory=list)

    @classmethod
    def from_file(cls, filename: str | Path | None = None) -> Self:
        """Load the configuration from a file.

        Args:
            filename (`str`): The configuration file, like "leaseq.yaml".
                Defaults to `$LEASEQ_CONFIG`, then "leaseq.yaml".

        Note:
            Configuration filename suffix determines the format:
            - `.yaml` / `.yml`: YAML format
            - `.toml`: TOML format
            - `.json`: JSON format

            A missing file yields the default configuration.
        """

        if filename is None:
            filename = os.getenv("LEASEQ_CONFIG", f"{APP_NAME}.yaml")

        if (config_file := ROOT_DIR / filename).exists():
            with config_file.open("r", encoding="utf-8") as f:
                configuration = f.read()

            match suffix := config_file.suffix:
                case ".yaml" | ".yml":
                    return yaml.decode(configuration, type=cls)
                case ".toml":
                    return toml.decode(configuration, type=cls)
                case ".json":
                    return cls.from_json(configuration)
                case _:
                    raise ValueError(f"Unsupported configuration file format: {suffix}")

        return cls()

    @classmethod
    def get_config(cls, filename: str | Path | None = None) -> "AppConfig":
        """Get the application configuration."""

        if cls._instance is None:
            cls._instance = cls.from_file(filename)

        return cls._instance

    def get_queue(self, name: str) -> QueueSettings | None:
        """Get the settings for a specific queue."""
        for q in self.queues:
            if q.name == name:
                return q

        return None

    def build_registry(self, clock: ClockSource | None = None) -> QueueRegistry:
        """Create every configured queue in a fresh registry."""

        registry = QueueRegistry(clock=clock, resolution=self.scheduler.resolution)
        for settings in self.queues:
            registry.create_queue(settings.name, settings.to_queue_config())

        return registry
