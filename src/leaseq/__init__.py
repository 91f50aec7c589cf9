import sys

from rich.console import Console

from ._version import __version__
from .cli import cli
from .config import AppConfig
from .queue import (
    ConsumerLoop,
    HandlerResult,
    Message,
    MessageQueue,
    MessageState,
    QueueConfig,
    QueueRegistry,
)

__all__ = (
    "AppConfig",
    "ConsumerLoop",
    "HandlerResult",
    "Message",
    "MessageQueue",
    "MessageState",
    "QueueConfig",
    "QueueRegistry",
    "__version__",
    "entrypoint",
)

console = Console()


def build_banner(version: str) -> str:
    return f"leaseq {version} :: in-memory leased message queue"


def run_cli() -> None:
    args = sys.argv[1:]

    if not args:
        sys.argv.append("--help")

    cli()


def entrypoint() -> None:
    """Run the leaseq command line."""

    console.print(f"[cyan]{build_banner(__version__)}[/cyan]")

    run_cli()
