import asyncio
import random
from pathlib import Path

import typer
from msgspec import yaml
from rich.console import Console
from rich.syntax import Syntax
from rich.table import Table

from ..config import AppConfig
from ..log import setup_logging
from ..queue import ConsumerStats, Message, QueueRegistry, QueueStats

console = Console()

app_click = typer.Typer(
    rich_markup_mode="rich",
    context_settings={"help_option_names": ["-h", "--help"]},
)

DEFAULT_QUEUE = "default"
DEMO_GROUPS = 4


def load_config(config_file: Path | None) -> AppConfig:
    if config_file is not None:
        if not config_file.exists():
            raise typer.BadParameter(f"{config_file} does not exist", param_hint="--config")
        return AppConfig.from_file(config_file)

    return AppConfig.get_config()


@app_click.command("run")
def run_workload(
    config_file: Path | None = typer.Option(None, "--config", "-c", help="Configuration file (.yaml, .toml or .json)."),
    queue_name: str | None = typer.Option(None, "--queue", "-q", help="Queue to drive, defaults to the first one."),
    messages: int = typer.Option(100, "--messages", "-n", min=0, help="Messages to enqueue."),
    failure_rate: float = typer.Option(0.1, min=0.0, max=1.0, help="Probability that the handler fails."),
    concurrency: int = typer.Option(4, min=1, help="Consumer worker tasks."),
    duration: float = typer.Option(10.0, min=0.0, help="Stop after this many seconds."),
    handler_delay: float = typer.Option(0.0, min=0.0, help="Seconds each handler call sleeps."),
) -> None:
    """Drive a demo workload through a queue and print its stats."""

    config = load_config(config_file)
    setup_logging(config.logging.level, config.logging.json)

    registry = config.build_registry()
    name = queue_name or (config.queues[0].name if config.queues else DEFAULT_QUEUE)
    if name not in registry:
        registry.create_queue(name)

    console.print(f"[cyan]Running {messages} messages through {name!r} with {concurrency} workers...[/cyan]")

    consumer_stats = asyncio.run(
        drive_workload(registry, name, messages, failure_rate, concurrency, duration, handler_delay)
    )

    console.print(build_stats_table(registry.stats()))
    console.print(
        f"[green]Processed {consumer_stats.received} deliveries:[/green] "
        f"{consumer_stats.acked} acked, {consumer_stats.nacked} nacked, {consumer_stats.failed} failed"
    )


async def drive_workload(
    registry: QueueRegistry,
    name: str,
    messages: int,
    failure_rate: float,
    concurrency: int,
    duration: float,
    handler_delay: float = 0.0,
) -> ConsumerStats:
    """Enqueue `messages`, consume them with a flaky handler and wait until the queue drains."""

    queue = registry.get(name)
    ordering = queue.config.ordering_enabled

    for index in range(messages):
        group_key = f"group-{index % DEMO_GROUPS}" if ordering else None
        queue.enqueue(f"message-{index}".encode(), group_key=group_key)

    async def handler(message: Message) -> None:
        if handler_delay:
            await asyncio.sleep(handler_delay)
        if random.random() < failure_rate:  # noqa: S311 - Simulated failures
            raise RuntimeError(f"Simulated failure for {message.id}")

    consumer = queue.consumer(handler, concurrency=concurrency, wait_timeout=0.5)

    async with registry:
        consumer.start()

        loop = asyncio.get_running_loop()
        deadline = loop.time() + duration
        while loop.time() < deadline:
            stats = queue.stats()
            if stats.available + stats.delayed + stats.in_flight == 0:
                break
            await asyncio.sleep(0.1)

        await consumer.stop()

    return consumer.stats


def build_stats_table(stats: dict[str, QueueStats]) -> Table:
    table = Table(title="Queue stats")
    table.add_column("Queue", style="cyan")
    for column in ("Available", "Delayed", "In flight", "Deleted", "Dead-lettered"):
        table.add_column(column, justify="right")

    for name, queue_stats in stats.items():
        table.add_row(
            name,
            str(queue_stats.available),
            str(queue_stats.delayed),
            str(queue_stats.in_flight),
            str(queue_stats.deleted),
            str(queue_stats.dead_lettered),
        )

    return table


@app_click.command("config")
def show_config(
    config_file: Path | None = typer.Option(None, "--config", "-c", help="Configuration file (.yaml, .toml or .json)."),
    as_json: bool = typer.Option(False, "--json", help="Print JSON instead of YAML."),
) -> None:
    """Print the effective configuration."""

    config = load_config(config_file)
    if as_json:
        console.print_json(config.to_json())
        return

    console.print(Syntax(yaml.encode(config).decode("utf-8"), "yaml"))
