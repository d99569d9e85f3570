"""CLI entrypoint for recovery-coordinator."""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import TextIO

import rich_click as click

from recovery_coordinator import __version__
from recovery_coordinator.config import Settings
from recovery_coordinator.coordinator.controllers import (
    CommandResult,
    CoordinatorCliController,
    DeferredCommand,
    EnqueueCommand,
    HandlersCommand,
    RunCommand,
    WatchCommand,
)
from recovery_coordinator.storage import KvStoreError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = CoordinatorCliController()

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"


@click.group()
@click.version_option(version=__version__, prog_name="recovery-coordinator")
@click.option(
    "--log-level",
    default=None,
    help="Log level (DEBUG, INFO, WARNING, ERROR). Defaults to RECOVERY_COORDINATOR_LOG_LEVEL.",
)
def recovery_coordinator(log_level: str | None) -> None:
    """Recovery coordinator: drain the event queue and keep deferred events on schedule."""

    level_name = (log_level or Settings.from_env().log_level).strip().upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        raise click.BadParameter(f"Unknown log level: {level_name}", param_hint="--log-level")
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)


@recovery_coordinator.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--input",
    "trigger_input",
    type=click.File("r"),
    default="-",
    show_default=True,
    help="Trigger payload: JSON array of `{Key, Value}` records, Value base64-encoded.",
)
@click.option(
    "--from-store",
    is_flag=True,
    default=False,
    help="Ignore trigger input and process the queue as currently stored.",
)
def run(db_path: Path | None, trigger_input: TextIO, from_store: bool) -> None:
    """Run one invocation for a queue change notification.

    Exits with `128 + signal` when interrupted and `1` when the invocation lock is lost.
    """

    raw = None if from_store else trigger_input.read()
    with _command_errors():
        result = CONTROLLER.run(
            RunCommand(db_path=db_path, trigger_input=raw, from_store=from_store),
        )
    _finish(result)


@recovery_coordinator.command("watch")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--max-invocations",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many invocations.",
)
@click.option(
    "--poll-seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Queue poll interval. Defaults to RECOVERY_COORDINATOR_WATCH_POLL_SECONDS.",
)
def watch(db_path: Path | None, max_invocations: int | None, poll_seconds: float | None) -> None:
    """Poll the queue and run an invocation whenever it changes."""

    with _command_errors():
        result = CONTROLLER.watch(
            WatchCommand(
                db_path=db_path,
                max_invocations=max_invocations,
                poll_seconds=poll_seconds,
            ),
        )
    _finish(result)


@recovery_coordinator.command("enqueue")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--type", "message_type", required=True, help="Event message type.")
@click.option("--payload", default="", show_default=True, help="Event payload text.")
def enqueue(db_path: Path | None, message_type: str, payload: str) -> None:
    """Push one event onto the live queue."""

    with _command_errors():
        result = CONTROLLER.enqueue(
            EnqueueCommand(db_path=db_path, message_type=message_type, payload=payload),
        )
    _finish(result)


@recovery_coordinator.command("deferred")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def deferred(db_path: Path | None) -> None:
    """Show pending deferred entries and the armed wake timer."""

    with _command_errors():
        result = CONTROLLER.deferred(DeferredCommand(db_path=db_path))
    _finish(result)


@recovery_coordinator.command("handlers")
@click.option(
    "--handler-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Handler directory. Defaults to RECOVERY_COORDINATOR_HANDLER_DIR.",
)
def handlers(handler_dir: Path | None) -> None:
    """List the handlers events would be routed to."""

    with _command_errors():
        result = CONTROLLER.handlers(HandlersCommand(handler_dir=handler_dir))
    _finish(result)


@contextmanager
def _command_errors() -> Iterator[None]:
    try:
        yield
    except KvStoreError as error:
        raise click.ClickException(f"KV store error: {error}") from error
    except ValueError as error:
        raise click.ClickException(str(error)) from error


def _finish(result: CommandResult) -> None:
    _emit_lines(result.lines)
    if result.exit_code:
        sys.exit(result.exit_code)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    recovery_coordinator()
