"""Controllers for coordinator CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from recovery_coordinator.config import Settings
from recovery_coordinator.coordinator.cancellation import CancellationToken, signal_handlers
from recovery_coordinator.coordinator.envelope import encode_envelope, parse_trigger_input
from recovery_coordinator.coordinator.handlers import HandlerRegistry
from recovery_coordinator.coordinator.models import Envelope, InvocationResult, format_wake_at
from recovery_coordinator.coordinator.service import RecoveryCoordinator
from recovery_coordinator.coordinator.watcher import QueueWatcher
from recovery_coordinator.storage import KvStore


@dataclass(slots=True)
class RunCommand:
    """CLI input for one triggered invocation."""

    db_path: Path | None
    trigger_input: str | None
    from_store: bool = False


@dataclass(slots=True)
class WatchCommand:
    """CLI input for the polling trigger loop."""

    db_path: Path | None
    max_invocations: int | None = None
    poll_seconds: float | None = None


@dataclass(slots=True)
class EnqueueCommand:
    """CLI input for pushing one event onto the live queue."""

    db_path: Path | None
    message_type: str
    payload: str


@dataclass(slots=True)
class DeferredCommand:
    """CLI input for deferred index inspection."""

    db_path: Path | None


@dataclass(slots=True)
class HandlersCommand:
    """CLI input for handler listing."""

    handler_dir: Path | None


@dataclass(slots=True)
class CommandResult:
    """Lines to render plus the process exit status."""

    lines: list[str]
    exit_code: int = 0


class CoordinatorCliController:
    """Coordinates invocation, watch and inspection CLI operations."""

    def run(self, command: RunCommand) -> CommandResult:
        settings = _settings(command.db_path)
        snapshot = None
        if not command.from_store:
            snapshot = parse_trigger_input(command.trigger_input or "")

        cancellation = CancellationToken()
        with _store(settings) as store, signal_handlers(cancellation):
            coordinator = RecoveryCoordinator(
                store=store,
                settings=settings,
                cancellation=cancellation,
            )
            result = coordinator.run_invocation(snapshot)
        return CommandResult(lines=_invocation_lines(result), exit_code=result.exit_code)

    def watch(self, command: WatchCommand) -> CommandResult:
        settings = _settings(command.db_path)
        poll_seconds = command.poll_seconds or settings.invocation.watch_poll_seconds
        cancellation = CancellationToken()
        with _store(settings) as store, signal_handlers(cancellation):
            coordinator = RecoveryCoordinator(
                store=store,
                settings=settings,
                cancellation=cancellation,
            )
            summary = QueueWatcher(
                coordinator=coordinator,
                poll_interval_seconds=poll_seconds,
                cancellation=cancellation,
            ).run(max_invocations=command.max_invocations)

        stop_reason = cancellation.signal_name or "done"
        return CommandResult(
            lines=[
                "Watch stopped: "
                f"reason={stop_reason} invocations={summary.invocations} "
                f"events={summary.events_processed} skipped_locked={summary.skipped_locked} "
                f"last_exit_code={summary.last_exit_code}",
            ],
        )

    def enqueue(self, command: EnqueueCommand) -> CommandResult:
        if not command.message_type:
            raise ValueError("Message type must be non-empty.")
        settings = _settings(command.db_path)
        with _store(settings) as store:
            key = store.push(
                settings.queue.queue_prefix,
                encode_envelope(
                    Envelope(message_type=command.message_type, payload=command.payload),
                ),
            )
        return CommandResult(lines=[f"Enqueued: key={key} type={command.message_type}"])

    def deferred(self, command: DeferredCommand) -> CommandResult:
        settings = _settings(command.db_path)
        with _store(settings) as store:
            coordinator = RecoveryCoordinator(
                store=store,
                settings=settings,
                registry=HandlerRegistry(),
            )
            entries = coordinator.timeouts.pending()
            timer = coordinator.wake.current()

        lines = [f"Deferred entries: {len(entries)}"]
        lines.extend(
            f"- wake_at={entry.wake_key} events={len(entry.events)} "
            f"descriptors={','.join(entry.events)}"
            for entry in entries
        )
        if timer is None:
            lines.append("Wake timer: none")
        else:
            lines.append(
                f"Wake timer: wake_at={format_wake_at(timer.wake_at)} pid={timer.pid} "
                f"token={timer.token}",
            )
        return CommandResult(lines=lines)

    def handlers(self, command: HandlersCommand) -> CommandResult:
        settings = Settings.from_env()
        handler_dir = command.handler_dir or settings.handlers.handler_dir
        registry = HandlerRegistry.from_directory(
            handler_dir,
            default_handler_id=settings.handlers.default_handler,
        )
        lines = [f"Handler directory: {handler_dir}"]
        for spec in registry.specs():
            location = str(spec.location) if spec.location is not None else "built-in"
            lines.append(f"- {spec.handler_id} kind={spec.kind} location={location}")
        return CommandResult(lines=lines)


def _invocation_lines(result: InvocationResult) -> list[str]:
    if not result.lock_acquired:
        return [f"Invocation {result.invocation_id} skipped: another invocation holds the lock."]

    summary = result.dispatch
    lines = [
        f"Invocation {result.invocation_id}: "
        f"passes={result.passes} processed={summary.processed} skipped={summary.skipped} "
        f"handled={summary.handled} handler_failures={summary.handler_failures} "
        f"deferred={summary.deferred} wakes={summary.wakes} "
        f"decode_errors={summary.decode_errors}",
    ]
    fired = sum(len(scan.fired) for scan in result.due_scans)
    next_wake = result.due_scans[-1].next_wake_at if result.due_scans else None
    lines.append(
        f"Deferred: fired={fired} "
        f"next_wake_at={format_wake_at(next_wake) if next_wake else 'none'}",
    )
    if summary.cancelled:
        lines.append("Cancelled: remaining entries left in the queue.")
    elif summary.lock_lost:
        lines.append("Stopped: invocation lock lost.")
    elif result.retriggered:
        lines.append("Retriggered: events still queued, wake event pushed.")
    return lines


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


@contextmanager
def _store(settings: Settings) -> Iterator[KvStore]:
    store = KvStore(settings.db_path, sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms)
    try:
        store.init_schema()
        yield store
    finally:
        store.close()
