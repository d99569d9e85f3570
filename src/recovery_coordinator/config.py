"""Runtime configuration for the recovery coordinator."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

_ENV_PREFIX = "RECOVERY_COORDINATOR_"


@dataclass(slots=True)
class QueueSettings:
    """Key layout and reserved message types."""

    queue_prefix: str = "queue/"
    deferred_prefix: str = "deferred/"
    wake_type: str = "wake_RC"
    debug_type: str = "debug_RC"
    deferred_type_prefix: str = "tmo"


@dataclass(slots=True)
class HandlerSettings:
    """Rule handler lookup and execution bounds."""

    handler_dir: Path = Path("handlers")
    default_handler: str = "default"
    soft_timeout_seconds: float = 4.0
    hard_timeout_seconds: float = 6.0


@dataclass(slots=True)
class InvocationSettings:
    """Per-trigger invocation policy."""

    lock_ttl_seconds: int = 300
    drain_passes: int = 5
    watch_poll_seconds: float = 1.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".recovery_coordinator.db")
    sqlite_busy_timeout_ms: int = 5_000
    log_level: str = "INFO"
    queue: QueueSettings = field(default_factory=QueueSettings)
    handlers: HandlerSettings = field(default_factory=HandlerSettings)
    invocation: InvocationSettings = field(default_factory=InvocationSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(_env("DB_PATH", ".recovery_coordinator.db")),
            sqlite_busy_timeout_ms=int(_env("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            log_level=_env("LOG_LEVEL", "INFO").strip().upper(),
            queue=QueueSettings(
                queue_prefix=_env("QUEUE_PREFIX", "queue/"),
                deferred_prefix=_env("DEFERRED_PREFIX", "deferred/"),
                wake_type=_env("WAKE_TYPE", "wake_RC"),
                debug_type=_env("DEBUG_TYPE", "debug_RC"),
                deferred_type_prefix=_env("DEFERRED_TYPE_PREFIX", "tmo"),
            ),
            handlers=HandlerSettings(
                handler_dir=Path(_env("HANDLER_DIR", "handlers")),
                default_handler=_env("DEFAULT_HANDLER", "default"),
                soft_timeout_seconds=float(_env("HANDLER_SOFT_TIMEOUT_SECONDS", "4")),
                hard_timeout_seconds=float(_env("HANDLER_HARD_TIMEOUT_SECONDS", "6")),
            ),
            invocation=InvocationSettings(
                lock_ttl_seconds=int(_env("LOCK_TTL_SECONDS", "300")),
                drain_passes=int(_env("DRAIN_PASSES", "5")),
                watch_poll_seconds=float(_env("WATCH_POLL_SECONDS", "1.0")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if any setting is out of range."""

        queue = self.queue
        for name, prefix in (
            ("QUEUE_PREFIX", queue.queue_prefix),
            ("DEFERRED_PREFIX", queue.deferred_prefix),
        ):
            if not prefix or not prefix.endswith("/"):
                raise ValueError(f"{_ENV_PREFIX}{name} must be non-empty and end with '/'.")
        if queue.queue_prefix.startswith(queue.deferred_prefix) or queue.deferred_prefix.startswith(
            queue.queue_prefix,
        ):
            raise ValueError("Queue and deferred prefixes must not overlap.")
        if not queue.deferred_type_prefix:
            raise ValueError(f"{_ENV_PREFIX}DEFERRED_TYPE_PREFIX must be non-empty.")
        if len({queue.wake_type, queue.debug_type}) != 2:
            raise ValueError("Wake and debug message types must differ.")
        for reserved in (queue.wake_type, queue.debug_type):
            if reserved.startswith(queue.deferred_type_prefix):
                raise ValueError(
                    f"Reserved message type {reserved!r} collides with deferred prefix "
                    f"{queue.deferred_type_prefix!r}.",
                )

        handlers = self.handlers
        if handlers.soft_timeout_seconds <= 0:
            raise ValueError(f"{_ENV_PREFIX}HANDLER_SOFT_TIMEOUT_SECONDS must be > 0.")
        if handlers.hard_timeout_seconds < handlers.soft_timeout_seconds:
            raise ValueError(
                f"{_ENV_PREFIX}HANDLER_HARD_TIMEOUT_SECONDS must be >= the soft timeout.",
            )
        if not handlers.default_handler:
            raise ValueError(f"{_ENV_PREFIX}DEFAULT_HANDLER must be non-empty.")

        invocation = self.invocation
        if invocation.lock_ttl_seconds <= 0:
            raise ValueError(f"{_ENV_PREFIX}LOCK_TTL_SECONDS must be > 0.")
        if invocation.drain_passes < 0:
            raise ValueError(f"{_ENV_PREFIX}DRAIN_PASSES must be >= 0.")
        if invocation.watch_poll_seconds <= 0:
            raise ValueError(f"{_ENV_PREFIX}WATCH_POLL_SECONDS must be > 0.")
        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError(f"{_ENV_PREFIX}SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if not isinstance(logging.getLevelName(self.log_level), int):
            raise ValueError(f"Invalid {_ENV_PREFIX}LOG_LEVEL: {self.log_level!r}")


def _env(name: str, default: str) -> str:
    return os.getenv(f"{_ENV_PREFIX}{name}", default)
