"""Single background wake timer that turns elapsed time into a queue change.

The armed timer is recorded in one registry key. Arming a new timer
terminates the recorded one first, and a timer whose token is no longer in
the registry when it wakes exits without writing, so at most one timer can
ever push a wake event.
"""

from __future__ import annotations

import json
import logging
import math
import os
import signal
import subprocess
import sys
from datetime import datetime, timedelta
from pathlib import Path
from typing import Protocol
from uuid import uuid4

from recovery_coordinator.coordinator.envelope import encode_envelope
from recovery_coordinator.coordinator.models import Envelope, WakeTimerHandle, format_wake_at
from recovery_coordinator.storage import KvStore
from recovery_coordinator.storage.common import utc_now

logger = logging.getLogger(__name__)

WAKE_REGISTRY_KEY = "coordinator/wake_timer"
ENV_WAKE_TOKEN = "RECOVERY_COORDINATOR_WAKE_TOKEN"
WAKE_TIMER_MODULE = "recovery_coordinator.coordinator.wake_timer"


class TimerLauncher(Protocol):
    """Starts, checks and stops detached timer processes."""

    def launch(self, *, token: str, delay_seconds: int) -> int | None:
        """Start a timer that sleeps `delay_seconds`; return its pid."""

    def is_running(self, handle: WakeTimerHandle) -> bool:
        """Whether the timer described by `handle` is still alive."""

    def terminate(self, handle: WakeTimerHandle) -> None:
        """Stop the timer described by `handle` if it is still alive."""


class WakeScheduler:
    """Arm, replace and cancel the coordinator's wake timer."""

    def __init__(
        self,
        *,
        store: KvStore,
        launcher: TimerLauncher,
        queue_prefix: str = "queue/",
        wake_type: str = "wake_RC",
        registry_key: str = WAKE_REGISTRY_KEY,
    ) -> None:
        self.store = store
        self.launcher = launcher
        self.queue_prefix = queue_prefix
        self.wake_type = wake_type
        self.registry_key = registry_key

    def current(self) -> WakeTimerHandle | None:
        raw = self.store.get(self.registry_key)
        if raw is None:
            return None
        return parse_timer_handle(raw)

    def ensure_wake(
        self,
        delay: timedelta,
        *,
        now: datetime | None = None,
    ) -> WakeTimerHandle | None:
        """Guarantee a wake event at or after `now + delay`.

        Returns the armed handle, or None when the wake event was pushed
        immediately because the delay is not positive.
        """

        now = now or utc_now()
        if delay.total_seconds() <= 0:
            self.cancel()
            self.push_wake(now=now)
            return None

        wake_at = _ceil_to_second(now + delay)
        current = self.current()
        if (
            current is not None
            and current.wake_at == wake_at
            and self.launcher.is_running(current)
        ):
            logger.debug("Wake timer already armed for %s", format_wake_at(wake_at))
            return current
        if current is not None:
            self.launcher.terminate(current)

        handle = WakeTimerHandle(token=uuid4().hex, pid=None, wake_at=wake_at, created_at=now)
        self.store.put(self.registry_key, render_timer_handle(handle))
        delay_seconds = max(1, math.ceil((wake_at - now).total_seconds()))
        try:
            handle.pid = self.launcher.launch(token=handle.token, delay_seconds=delay_seconds)
        except OSError:
            logger.exception("Failed to start wake timer for %s", format_wake_at(wake_at))
            self.store.delete(self.registry_key)
            return None
        self.store.put(self.registry_key, render_timer_handle(handle))
        logger.info(
            "Wake timer armed: wake_at=%s delay_seconds=%d pid=%s",
            format_wake_at(wake_at),
            delay_seconds,
            handle.pid,
        )
        return handle

    def cancel(self) -> None:
        """Stop and forget the armed timer, if any."""

        raw = self.store.get(self.registry_key)
        if raw is None:
            return
        handle = parse_timer_handle(raw)
        if handle is not None:
            self.launcher.terminate(handle)
        self.store.delete_if_value(self.registry_key, raw)

    def push_wake(self, *, now: datetime | None = None) -> str:
        """Push a wake event onto the live queue right away."""

        envelope = Envelope(message_type=self.wake_type, payload=format_wake_at(now or utc_now()))
        key = self.store.push(self.queue_prefix, encode_envelope(envelope))
        logger.info("Wake event pushed: %s", key)
        return key


class SubprocessTimerLauncher:
    """Launch `wake_timer` as a detached Python process in its own session."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        db_path: Path,
        queue_prefix: str = "queue/",
        wake_type: str = "wake_RC",
        registry_key: str = WAKE_REGISTRY_KEY,
        sqlite_busy_timeout_ms: int = 5_000,
        python_executable: str | None = None,
    ) -> None:
        self.db_path = db_path
        self.queue_prefix = queue_prefix
        self.wake_type = wake_type
        self.registry_key = registry_key
        self.sqlite_busy_timeout_ms = sqlite_busy_timeout_ms
        self.python_executable = python_executable or sys.executable

    def launch(self, *, token: str, delay_seconds: int) -> int | None:
        env = os.environ.copy()
        env[ENV_WAKE_TOKEN] = token
        process = subprocess.Popen(  # noqa: S603
            [
                self.python_executable,
                "-m",
                WAKE_TIMER_MODULE,
                "--db-path",
                str(self.db_path),
                "--delay-seconds",
                str(delay_seconds),
                "--token",
                token,
                "--queue-prefix",
                self.queue_prefix,
                "--wake-type",
                self.wake_type,
                "--registry-key",
                self.registry_key,
                "--busy-timeout-ms",
                str(self.sqlite_busy_timeout_ms),
            ],
            env=env,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            close_fds=True,
            start_new_session=True,
        )
        return process.pid

    def is_running(self, handle: WakeTimerHandle) -> bool:
        if handle.pid is None:
            return False
        carries_token = _process_carries_token(handle.pid, handle.token)
        if carries_token is not None:
            return carries_token
        try:
            os.kill(handle.pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True

    def terminate(self, handle: WakeTimerHandle) -> None:
        # Only signal a pid that is provably our timer; otherwise the token
        # check in the timer itself keeps a stale process from writing.
        if handle.pid is None or not _process_carries_token(handle.pid, handle.token):
            return
        try:
            os.kill(handle.pid, signal.SIGTERM)
        except (ProcessLookupError, PermissionError):
            return
        logger.info("Terminated superseded wake timer pid=%d", handle.pid)


def _process_carries_token(pid: int, token: str) -> bool | None:
    """True/False when /proc can answer, None when the platform has no /proc."""

    proc_dir = Path("/proc")
    if not proc_dir.is_dir():
        return None
    try:
        cmdline = (proc_dir / str(pid) / "cmdline").read_bytes()
    except (FileNotFoundError, ProcessLookupError, PermissionError):
        return False
    return token.encode("ascii") in cmdline.split(b"\0")


def _ceil_to_second(value: datetime) -> datetime:
    if value.microsecond == 0:
        return value
    return value.replace(microsecond=0) + timedelta(seconds=1)


def render_timer_handle(handle: WakeTimerHandle) -> bytes:
    return json.dumps(handle.to_dict(), separators=(",", ":")).encode("utf-8")


def parse_timer_handle(raw: bytes) -> WakeTimerHandle | None:
    try:
        return WakeTimerHandle.from_dict(json.loads(raw.decode("utf-8")))
    except (UnicodeDecodeError, json.JSONDecodeError, KeyError, TypeError, ValueError):
        logger.warning("Ignoring malformed wake timer registry entry: %r", raw[:200])
        return None
