"""Subprocess-based rule handler with soft and hard time bounds."""

from __future__ import annotations

import os
import subprocess
import tempfile
import time
from collections.abc import Sequence

from recovery_coordinator.coordinator.handlers.base import HandlerRequest
from recovery_coordinator.coordinator.models import HandlerOutcome, HandlerResult

ENV_MESSAGE_TYPE = "RECOVERY_COORDINATOR_MESSAGE_TYPE"
ENV_PAYLOAD = "RECOVERY_COORDINATOR_PAYLOAD"
ENV_CORRELATION_ID = "RECOVERY_COORDINATOR_CORRELATION_ID"

_PREVIEW_CHARS = 500


class ExecutableHandler:
    """Run an external program; event fields are passed through the environment."""

    def __init__(
        self,
        handler_id: str,
        command: Sequence[str],
        *,
        poll_interval_seconds: float = 0.05,
    ) -> None:
        if not command:
            raise ValueError(f"Handler {handler_id!r} has an empty command.")
        self.handler_id = handler_id
        self.command = tuple(command)
        self.poll_interval_seconds = poll_interval_seconds

    def run(self, request: HandlerRequest) -> HandlerResult:
        env = os.environ.copy()
        env[ENV_MESSAGE_TYPE] = request.message_type
        env[ENV_PAYLOAD] = request.payload
        env[ENV_CORRELATION_ID] = request.correlation_id

        start_monotonic = time.monotonic()
        with tempfile.TemporaryFile() as output_handle:
            try:
                process = subprocess.Popen(  # noqa: S603
                    self.command,
                    env=env,
                    stdin=subprocess.DEVNULL,
                    stdout=output_handle,
                    stderr=subprocess.STDOUT,
                )
            except OSError as error:
                return HandlerResult(
                    handler_id=self.handler_id,
                    outcome=HandlerOutcome.LAUNCH_ERROR,
                    error=f"Handler failed to start: {error}",
                )

            outcome = _wait_with_bounds(
                process,
                start_monotonic=start_monotonic,
                soft_timeout_seconds=request.soft_timeout_seconds,
                hard_timeout_seconds=request.hard_timeout_seconds,
                poll_interval_seconds=self.poll_interval_seconds,
            )
            output_handle.seek(0)
            preview = _preview(output_handle.read())

        return HandlerResult(
            handler_id=self.handler_id,
            outcome=outcome,
            exit_code=process.returncode,
            duration_ms=int((time.monotonic() - start_monotonic) * 1000),
            output_preview=preview,
        )


def _wait_with_bounds(
    process: subprocess.Popen[bytes],
    *,
    start_monotonic: float,
    soft_timeout_seconds: float,
    hard_timeout_seconds: float,
    poll_interval_seconds: float,
) -> HandlerOutcome:
    soft_deadline = start_monotonic + soft_timeout_seconds
    hard_deadline = start_monotonic + max(hard_timeout_seconds, soft_timeout_seconds)
    terminated = False

    while True:
        returncode = process.poll()
        if returncode is not None:
            if terminated:
                return HandlerOutcome.SOFT_TIMEOUT
            return HandlerOutcome.SUCCESS if returncode == 0 else HandlerOutcome.FAILED

        now = time.monotonic()
        if now >= hard_deadline:
            _kill_process(process)
            return HandlerOutcome.HARD_KILL
        if not terminated and now >= soft_deadline:
            terminated = _terminate_process(process)

        time.sleep(poll_interval_seconds)


def _terminate_process(process: subprocess.Popen[bytes]) -> bool:
    try:
        process.terminate()
    except OSError:
        return False
    return True


def _kill_process(process: subprocess.Popen[bytes]) -> None:
    try:
        process.kill()
    except OSError:
        return
    process.wait()


def _preview(raw: bytes) -> str:
    text = raw.decode("utf-8", errors="replace").strip()
    if len(text) <= _PREVIEW_CHARS:
        return text
    return "..." + text[-_PREVIEW_CHARS:]
