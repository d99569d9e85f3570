"""Shared test fixtures."""

from __future__ import annotations

import stat
import sys
from collections.abc import Iterator
from pathlib import Path

import pytest

from recovery_coordinator.coordinator.envelope import encode_envelope
from recovery_coordinator.coordinator.handlers import HandlerRequest
from recovery_coordinator.coordinator.models import (
    Envelope,
    HandlerOutcome,
    HandlerResult,
    WakeTimerHandle,
)
from recovery_coordinator.storage import KvStore


class FakeLauncher:
    """In-memory timer launcher: records launches instead of spawning processes."""

    def __init__(self) -> None:
        self.launched: list[tuple[str, int]] = []
        self.terminated: list[str] = []
        self.running: set[str] = set()
        self._next_pid = 40_000

    def launch(self, *, token: str, delay_seconds: int) -> int | None:
        self._next_pid += 1
        self.launched.append((token, delay_seconds))
        self.running.add(token)
        return self._next_pid

    def is_running(self, handle: WakeTimerHandle) -> bool:
        return handle.token in self.running

    def terminate(self, handle: WakeTimerHandle) -> None:
        if handle.token in self.running:
            self.running.discard(handle.token)
            self.terminated.append(handle.token)


class RecordingHandler:
    """Handler that remembers every request it was given."""

    def __init__(
        self,
        handler_id: str,
        *,
        outcome: HandlerOutcome = HandlerOutcome.SUCCESS,
    ) -> None:
        self.handler_id = handler_id
        self.outcome = outcome
        self.requests: list[HandlerRequest] = []

    def run(self, request: HandlerRequest) -> HandlerResult:
        self.requests.append(request)
        return HandlerResult(handler_id=self.handler_id, outcome=self.outcome)


@pytest.fixture()
def store(tmp_path: Path) -> Iterator[KvStore]:
    kv_store = KvStore(tmp_path / "coordinator.db")
    kv_store.init_schema()
    yield kv_store
    kv_store.close()


@pytest.fixture()
def launcher() -> FakeLauncher:
    return FakeLauncher()


def push_event(store: KvStore, message_type: str, payload: str = "", prefix: str = "queue/") -> str:
    return store.push(prefix, encode_envelope(Envelope(message_type=message_type, payload=payload)))


def write_handler(directory: Path, name: str, body: str) -> Path:
    """Create an executable Python handler script named `name` in `directory`."""

    directory.mkdir(parents=True, exist_ok=True)
    path = directory / name
    path.write_text(f"#!{sys.executable}\n{body}\n", encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path
