"""Domain models for queue dispatch and deferred scheduling."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

WAKE_AT_FORMAT = "%Y%m%d%H%M%S"
DESCRIPTOR_SEPARATOR = ","


class HandlerOutcome(str, Enum):
    """Normalized result of one handler invocation."""

    SUCCESS = "success"
    FAILED = "failed"
    SOFT_TIMEOUT = "soft_timeout"
    HARD_KILL = "hard_kill"
    LAUNCH_ERROR = "launch_error"


class Route(str, Enum):
    """Dispatch branch selected for one queue entry."""

    WAKE = "wake"
    DEFERRED = "deferred"
    DEBUG = "debug"
    NAMED = "named"
    DEFAULT = "default"


@dataclass(frozen=True, slots=True)
class QueueEntry:
    """One undelivered event slot in the live queue."""

    key: str
    value: bytes


@dataclass(frozen=True, slots=True)
class Envelope:
    """Decoded queue entry value."""

    message_type: str
    payload: str


@dataclass(slots=True)
class HandlerResult:
    """Execution outcome from a rule handler."""

    handler_id: str
    outcome: HandlerOutcome
    exit_code: int | None = None
    duration_ms: int = 0
    output_preview: str = ""
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.outcome is HandlerOutcome.SUCCESS


@dataclass(slots=True)
class DeferredEntry:
    """Events coalesced under one absolute wake second."""

    wake_at: datetime
    events: list[str] = field(default_factory=list)

    @property
    def wake_key(self) -> str:
        return format_wake_at(self.wake_at)

    def encode(self) -> bytes:
        return DESCRIPTOR_SEPARATOR.join(self.events).encode("utf-8")

    @classmethod
    def decode(cls, wake_key: str, value: bytes) -> DeferredEntry:
        text = value.decode("utf-8")
        events = [part for part in text.split(DESCRIPTOR_SEPARATOR) if part]
        return cls(wake_at=parse_wake_at(wake_key), events=events)


@dataclass(frozen=True, slots=True)
class EventDescriptor:
    """Deferred event reference: type to re-deliver plus its correlation id."""

    target_type: str
    correlation_id: str

    def render(self) -> str:
        return f"{self.target_type}:{self.correlation_id}"

    @classmethod
    def parse(cls, text: str) -> EventDescriptor:
        target_type, separator, correlation_id = text.rpartition(":")
        if not separator:
            return cls(target_type=text, correlation_id="")
        return cls(target_type=target_type, correlation_id=correlation_id)


@dataclass(slots=True)
class WakeTimerHandle:
    """Registry record for the single armed wake timer."""

    token: str
    pid: int | None
    wake_at: datetime
    created_at: datetime

    def to_dict(self) -> dict[str, object]:
        return {
            "token": self.token,
            "pid": self.pid,
            "wake_at": format_wake_at(self.wake_at),
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, object]) -> WakeTimerHandle:
        pid = payload.get("pid")
        return cls(
            token=str(payload["token"]),
            pid=int(pid) if isinstance(pid, int) else None,
            wake_at=parse_wake_at(str(payload["wake_at"])),
            created_at=datetime.fromisoformat(str(payload["created_at"])),
        )


@dataclass(slots=True)
class DueScanResult:
    """What one due-scan fired and what it left armed."""

    fired: list[DeferredEntry] = field(default_factory=list)
    injected_keys: list[str] = field(default_factory=list)
    next_wake_at: datetime | None = None
    timer: WakeTimerHandle | None = None


@dataclass(slots=True)
class DispatchSummary:
    """Aggregate dispatcher counters for one pass over a snapshot."""

    processed: int = 0
    skipped: int = 0
    handled: int = 0
    handler_failures: int = 0
    deferred: int = 0
    wakes: int = 0
    decode_errors: int = 0
    cancelled: bool = False
    lock_lost: bool = False
    acknowledged_keys: list[str] = field(default_factory=list)

    def merge(self, other: DispatchSummary) -> None:
        self.processed += other.processed
        self.skipped += other.skipped
        self.handled += other.handled
        self.handler_failures += other.handler_failures
        self.deferred += other.deferred
        self.wakes += other.wakes
        self.decode_errors += other.decode_errors
        self.cancelled = self.cancelled or other.cancelled
        self.lock_lost = self.lock_lost or other.lock_lost
        self.acknowledged_keys.extend(other.acknowledged_keys)


@dataclass(slots=True)
class InvocationResult:
    """Outcome of one externally triggered coordinator run."""

    invocation_id: str
    exit_code: int = 0
    lock_acquired: bool = True
    dispatch: DispatchSummary = field(default_factory=DispatchSummary)
    due_scans: list[DueScanResult] = field(default_factory=list)
    passes: int = 0
    retriggered: bool = False


@dataclass(frozen=True, slots=True)
class HandlerSpec:
    """Registered handler listing row for CLI output."""

    handler_id: str
    kind: str
    location: Path | None = None


def format_wake_at(value: datetime) -> str:
    return value.astimezone(UTC).strftime(WAKE_AT_FORMAT)


def parse_wake_at(value: str) -> datetime:
    return datetime.strptime(value, WAKE_AT_FORMAT).replace(tzinfo=UTC)
