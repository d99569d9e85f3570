"""Deferred event index keyed by absolute wake second."""

from __future__ import annotations

import heapq
import logging
import math
from datetime import datetime, timedelta

from recovery_coordinator.coordinator.envelope import encode_envelope
from recovery_coordinator.coordinator.models import (
    DESCRIPTOR_SEPARATOR,
    DeferredEntry,
    DueScanResult,
    Envelope,
    EventDescriptor,
    format_wake_at,
)
from recovery_coordinator.coordinator.wake import WakeScheduler
from recovery_coordinator.storage import KvStore, KvStoreError
from recovery_coordinator.storage.common import utc_now

logger = logging.getLogger(__name__)

DEFAULT_TARGET_TYPE = "timeout"
_MAX_WRITE_ATTEMPTS = 10


class InvalidDeferredRequest(ValueError):
    """Deferred request cannot be scheduled."""


class TimeoutScheduler:
    """Register deferred events and re-inject them into the queue once due."""

    def __init__(
        self,
        *,
        store: KvStore,
        wake: WakeScheduler,
        deferred_prefix: str = "deferred/",
        queue_prefix: str = "queue/",
    ) -> None:
        self.store = store
        self.wake = wake
        self.deferred_prefix = deferred_prefix
        self.queue_prefix = queue_prefix

    def register(
        self,
        delay_seconds: int,
        descriptor: str,
        *,
        now: datetime | None = None,
    ) -> DeferredEntry:
        """Add `descriptor` to the entry for `now + delay_seconds`, creating it if needed."""

        if delay_seconds < 0:
            raise InvalidDeferredRequest(f"Delay must be >= 0, got {delay_seconds}.")
        if not descriptor or DESCRIPTOR_SEPARATOR in descriptor:
            raise InvalidDeferredRequest(f"Invalid event descriptor: {descriptor!r}")

        now = now or utc_now()
        wake_at = now.replace(microsecond=0) + timedelta(seconds=delay_seconds)
        key = self._key(wake_at)

        for _ in range(_MAX_WRITE_ATTEMPTS):
            raw = self.store.get(key)
            if raw is None:
                entry = DeferredEntry(wake_at=wake_at, events=[descriptor])
                if self.store.put_if_absent(key, entry.encode()):
                    break
                continue
            entry = DeferredEntry.decode(entry_wake_key(key, self.deferred_prefix), raw)
            entry.events.append(descriptor)
            if self.store.compare_and_swap(key, raw, entry.encode()):
                break
        else:
            raise KvStoreError(
                f"Deferred entry {key} kept changing after {_MAX_WRITE_ATTEMPTS} attempts.",
            )

        logger.info(
            "Deferred event registered: wake_at=%s descriptor=%s coalesced=%d",
            format_wake_at(wake_at),
            descriptor,
            len(entry.events),
        )
        return entry

    def pending(self) -> list[DeferredEntry]:
        """All deferred entries, earliest first."""

        entries: list[DeferredEntry] = []
        for row in self.store.list_prefix(self.deferred_prefix):
            entry = self._decode_row(row.key, row.value)
            if entry is not None:
                entries.append(entry)
        return entries

    def fire_due(self, *, now: datetime | None = None) -> DueScanResult:
        """Re-inject every entry due at `now`, then arm the wake for the earliest remaining one."""

        now = now or utc_now()
        result = DueScanResult()
        upcoming: list[datetime] = []

        for row in self.store.list_prefix(self.deferred_prefix):
            entry = self._decode_row(row.key, row.value)
            if entry is None:
                continue
            if entry.wake_at > now:
                heapq.heappush(upcoming, entry.wake_at)
                continue

            for text in entry.events:
                descriptor = EventDescriptor.parse(text)
                envelope = Envelope(
                    message_type=descriptor.target_type,
                    payload=descriptor.correlation_id,
                )
                result.injected_keys.append(
                    self.store.push(self.queue_prefix, encode_envelope(envelope)),
                )
            self.store.delete(row.key)
            result.fired.append(entry)
            logger.info(
                "Deferred entry fired: wake_at=%s events=%d",
                entry.wake_key,
                len(entry.events),
            )

        if upcoming:
            result.next_wake_at = upcoming[0]
            result.timer = self.wake.ensure_wake(result.next_wake_at - now, now=now)
        else:
            self.wake.cancel()
        return result

    def _key(self, wake_at: datetime) -> str:
        return f"{self.deferred_prefix}{format_wake_at(wake_at)}"

    def _decode_row(self, key: str, value: bytes) -> DeferredEntry | None:
        try:
            return DeferredEntry.decode(entry_wake_key(key, self.deferred_prefix), value)
        except (UnicodeDecodeError, ValueError):
            logger.warning("Skipping malformed deferred entry %s", key)
            return None


def entry_wake_key(key: str, deferred_prefix: str) -> str:
    return key[len(deferred_prefix) :] if key.startswith(deferred_prefix) else key


def deferred_target_type(message_type: str, type_prefix: str) -> str:
    """Message type a deferred request re-delivers as: `tmo_retry` -> `retry`."""

    rest = message_type[len(type_prefix) :] if message_type.startswith(type_prefix) else ""
    if rest.startswith("_"):
        rest = rest[1:]
    return rest or DEFAULT_TARGET_TYPE


def parse_delay_seconds(payload: str) -> int:
    """Whole seconds from a deferred request payload; fractions round up."""

    try:
        value = float(payload.strip())
    except ValueError as error:
        raise InvalidDeferredRequest(f"Delay is not a number: {payload!r}") from error
    if not math.isfinite(value) or value < 0:
        raise InvalidDeferredRequest(f"Delay must be a finite number >= 0: {payload!r}")
    return math.ceil(value)
