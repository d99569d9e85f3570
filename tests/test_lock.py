from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta

import allure

from recovery_coordinator.coordinator.lock import InvocationLock
from recovery_coordinator.storage import KvStore

pytestmark = [
    allure.epic("Recovery Coordinator"),
    allure.feature("Invocation Lock"),
]

T0 = datetime(2026, 10, 18, 12, 0, 0, tzinfo=UTC)


def _lock(store: KvStore, owner: str, ttl_seconds: int = 60) -> InvocationLock:
    return InvocationLock(store=store, owner=owner, ttl_seconds=ttl_seconds)


def test_second_owner_cannot_acquire_live_lock(store: KvStore) -> None:
    first = _lock(store, "first")
    second = _lock(store, "second")

    assert first.acquire(now=T0) is True
    assert second.acquire(now=T0 + timedelta(seconds=30)) is False
    lease = json.loads((store.get("coordinator/lock") or b"{}").decode("utf-8"))
    assert lease["owner"] == "first"
    assert second.refresh(now=T0 + timedelta(seconds=30)) is False


def test_release_lets_next_owner_in(store: KvStore) -> None:
    first = _lock(store, "first")
    first.acquire(now=T0)
    first.release()

    assert store.get("coordinator/lock") is None
    assert _lock(store, "second").acquire(now=T0) is True


def test_expired_lock_is_taken_over(store: KvStore) -> None:
    crashed = _lock(store, "crashed", ttl_seconds=10)
    crashed.acquire(now=T0)
    successor = _lock(store, "successor")

    assert successor.acquire(now=T0 + timedelta(seconds=11)) is True
    lease = json.loads((store.get("coordinator/lock") or b"{}").decode("utf-8"))
    assert lease["owner"] == "successor"
    assert crashed.refresh(now=T0 + timedelta(seconds=12)) is False
    crashed.release()
    lease = json.loads((store.get("coordinator/lock") or b"{}").decode("utf-8"))
    assert lease["owner"] == "successor"


def test_refresh_extends_lease(store: KvStore) -> None:
    lock = _lock(store, "owner", ttl_seconds=10)
    lock.acquire(now=T0)

    assert lock.refresh(now=T0 + timedelta(seconds=8)) is True
    assert _lock(store, "other").acquire(now=T0 + timedelta(seconds=15)) is False


def test_release_after_takeover_keeps_new_holder(store: KvStore) -> None:
    stale = _lock(store, "stale", ttl_seconds=1)
    stale.acquire(now=T0)
    fresh = _lock(store, "fresh")
    fresh.acquire(now=T0 + timedelta(seconds=5))

    stale.release()

    lease = json.loads((store.get("coordinator/lock") or b"{}").decode("utf-8"))
    assert lease["owner"] == "fresh"


def test_malformed_lease_is_treated_as_expired(store: KvStore) -> None:
    store.put("coordinator/lock", b"not json")

    assert _lock(store, "owner").acquire(now=T0) is True
