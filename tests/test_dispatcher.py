from __future__ import annotations

from datetime import timedelta

import allure
import pytest

from conftest import FakeLauncher, RecordingHandler, push_event
from recovery_coordinator.config import QueueSettings
from recovery_coordinator.coordinator.cancellation import CancellationToken
from recovery_coordinator.coordinator.dispatcher import EventDispatcher, select_route
from recovery_coordinator.coordinator.executor import RuleExecutor
from recovery_coordinator.coordinator.handlers import HandlerRegistry
from recovery_coordinator.coordinator.models import HandlerOutcome, QueueEntry, Route
from recovery_coordinator.coordinator.timeouts import TimeoutScheduler
from recovery_coordinator.coordinator.wake import WakeScheduler
from recovery_coordinator.storage import KvStore, KvStoreError
from recovery_coordinator.storage.common import utc_now

pytestmark = [
    allure.epic("Recovery Coordinator"),
    allure.feature("Event Dispatcher"),
]


def _dispatcher(
    store: KvStore,
    launcher: FakeLauncher,
    registry: HandlerRegistry,
) -> EventDispatcher:
    wake = WakeScheduler(store=store, launcher=launcher)
    return EventDispatcher(
        store=store,
        executor=RuleExecutor(registry=registry),
        timeouts=TimeoutScheduler(store=store, wake=wake),
        queue=QueueSettings(),
        invocation_id="inv",
    )


def _snapshot(store: KvStore) -> list[QueueEntry]:
    return [QueueEntry(key=row.key, value=row.value) for row in store.list_prefix("queue/")]


def test_select_route_priority() -> None:
    registry = HandlerRegistry()
    registry.register("restart_db", RecordingHandler("restart_db"))
    executor = RuleExecutor(registry=registry)
    queue = QueueSettings()

    assert select_route("wake_RC", queue=queue, executor=executor) is Route.WAKE
    assert select_route("tmo_retry", queue=queue, executor=executor) is Route.DEFERRED
    assert select_route("debug_RC", queue=queue, executor=executor) is Route.DEBUG
    assert select_route("restart_db", queue=queue, executor=executor) is Route.NAMED
    assert select_route("ping", queue=queue, executor=executor) is Route.DEFAULT
    assert select_route("", queue=queue, executor=executor) is Route.DEFAULT


def test_unmatched_event_goes_to_default_handler_and_is_deleted(store, launcher) -> None:
    default = RecordingHandler("default")
    key = push_event(store, "ping", "x")

    summary = _dispatcher(store, launcher, HandlerRegistry(default=default)).process(
        _snapshot(store),
    )

    assert [(r.message_type, r.payload) for r in default.requests] == [("ping", "x")]
    assert default.requests[0].correlation_id == "inv.0"
    assert store.get(key) is None
    assert summary.processed == 1
    assert summary.acknowledged_keys == [key]


def test_events_are_processed_in_queue_order_with_one_handler_each(store, launcher) -> None:
    default = RecordingHandler("default")
    named = RecordingHandler("restart_db")
    registry = HandlerRegistry(default=default)
    registry.register("restart_db", named)
    push_event(store, "ping", "1")
    push_event(store, "restart_db", "2")
    push_event(store, "ping", "3")

    summary = _dispatcher(store, launcher, registry).process(_snapshot(store))

    assert [r.payload for r in default.requests] == ["1", "3"]
    assert [r.payload for r in named.requests] == ["2"]
    assert [r.correlation_id for r in default.requests + named.requests] == [
        "inv.0",
        "inv.2",
        "inv.1",
    ]
    assert summary.handled == 3
    assert store.list_prefix("queue/") == []


def test_wake_event_is_consumed_without_handler(store, launcher) -> None:
    default = RecordingHandler("default")
    push_event(store, "wake_RC", "20261018120000")

    summary = _dispatcher(store, launcher, HandlerRegistry(default=default)).process(
        _snapshot(store),
    )

    assert summary.wakes == 1
    assert summary.handled == 0
    assert default.requests == []
    assert store.list_prefix("queue/") == []


def test_debug_event_goes_to_debug_handler(store, launcher) -> None:
    debug = RecordingHandler("debug")
    default = RecordingHandler("default")
    push_event(store, "debug_RC", "dump")

    _dispatcher(store, launcher, HandlerRegistry(default=default, debug=debug)).process(
        _snapshot(store),
    )

    assert [r.payload for r in debug.requests] == ["dump"]
    assert default.requests == []


def test_debug_event_bypasses_handler_registered_under_same_name(store, launcher) -> None:
    debug = RecordingHandler("debug")
    registered = RecordingHandler("debug_RC")
    registry = HandlerRegistry(debug=debug)
    registry.register("debug_RC", registered)
    push_event(store, "debug_RC", "dump")

    summary = _dispatcher(store, launcher, registry).process(_snapshot(store))

    assert [r.payload for r in debug.requests] == ["dump"]
    assert registered.requests == []
    assert store.list_prefix("queue/") == []
    assert summary.processed == 1


def test_failed_handler_still_acknowledges_event(store, launcher) -> None:
    default = RecordingHandler("default", outcome=HandlerOutcome.HARD_KILL)
    key = push_event(store, "ping", "x")

    summary = _dispatcher(store, launcher, HandlerRegistry(default=default)).process(
        _snapshot(store),
    )

    assert summary.handler_failures == 1
    assert store.get(key) is None


def test_deferred_request_registers_entry_and_deletes_event(store, launcher) -> None:
    key = push_event(store, "tmo_retry", "10")
    before = utc_now().replace(microsecond=0)

    summary = _dispatcher(store, launcher, HandlerRegistry()).process(_snapshot(store))

    after = utc_now().replace(microsecond=0)
    assert summary.deferred == 1
    assert store.get(key) is None
    entries = store.list_prefix("deferred/")
    assert len(entries) == 1
    wake_key = entries[0].key.removeprefix("deferred/")
    assert (before + timedelta(seconds=10)).strftime("%Y%m%d%H%M%S") <= wake_key
    assert wake_key <= (after + timedelta(seconds=10)).strftime("%Y%m%d%H%M%S")
    assert entries[0].value == b"retry:inv.0"


def test_invalid_deferred_request_is_logged_and_acknowledged(store, launcher, caplog) -> None:
    key = push_event(store, "tmo_retry", "later")

    summary = _dispatcher(store, launcher, HandlerRegistry()).process(_snapshot(store))

    assert summary.deferred == 0
    assert store.get(key) is None
    assert store.list_prefix("deferred/") == []
    assert "rejected" in caplog.text


def test_undecodable_entry_goes_to_default_handler(store, launcher) -> None:
    default = RecordingHandler("default")
    store.put("queue/broken", b"\x00not-json")

    summary = _dispatcher(store, launcher, HandlerRegistry(default=default)).process(
        _snapshot(store),
    )

    assert summary.decode_errors == 1
    assert [r.message_type for r in default.requests] == [""]
    assert store.get("queue/broken") is None


def test_entry_already_deleted_is_skipped(store, launcher) -> None:
    default = RecordingHandler("default")
    key = push_event(store, "ping", "x")
    snapshot = _snapshot(store)
    store.delete(key)

    summary = _dispatcher(store, launcher, HandlerRegistry(default=default)).process(snapshot)

    assert summary.skipped == 1
    assert summary.processed == 0
    assert default.requests == []


def test_cancellation_stops_after_current_event(store, launcher) -> None:
    token = CancellationToken()

    class CancellingHandler(RecordingHandler):
        def run(self, request):
            token.cancel(signal_name="SIGTERM", signal_number=15)
            return super().run(request)

    default = CancellingHandler("default")
    keys = [push_event(store, "ping", str(index)) for index in range(3)]

    summary = _dispatcher(store, launcher, HandlerRegistry(default=default)).process(
        _snapshot(store),
        cancellation=token,
    )

    assert summary.cancelled is True
    assert summary.processed == 1
    assert store.get(keys[0]) is None
    assert [row.key for row in store.list_prefix("queue/")] == keys[1:]
    assert token.exit_code == 143


def test_lost_lock_stops_dispatch(store, launcher) -> None:
    keys = [push_event(store, "ping", str(index)) for index in range(2)]

    summary = _dispatcher(store, launcher, HandlerRegistry()).process(
        _snapshot(store),
        after_entry=lambda: False,
    )

    assert summary.lock_lost is True
    assert [row.key for row in store.list_prefix("queue/")] == keys[1:]


def test_store_failure_before_delete_leaves_entry_queued(store, launcher, monkeypatch) -> None:
    key = push_event(store, "ping", "x")

    def _fail_delete(_key: str) -> bool:
        raise KvStoreError("disk gone")

    monkeypatch.setattr(store, "delete", _fail_delete)

    with pytest.raises(KvStoreError):
        _dispatcher(store, launcher, HandlerRegistry()).process(_snapshot(store))

    monkeypatch.undo()
    assert store.get(key) is not None


def test_deferred_write_conflict_is_fatal_and_leaves_entry_queued(
    store,
    launcher,
    monkeypatch,
) -> None:
    key = push_event(store, "tmo_retry", "10")
    original = store.put_if_absent

    def _always_taken(entry_key: str, value: bytes) -> bool:
        if entry_key.startswith("deferred/"):
            return False
        return original(entry_key, value)

    monkeypatch.setattr(store, "put_if_absent", _always_taken)

    with pytest.raises(KvStoreError, match="kept changing"):
        _dispatcher(store, launcher, HandlerRegistry()).process(_snapshot(store))

    monkeypatch.undo()
    assert store.get(key) is not None
    assert store.list_prefix("deferred/") == []
