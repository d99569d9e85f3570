from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import allure

from conftest import FakeLauncher, RecordingHandler, push_event, write_handler
from recovery_coordinator.config import InvocationSettings, Settings
from recovery_coordinator.coordinator.cancellation import CancellationToken
from recovery_coordinator.coordinator.envelope import decode_envelope, encode_envelope
from recovery_coordinator.coordinator.handlers import HandlerRegistry
from recovery_coordinator.coordinator.lock import InvocationLock
from recovery_coordinator.coordinator.models import Envelope, QueueEntry
from recovery_coordinator.coordinator.service import RecoveryCoordinator
from recovery_coordinator.storage import KvStore
from recovery_coordinator.storage.common import utc_now

pytestmark = [
    allure.epic("Recovery Coordinator"),
    allure.feature("Invocation"),
]


def _coordinator(
    store: KvStore,
    launcher: FakeLauncher,
    *,
    registry: HandlerRegistry | None = None,
    settings: Settings | None = None,
    cancellation: CancellationToken | None = None,
) -> RecoveryCoordinator:
    settings = settings or Settings(db_path=store.db_path)
    return RecoveryCoordinator(
        store=store,
        settings=settings,
        registry=registry or HandlerRegistry(default=RecordingHandler("default")),
        launcher=launcher,
        cancellation=cancellation,
    )


def test_deferred_request_is_scheduled_and_wake_armed(store, launcher) -> None:
    push_event(store, "tmo_retry", "10")

    result = _coordinator(store, launcher).run_invocation()

    assert result.exit_code == 0
    assert result.dispatch.deferred == 1
    assert store.list_prefix("queue/") == []
    assert len(store.list_prefix("deferred/")) == 1
    assert [delay for _, delay in launcher.launched] in ([10], [9])
    assert store.get("coordinator/wake_timer") is not None
    assert store.get("coordinator/lock") is None


def test_trigger_snapshot_is_processed_in_delivered_order(store, launcher) -> None:
    default = RecordingHandler("default")
    coordinator = _coordinator(store, launcher, registry=HandlerRegistry(default=default))
    snapshot = []
    for payload in ("b", "a"):
        value = encode_envelope(Envelope("ping", payload))
        key = f"queue/{payload}"
        store.put(key, value)
        snapshot.append(QueueEntry(key=key, value=value))

    coordinator.run_invocation(snapshot)

    assert [request.payload for request in default.requests] == ["b", "a"]


def test_due_events_are_reinjected_and_handled_in_same_invocation(store, launcher) -> None:
    default = RecordingHandler("default")
    coordinator = _coordinator(store, launcher, registry=HandlerRegistry(default=default))
    coordinator.timeouts.register(0, "retry:old.0", now=utc_now() - timedelta(seconds=5))

    result = coordinator.run_invocation([])

    assert len(result.due_scans[0].fired) == 1
    assert [(r.message_type, r.payload) for r in default.requests] == [("retry", "old.0")]
    assert store.list_prefix("deferred/") == []
    assert store.list_prefix("queue/") == []
    assert result.passes == 2


def test_events_pushed_during_invocation_are_drained(store, launcher, tmp_path: Path) -> None:
    handler_dir = tmp_path / "handlers"
    write_handler(
        handler_dir,
        "chain",
        "import datetime, json, sqlite3, uuid\n"
        "now = datetime.datetime.now(datetime.UTC)\n"
        f"conn = sqlite3.connect({str(store.db_path)!r})\n"
        "conn.execute('UPDATE kv_revision SET revision = revision + 1')\n"
        "rev = conn.execute('SELECT revision FROM kv_revision').fetchone()[0]\n"
        "key = 'queue/' + now.strftime('%Y%m%dT%H%M%S%f') + '-' + uuid.uuid4().hex[:8]\n"
        "value = json.dumps({'message_type': 'follow_up', 'payload': 'x'}).encode()\n"
        "stamp = now.strftime('%Y-%m-%d %H:%M:%S.%f')\n"
        "conn.execute('INSERT INTO kv_entries VALUES (?, ?, ?, ?)', (key, value, rev, stamp))\n"
        "conn.commit()",
    )
    default = RecordingHandler("default")
    registry = HandlerRegistry.from_directory(handler_dir)
    registry.default = default
    push_event(store, "chain")

    result = _coordinator(store, launcher, registry=registry).run_invocation()

    assert [request.message_type for request in default.requests] == ["follow_up"]
    assert result.dispatch.processed == 2
    assert result.passes == 2
    assert store.list_prefix("queue/") == []


def test_drain_passes_bound_follow_up_work(store, launcher) -> None:
    settings = Settings(db_path=store.db_path, invocation=InvocationSettings(drain_passes=0))
    coordinator = _coordinator(store, launcher, settings=settings)
    coordinator.timeouts.register(0, "retry:old.0", now=utc_now() - timedelta(seconds=5))

    result = coordinator.run_invocation([])

    assert result.passes == 1
    assert result.retriggered is True
    queued = [decode_envelope(row.value) for row in store.list_prefix("queue/")]
    assert [envelope.message_type for envelope in queued] == ["retry", "wake_RC"]
    assert queued[0] == Envelope("retry", "old.0")
    assert store.get("coordinator/lock") is None


def test_event_pushed_before_lock_release_retriggers(store, launcher, monkeypatch) -> None:
    coordinator = _coordinator(store, launcher)

    def _late_push() -> list[QueueEntry]:
        push_event(store, "ping", "late")
        return []

    monkeypatch.setattr(coordinator, "queue_snapshot", _late_push)

    result = coordinator.run_invocation([])

    assert result.retriggered is True
    queued = [decode_envelope(row.value) for row in store.list_prefix("queue/")]
    assert [envelope.message_type for envelope in queued] == ["ping", "wake_RC"]


def test_drained_invocation_does_not_retrigger(store, launcher) -> None:
    push_event(store, "ping", "x")

    result = _coordinator(store, launcher).run_invocation()

    assert result.retriggered is False
    assert store.list_prefix("queue/") == []


def test_invocation_is_skipped_while_lock_is_held(store, launcher) -> None:
    key = push_event(store, "ping", "x")
    holder = InvocationLock(store=store, owner="other")
    assert holder.acquire()

    result = _coordinator(store, launcher).run_invocation()

    assert result.lock_acquired is False
    assert result.exit_code == 0
    assert store.get(key) is not None


def test_cancelled_invocation_reports_signal_exit_code(store, launcher) -> None:
    token = CancellationToken()

    class CancellingHandler(RecordingHandler):
        def run(self, request):
            token.cancel(signal_name="SIGINT", signal_number=2)
            return super().run(request)

    keys = [push_event(store, "ping", str(index)) for index in range(3)]
    coordinator = _coordinator(
        store,
        launcher,
        registry=HandlerRegistry(default=CancellingHandler("default")),
        cancellation=token,
    )

    result = coordinator.run_invocation()

    assert result.dispatch.cancelled is True
    assert result.exit_code == 130
    assert result.retriggered is False
    assert [row.key for row in store.list_prefix("queue/")] == keys[1:]
    assert len(result.due_scans) == 2
    assert store.get("coordinator/lock") is None
