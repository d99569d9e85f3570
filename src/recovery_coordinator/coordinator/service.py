"""One externally triggered coordinator invocation."""

from __future__ import annotations

import logging
import os
import socket
from uuid import uuid4

from recovery_coordinator.config import Settings
from recovery_coordinator.coordinator.cancellation import EXIT_CANCELLED, CancellationToken
from recovery_coordinator.coordinator.dispatcher import EventDispatcher
from recovery_coordinator.coordinator.executor import RuleExecutor
from recovery_coordinator.coordinator.handlers import HandlerRegistry
from recovery_coordinator.coordinator.lock import InvocationLock
from recovery_coordinator.coordinator.models import InvocationResult, QueueEntry
from recovery_coordinator.coordinator.timeouts import TimeoutScheduler
from recovery_coordinator.coordinator.wake import (
    SubprocessTimerLauncher,
    TimerLauncher,
    WakeScheduler,
)
from recovery_coordinator.storage import KvStore, KvStoreError

logger = logging.getLogger(__name__)


class RecoveryCoordinator:
    """Drain the queue for one trigger and keep the deferred wake armed."""

    def __init__(
        self,
        *,
        store: KvStore,
        settings: Settings,
        registry: HandlerRegistry | None = None,
        launcher: TimerLauncher | None = None,
        cancellation: CancellationToken | None = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.cancellation = cancellation or CancellationToken()
        self.registry = registry or HandlerRegistry.from_directory(
            settings.handlers.handler_dir,
            default_handler_id=settings.handlers.default_handler,
        )
        self.executor = RuleExecutor(
            registry=self.registry,
            soft_timeout_seconds=settings.handlers.soft_timeout_seconds,
            hard_timeout_seconds=settings.handlers.hard_timeout_seconds,
        )
        self.wake = WakeScheduler(
            store=store,
            launcher=launcher
            or SubprocessTimerLauncher(
                db_path=settings.db_path,
                queue_prefix=settings.queue.queue_prefix,
                wake_type=settings.queue.wake_type,
                sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
            ),
            queue_prefix=settings.queue.queue_prefix,
            wake_type=settings.queue.wake_type,
        )
        self.timeouts = TimeoutScheduler(
            store=store,
            wake=self.wake,
            deferred_prefix=settings.queue.deferred_prefix,
            queue_prefix=settings.queue.queue_prefix,
        )

    def queue_snapshot(self) -> list[QueueEntry]:
        """Current live queue, in key order."""

        return [
            QueueEntry(key=row.key, value=row.value)
            for row in self.store.list_prefix(self.settings.queue.queue_prefix)
        ]

    def run_invocation(self, snapshot: list[QueueEntry] | None = None) -> InvocationResult:
        """Process `snapshot` (or the stored queue), then re-scan until idle.

        The due-scan runs before the first pass and after every pass, so
        deferred events that came due are re-injected and the wake timer
        always reflects the earliest remaining deferred entry.
        """

        invocation_id = uuid4().hex[:12]
        result = InvocationResult(invocation_id=invocation_id)
        lock = InvocationLock(
            store=self.store,
            owner=f"{socket.gethostname()}:{os.getpid()}:{invocation_id}",
            ttl_seconds=self.settings.invocation.lock_ttl_seconds,
        )
        if not lock.acquire():
            result.lock_acquired = False
            logger.info("Invocation %s skipped: another invocation is running.", invocation_id)
            return result

        dispatcher = EventDispatcher(
            store=self.store,
            executor=self.executor,
            timeouts=self.timeouts,
            queue=self.settings.queue,
            invocation_id=invocation_id,
        )
        try:
            result.due_scans.append(self.timeouts.fire_due())
            pending = self.queue_snapshot() if snapshot is None else snapshot
            while True:
                result.dispatch.merge(
                    dispatcher.process(
                        pending,
                        cancellation=self.cancellation,
                        after_entry=lock.refresh,
                    ),
                )
                result.passes += 1
                if result.dispatch.lock_lost:
                    break
                result.due_scans.append(self.timeouts.fire_due())
                if result.dispatch.cancelled:
                    break
                if result.passes > self.settings.invocation.drain_passes:
                    break
                pending = self.queue_snapshot()
                if not pending:
                    break
        finally:
            _release(lock)

        if not (result.dispatch.cancelled or result.dispatch.lock_lost):
            self._retrigger_if_queued(result)

        if result.dispatch.cancelled:
            result.exit_code = self.cancellation.exit_code
        elif result.dispatch.lock_lost:
            result.exit_code = EXIT_CANCELLED

        summary = result.dispatch
        logger.info(
            "Invocation %s finished: passes=%d processed=%d skipped=%d handled=%d "
            "handler_failures=%d deferred=%d wakes=%d decode_errors=%d exit_code=%d",
            invocation_id,
            result.passes,
            summary.processed,
            summary.skipped,
            summary.handled,
            summary.handler_failures,
            summary.deferred,
            summary.wakes,
            summary.decode_errors,
            result.exit_code,
        )
        return result

    def _retrigger_if_queued(self, result: InvocationResult) -> None:
        # Pushes made while the lock was held never got a trigger of their own.
        if not self.store.list_prefix(self.settings.queue.queue_prefix):
            return
        key = self.wake.push_wake()
        result.retriggered = True
        logger.info(
            "Invocation %s left events queued; pushed wake %s to retrigger.",
            result.invocation_id,
            key,
        )


def _release(lock: InvocationLock) -> None:
    try:
        lock.release()
    except KvStoreError as error:
        logger.warning("Failed to release invocation lock: %s", error)
