"""Polling trigger: run an invocation whenever the queue prefix changes."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from recovery_coordinator.coordinator.cancellation import CancellationToken
from recovery_coordinator.coordinator.service import RecoveryCoordinator

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WatchSummary:
    """Aggregate watcher counters for CLI reporting."""

    invocations: int = 0
    events_processed: int = 0
    skipped_locked: int = 0
    last_exit_code: int = 0


class QueueWatcher:
    """Poll the queue prefix revision and trigger the coordinator on change.

    The first poll always triggers, so deferred entries that came due while
    nothing was watching are handled at startup.
    """

    def __init__(
        self,
        *,
        coordinator: RecoveryCoordinator,
        poll_interval_seconds: float = 1.0,
        cancellation: CancellationToken | None = None,
    ) -> None:
        self.coordinator = coordinator
        self.poll_interval_seconds = poll_interval_seconds
        self.cancellation = cancellation or coordinator.cancellation

    def run(self, *, max_invocations: int | None = None) -> WatchSummary:
        summary = WatchSummary()
        store = self.coordinator.store
        queue_prefix = self.coordinator.settings.queue.queue_prefix
        last_revision: int | None = None

        while not self.cancellation.cancelled:
            revision = store.prefix_revision(queue_prefix)
            if revision != last_revision:
                logger.debug("Queue revision changed: %s -> %s", last_revision, revision)
                last_revision = revision
                result = self.coordinator.run_invocation(self.coordinator.queue_snapshot())
                summary.invocations += 1
                summary.events_processed += result.dispatch.processed
                summary.last_exit_code = result.exit_code
                if not result.lock_acquired:
                    summary.skipped_locked += 1
                    last_revision = None
                if max_invocations is not None and summary.invocations >= max_invocations:
                    break
                if result.dispatch.cancelled:
                    break
            if self.cancellation.wait(self.poll_interval_seconds):
                break
        return summary
