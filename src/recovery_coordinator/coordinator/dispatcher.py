"""Sequential dispatch of one queue snapshot."""

from __future__ import annotations

import itertools
import logging
from collections.abc import Callable, Sequence

from recovery_coordinator.config import QueueSettings
from recovery_coordinator.coordinator.cancellation import CancellationToken
from recovery_coordinator.coordinator.envelope import EnvelopeDecodeError, decode_envelope
from recovery_coordinator.coordinator.executor import RuleExecutor
from recovery_coordinator.coordinator.models import (
    DispatchSummary,
    Envelope,
    EventDescriptor,
    HandlerResult,
    QueueEntry,
    Route,
)
from recovery_coordinator.coordinator.timeouts import (
    InvalidDeferredRequest,
    TimeoutScheduler,
    deferred_target_type,
    parse_delay_seconds,
)
from recovery_coordinator.storage import KvStore

logger = logging.getLogger(__name__)


def select_route(message_type: str, *, queue: QueueSettings, executor: RuleExecutor) -> Route:
    """Pick the dispatch branch for a message type."""

    if message_type == queue.wake_type:
        return Route.WAKE
    if message_type.startswith(queue.deferred_type_prefix):
        return Route.DEFERRED
    if message_type == queue.debug_type:
        return Route.DEBUG
    if message_type and executor.registry.get(message_type) is not None:
        return Route.NAMED
    return Route.DEFAULT


class EventDispatcher:
    """Process queue entries in delivered order, one at a time.

    Each entry is decoded, routed, handled and then deleted from the store.
    Handler failures never block the delete; store errors propagate before
    it, leaving the entry for the next trigger. Cancellation is observed
    after each entry.
    """

    def __init__(
        self,
        *,
        store: KvStore,
        executor: RuleExecutor,
        timeouts: TimeoutScheduler,
        queue: QueueSettings,
        invocation_id: str,
    ) -> None:
        self.store = store
        self.executor = executor
        self.timeouts = timeouts
        self.queue = queue
        self.invocation_id = invocation_id
        self._sequence = itertools.count()

    def process(
        self,
        entries: Sequence[QueueEntry],
        *,
        cancellation: CancellationToken | None = None,
        after_entry: Callable[[], bool] | None = None,
    ) -> DispatchSummary:
        """Dispatch `entries`; `after_entry` returning False stops the pass."""

        summary = DispatchSummary()
        for entry in entries:
            self._process_entry(entry, summary)

            if after_entry is not None and not after_entry():
                summary.lock_lost = True
                logger.warning("Stopping dispatch: invocation lock lost.")
                break
            if cancellation is not None and cancellation.cancelled:
                summary.cancelled = True
                logger.warning(
                    "Dispatch cancelled after %s; remaining entries stay queued.",
                    entry.key,
                )
                break
        return summary

    def _process_entry(self, entry: QueueEntry, summary: DispatchSummary) -> None:
        if self.store.get(entry.key) is None:
            summary.skipped += 1
            logger.info("Skipping %s: already delivered.", entry.key)
            return

        correlation_id = f"{self.invocation_id}.{next(self._sequence)}"
        try:
            envelope = decode_envelope(entry.value)
        except EnvelopeDecodeError as error:
            summary.decode_errors += 1
            logger.warning("Undecodable event %s: %s", entry.key, error)
            envelope = Envelope(
                message_type="",
                payload=entry.value.decode("utf-8", errors="replace"),
            )
            route = Route.DEFAULT
        else:
            route = select_route(envelope.message_type, queue=self.queue, executor=self.executor)

        logger.info(
            "Dispatching %s: type=%r route=%s correlation_id=%s",
            entry.key,
            envelope.message_type,
            route.value,
            correlation_id,
        )
        self._dispatch(route, envelope, correlation_id, summary)

        self.store.delete(entry.key)
        summary.processed += 1
        summary.acknowledged_keys.append(entry.key)

    def _dispatch(
        self,
        route: Route,
        envelope: Envelope,
        correlation_id: str,
        summary: DispatchSummary,
    ) -> None:
        if route is Route.WAKE:
            summary.wakes += 1
            return
        if route is Route.DEFERRED:
            self._defer(envelope, correlation_id, summary)
            return
        if route is Route.DEBUG:
            self._count(
                self.executor.execute_debug(envelope, correlation_id=correlation_id),
                summary,
            )
            return
        self._count(
            self.executor.execute(envelope.message_type, envelope, correlation_id=correlation_id),
            summary,
        )

    def _defer(self, envelope: Envelope, correlation_id: str, summary: DispatchSummary) -> None:
        descriptor = EventDescriptor(
            target_type=deferred_target_type(
                envelope.message_type,
                self.queue.deferred_type_prefix,
            ),
            correlation_id=correlation_id,
        )
        try:
            delay_seconds = parse_delay_seconds(envelope.payload)
            self.timeouts.register(delay_seconds, descriptor.render())
        except InvalidDeferredRequest as error:
            logger.warning(
                "Deferred request %s rejected: type=%r error=%s",
                correlation_id,
                envelope.message_type,
                error,
            )
            return
        summary.deferred += 1

    @staticmethod
    def _count(result: HandlerResult, summary: DispatchSummary) -> None:
        summary.handled += 1
        if not result.ok:
            summary.handler_failures += 1
