"""Bounded-time rule execution for dispatched events."""

from __future__ import annotations

import logging

from recovery_coordinator.coordinator.handlers import HandlerRegistry, HandlerRequest, RuleHandler
from recovery_coordinator.coordinator.models import Envelope, HandlerOutcome, HandlerResult

logger = logging.getLogger(__name__)


class RuleExecutor:
    """Run the handler selected for an event; outcomes are logged, never raised."""

    def __init__(
        self,
        *,
        registry: HandlerRegistry,
        soft_timeout_seconds: float = 4.0,
        hard_timeout_seconds: float = 6.0,
    ) -> None:
        self.registry = registry
        self.soft_timeout_seconds = soft_timeout_seconds
        self.hard_timeout_seconds = hard_timeout_seconds

    def execute(self, handler_id: str, envelope: Envelope, *, correlation_id: str) -> HandlerResult:
        """Run the handler registered as `handler_id`, or the default handler."""

        return self._run(self.registry.resolve(handler_id), envelope, correlation_id)

    def execute_debug(self, envelope: Envelope, *, correlation_id: str) -> HandlerResult:
        return self._run(self.registry.debug, envelope, correlation_id)

    def _run(self, handler: RuleHandler, envelope: Envelope, correlation_id: str) -> HandlerResult:
        request = HandlerRequest(
            message_type=envelope.message_type,
            payload=envelope.payload,
            correlation_id=correlation_id,
            soft_timeout_seconds=self.soft_timeout_seconds,
            hard_timeout_seconds=self.hard_timeout_seconds,
        )
        try:
            result = handler.run(request)
        except Exception as error:  # noqa: BLE001
            logger.exception("Handler %s raised for %s", handler.handler_id, correlation_id)
            result = HandlerResult(
                handler_id=handler.handler_id,
                outcome=HandlerOutcome.FAILED,
                error=str(error),
            )

        if result.ok:
            logger.info(
                "Handler %s succeeded: type=%s correlation_id=%s duration_ms=%d",
                result.handler_id,
                envelope.message_type,
                correlation_id,
                result.duration_ms,
            )
        else:
            logger.warning(
                "Handler %s outcome=%s exit_code=%s type=%s correlation_id=%s "
                "duration_ms=%d error=%s output=%r",
                result.handler_id,
                result.outcome.value,
                result.exit_code,
                envelope.message_type,
                correlation_id,
                result.duration_ms,
                result.error,
                result.output_preview,
            )
        return result
