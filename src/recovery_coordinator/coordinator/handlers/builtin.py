"""In-process handlers that are always registered."""

from __future__ import annotations

import logging

from recovery_coordinator.coordinator.handlers.base import HandlerRequest
from recovery_coordinator.coordinator.models import HandlerOutcome, HandlerResult

logger = logging.getLogger(__name__)


class LoggingHandler:
    """Record the event in the log and report success."""

    def __init__(self, handler_id: str, *, label: str, level: int = logging.INFO) -> None:
        self.handler_id = handler_id
        self.label = label
        self.level = level

    def run(self, request: HandlerRequest) -> HandlerResult:
        logger.log(
            self.level,
            "%s: type=%r payload=%r correlation_id=%s",
            self.label,
            request.message_type,
            request.payload,
            request.correlation_id,
        )
        return HandlerResult(handler_id=self.handler_id, outcome=HandlerOutcome.SUCCESS)


def default_handler(handler_id: str = "default") -> LoggingHandler:
    return LoggingHandler(handler_id, label="Unmatched event")


def debug_handler(handler_id: str = "debug") -> LoggingHandler:
    return LoggingHandler(handler_id, label="Debug event")
