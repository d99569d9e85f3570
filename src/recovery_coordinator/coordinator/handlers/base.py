"""Handler interface for rule execution."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from recovery_coordinator.coordinator.models import HandlerResult


@dataclass(slots=True)
class HandlerRequest:
    """Inputs required to run one handler invocation."""

    message_type: str
    payload: str
    correlation_id: str
    soft_timeout_seconds: float
    hard_timeout_seconds: float


class RuleHandler(Protocol):
    """Protocol implemented by rule handlers."""

    handler_id: str

    def run(self, request: HandlerRequest) -> HandlerResult:
        """Handle one event and report how it went."""
