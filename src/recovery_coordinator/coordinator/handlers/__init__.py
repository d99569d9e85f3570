"""Rule handler implementations."""

from recovery_coordinator.coordinator.handlers.base import HandlerRequest, RuleHandler
from recovery_coordinator.coordinator.handlers.builtin import LoggingHandler
from recovery_coordinator.coordinator.handlers.executable import ExecutableHandler
from recovery_coordinator.coordinator.handlers.registry import HandlerRegistry

__all__ = [
    "ExecutableHandler",
    "HandlerRegistry",
    "HandlerRequest",
    "LoggingHandler",
    "RuleHandler",
]
