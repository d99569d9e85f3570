"""Mapping from message type to rule handler, with fixed default and debug entries."""

from __future__ import annotations

import logging
import os
from pathlib import Path

from recovery_coordinator.coordinator.handlers.base import RuleHandler
from recovery_coordinator.coordinator.handlers.builtin import debug_handler, default_handler
from recovery_coordinator.coordinator.handlers.executable import ExecutableHandler
from recovery_coordinator.coordinator.models import HandlerSpec

logger = logging.getLogger(__name__)


class HandlerRegistry:
    """Resolve handler ids; unknown ids fall back to the default handler."""

    def __init__(
        self,
        *,
        default: RuleHandler | None = None,
        debug: RuleHandler | None = None,
    ) -> None:
        self.default = default or default_handler()
        self.debug = debug or debug_handler()
        self._handlers: dict[str, RuleHandler] = {}

    def register(self, handler_id: str, handler: RuleHandler) -> None:
        if not handler_id:
            raise ValueError("Handler id must be non-empty.")
        self._handlers[handler_id] = handler

    def get(self, handler_id: str) -> RuleHandler | None:
        return self._handlers.get(handler_id)

    def resolve(self, handler_id: str) -> RuleHandler:
        return self._handlers.get(handler_id) or self.default

    def specs(self) -> list[HandlerSpec]:
        rows = [
            HandlerSpec(handler_id=self.default.handler_id, kind="default"),
            HandlerSpec(handler_id=self.debug.handler_id, kind="debug"),
        ]
        for handler_id in sorted(self._handlers):
            handler = self._handlers[handler_id]
            location = None
            if isinstance(handler, ExecutableHandler):
                location = Path(handler.command[0])
            rows.append(HandlerSpec(handler_id=handler_id, kind="named", location=location))
        return rows

    @classmethod
    def from_directory(
        cls,
        handler_dir: Path,
        *,
        default_handler_id: str = "default",
    ) -> HandlerRegistry:
        """Register every executable file in `handler_dir` under its file name.

        A file named after `default_handler_id` replaces the built-in default
        handler instead of becoming a named handler.
        """

        registry = cls(default=default_handler(default_handler_id))
        if not handler_dir.is_dir():
            logger.warning(
                "Handler directory %s does not exist; only built-ins available.",
                handler_dir,
            )
            return registry

        for path in sorted(handler_dir.iterdir()):
            if path.name.startswith(".") or not path.is_file():
                continue
            if not os.access(path, os.X_OK):
                logger.debug("Skipping non-executable handler file %s", path)
                continue
            handler = ExecutableHandler(path.name, [str(path.resolve())])
            if path.name == default_handler_id:
                registry.default = handler
                continue
            registry.register(path.name, handler)
        return registry
