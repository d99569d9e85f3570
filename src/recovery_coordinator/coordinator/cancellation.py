"""Cooperative cancellation driven by process shutdown signals."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Iterator
from contextlib import contextmanager

logger = logging.getLogger(__name__)

EXIT_CANCELLED = 1


class CancellationToken:
    """Set once on shutdown; checked by the dispatch loop between events."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.signal_name: str | None = None
        self.signal_number: int | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, *, signal_name: str | None = None, signal_number: int | None = None) -> None:
        if self._event.is_set():
            return
        self.signal_name = signal_name
        self.signal_number = signal_number
        self._event.set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to `timeout` seconds; return True if cancelled meanwhile."""

        return self._event.wait(timeout=timeout)

    @property
    def exit_code(self) -> int:
        """Conventional shell status for a signal-terminated run."""

        if self.signal_number is not None:
            return 128 + self.signal_number
        return EXIT_CANCELLED


@contextmanager
def signal_handlers(token: CancellationToken) -> Iterator[CancellationToken]:
    """Route SIGINT/SIGTERM into `token` for the duration of the block."""

    if threading.current_thread() is not threading.main_thread():
        # Signal handlers can only be installed in main thread.
        yield token
        return

    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)

    def _handler(signum: int, _: object | None) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        logger.warning("Received %s; stopping after the current event.", name)
        token.cancel(signal_name=name, signal_number=signum)

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)
    try:
        yield token
    finally:
        signal.signal(signal.SIGINT, original_sigint)
        signal.signal(signal.SIGTERM, original_sigterm)
