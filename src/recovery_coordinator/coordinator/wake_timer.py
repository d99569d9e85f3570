"""Detached wake timer: sleep, then push one wake event if still current."""

from __future__ import annotations

import argparse
import logging
import sys
import time
from pathlib import Path

from recovery_coordinator.coordinator.envelope import encode_envelope
from recovery_coordinator.coordinator.models import Envelope, format_wake_at
from recovery_coordinator.coordinator.wake import WAKE_REGISTRY_KEY, parse_timer_handle
from recovery_coordinator.storage import KvStore
from recovery_coordinator.storage.common import utc_now

logger = logging.getLogger(__name__)


def fire_wake(
    store: KvStore,
    *,
    token: str,
    queue_prefix: str = "queue/",
    wake_type: str = "wake_RC",
    registry_key: str = WAKE_REGISTRY_KEY,
) -> bool:
    """Push the wake event if the registry still names `token`; return whether it did."""

    raw = store.get(registry_key)
    handle = None if raw is None else parse_timer_handle(raw)
    if raw is None or handle is None or handle.token != token:
        logger.info("Wake timer %s superseded; exiting without a wake event.", token)
        return False

    envelope = Envelope(message_type=wake_type, payload=format_wake_at(utc_now()))
    key = store.push(queue_prefix, encode_envelope(envelope))
    store.delete_if_value(registry_key, raw)
    logger.info("Wake timer %s fired: %s", token, key)
    return True


def main(argv: list[str] | None = None) -> int:
    """Sleep for the requested delay, then fire."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--db-path", required=True)
    parser.add_argument("--delay-seconds", type=int, required=True)
    parser.add_argument("--token", required=True)
    parser.add_argument("--queue-prefix", default="queue/")
    parser.add_argument("--wake-type", default="wake_RC")
    parser.add_argument("--registry-key", default=WAKE_REGISTRY_KEY)
    parser.add_argument("--busy-timeout-ms", type=int, default=5_000)
    args = parser.parse_args(argv)

    if args.delay_seconds > 0:
        time.sleep(args.delay_seconds)

    store = KvStore(Path(args.db_path), sqlite_busy_timeout_ms=args.busy_timeout_ms)
    try:
        fire_wake(
            store,
            token=args.token,
            queue_prefix=args.queue_prefix,
            wake_type=args.wake_type,
            registry_key=args.registry_key,
        )
    finally:
        store.close()
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
