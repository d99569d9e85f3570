"""Leader lock that keeps overlapping invocations from dispatching concurrently."""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime, timedelta

from recovery_coordinator.storage import KvStore
from recovery_coordinator.storage.common import utc_now

logger = logging.getLogger(__name__)

LOCK_KEY = "coordinator/lock"


class InvocationLock:
    """Lease stored in one KV key as ``{"owner", "expires_at"}``.

    An expired lease is taken over with compare-and-swap, so a crashed holder
    blocks other invocations for at most `ttl_seconds`.
    """

    def __init__(
        self,
        *,
        store: KvStore,
        owner: str,
        ttl_seconds: int = 300,
        key: str = LOCK_KEY,
    ) -> None:
        self.store = store
        self.owner = owner
        self.ttl_seconds = ttl_seconds
        self.key = key
        self._held: bytes | None = None

    def acquire(self, *, now: datetime | None = None) -> bool:
        now = now or utc_now()
        lease = self._lease(now)
        if self.store.put_if_absent(self.key, lease):
            self._held = lease
            return True

        current = self.store.get(self.key)
        if current is None:
            if self.store.put_if_absent(self.key, lease):
                self._held = lease
                return True
            return False

        holder, expires_at = _parse_lease(current)
        if expires_at is not None and expires_at > now:
            logger.info("Invocation lock held by %s until %s", holder, expires_at.isoformat())
            return False
        if self.store.compare_and_swap(self.key, current, lease):
            logger.warning("Took over expired invocation lock from %s", holder)
            self._held = lease
            return True
        return False

    def refresh(self, *, now: datetime | None = None) -> bool:
        """Extend the lease; False means it was lost to another owner."""

        if self._held is None:
            return False
        lease = self._lease(now or utc_now())
        if self.store.compare_and_swap(self.key, self._held, lease):
            self._held = lease
            return True
        logger.warning("Invocation lock lost by %s", self.owner)
        self._held = None
        return False

    def release(self) -> None:
        if self._held is None:
            return
        held, self._held = self._held, None
        if not self.store.delete_if_value(self.key, held):
            logger.warning("Invocation lock of %s was already taken over", self.owner)

    def _lease(self, now: datetime) -> bytes:
        return json.dumps(
            {
                "owner": self.owner,
                "expires_at": (now + timedelta(seconds=self.ttl_seconds)).isoformat(),
            },
            separators=(",", ":"),
        ).encode("utf-8")


_MALFORMED_LEASE_ERRORS = (
    UnicodeDecodeError,
    json.JSONDecodeError,
    AttributeError,
    KeyError,
    TypeError,
    ValueError,
)


def _parse_lease(raw: bytes) -> tuple[str, datetime | None]:
    try:
        payload = json.loads(raw.decode("utf-8"))
        owner = str(payload.get("owner", "?"))
        expires_at = datetime.fromisoformat(payload["expires_at"])
    except _MALFORMED_LEASE_ERRORS:
        return "?", None
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=UTC)
    return owner, expires_at
