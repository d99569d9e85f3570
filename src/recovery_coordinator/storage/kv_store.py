"""Durable ordered key-value store backed by SQLModel + SQLite."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, col, select

from recovery_coordinator.storage.alembic_runner import upgrade_head
from recovery_coordinator.storage.common import build_sqlite_engine, utc_now
from recovery_coordinator.storage.sqlmodel_models import REVISION_ROW_ID, KvEntry, KvRevision


class KvStoreError(RuntimeError):
    """Store unreachable or a write could not be applied."""


@dataclass(frozen=True, slots=True)
class KvEntryView:
    """One key with its raw value."""

    key: str
    value: bytes
    modify_revision: int


class KvStore:
    """Key-value facade: get/put/delete, ordered prefix listing and conditional writes.

    Every mutation bumps a store-wide revision counter and stamps it on the
    written key, so watchers can detect changes under a prefix by comparing
    `prefix_revision` values.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        try:
            upgrade_head(self.engine)
        except SQLAlchemyError as error:
            raise KvStoreError(f"Schema migration failed: {error}") from error

    def get(self, key: str) -> bytes | None:
        with self._session() as session:
            row = session.exec(select(KvEntry).where(KvEntry.key == key)).one_or_none()
            return None if row is None else row.value

    def put(self, key: str, value: bytes) -> None:
        """Create or overwrite `key`."""

        with self._session() as session:
            revision = self._bump_revision(session)
            statement = sqlite_insert(KvEntry).values(
                key=key,
                value=value,
                modify_revision=revision,
                updated_at=utc_now(),
            )
            session.exec(  # type: ignore[call-overload]
                statement.on_conflict_do_update(
                    index_elements=["key"],
                    set_={
                        "value": statement.excluded.value,
                        "modify_revision": statement.excluded.modify_revision,
                        "updated_at": statement.excluded.updated_at,
                    },
                ),
            )
            session.commit()

    def delete(self, key: str) -> bool:
        """Delete `key`; returns False when it was already absent."""

        with self._session() as session:
            result = session.exec(  # type: ignore[call-overload]
                sa_delete(KvEntry).where(col(KvEntry.key) == key),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._bump_revision(session)
            session.commit()
            return True

    def list_prefix(self, prefix: str) -> list[KvEntryView]:
        """Return all entries under `prefix` ordered by key."""

        with self._session() as session:
            rows = session.exec(
                _under_prefix(select(KvEntry), prefix).order_by(col(KvEntry.key).asc()),
            ).all()
            return [
                KvEntryView(key=row.key, value=row.value, modify_revision=row.modify_revision)
                for row in rows
            ]

    def push(self, prefix: str, value: bytes) -> str:
        """Store `value` under a fresh key below `prefix` that sorts after every earlier push.

        The key is the write time followed by the store revision. Both are taken
        after the revision bump, which holds the SQLite write lock, so concurrent
        pushes get strictly increasing keys even within one microsecond.
        """

        with self._session() as session:
            revision = self._bump_revision(session)
            written_at = utc_now()
            key = f"{prefix}{written_at:%Y%m%dT%H%M%S%f}-{revision:012d}"
            session.add(
                KvEntry(key=key, value=value, modify_revision=revision, updated_at=written_at),
            )
            try:
                session.commit()
            except IntegrityError as error:
                session.rollback()
                raise KvStoreError(f"Generated key already exists: {key}") from error
            return key

    def put_if_absent(self, key: str, value: bytes) -> bool:
        with self._session() as session:
            revision = self._bump_revision(session)
            session.add(
                KvEntry(key=key, value=value, modify_revision=revision, updated_at=utc_now()),
            )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return False
            return True

    def compare_and_swap(self, key: str, expected: bytes, value: bytes) -> bool:
        """Overwrite `key` only if it still holds `expected`."""

        with self._session() as session:
            revision = self._bump_revision(session)
            result = session.exec(  # type: ignore[call-overload]
                sa_update(KvEntry)
                .where(col(KvEntry.key) == key, col(KvEntry.value) == expected)
                .values(value=value, modify_revision=revision, updated_at=utc_now()),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def delete_if_value(self, key: str, expected: bytes) -> bool:
        """Delete `key` only if it still holds `expected`."""

        with self._session() as session:
            result = session.exec(  # type: ignore[call-overload]
                sa_delete(KvEntry).where(
                    col(KvEntry.key) == key,
                    col(KvEntry.value) == expected,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._bump_revision(session)
            session.commit()
            return True

    def revision(self) -> int:
        with self._session() as session:
            row = session.exec(
                select(KvRevision).where(KvRevision.id == REVISION_ROW_ID),
            ).one_or_none()
            return 0 if row is None else row.revision

    def prefix_revision(self, prefix: str) -> int:
        """Highest revision stamped on any key currently under `prefix` (0 if empty)."""

        with self._session() as session:
            value = session.exec(
                _under_prefix(select(func.max(KvEntry.modify_revision)), prefix),
            ).one()
            return int(value or 0)

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with Session(self.engine) as session:
                yield session
        except SQLAlchemyError as error:
            raise KvStoreError(f"KV store operation failed: {error}") from error

    @staticmethod
    def _bump_revision(session: Session) -> int:
        session.exec(  # type: ignore[call-overload]
            sa_update(KvRevision)
            .where(col(KvRevision.id) == REVISION_ROW_ID)
            .values(revision=col(KvRevision.revision) + 1),
        )
        return session.exec(
            select(KvRevision.revision).where(KvRevision.id == REVISION_ROW_ID),
        ).one()


def _under_prefix(statement, prefix: str):
    if not prefix:
        return statement
    upper_bound = prefix[:-1] + chr(ord(prefix[-1]) + 1)
    return statement.where(col(KvEntry.key) >= prefix, col(KvEntry.key) < upper_bound)
