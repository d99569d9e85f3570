"""SQLModel ORM tables for the key-value store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, LargeBinary
from sqlmodel import Field, SQLModel

REVISION_ROW_ID = 1


class KvEntry(SQLModel, table=True):
    __tablename__ = "kv_entries"  # type: ignore[bad-override]

    key: str = Field(primary_key=True)
    value: bytes = Field(sa_column=Column(LargeBinary, nullable=False))
    modify_revision: int = Field(index=True)
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class KvRevision(SQLModel, table=True):
    __tablename__ = "kv_revision"  # type: ignore[bad-override]

    id: int = Field(default=REVISION_ROW_ID, primary_key=True)
    revision: int = 0
