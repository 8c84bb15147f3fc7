"""SQLModel data models for queued messages, scoped context entries and id sequences."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Column, DateTime, Index, Text
from sqlmodel import Field, SQLModel


def _utcnow_naive() -> datetime:
    """Return current UTC time as a naive datetime for SQLite compatibility.

    SQLite stores datetimes without timezone info. Using naive UTC datetimes
    throughout ensures consistent comparisons and avoids 'can't compare
    offset-naive and offset-aware datetimes' errors in SQLAlchemy ORM evaluator.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Message(SQLModel, table=True):
    """A queued message addressed to one agent inside one project.

    ``id`` is allocated from the ``messages`` id sequence rather than by SQLite,
    so values are never reused even after the highest row is deleted.
    """

    __tablename__ = "messages"
    __table_args__ = (
        Index("idx_messages_queue", "project_id", "to_agent", "created_ts", "id"),
    )

    id: int = Field(primary_key=True, sa_column_kwargs={"autoincrement": False})
    project_id: str = Field(sa_column=Column(Text, nullable=False))
    to_agent: str = Field(sa_column=Column(Text, nullable=False))
    from_agent: str = Field(sa_column=Column(Text, nullable=False))
    reference_id: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    content: str = Field(sa_column=Column(Text, nullable=False))
    created_ts: datetime = Field(default_factory=_utcnow_naive, sa_column=Column(DateTime, nullable=False))


class ContextEntry(SQLModel, table=True):
    """One value in the shared key-value context store.

    ``namespace`` is ``"global"`` or ``"project:<project_id>"``; see
    :mod:`mcp_mailbox.addressing`.
    """

    __tablename__ = "context_entries"
    __table_args__ = (
        Index("idx_context_entries_project", "project_id"),
    )

    namespace: str = Field(sa_column=Column(Text, primary_key=True))
    key: str = Field(sa_column=Column(Text, primary_key=True))
    project_id: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    value: str = Field(sa_column=Column(Text, nullable=False))
    updated_ts: datetime = Field(default_factory=_utcnow_naive, sa_column=Column(DateTime, nullable=False))


class IdSequence(SQLModel, table=True):
    """Durable counter backing the identifier allocator."""

    __tablename__ = "id_sequences"

    name: str = Field(primary_key=True, max_length=64)
    value: int = Field(default=0)
