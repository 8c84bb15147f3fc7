"""Durable identifier allocator backed by the ``id_sequences`` table."""

from __future__ import annotations

from typing import Final, cast

from sqlalchemy import Table, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from .models import IdSequence

MESSAGE_SEQUENCE: Final[str] = "messages"

_sequences = cast(Table, IdSequence.__table__)


async def next_id(session: AsyncSession, name: str = MESSAGE_SEQUENCE) -> int:
    """Increment the named counter and return its new value.

    Runs inside the caller's transaction: the increment commits or rolls back
    together with whatever consumes the id. Under a write transaction the upsert
    is serialised by SQLite, so concurrent callers never observe the same value.
    """
    stmt = (
        sqlite_insert(_sequences)
        .values(name=name, value=1)
        .on_conflict_do_update(
            index_elements=[_sequences.c.name],
            set_={"value": _sequences.c.value + 1},
        )
        .returning(_sequences.c.value)
    )
    result = await session.execute(stmt)
    return int(result.scalar_one())


async def current_value(session: AsyncSession, name: str = MESSAGE_SEQUENCE) -> int:
    """Return the last issued value, or 0 if the counter was never used."""
    result = await session.execute(
        select(_sequences.c.value).where(_sequences.c.name == name)
    )
    value = result.scalar_one_or_none()
    return int(value) if value is not None else 0
