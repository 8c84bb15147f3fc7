"""Context store: scoped key/value entries shared between agents."""

from __future__ import annotations

from typing import cast

from sqlalchemy import Table, delete, func, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from .addressing import ContextScope
from .db import ensure_schema, get_session, storage_operation, write_session
from .errors import NotFoundError
from .models import ContextEntry, _utcnow_naive

_entries = cast(Table, ContextEntry.__table__)


def _describe(scope: ContextScope, key: str) -> str:
    if scope.project_id is None:
        return f"Context key {key!r} not found in global scope"
    return f"Context key {key!r} not found in project {scope.project_id!r}"


@storage_operation
async def set_context(scope: ContextScope, key: str, value: str) -> None:
    """Create or overwrite the entry for ``(scope, key)``."""
    await ensure_schema()
    now = _utcnow_naive()
    stmt = (
        sqlite_insert(_entries)
        .values(
            namespace=scope.namespace,
            key=key,
            project_id=scope.project_id,
            value=value,
            updated_ts=now,
        )
        .on_conflict_do_update(
            index_elements=[_entries.c.namespace, _entries.c.key],
            set_={"value": value, "updated_ts": now},
        )
    )
    async with write_session() as session:
        await session.execute(stmt)
        await session.commit()


@storage_operation
async def get_context_entry(scope: ContextScope, key: str) -> ContextEntry:
    await ensure_schema()
    async with get_session() as session:
        entry = await session.get(ContextEntry, (scope.namespace, key))
    if entry is None:
        raise NotFoundError(_describe(scope, key))
    return entry


async def get_context(scope: ContextScope, key: str) -> str:
    """Return the stored value or raise NotFoundError."""
    entry = await get_context_entry(scope, key)
    return entry.value


@storage_operation
async def delete_context(scope: ContextScope, key: str) -> None:
    await ensure_schema()
    async with write_session() as session:
        result = await session.execute(
            delete(_entries).where(_entries.c.namespace == scope.namespace, _entries.c.key == key)
        )
        if result.rowcount == 0:
            raise NotFoundError(_describe(scope, key))
        await session.commit()


@storage_operation
async def list_context_keys(scope: ContextScope) -> list[str]:
    """Every key set in ``scope``, sorted; values are not loaded."""
    await ensure_schema()
    stmt = select(_entries.c.key).where(_entries.c.namespace == scope.namespace).order_by(_entries.c.key)
    async with get_session() as session:
        result = await session.execute(stmt)
        return list(result.scalars().all())


@storage_operation
async def count_context_entries() -> int:
    await ensure_schema()
    async with get_session() as session:
        total = await session.scalar(select(func.count()).select_from(_entries))
    return int(total or 0)
