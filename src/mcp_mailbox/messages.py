"""Message store: enqueue, consume, peek and delete queued messages.

Queues are keyed by ``(project_id, to_agent)`` and drained oldest first, ordered by
``(created_ts, id)``. ``receive_messages`` selects and deletes in one statement
inside a write transaction, so a message is handed to exactly one caller.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, cast

from sqlalchemy import Table, delete, func, select

from .addressing import QueueAddress
from .db import ensure_schema, get_session, storage_operation, write_session
from .errors import InvalidArgumentError, NotFoundError
from .models import Message, _utcnow_naive
from .requests import ANONYMOUS_AGENT, SQLITE_MAX_INTEGER
from .sequence import next_id

_messages = cast(Table, Message.__table__)


@dataclass(slots=True, frozen=True)
class QueueDepth:
    project_id: str
    agent_id: str
    pending: int


def _check_limit(limit: int | None) -> int | None:
    """Guard for direct callers that skip :func:`~mcp_mailbox.requests.parse_limit`.

    Returns the limit to bind, with anything SQLite cannot hold meaning no limit.
    """
    if limit is not None and limit < 0:
        raise InvalidArgumentError(f"limit must be >= 0 (got {limit})", field="limit")
    if limit is not None and limit > SQLITE_MAX_INTEGER:
        return None
    return limit


def _queue_filter(queue: QueueAddress) -> tuple[Any, ...]:
    return (
        _messages.c.project_id == queue.project_id,
        _messages.c.to_agent == queue.agent_id,
    )


def _queue_order() -> tuple[Any, ...]:
    return (_messages.c.created_ts.asc(), _messages.c.id.asc())


def _sort_key(message: Message) -> tuple[Any, int]:
    return (message.created_ts, message.id)


@storage_operation
async def send_message(
    queue: QueueAddress,
    content: str,
    *,
    from_agent: str = ANONYMOUS_AGENT,
    reference_id: str | None = None,
) -> int:
    """Append a message to ``queue`` and return its id.

    ``reference_id`` is stored as given; it is not checked against existing ids.
    """
    await ensure_schema()
    async with write_session() as session:
        message_id = await next_id(session)
        # Keep created_ts monotonic with id inside the queue even if the clock steps back.
        newest = await session.scalar(select(func.max(_messages.c.created_ts)).where(*_queue_filter(queue)))
        created_ts = _utcnow_naive()
        if newest is not None and newest > created_ts:
            created_ts = newest
        session.add(
            Message(
                id=message_id,
                project_id=queue.project_id,
                to_agent=queue.agent_id,
                from_agent=from_agent,
                reference_id=reference_id,
                content=content,
                created_ts=created_ts,
            )
        )
        await session.commit()
    return message_id


@storage_operation
async def receive_messages(queue: QueueAddress, limit: int | None = None) -> list[Message]:
    """Remove and return up to ``limit`` messages from the front of ``queue``.

    The selection and the delete are a single ``DELETE ... RETURNING`` statement,
    so the whole batch is consumed atomically or not at all.
    """
    limit = _check_limit(limit)
    if limit == 0:
        return []
    await ensure_schema()
    head = select(_messages.c.id).where(*_queue_filter(queue)).order_by(*_queue_order())
    if limit is not None:
        head = head.limit(limit)
    stmt = delete(_messages).where(_messages.c.id.in_(head)).returning(*_messages.c)
    async with write_session() as session:
        result = await session.execute(stmt)
        rows = result.mappings().all()
        await session.commit()
    consumed = [Message(**dict(row)) for row in rows]
    # RETURNING does not promise any row order.
    consumed.sort(key=_sort_key)
    return consumed


@storage_operation
async def peek_messages(queue: QueueAddress, limit: int | None = None) -> list[Message]:
    """Return up to ``limit`` messages from the front of ``queue`` without removing them."""
    limit = _check_limit(limit)
    if limit == 0:
        return []
    await ensure_schema()
    stmt = select(Message).where(*_queue_filter(queue)).order_by(*_queue_order())
    if limit is not None:
        stmt = stmt.limit(limit)
    async with get_session() as session:
        result = await session.execute(stmt)
        return list(result.scalars().all())


@storage_operation
async def delete_message(message_id: int) -> None:
    """Delete one message by id from whichever queue holds it.

    Raises NotFoundError if the id does not exist, including when it was
    already consumed or deleted.
    """
    if not 0 < message_id <= SQLITE_MAX_INTEGER:
        raise NotFoundError(f"Message {message_id} not found")
    await ensure_schema()
    async with write_session() as session:
        result = await session.execute(delete(_messages).where(_messages.c.id == message_id))
        if result.rowcount == 0:
            raise NotFoundError(f"Message {message_id} not found")
        await session.commit()


@storage_operation
async def queue_depths(project_id: str | None = None) -> list[QueueDepth]:
    """Pending message counts for every non-empty queue, by project then agent."""
    await ensure_schema()
    stmt = (
        select(_messages.c.project_id, _messages.c.to_agent, func.count().label("pending"))
        .group_by(_messages.c.project_id, _messages.c.to_agent)
        .order_by(_messages.c.project_id, _messages.c.to_agent)
    )
    if project_id is not None:
        stmt = stmt.where(_messages.c.project_id == project_id)
    async with get_session() as session:
        rows = (await session.execute(stmt)).all()
    return [QueueDepth(project_id=row[0], agent_id=row[1], pending=int(row[2])) for row in rows]
