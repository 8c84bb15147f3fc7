"""Concurrent consumers and producers against one SQLite file.

Each message must reach exactly one consumer, and concurrent senders must
never share an id.
"""

import asyncio

import pytest

from mcp_mailbox.addressing import resolve_queue
from mcp_mailbox.db import ensure_schema
from mcp_mailbox.messages import peek_messages, receive_messages, send_message

QUEUE = resolve_queue("proj", "worker")


@pytest.mark.asyncio
async def test_concurrent_receivers_never_share_a_message(isolated_env):
    await ensure_schema()
    sent = [await send_message(QUEUE, f"job-{i}") for i in range(40)]

    async def consume() -> list[int]:
        taken: list[int] = []
        while True:
            batch = await receive_messages(QUEUE, 3)
            if not batch:
                return taken
            taken.extend(m.id for m in batch)

    results = await asyncio.gather(*(consume() for _ in range(6)))
    delivered = [message_id for chunk in results for message_id in chunk]
    assert sorted(delivered) == sorted(sent)
    assert len(delivered) == len(set(delivered))
    assert await peek_messages(QUEUE) == []


@pytest.mark.asyncio
async def test_each_consumer_sees_fifo_slices(isolated_env):
    sent = [await send_message(QUEUE, str(i)) for i in range(12)]
    batches = await asyncio.gather(*(receive_messages(QUEUE, 4) for _ in range(3)))
    for batch in batches:
        ids = [m.id for m in batch]
        assert ids == sorted(ids)
    assert sorted(m.id for batch in batches for m in batch) == sent


@pytest.mark.asyncio
async def test_concurrent_senders_get_unique_ids(isolated_env):
    await ensure_schema()
    queues = [resolve_queue("proj", f"agent-{i}") for i in range(4)]
    ids = await asyncio.gather(
        *(send_message(queues[i % len(queues)], f"msg-{i}") for i in range(50))
    )
    assert len(set(ids)) == 50
    total = 0
    for queue in queues:
        total += len(await receive_messages(queue))
    assert total == 50


@pytest.mark.asyncio
async def test_send_and_receive_interleaved(isolated_env):
    await ensure_schema()

    async def produce() -> list[int]:
        return [await send_message(QUEUE, f"p{i}") for i in range(20)]

    async def drain() -> list[int]:
        seen: list[int] = []
        for _ in range(40):
            seen.extend(m.id for m in await receive_messages(QUEUE, 2))
            await asyncio.sleep(0)
        return seen

    produced, drained = await asyncio.gather(produce(), drain())
    leftover = [m.id for m in await receive_messages(QUEUE)]
    assert sorted(drained + leftover) == sorted(produced)
    assert len(set(drained)) == len(drained)
