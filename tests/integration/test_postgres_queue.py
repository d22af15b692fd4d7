"""PostgresStreamQueue against a real database."""

from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import text

from conveyor.core.brokers.postgres import PostgresBroker
from conveyor.core.brokers.result_types import BrokerErrorCode
from conveyor.core.types.result import is_err, is_ok
from tests.integration.conftest import new_task_id

pytestmark = [pytest.mark.integration, pytest.mark.asyncio]

GROUP = 'workers'


async def _append(broker: PostgresBroker, n: int) -> list[int]:
    seqs = []
    for i in range(n):
        result = await broker.queue.append(new_task_id(), f'{{"n": {i}}}')
        assert is_ok(result)
        seqs.append(result.ok_value)
    return seqs


async def test_append_assigns_increasing_ids(broker: PostgresBroker) -> None:
    seqs = await _append(broker, 3)
    assert seqs == sorted(seqs)
    assert len(set(seqs)) == 3


async def test_group_reads_from_start_and_delivers_once(broker: PostgresBroker) -> None:
    seqs = await _append(broker, 5)
    assert is_ok(await broker.queue.ensure_group(GROUP))
    # Creating twice is harmless
    assert is_ok(await broker.queue.ensure_group(GROUP))

    first = await broker.queue.read_group(GROUP, 'c1', 3, 10)
    second = await broker.queue.read_group(GROUP, 'c2', 10, 10)
    third = await broker.queue.read_group(GROUP, 'c1', 10, 10)

    assert [e.entry_id for e in first.ok_value] == seqs[:3]
    assert [e.entry_id for e in second.ok_value] == seqs[3:]
    assert third.ok_value == []


async def test_read_from_unknown_group_is_an_error(broker: PostgresBroker) -> None:
    result = await broker.queue.read_group('nobody', 'c1', 1, 10)
    assert is_err(result)
    assert result.err_value.code is BrokerErrorCode.READ_FAILED
    assert result.err_value.retryable is False


async def test_blocked_read_wakes_on_append(broker: PostgresBroker) -> None:
    await broker.queue.ensure_group(GROUP)
    reader = asyncio.create_task(broker.queue.read_group(GROUP, 'c1', 1, 5_000))
    await asyncio.sleep(0.2)
    [seq] = await _append(broker, 1)

    result = await asyncio.wait_for(reader, timeout=3.0)
    assert [e.entry_id for e in result.ok_value] == [seq]


async def test_depth_counts_undelivered_and_pending(broker: PostgresBroker) -> None:
    await broker.queue.ensure_group(GROUP)
    await _append(broker, 4)
    assert (await broker.queue.depth(GROUP)).ok_value == 4

    batch = (await broker.queue.read_group(GROUP, 'c1', 2, 10)).ok_value
    assert (await broker.queue.depth(GROUP)).ok_value == 4

    acked = await broker.queue.ack(GROUP, [batch[0].entry_id])
    assert acked.ok_value == 1
    assert (await broker.queue.depth(GROUP)).ok_value == 3

    # Acking again is a no-op
    assert (await broker.queue.ack(GROUP, [batch[0].entry_id])).ok_value == 0


async def test_claim_stale_moves_ownership(broker: PostgresBroker) -> None:
    await broker.queue.ensure_group(GROUP)
    [seq] = await _append(broker, 1)
    await broker.queue.read_group(GROUP, 'dead', 1, 10)

    assert (await broker.queue.claim_stale(GROUP, 'alive', 60_000, 10)).ok_value == []

    await asyncio.sleep(1.1)
    claimed = (await broker.queue.claim_stale(GROUP, 'alive', 1_000, 10)).ok_value
    assert [e.entry_id for e in claimed] == [seq]
    assert claimed[0].delivery_count == 2

    # Freshly claimed entries are not stale any more
    assert (await broker.queue.claim_stale(GROUP, 'other', 1_000, 10)).ok_value == []


async def test_touch_keeps_owned_entries_fresh(broker: PostgresBroker) -> None:
    await broker.queue.ensure_group(GROUP)
    seqs = await _append(broker, 2)
    await broker.queue.read_group(GROUP, 'slow', 2, 10)

    await asyncio.sleep(1.1)
    assert (await broker.queue.touch(GROUP, 'slow', seqs)).ok_value == seqs
    assert (await broker.queue.claim_stale(GROUP, 'peer', 1_000, 10)).ok_value == []

    # Only the owner refreshes; a claimed entry drops out of the owner's touch
    await asyncio.sleep(1.1)
    await broker.queue.touch(GROUP, 'slow', seqs[1:])
    claimed = (await broker.queue.claim_stale(GROUP, 'peer', 1_000, 10)).ok_value
    assert [e.entry_id for e in claimed] == seqs[:1]
    assert (await broker.queue.touch(GROUP, 'slow', seqs)).ok_value == seqs[1:]
    assert (await broker.queue.touch(GROUP, 'slow', [])).ok_value == []


async def test_trim_removes_only_old_acknowledged_entries(broker: PostgresBroker) -> None:
    await broker.queue.ensure_group(GROUP)
    seqs = await _append(broker, 3)
    batch = (await broker.queue.read_group(GROUP, 'c1', 2, 10)).ok_value
    await broker.queue.ack(GROUP, [batch[0].entry_id])

    async with broker.session_factory() as session:
        await session.execute(
            text("""
            UPDATE conveyor_stream_entries
            SET appended_at = NOW() - INTERVAL '48 hours'
            WHERE stream = :stream
            """),
            {'stream': broker.queue.stream},
        )
        await session.commit()

    trimmed = await broker.queue.trim(GROUP, 24)
    # seqs[0]: acked; seqs[1]: still pending; seqs[2]: never delivered
    assert trimmed.ok_value == 1
    remaining = (await broker.queue.read_group(GROUP, 'c1', 10, 10)).ok_value
    assert [e.entry_id for e in remaining] == [seqs[2]]
