"""PostgresTaskStore and PostgresEventBus against a real database."""

from __future__ import annotations

import asyncio
import json

import pytest

from conveyor.core.brokers.postgres import PostgresBroker
from conveyor.core.models.tasks import StatusEvent
from conveyor.core.types.result import is_ok
from conveyor.core.types.status import TaskStatus
from tests.integration.conftest import new_task_id

pytestmark = [pytest.mark.integration, pytest.mark.asyncio]


async def test_record_lifecycle(broker: PostgresBroker) -> None:
    store = broker.store
    task_id = new_task_id()
    assert is_ok(await store.insert_pending(task_id, 'image_resize', {'width': 10}))

    record = (await store.get(task_id)).ok_value
    assert record is not None
    assert record.status is TaskStatus.PENDING
    assert record.retries == 0
    assert record.payload == {'width': 10}
    assert record.created_at is not None

    start = (await store.mark_in_progress(task_id, 3)).ok_value
    assert start.retries == 0 and not start.final
    assert (await store.record_failure(task_id, 'boom')).ok_value == 1
    assert (await store.mark_in_progress(task_id, 3)).ok_value.retries == 1
    assert (await store.mark_completed(task_id, 42)).ok_value == 1

    record = (await store.get(task_id)).ok_value
    assert record.status is TaskStatus.COMPLETED
    assert record.processing_time_ms == 42
    assert record.failed_reason == 'boom'


async def test_updates_on_missing_record_return_none(broker: PostgresBroker) -> None:
    ghost = new_task_id()
    assert (await broker.store.mark_in_progress(ghost, 3)).ok_value is None
    assert (await broker.store.record_failure(ghost, 'x')).ok_value is None
    assert (await broker.store.get(ghost)).ok_value is None


async def test_final_records_are_never_moved(broker: PostgresBroker) -> None:
    store = broker.store
    done = new_task_id()
    await store.insert_pending(done, 'default', {})
    await store.mark_in_progress(done, 3)
    await store.mark_completed(done, 5)

    start = (await store.mark_in_progress(done, 3)).ok_value
    assert start.final and start.status is TaskStatus.COMPLETED
    assert (await store.record_failure(done, 'late')).ok_value is None
    assert (await store.mark_completed(done, 9)).ok_value is None
    record = (await store.get(done)).ok_value
    assert record.status is TaskStatus.COMPLETED
    assert record.processing_time_ms == 5

    exhausted = new_task_id()
    await store.insert_pending(exhausted, 'default', {})
    for _ in range(3):
        await store.mark_in_progress(exhausted, 3)
        await store.record_failure(exhausted, 'boom')
    start = (await store.mark_in_progress(exhausted, 3)).ok_value
    assert start.final and start.retries == 3
    assert (await store.record_failure(exhausted, 'again')).ok_value is None
    assert (await store.get(exhausted)).ok_value.retries == 3


async def test_outcome_requires_an_open_attempt(broker: PostgresBroker) -> None:
    task_id = new_task_id()
    await broker.store.insert_pending(task_id, 'default', {})
    assert (await broker.store.record_failure(task_id, 'x')).ok_value is None
    assert (await broker.store.mark_completed(task_id, 1)).ok_value is None
    assert (await broker.store.get(task_id)).ok_value.status is TaskStatus.PENDING


async def test_list_recent_newest_first(broker: PostgresBroker) -> None:
    ids = [new_task_id() for _ in range(3)]
    for task_id in ids:
        await broker.store.insert_pending(task_id, 'default', {})
        await asyncio.sleep(0.01)

    records = (await broker.store.list_recent(3)).ok_value
    assert [r.task_id for r in records] == list(reversed(ids))


async def test_ping(broker: PostgresBroker) -> None:
    assert is_ok(await broker.ping())


async def test_published_events_reach_subscribers(broker: PostgresBroker) -> None:
    sub = (await broker.events.subscribe()).ok_value
    try:
        await broker.events.publish(StatusEvent('t1', TaskStatus.COMPLETED, 1, 250))
        payload = await asyncio.wait_for(sub.next_payload(), timeout=3.0)
    finally:
        await sub.close()
    assert json.loads(payload) == {
        'id': 't1',
        'status': 'completed',
        'retries': 1,
        'processingTime': 250,
    }
