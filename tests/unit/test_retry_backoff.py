"""Tests for retry backoff and the RetryScheduler shutdown policies."""

from __future__ import annotations

import asyncio

import pytest

from conveyor.core.codec.serde import decode_envelope
from conveyor.core.models.resilience import PendingRetryPolicy
from conveyor.core.models.tasks import TaskEnvelope
from conveyor.core.types.result import is_ok
from conveyor.core.worker.retry import RetryScheduler, compute_backoff_seconds
from tests.unit.fakes import InMemoryQueue


def _envelope(task_id: str = 't1') -> TaskEnvelope:
    return TaskEnvelope(task_id=task_id, task_type='default', payload={'k': 'v'})


@pytest.mark.unit
class TestComputeBackoff:
    @pytest.mark.parametrize(
        'retries,expected',
        [(1, 2.0), (2, 4.0), (3, 8.0), (0, 1.0)],
    )
    def test_doubles_per_failure(self, retries: int, expected: float) -> None:
        assert compute_backoff_seconds(retries, 1_000) == expected

    def test_negative_retries_clamp(self) -> None:
        assert compute_backoff_seconds(-3, 500) == 0.5

    def test_unit_scales(self) -> None:
        assert compute_backoff_seconds(2, 10) == pytest.approx(0.04)


@pytest.mark.unit
class TestRetryScheduler:
    @pytest.mark.asyncio
    async def test_reappends_after_delay(self) -> None:
        queue = InMemoryQueue()
        scheduler = RetryScheduler(queue)
        assert scheduler.schedule(_envelope(), 0.01) is True
        assert scheduler.pending_task_ids() == ['t1']

        await asyncio.sleep(0.05)
        assert scheduler.pending_count == 0
        [body] = queue.appended_bodies()
        decoded = decode_envelope(body)
        assert is_ok(decoded)
        assert decoded.ok_value == _envelope()

    @pytest.mark.asyncio
    async def test_flush_fires_immediately(self) -> None:
        queue = InMemoryQueue()
        scheduler = RetryScheduler(queue, policy=PendingRetryPolicy.FLUSH, grace_s=1.0)
        scheduler.schedule(_envelope('a'), 3600)
        scheduler.schedule(_envelope('b'), 3600)

        lost = await scheduler.shutdown()
        assert lost == []
        assert queue.append_calls == 2

    @pytest.mark.asyncio
    async def test_drop_cancels(self) -> None:
        queue = InMemoryQueue()
        scheduler = RetryScheduler(queue, policy=PendingRetryPolicy.DROP)
        scheduler.schedule(_envelope('a'), 3600)

        lost = await scheduler.shutdown()
        assert lost == ['a']
        assert queue.append_calls == 0

    @pytest.mark.asyncio
    async def test_wait_honours_grace(self) -> None:
        queue = InMemoryQueue()
        scheduler = RetryScheduler(queue, policy=PendingRetryPolicy.WAIT, grace_s=0.2)
        scheduler.schedule(_envelope('soon'), 0.01)
        scheduler.schedule(_envelope('late'), 3600)

        lost = await scheduler.shutdown()
        assert lost == ['late']
        assert queue.append_calls == 1

    @pytest.mark.asyncio
    async def test_refuses_after_shutdown(self) -> None:
        scheduler = RetryScheduler(InMemoryQueue())
        await scheduler.shutdown()
        assert scheduler.schedule(_envelope(), 0) is False

    @pytest.mark.asyncio
    async def test_append_failure_is_reported_lost(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr('conveyor.core.worker.retry._APPEND_RETRY_DELAY_S', 0.0)
        queue = InMemoryQueue()
        queue.fail.add('append')
        scheduler = RetryScheduler(queue, policy=PendingRetryPolicy.FLUSH, grace_s=1.0)
        scheduler.schedule(_envelope('a'), 3600)

        lost = await scheduler.shutdown()
        assert lost == ['a']
        assert queue.append_calls == 3

    @pytest.mark.asyncio
    async def test_transient_append_failure_is_retried(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr('conveyor.core.worker.retry._APPEND_RETRY_DELAY_S', 0.01)
        queue = InMemoryQueue()
        queue.fail.add('append')
        scheduler = RetryScheduler(queue)
        scheduler.schedule(_envelope('a'), 0)

        await asyncio.sleep(0.005)
        queue.fail.clear()
        await asyncio.sleep(0.05)
        assert len(queue.entries) == 1
        assert queue.append_calls == 2
