# conveyor/core/worker/retry.py
"""
Delayed re-appends of failed tasks.

A retry is a fresh queue entry carrying the same task id and data. Each
scheduled retry is an asyncio task sleeping until its due time; the
scheduler owns them so shutdown can flush, wait for, or drop what is left.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

from conveyor.core.brokers.queue import DurableQueue
from conveyor.core.codec.serde import encode_envelope
from conveyor.core.logging import get_logger
from conveyor.core.models.resilience import PendingRetryPolicy
from conveyor.core.models.tasks import TaskEnvelope
from conveyor.core.types.result import is_err

logger = get_logger('retry')

_APPEND_ATTEMPTS = 3
_APPEND_RETRY_DELAY_S = 1.0


def compute_backoff_seconds(retries: int, unit_ms: int) -> float:
    """Delay before the retry that follows the ``retries``-th failure."""
    return unit_ms * (2 ** max(0, retries)) / 1000.0


def _appended(task: asyncio.Task[Any] | None) -> bool:
    if task is None or not task.done() or task.cancelled() or task.exception() is not None:
        return False
    return bool(task.result())


@dataclass
class _PendingRetry:
    envelope: TaskEnvelope
    delay_s: float
    fire_now: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task[Any] | None = None


class RetryScheduler:
    def __init__(
        self,
        queue: DurableQueue,
        *,
        policy: PendingRetryPolicy = PendingRetryPolicy.FLUSH,
        grace_s: float = 10.0,
    ) -> None:
        self.queue = queue
        self.policy = policy
        self.grace_s = grace_s
        self._pending: dict[asyncio.Task[Any], _PendingRetry] = {}
        self._closed = False

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def pending_task_ids(self) -> list[str]:
        return [p.envelope.task_id for p in self._pending.values()]

    def schedule(self, envelope: TaskEnvelope, delay_s: float) -> bool:
        """Re-append ``envelope`` after ``delay_s``. False once shut down."""
        if self._closed:
            logger.warning(f'Retry for task {envelope.task_id} refused: scheduler is shut down')
            return False
        pending = _PendingRetry(envelope=envelope, delay_s=delay_s)
        task = asyncio.create_task(self._fire(pending), name=f'retry-{envelope.task_id}')
        pending.task = task
        self._pending[task] = pending
        task.add_done_callback(self._on_done)
        logger.info(f'Task {envelope.task_id} will be retried in {delay_s:.1f}s')
        return True

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._pending.pop(task, None)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f'Retry task {task.get_name()!r} failed: {exc}')

    async def _fire(self, pending: _PendingRetry) -> bool:
        try:
            await asyncio.wait_for(pending.fire_now.wait(), timeout=pending.delay_s)
        except asyncio.TimeoutError:
            pass
        return await self._append(pending.envelope)

    async def _append(self, envelope: TaskEnvelope) -> bool:
        body = encode_envelope(envelope)
        for attempt in range(1, _APPEND_ATTEMPTS + 1):
            result = await self.queue.append(envelope.task_id, body)
            if not is_err(result):
                logger.debug(f'Task {envelope.task_id} re-enqueued as entry {result.ok_value}')
                return True
            err = result.err_value
            if not err.retryable or attempt == _APPEND_ATTEMPTS:
                logger.error(
                    f'Retry of task {envelope.task_id} lost after {attempt} append attempt(s): '
                    f'{err.message}'
                )
                return False
            await asyncio.sleep(_APPEND_RETRY_DELAY_S)
        return False

    async def shutdown(self) -> list[str]:
        """
        Settle pending retries according to the policy.

        Returns the ids of tasks whose retry did not happen.
        """
        self._closed = True
        if not self._pending:
            return []
        tasks = list(self._pending)
        pending = list(self._pending.values())

        match self.policy:
            case PendingRetryPolicy.DROP:
                for t in tasks:
                    t.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
                lost = [p.envelope.task_id for p in pending]
            case PendingRetryPolicy.FLUSH | PendingRetryPolicy.WAIT:
                if self.policy is PendingRetryPolicy.FLUSH:
                    for p in pending:
                        p.fire_now.set()
                _done, not_done = await asyncio.wait(tasks, timeout=max(0.0, self.grace_s))
                for t in not_done:
                    t.cancel()
                await asyncio.gather(*not_done, return_exceptions=True)
                lost = [
                    p.envelope.task_id
                    for p in pending
                    if p.task in not_done or not _appended(p.task)
                ]

        if lost:
            logger.warning(
                f'{len(lost)} pending retr{"y" if len(lost) == 1 else "ies"} not re-enqueued '
                f'({self.policy.value}): {", ".join(lost)}'
            )
        return lost
