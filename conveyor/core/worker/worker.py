# conveyor/core/worker/worker.py
from __future__ import annotations

import asyncio
import time
from typing import Any, Optional

from conveyor.core.brokers.events import EventBus
from conveyor.core.brokers.queue import DurableQueue, QueueEntry
from conveyor.core.brokers.result_types import unwrap_or_raise
from conveyor.core.brokers.store import TaskStore
from conveyor.core.codec.serde import decode_envelope
from conveyor.core.handlers.registry import HandlerRegistry
from conveyor.core.logging import get_logger
from conveyor.core.models.resilience import WorkerResilienceConfig
from conveyor.core.models.tasks import StatusEvent, TaskEnvelope
from conveyor.core.types.result import is_err
from conveyor.core.types.status import TaskStatus
from conveyor.core.worker.config import WorkerConfig
from conveyor.core.worker.retry import RetryScheduler, compute_backoff_seconds

logger = get_logger('worker')


class Worker:
    """
    One competing consumer of the task stream.

    Loop: reclaim stale deliveries, else block-read a batch, then for each
    entry:
      - refresh the idle time of the entries still owned; skip the entry if
        a peer claimed it
      - malformed body: ack and discard
      - record already final (an earlier attempt was never acked): ack only
      - mark in_progress, publish, run the handler under a timeout
      - success: mark completed, publish, ack
      - failure: bump retries, mark failed, publish; re-append after
        backoff while retries < max, else abandon; ack

    Errors escaping an entry abort the batch; the loop logs them, cools down
    and continues. Unacknowledged entries are redelivered after
    ``claim_idle_ms``.
    """

    def __init__(
        self,
        *,
        queue: DurableQueue,
        store: TaskStore,
        events: EventBus,
        registry: HandlerRegistry,
        cfg: WorkerConfig,
        retry_scheduler: Optional[RetryScheduler] = None,
    ):
        self.queue = queue
        self.store = store
        self.events = events
        self.registry = registry
        self.cfg = cfg
        self._resilience = self.cfg.resilience_config or WorkerResilienceConfig()
        self.retries = retry_scheduler or RetryScheduler(
            queue,
            policy=self._resilience.pending_retry_policy,
            grace_s=self._resilience.shutdown_grace_ms / 1000.0,
        )
        self._stop = asyncio.Event()
        self._service_tasks: set[asyncio.Task[Any]] = set()
        self._stopped = False

    @property
    def consumer(self) -> str:
        return self.cfg.consumer

    def request_stop(self) -> None:
        """Stop taking new batches; the in-flight entry finishes."""
        self._stop.set()

    def _spawn_background(self, coro: Any, *, name: str) -> asyncio.Task[Any]:
        """Create a tracked background task with automatic cleanup."""
        task = asyncio.create_task(coro, name=name)
        self._service_tasks.add(task)

        def _on_done(t: asyncio.Task[Any]) -> None:
            self._service_tasks.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                logger.error(f'Background task {t.get_name()!r} failed: {exc}')

        task.add_done_callback(_on_done)
        return task

    async def _sleep_with_stop(self, delay_seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=delay_seconds)
        except asyncio.TimeoutError:
            return

    # ----- lifecycle -----

    async def start(self) -> None:
        logger.debug('Starting worker')
        unwrap_or_raise(await self.queue.ensure_group(self.cfg.group))
        logger.info(
            'Worker config: consumer=%s group=%s batch=%s block=%sms max_retries=%s backoff_unit=%sms',
            self.consumer,
            self.cfg.group,
            self._resilience.batch_size,
            self._resilience.block_ms,
            self._resilience.max_retries,
            self._resilience.backoff_unit_ms,
        )
        if self.cfg.retention_hours is not None:
            self._spawn_background(self._retention_loop(), name='retention')

    async def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        self._stop.set()
        if self._service_tasks:
            service_tasks = tuple(self._service_tasks)
            for task in service_tasks:
                task.cancel()
            await asyncio.gather(*service_tasks, return_exceptions=True)
            self._service_tasks.clear()
        await self.retries.shutdown()
        logger.info(f'Worker {self.consumer} stopped')

    # ----- main loop -----

    async def run_forever(self) -> None:
        await self.start()
        logger.info(f'Worker {self.consumer} started')
        cooldown_s = self._resilience.error_cooldown_ms / 1000.0
        try:
            while not self._stop.is_set():
                try:
                    await self._process_batch()
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    logger.error(f'Error processing batch: {exc}. Retrying in {cooldown_s:.1f}s')
                    await self._sleep_with_stop(cooldown_s)
        finally:
            await self.stop()

    async def _read_or_stop(self) -> list[QueueEntry]:
        """Block-read a batch, returning early (empty) when stop is requested."""
        read = asyncio.create_task(
            self.queue.read_group(
                self.cfg.group,
                self.consumer,
                self._resilience.batch_size,
                self._resilience.block_ms,
            )
        )
        stop = asyncio.create_task(self._stop.wait())
        try:
            await asyncio.wait({read, stop}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop.cancel()
            if not read.done():
                # Anything delivered by a cancelled read is reclaimed after claim_idle_ms
                read.cancel()
            await asyncio.gather(stop, read, return_exceptions=True)
        if read.cancelled():
            return []
        return unwrap_or_raise(read.result())

    async def _process_batch(self) -> int:
        """Process one batch; returns how many entries were handled."""
        entries = unwrap_or_raise(
            await self.queue.claim_stale(
                self.cfg.group,
                self.consumer,
                self.cfg.claim_idle_ms,
                self._resilience.batch_size,
            )
        )
        if entries:
            logger.info(f'Reclaimed {len(entries)} stale entr{"y" if len(entries) == 1 else "ies"}')
        else:
            entries = await self._read_or_stop()

        waiting = [e.entry_id for e in entries]
        handled = 0
        for entry in entries:
            if self._stop.is_set():
                break
            # Entries still waiting in this batch must not look idle to peers
            owned = set(
                unwrap_or_raise(await self.queue.touch(self.cfg.group, self.consumer, waiting))
            )
            waiting = [i for i in waiting if i in owned and i != entry.entry_id]
            if entry.entry_id not in owned:
                logger.warning(
                    f'Entry {entry.entry_id} (task {entry.task_id}) was claimed by another '
                    'consumer; skipping'
                )
                continue
            await self._process_entry(entry)
            handled += 1
        return handled

    async def _ack(self, entry: QueueEntry) -> None:
        unwrap_or_raise(await self.queue.ack(self.cfg.group, [entry.entry_id]))

    async def _publish(self, event: StatusEvent) -> None:
        published = await self.events.publish(event)
        if is_err(published):
            logger.warning(
                f'Status event {event.status.value} for {event.task_id} not published: '
                f'{published.err_value.message}'
            )

    async def _process_entry(self, entry: QueueEntry) -> None:
        decoded = decode_envelope(entry.body)
        if is_err(decoded):
            logger.warning(
                f'Discarding malformed entry {entry.entry_id} (task {entry.task_id}): '
                f'{decoded.err_value.reason}'
            )
            await self._ack(entry)
            return
        envelope = decoded.ok_value

        start = unwrap_or_raise(
            await self.store.mark_in_progress(envelope.task_id, self._resilience.max_retries)
        )
        if start is not None and start.final:
            # Redelivery of an entry whose outcome was recorded but never acked
            logger.info(
                f'Task {envelope.task_id} is already {start.status.value}; '
                f'acknowledging entry {entry.entry_id} without running it'
            )
            await self._ack(entry)
            return
        orphan = start is None
        retries_before = start.retries if start is not None else 0
        if orphan:
            logger.warning(
                f'No record for task {envelope.task_id} (entry {entry.entry_id}); '
                'processing without retry bookkeeping'
            )
        await self._publish(StatusEvent(envelope.task_id, TaskStatus.IN_PROGRESS, retries_before))

        handler = self.registry.resolve(envelope.task_type)
        timeout_s = self._resilience.handler_timeout_ms / 1000.0
        t0 = time.perf_counter()
        try:
            await asyncio.wait_for(handler(envelope), timeout=timeout_s)
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError:
            reason = f'Handler timed out after {timeout_s:.1f}s'
        except Exception as exc:
            reason = str(exc) or type(exc).__name__
        else:
            elapsed_ms = int((time.perf_counter() - t0) * 1000)
            await self._on_success(entry, envelope, elapsed_ms, orphan=orphan)
            return
        await self._on_failure(entry, envelope, reason, orphan=orphan, retries_before=retries_before)

    async def _on_success(
        self, entry: QueueEntry, envelope: TaskEnvelope, elapsed_ms: int, *, orphan: bool
    ) -> None:
        retries = unwrap_or_raise(await self.store.mark_completed(envelope.task_id, elapsed_ms))
        if retries is None and not orphan:
            logger.warning(
                f'Record for task {envelope.task_id} changed during processing; '
                'completion not recorded'
            )
            await self._ack(entry)
            return
        logger.info(f'Task {envelope.task_id} completed in {elapsed_ms}ms')
        await self._publish(
            StatusEvent(envelope.task_id, TaskStatus.COMPLETED, retries or 0, elapsed_ms)
        )
        await self._ack(entry)

    async def _on_failure(
        self,
        entry: QueueEntry,
        envelope: TaskEnvelope,
        reason: str,
        *,
        orphan: bool,
        retries_before: int,
    ) -> None:
        logger.warning(f'Task {envelope.task_id} failed: {reason}')
        retries = unwrap_or_raise(await self.store.record_failure(envelope.task_id, reason))

        if retries is None:
            if orphan:
                await self._publish(StatusEvent(envelope.task_id, TaskStatus.FAILED, retries_before))
                logger.warning(f'Orphaned task {envelope.task_id} abandoned after failure')
            else:
                logger.warning(
                    f'Record for task {envelope.task_id} changed during processing; '
                    'failure not counted'
                )
            await self._ack(entry)
            return

        await self._publish(StatusEvent(envelope.task_id, TaskStatus.FAILED, retries))
        max_retries = self._resilience.max_retries
        if retries < max_retries:
            delay_s = compute_backoff_seconds(retries, self._resilience.backoff_unit_ms)
            self.retries.schedule(envelope, delay_s)
        else:
            logger.warning(f'Task {envelope.task_id} abandoned after {retries} failures')
        await self._ack(entry)

    async def _retention_loop(self) -> None:
        assert self.cfg.retention_hours is not None
        interval_s = self._resilience.retention_interval_ms / 1000.0
        while not self._stop.is_set():
            await self._sleep_with_stop(interval_s)
            if self._stop.is_set():
                return
            trimmed = await self.queue.trim(self.cfg.group, self.cfg.retention_hours)
            if is_err(trimmed):
                logger.warning(f'Stream trim failed: {trimmed.err_value.message}')
            elif trimmed.ok_value:
                logger.info(f'Trimmed {trimmed.ok_value} acknowledged stream entries')
