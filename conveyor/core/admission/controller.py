# conveyor/core/admission/controller.py
"""
Admission gate in front of the durable queue.

Checks run in a fixed order and stop at the first rejection:

  1. per-origin request budget            -> RATE_LIMITED
  2. body validation                      -> VALIDATION
  3. circuit breaker                      -> BREAKER_OPEN
  4. per-origin submission budget         -> RATE_LIMITED
  5. queue depth against capacity         -> QUEUE_FULL
  6. append, record insert, publish       -> DEPENDENCY_UNAVAILABLE on failure

The append happens before the record transaction. A crash in between leaves
a queue entry without a record, which the worker tolerates.
"""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from typing import Any, Callable, Optional

from conveyor.core.admission.breaker import CircuitBreaker
from conveyor.core.admission.ratelimit import SlidingWindowRateLimiter
from conveyor.core.admission.result_types import (
    AdmissionErrorKind,
    AdmissionRejection,
    AdmissionResult,
    HealthReport,
    SubmitAccepted,
)
from conveyor.core.brokers.events import EventBus
from conveyor.core.brokers.queue import DurableQueue
from conveyor.core.brokers.result_types import BrokerOperationError
from conveyor.core.brokers.store import TaskStore
from conveyor.core.codec.serde import SerializationError, dumps_json, encode_envelope
from conveyor.core.defaults import DEFAULT_LIST_LIMIT
from conveyor.core.logging import get_logger
from conveyor.core.models.tasks import StatusEvent, TaskEnvelope
from conveyor.core.types.result import Err, Ok, is_err
from conveyor.core.types.status import TASK_TYPE_VALUES, TaskStatus, TaskType

logger = get_logger('admission')


def _reject(kind: AdmissionErrorKind, message: str) -> Err[AdmissionRejection]:
    return Err(AdmissionRejection(kind=kind, message=message))


def validate_submission(body: Any) -> AdmissionResult[tuple[TaskType, dict[str, Any]]]:
    """Check a submission body; returns the task type and the payload to store."""
    if not isinstance(body, Mapping):
        return _reject(AdmissionErrorKind.VALIDATION, 'Request body must be a JSON object')
    raw_type = body.get('type')
    if raw_type is None:
        return _reject(AdmissionErrorKind.VALIDATION, 'Missing required field: type')
    task_type = TaskType.parse(raw_type)
    if task_type is None:
        allowed = ', '.join(sorted(TASK_TYPE_VALUES))
        return _reject(
            AdmissionErrorKind.VALIDATION,
            f'Invalid task type {raw_type!r}; expected one of: {allowed}',
        )
    payload = body.get('payload')
    if payload is None:
        payload = {}
    if not isinstance(payload, Mapping):
        return _reject(AdmissionErrorKind.VALIDATION, 'payload must be a JSON object')
    try:
        dumps_json(payload)
    except SerializationError as exc:
        return _reject(AdmissionErrorKind.VALIDATION, f'payload is not serializable: {exc}')
    return Ok((task_type, dict(payload)))


class AdmissionController:
    """
    Transport-agnostic entry point for submissions, listings and health.

    Breaker and limiters are owned instances, shared by every call made
    through this controller.
    """

    def __init__(
        self,
        *,
        queue: DurableQueue,
        store: TaskStore,
        events: EventBus,
        breaker: CircuitBreaker,
        request_limiter: SlidingWindowRateLimiter,
        submit_limiter: SlidingWindowRateLimiter,
        group: str,
        capacity: int,
        list_limit: int = DEFAULT_LIST_LIMIT,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ) -> None:
        self.queue = queue
        self.store = store
        self.events = events
        self.breaker = breaker
        self.request_limiter = request_limiter
        self.submit_limiter = submit_limiter
        self.group = group
        self.capacity = capacity
        self.list_limit = list_limit
        self._new_id = id_factory

    def _dependency_failure(self, error: BrokerOperationError) -> Err[AdmissionRejection]:
        self.breaker.record_failure()
        logger.error(f'Admission dependency failure [{error.code.value}]: {error.message}')
        return _reject(
            AdmissionErrorKind.DEPENDENCY_UNAVAILABLE,
            'Task submission failed: a backing service is unavailable',
        )

    async def submit(self, body: Any, origin: str) -> AdmissionResult[SubmitAccepted]:
        if not self.request_limiter.allow(origin):
            logger.info(f'Request budget exhausted for {origin}')
            return _reject(AdmissionErrorKind.RATE_LIMITED, 'Too many requests')

        validated = validate_submission(body)
        if is_err(validated):
            logger.info(f'Rejected submission from {origin}: {validated.err_value.message}')
            return validated
        task_type, payload = validated.ok_value

        if not self.breaker.allow():
            logger.warning('Rejected submission: circuit breaker is open')
            return _reject(
                AdmissionErrorKind.BREAKER_OPEN,
                'Service temporarily unavailable, please retry later',
            )

        if not self.submit_limiter.allow(origin):
            logger.info(f'Submission budget exhausted for {origin}')
            return _reject(AdmissionErrorKind.RATE_LIMITED, 'Too many task submissions')

        depth = await self.queue.depth(self.group)
        if is_err(depth):
            return self._dependency_failure(depth.err_value)
        if depth.ok_value >= self.capacity:
            logger.warning(f'Rejected submission: queue depth {depth.ok_value} >= {self.capacity}')
            return _reject(AdmissionErrorKind.QUEUE_FULL, 'Queue is full, please retry later')

        task_id = self._new_id()
        envelope = TaskEnvelope(task_id=task_id, task_type=task_type.value, payload=payload)

        appended = await self.queue.append(task_id, encode_envelope(envelope))
        if is_err(appended):
            return self._dependency_failure(appended.err_value)

        inserted = await self.store.insert_pending(task_id, task_type.value, payload)
        if is_err(inserted):
            logger.error(f'Task {task_id} was enqueued as entry {appended.ok_value} but has no record')
            return self._dependency_failure(inserted.err_value)

        self.breaker.record_success()

        published = await self.events.publish(StatusEvent(task_id, TaskStatus.PENDING))
        if is_err(published):
            logger.warning(f'Pending event not published for {task_id}: {published.err_value.message}')

        logger.info(f'Accepted task {task_id} ({task_type.value}) from {origin}')
        return Ok(SubmitAccepted(task_id=task_id))

    async def list_tasks(
        self, origin: str, limit: Optional[int] = None
    ) -> AdmissionResult[list[dict[str, Any]]]:
        """Most recent records first, capped at ``list_limit``."""
        if not self.request_limiter.allow(origin):
            return _reject(AdmissionErrorKind.RATE_LIMITED, 'Too many requests')
        n = self.list_limit if limit is None else max(1, min(limit, self.list_limit))
        records = await self.store.list_recent(n)
        if is_err(records):
            logger.error(f'Failed to fetch tasks: {records.err_value.message}')
            return _reject(AdmissionErrorKind.DEPENDENCY_UNAVAILABLE, 'Failed to fetch tasks')
        return Ok([r.to_dict() for r in records.ok_value])

    async def health(self) -> HealthReport:
        ping = await self.store.ping()
        depth = await self.queue.depth(self.group)
        return HealthReport(
            store_reachable=not is_err(ping),
            breaker_open=self.breaker.is_open,
            queue_depth=None if is_err(depth) else depth.ok_value,
        )
