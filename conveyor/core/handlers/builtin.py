# conveyor/core/handlers/builtin.py
"""
Handlers for the built-in task types.

Each handler validates its payload and raises ``TaskHandlerError`` when the
payload cannot be processed. Return values are summaries for logging only;
they are not persisted.
"""

from __future__ import annotations

import asyncio
import hashlib
import random
import statistics
import threading
from typing import Any, Optional

from conveyor.core.handlers.registry import HandlerRegistry, TaskHandler, TaskHandlerError
from conveyor.core.models.fanout import HandlerConfig
from conveyor.core.models.tasks import TaskEnvelope
from conveyor.core.types.status import TaskType

_MAX_DIMENSION = 20_000
_MAX_LOAD_ITERATIONS = 5_000_000
_CANCEL_CHECK_EVERY = 1_000


def _positive_int(payload: dict[str, Any], key: str) -> Optional[int]:
    value = payload.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise TaskHandlerError(f'{key} must be a positive integer, got {value!r}')
    if value > _MAX_DIMENSION:
        raise TaskHandlerError(f'{key} exceeds {_MAX_DIMENSION}')
    return value


def resize_dimensions(payload: dict[str, Any]) -> dict[str, int]:
    """Target size for an image resize, preserving aspect ratio when one side is given."""
    width = _positive_int(payload, 'width')
    height = _positive_int(payload, 'height')
    if width is None or height is None:
        raise TaskHandlerError('image_resize requires width and height')
    target_w = _positive_int(payload, 'target_width')
    target_h = _positive_int(payload, 'target_height')
    scale = payload.get('scale')

    if target_w and target_h:
        return {'width': target_w, 'height': target_h}
    if target_w:
        return {'width': target_w, 'height': max(1, round(height * target_w / width))}
    if target_h:
        return {'width': max(1, round(width * target_h / height)), 'height': target_h}
    if scale is not None:
        if isinstance(scale, bool) or not isinstance(scale, (int, float)) or scale <= 0:
            raise TaskHandlerError(f'scale must be a positive number, got {scale!r}')
        return {'width': max(1, round(width * scale)), 'height': max(1, round(height * scale))}
    return {'width': width, 'height': height}


_OPERATIONS = {
    'sum': sum,
    'mean': statistics.fmean,
    'min': min,
    'max': max,
    'median': statistics.median,
}


def process_values(payload: dict[str, Any]) -> dict[str, Any]:
    values = payload.get('values', [])
    if not isinstance(values, list):
        raise TaskHandlerError('values must be a list of numbers')
    if any(isinstance(v, bool) or not isinstance(v, (int, float)) for v in values):
        raise TaskHandlerError('values must contain only numbers')
    operation = payload.get('operation', 'sum')
    fn = _OPERATIONS.get(operation) if isinstance(operation, str) else None
    if fn is None:
        raise TaskHandlerError(
            f'unsupported operation {operation!r}; expected one of {sorted(_OPERATIONS)}'
        )
    if not values and operation != 'sum':
        raise TaskHandlerError(f'{operation} of an empty list is undefined')
    return {'operation': operation, 'count': len(values), 'result': fn(values)}


def _hash_chain(iterations: int, cancelled: Optional[threading.Event] = None) -> str:
    digest = b'conveyor'
    for i in range(iterations):
        if cancelled is not None and i % _CANCEL_CHECK_EVERY == 0 and cancelled.is_set():
            raise TaskHandlerError(f'hash chain cancelled after {i} iterations')
        digest = hashlib.sha256(digest).digest()
    return digest.hex()


class _SimulatedWork:
    def __init__(self, simulated_work_ms: int = 0) -> None:
        self.simulated_work_s = simulated_work_ms / 1000.0

    async def _pause(self) -> None:
        if self.simulated_work_s > 0:
            await asyncio.sleep(self.simulated_work_s)


class ImageResizeHandler(_SimulatedWork):
    async def __call__(self, envelope: TaskEnvelope) -> Any:
        await self._pause()
        return resize_dimensions(envelope.payload)


class DataProcessingHandler(_SimulatedWork):
    async def __call__(self, envelope: TaskEnvelope) -> Any:
        await self._pause()
        return process_values(envelope.payload)


class LoadTestHandler(_SimulatedWork):
    """
    CPU-bound hash chain run off the event loop.

    A thread cannot be interrupted, so cancelling the handler (for example on
    timeout) sets a flag the chain polls; the thread exits shortly after.
    """

    async def __call__(self, envelope: TaskEnvelope) -> Any:
        iterations = envelope.payload.get('iterations', 1_000)
        if isinstance(iterations, bool) or not isinstance(iterations, int) or iterations < 0:
            raise TaskHandlerError(f'iterations must be a non-negative integer, got {iterations!r}')
        if iterations > _MAX_LOAD_ITERATIONS:
            raise TaskHandlerError(f'iterations exceeds {_MAX_LOAD_ITERATIONS}')
        await self._pause()
        cancelled = threading.Event()
        try:
            digest = await asyncio.to_thread(_hash_chain, iterations, cancelled)
        except asyncio.CancelledError:
            cancelled.set()
            raise
        return {'iterations': iterations, 'digest': digest}


class DefaultHandler(_SimulatedWork):
    async def __call__(self, envelope: TaskEnvelope) -> Any:
        await self._pause()
        return {'keys': sorted(envelope.payload)}


class FlakyHandler:
    """Wraps a handler and fails a fraction of attempts before running it."""

    def __init__(
        self,
        inner: TaskHandler,
        failure_rate: float,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.inner = inner
        self.failure_rate = failure_rate
        self._rng = rng or random.Random()

    async def __call__(self, envelope: TaskEnvelope) -> Any:
        if self._rng.random() < self.failure_rate:
            raise TaskHandlerError(f'Injected failure for task {envelope.task_id}')
        return await self.inner(envelope)


def build_default_registry(
    config: HandlerConfig | None = None, *, rng: Optional[random.Random] = None
) -> HandlerRegistry:
    """One handler per ``TaskType``; wrapped in ``FlakyHandler`` when failures are injected."""
    cfg = config or HandlerConfig()
    handlers: dict[TaskType, TaskHandler] = {
        TaskType.IMAGE_RESIZE: ImageResizeHandler(cfg.simulated_work_ms),
        TaskType.DATA_PROCESSING: DataProcessingHandler(cfg.simulated_work_ms),
        TaskType.LOAD_TEST: LoadTestHandler(cfg.simulated_work_ms),
        TaskType.DEFAULT: DefaultHandler(cfg.simulated_work_ms),
    }
    registry = HandlerRegistry()
    for task_type, handler in handlers.items():
        if cfg.injected_failure_rate > 0:
            handler = FlakyHandler(handler, cfg.injected_failure_rate, rng)
        registry.register(task_type, handler)
    return registry
