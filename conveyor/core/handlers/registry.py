# conveyor/core/handlers/registry.py
from __future__ import annotations

from typing import Any, Dict, Iterator, MutableMapping, Protocol

from conveyor.core.errors import ConfigurationError, ErrorCode
from conveyor.core.models.tasks import TaskEnvelope
from conveyor.core.types.status import TaskType


class TaskHandlerError(Exception):
    """A handler attempt failed. The worker turns this into a retry or abandonment."""

    pass


class TaskHandler(Protocol):
    """Executes one task attempt; raising means the attempt failed."""

    async def __call__(self, envelope: TaskEnvelope) -> Any: ...


class UnknownTaskTypeHandler:
    """Fails every attempt; routed to for types outside the allowlist."""

    async def __call__(self, envelope: TaskEnvelope) -> Any:
        raise TaskHandlerError(f'Unknown task type: {envelope.task_type!r}')


class DuplicateHandlerError(ConfigurationError):
    def __init__(self, task_type: TaskType) -> None:
        super().__init__(
            message=f"duplicate handler for task type '{task_type.value}'",
            code=ErrorCode.CONFIG_INVALID_HANDLERS,
            help_text='register exactly one handler per task type',
        )


class HandlerRegistry(MutableMapping[TaskType, TaskHandler]):
    """Registry mapping task type -> handler.

    Lookups of raw type strings never fail: anything that does not parse to
    a registered ``TaskType`` resolves to the fallback handler.
    """

    def __init__(self, fallback: TaskHandler | None = None) -> None:
        self._data: Dict[TaskType, TaskHandler] = {}
        self.fallback: TaskHandler = fallback or UnknownTaskTypeHandler()

    def __getitem__(self, key: TaskType) -> TaskHandler:
        return self._data[key]

    def __setitem__(self, key: TaskType, value: TaskHandler) -> None:
        if key in self._data:
            raise DuplicateHandlerError(key)
        self._data[key] = value

    def __delitem__(self, key: TaskType) -> None:
        del self._data[key]

    def __iter__(self) -> Iterator[TaskType]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def register(self, task_type: TaskType, handler: TaskHandler) -> TaskHandler:
        self[task_type] = handler
        return handler

    def resolve(self, raw_type: str) -> TaskHandler:
        known = TaskType.parse(raw_type)
        if known is None:
            return self.fallback
        return self._data.get(known, self.fallback)

    def missing(self) -> list[TaskType]:
        """Allowlisted types without a handler."""
        return [t for t in TaskType if t not in self._data]
