# conveyor/core/models/tasks.py
from __future__ import annotations

import datetime
from dataclasses import dataclass, field
from typing import Any

from conveyor.core.types.status import TaskStatus, TaskType


@dataclass(frozen=True)
class TaskRecord:
    """Snapshot of a persisted task record."""

    task_id: str
    task_type: str
    status: TaskStatus
    payload: dict[str, Any]
    retries: int
    created_at: datetime.datetime | None
    processing_time_ms: int | None = None
    failed_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Shape returned by the list operation."""
        return {
            'id': self.task_id,
            'type': self.task_type,
            'status': self.status.value,
            'payload': self.payload,
            'retries': self.retries,
            'createdAt': self.created_at.isoformat() if self.created_at else None,
            'processingTime': self.processing_time_ms,
        }


@dataclass(frozen=True)
class StatusEvent:
    """Status change relayed to observers as ``{id, status, retries, processingTime?}``."""

    task_id: str
    status: TaskStatus
    retries: int = 0
    processing_time_ms: int | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            'id': self.task_id,
            'status': self.status.value,
            'retries': self.retries,
        }
        if self.processing_time_ms is not None:
            data['processingTime'] = self.processing_time_ms
        return data


@dataclass(frozen=True)
class TaskEnvelope:
    """
    Body of a queue entry: the task id plus a snapshot of the submitted data.

    ``task_type`` is kept as the raw string so that values outside the
    allowlist (old producers, manual appends) can still be routed to the
    unknown-type handler instead of being dropped as unparseable.
    """

    task_id: str
    task_type: str
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def known_type(self) -> TaskType | None:
        return TaskType.parse(self.task_type)

    def data(self) -> dict[str, Any]:
        return {'type': self.task_type, 'payload': self.payload}
