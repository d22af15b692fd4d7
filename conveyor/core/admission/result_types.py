# conveyor/core/admission/result_types.py
"""Outcomes of admission-facing operations, tagged by kind and HTTP status."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from conveyor.core.types.result import Result
from conveyor.core.types.status import TaskStatus


class AdmissionErrorKind(str, Enum):
    VALIDATION = 'VALIDATION'
    RATE_LIMITED = 'RATE_LIMITED'
    QUEUE_FULL = 'QUEUE_FULL'
    BREAKER_OPEN = 'BREAKER_OPEN'
    DEPENDENCY_UNAVAILABLE = 'DEPENDENCY_UNAVAILABLE'

    @property
    def http_status(self) -> int:
        match self:
            case AdmissionErrorKind.VALIDATION:
                return 400
            case AdmissionErrorKind.RATE_LIMITED | AdmissionErrorKind.QUEUE_FULL:
                return 429
            case AdmissionErrorKind.BREAKER_OPEN | AdmissionErrorKind.DEPENDENCY_UNAVAILABLE:
                return 503


@dataclass(slots=True, frozen=True)
class AdmissionRejection:
    kind: AdmissionErrorKind
    message: str

    @property
    def http_status(self) -> int:
        return self.kind.http_status

    def to_body(self) -> dict[str, Any]:
        return {'error': {'kind': self.kind.value, 'message': self.message}}


@dataclass(slots=True, frozen=True)
class SubmitAccepted:
    task_id: str
    status: TaskStatus = TaskStatus.PENDING

    @property
    def http_status(self) -> int:
        return 201

    def to_body(self) -> dict[str, Any]:
        return {'taskId': self.task_id, 'status': self.status.value}


type AdmissionResult[T] = Result[T, AdmissionRejection]


@dataclass(slots=True, frozen=True)
class HealthReport:
    """``queue_depth`` is None when the depth probe failed."""

    store_reachable: bool
    breaker_open: bool
    queue_depth: Optional[int]

    @property
    def healthy(self) -> bool:
        return self.store_reachable and not self.breaker_open and self.queue_depth is not None

    def to_body(self) -> dict[str, Any]:
        return {
            'status': 'ok' if self.healthy else 'degraded',
            'storeReachable': self.store_reachable,
            'breakerOpen': self.breaker_open,
            'queueDepth': self.queue_depth,
        }
