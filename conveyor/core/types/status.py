# conveyor/core/types/status.py
"""
Core enums shared by admission, storage and the worker.
This module should not import from other application modules.
"""

from enum import Enum


class TaskStatus(str, Enum):
    """Task record status"""

    PENDING = 'pending'  # Accepted by admission, waiting in the queue.

    IN_PROGRESS = 'in_progress'  # A worker is executing the handler.

    COMPLETED = 'completed'  # Handler finished successfully.

    FAILED = 'failed'  # Last attempt failed. Terminal only once retries hit the max.

    @property
    def is_terminal(self) -> bool:
        """Whether no further transition can follow (failed depends on retries)."""
        return self is TaskStatus.COMPLETED


class TaskType(str, Enum):
    """Closed allowlist of task types accepted at admission."""

    IMAGE_RESIZE = 'image_resize'
    DATA_PROCESSING = 'data_processing'
    LOAD_TEST = 'load_test'
    DEFAULT = 'default'

    @classmethod
    def parse(cls, value: object) -> 'TaskType | None':
        """Return the member for ``value`` or None when it is not allowed."""
        if not isinstance(value, str):
            return None
        try:
            return cls(value)
        except ValueError:
            return None


TASK_TYPE_VALUES: frozenset[str] = frozenset(t.value for t in TaskType)
