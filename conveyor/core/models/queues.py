# conveyor/core/models/queues.py
from __future__ import annotations

import re
from typing import Annotated

from pydantic import BaseModel, Field, field_validator

from conveyor.core.defaults import (
    DEFAULT_CLAIM_IDLE_MS,
    DEFAULT_GROUP,
    DEFAULT_QUEUE_CAPACITY,
    DEFAULT_STREAM,
)
from conveyor.core.errors import ConfigurationError, ErrorCode

# Names end up in NOTIFY channel identifiers
_NAME_RE = re.compile(r'^[a-z][a-z0-9_]{0,62}$')


class QueueConfig(BaseModel):
    """Durable queue layout and backpressure ceiling."""

    stream: str = Field(default=DEFAULT_STREAM, description='Name of the task stream')
    group: str = Field(default=DEFAULT_GROUP, description='Consumer group shared by workers')
    capacity: Annotated[int, Field(ge=1)] = Field(
        default=DEFAULT_QUEUE_CAPACITY,
        description='Admission rejects when approximate depth reaches this value',
    )
    claim_idle_ms: Annotated[int, Field(ge=1_000)] = Field(
        default=DEFAULT_CLAIM_IDLE_MS,
        description='Unacknowledged deliveries idle this long are redelivered',
    )
    retention_hours: Annotated[int, Field(ge=1)] = Field(
        default=24,
        description='Acknowledged entries older than this are trimmed by workers',
    )

    @field_validator('stream', 'group')
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not _NAME_RE.match(v):
            raise ConfigurationError(
                message=f'invalid queue name {v!r}',
                code=ErrorCode.CONFIG_INVALID_QUEUE,
                notes=['names are lower-case identifiers of at most 63 characters'],
                help_text='use letters, digits and underscores, starting with a letter',
            )
        return v
