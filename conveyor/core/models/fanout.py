# conveyor/core/models/fanout.py
from __future__ import annotations

from typing import Annotated

from pydantic import BaseModel, Field, field_validator

from conveyor.core.defaults import DEFAULT_EVENT_CHANNEL
from conveyor.core.errors import ConfigurationError, ErrorCode


class FanoutConfig(BaseModel):
    allowed_origins: list[str] = Field(
        default_factory=lambda: ['http://localhost:3001'],
        description='Origins allowed to open a status stream',
    )
    send_timeout_ms: Annotated[int, Field(ge=10, le=60_000)] = Field(
        default=1_000, description='Sends slower than this are skipped'
    )
    channel: str = Field(
        default=DEFAULT_EVENT_CHANNEL, description='NOTIFY channel carrying status events'
    )

    @field_validator('allowed_origins')
    @classmethod
    def validate_origins(cls, v: list[str]) -> list[str]:
        cleaned = [o.strip().rstrip('/') for o in v if o.strip()]
        if not cleaned:
            raise ConfigurationError(
                message='allowed_origins must contain at least one origin',
                code=ErrorCode.CONFIG_INVALID_ORIGINS,
                help_text="e.g. CONVEYOR_FANOUT__ALLOWED_ORIGINS='[\"https://app.example\"]'",
            )
        return cleaned


class HandlerConfig(BaseModel):
    injected_failure_rate: Annotated[float, Field(ge=0.0, le=1.0)] = Field(
        default=0.0,
        description='Probability that a handler call fails on purpose (demo/test fixture only)',
    )
    simulated_work_ms: Annotated[int, Field(ge=0, le=600_000)] = Field(
        default=0,
        description='Extra latency added to every handler call',
    )
