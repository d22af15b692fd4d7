# conveyor/core/models/admission.py
from __future__ import annotations

from typing import Annotated, Self

from pydantic import BaseModel, Field, model_validator

from conveyor.core.defaults import DEFAULT_LIST_LIMIT
from conveyor.core.errors import (
    ConfigurationError,
    ErrorCode,
    ValidationReport,
    raise_collected,
)


class RateLimitConfig(BaseModel):
    """Rolling-window budget: at most ``limit`` hits per ``window_ms`` per origin."""

    limit: Annotated[int, Field(ge=1)]
    window_ms: Annotated[int, Field(ge=100, le=86_400_000)]


class BreakerConfig(BaseModel):
    threshold: Annotated[int, Field(ge=1, le=10_000)] = Field(
        default=5,
        description='Cumulative dependency failures that open the breaker',
    )
    cooldown_ms: Annotated[int, Field(ge=100, le=3_600_000)] = Field(
        default=30_000,
        description='Time since the last failure after which an open breaker closes',
    )


class AdmissionConfig(BaseModel):
    """
    Admission gate configuration.

    ``request_limit`` is the broad per-origin budget applied to every call;
    ``submit_limit`` is the stricter per-origin budget for task submissions.
    """

    request_limit: RateLimitConfig = Field(
        default_factory=lambda: RateLimitConfig(limit=100, window_ms=60_000)
    )
    submit_limit: RateLimitConfig = Field(
        default_factory=lambda: RateLimitConfig(limit=20, window_ms=60_000)
    )
    breaker: BreakerConfig = Field(default_factory=BreakerConfig)
    list_limit: Annotated[int, Field(ge=1, le=1_000)] = DEFAULT_LIST_LIMIT

    @model_validator(mode='after')
    def validate_limits(self) -> Self:
        report = ValidationReport('admission')
        # Compare rates (hits per ms), windows may differ
        submit_rate = self.submit_limit.limit / self.submit_limit.window_ms
        request_rate = self.request_limit.limit / self.request_limit.window_ms
        if submit_rate > request_rate:
            report.add(
                ConfigurationError(
                    message='submit_limit must not be looser than request_limit',
                    code=ErrorCode.CONFIG_INVALID_RATE_LIMIT,
                    notes=[
                        f'request_limit={self.request_limit.limit}/{self.request_limit.window_ms}ms',
                        f'submit_limit={self.submit_limit.limit}/{self.submit_limit.window_ms}ms',
                    ],
                    help_text='lower submit_limit.limit or raise request_limit.limit',
                )
            )
        raise_collected(report)
        return self
