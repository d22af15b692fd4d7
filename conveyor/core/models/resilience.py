# conveyor/core/models/resilience.py
from __future__ import annotations

from enum import Enum
from typing import Annotated, Self

from pydantic import BaseModel, Field, model_validator

from conveyor.core.defaults import DEFAULT_BACKOFF_UNIT_MS, MAX_RETRIES
from conveyor.core.errors import ConfigurationError, ErrorCode, ValidationReport, raise_collected


class PendingRetryPolicy(str, Enum):
    """What the worker does with scheduled-but-unfired retries on shutdown."""

    FLUSH = 'flush'  # re-append immediately, within the grace period
    WAIT = 'wait'  # let the timers fire, within the grace period
    DROP = 'drop'  # cancel; the record keeps reading FAILED


class WorkerResilienceConfig(BaseModel):
    """
    Worker loop, retry and shutdown knobs.

    Task retries use ``backoff_unit_ms * 2**retries``. Transient dependency
    errors in the loop are absorbed with a fixed ``error_cooldown_ms`` pause.
    """

    batch_size: Annotated[int, Field(ge=1, le=1_000)] = Field(
        default=10, description='Entries requested per group read'
    )
    block_ms: Annotated[int, Field(ge=10, le=60_000)] = Field(
        default=5_000, description='Maximum wait of a group read when the stream is idle'
    )
    max_retries: Annotated[int, Field(ge=0, le=20)] = Field(
        default=MAX_RETRIES, description='Failures after which a task is abandoned'
    )
    backoff_unit_ms: Annotated[int, Field(ge=1, le=3_600_000)] = Field(
        default=DEFAULT_BACKOFF_UNIT_MS, description='Base unit of the exponential retry delay'
    )
    handler_timeout_ms: Annotated[int, Field(ge=10, le=3_600_000)] = Field(
        default=30_000,
        description='Upper bound on a single handler execution; must stay below queue.claim_idle_ms',
    )
    error_cooldown_ms: Annotated[int, Field(ge=0, le=300_000)] = Field(
        default=1_000, description='Pause after an error escapes a batch'
    )
    shutdown_grace_ms: Annotated[int, Field(ge=0, le=600_000)] = Field(
        default=10_000, description='Time allowed for pending retries on shutdown'
    )
    pending_retry_policy: PendingRetryPolicy = PendingRetryPolicy.FLUSH
    retention_interval_ms: Annotated[int, Field(ge=1_000)] = Field(
        default=3_600_000, description='How often a worker trims acknowledged entries'
    )

    @model_validator(mode='after')
    def validate_timing(self) -> Self:
        report = ValidationReport('worker')
        if (
            self.pending_retry_policy is PendingRetryPolicy.WAIT
            and self.max_retries > 0
        ):
            longest_ms = self.backoff_unit_ms * (2 ** max(0, self.max_retries - 1))
            if longest_ms > self.shutdown_grace_ms:
                report.add(
                    ConfigurationError(
                        message='shutdown_grace_ms is shorter than the longest retry delay',
                        code=ErrorCode.CONFIG_INVALID_RESILIENCE,
                        notes=[
                            f'pending_retry_policy=wait, longest delay={longest_ms}ms',
                            f'shutdown_grace_ms={self.shutdown_grace_ms}ms',
                        ],
                        help_text="raise shutdown_grace_ms or use pending_retry_policy='flush'",
                    )
                )
        raise_collected(report)
        return self
