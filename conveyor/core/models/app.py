# conveyor/core/models/app.py
from __future__ import annotations

import logging
from typing import Self

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from conveyor.core.errors import ConfigurationError, ErrorCode
from conveyor.core.models.admission import AdmissionConfig
from conveyor.core.models.broker import PostgresConfig
from conveyor.core.models.fanout import FanoutConfig, HandlerConfig
from conveyor.core.models.queues import QueueConfig
from conveyor.core.models.resilience import WorkerResilienceConfig
from conveyor.core.utils.url import mask_database_url

_LOG_LEVELS = ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')


class AppConfig(BaseSettings):
    """
    Process configuration.

    Loaded from (in order): init kwargs, process env, optional ``.env``.
    Nested fields use ``__``, e.g. ``CONVEYOR_BROKER__DATABASE_URL`` or
    ``CONVEYOR_ADMISSION__BREAKER__THRESHOLD``.
    """

    model_config = SettingsConfigDict(
        env_prefix='CONVEYOR_',
        env_nested_delimiter='__',
        env_file='.env',
        env_file_encoding='utf-8',
        extra='ignore',
        frozen=True,
    )

    broker: PostgresConfig = Field(default_factory=PostgresConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    admission: AdmissionConfig = Field(default_factory=AdmissionConfig)
    worker: WorkerResilienceConfig = Field(default_factory=WorkerResilienceConfig)
    fanout: FanoutConfig = Field(default_factory=FanoutConfig)
    handlers: HandlerConfig = Field(default_factory=HandlerConfig)
    log_level: str = 'INFO'

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        upper = v.upper()
        if upper not in _LOG_LEVELS:
            raise ValueError(f'log_level must be one of {", ".join(_LOG_LEVELS)}')
        return upper

    @model_validator(mode='after')
    def validate_redelivery_timing(self) -> Self:
        # A running entry must never look idle to a peer's claim
        if self.queue.claim_idle_ms <= self.worker.handler_timeout_ms:
            raise ConfigurationError(
                message='queue.claim_idle_ms must exceed worker.handler_timeout_ms',
                code=ErrorCode.CONFIG_INVALID_TIMING,
                notes=[
                    f'claim_idle_ms={self.queue.claim_idle_ms}ms',
                    f'handler_timeout_ms={self.worker.handler_timeout_ms}ms',
                ],
                help_text='raise queue.claim_idle_ms or lower worker.handler_timeout_ms',
            )
        return self

    @property
    def log_level_int(self) -> int:
        return getattr(logging, self.log_level, logging.INFO)

    def log_config(self, logger: logging.Logger) -> None:
        """Log the effective configuration with secrets masked."""
        logger.info(
            'Config: store=%s stream=%s group=%s capacity=%s breaker=%s/%sms '
            'requests=%s/%sms submits=%s/%sms origins=%s',
            mask_database_url(self.broker.database_url),
            self.queue.stream,
            self.queue.group,
            self.queue.capacity,
            self.admission.breaker.threshold,
            self.admission.breaker.cooldown_ms,
            self.admission.request_limit.limit,
            self.admission.request_limit.window_ms,
            self.admission.submit_limit.limit,
            self.admission.submit_limit.window_ms,
            self.fanout.allowed_origins,
        )
