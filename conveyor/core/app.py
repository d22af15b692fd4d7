# conveyor/core/app.py
from __future__ import annotations

import asyncio
from typing import Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from conveyor.core.admission.breaker import CircuitBreaker
from conveyor.core.admission.controller import AdmissionController
from conveyor.core.admission.ratelimit import SlidingWindowRateLimiter
from conveyor.core.brokers.postgres import PostgresBroker
from conveyor.core.errors import ConfigurationError, ConveyorError, ErrorCode, StartupError
from conveyor.core.fanout.gateway import StatusGateway
from conveyor.core.handlers.builtin import build_default_registry
from conveyor.core.handlers.registry import HandlerRegistry
from conveyor.core.logging import get_logger
from conveyor.core.models.app import AppConfig
from conveyor.core.types.result import is_err
from conveyor.core.utils.db import DB_ERRORS
from conveyor.core.utils.url import mask_database_url
from conveyor.core.worker.config import WorkerConfig
from conveyor.core.worker.worker import Worker


class Conveyor:
    """
    Application object: wires configuration into the broker, the admission
    gate, the status gateway and workers.

    Components are built lazily and cached, so one process shares a single
    broker (engine + listener), circuit breaker and pair of rate limiters.
    """

    def __init__(
        self,
        config: Optional[AppConfig] = None,
        *,
        registry: Optional[HandlerRegistry] = None,
    ):
        self.config = config or AppConfig()
        self.logger = get_logger('app')
        self.registry = registry or build_default_registry(self.config.handlers)
        self.breaker = CircuitBreaker(self.config.admission.breaker)
        self.request_limiter = SlidingWindowRateLimiter(self.config.admission.request_limit)
        self.submit_limiter = SlidingWindowRateLimiter(self.config.admission.submit_limit)
        self._broker: Optional[PostgresBroker] = None
        self._controller: Optional[AdmissionController] = None
        self._gateway: Optional[StatusGateway] = None

    def get_broker(self) -> PostgresBroker:
        if self._broker is None:
            self._broker = PostgresBroker(
                self.config.broker,
                stream=self.config.queue.stream,
                event_channel=self.config.fanout.channel,
            )
        return self._broker

    def get_controller(self) -> AdmissionController:
        if self._controller is None:
            broker = self.get_broker()
            self._controller = AdmissionController(
                queue=broker.queue,
                store=broker.store,
                events=broker.events,
                breaker=self.breaker,
                request_limiter=self.request_limiter,
                submit_limiter=self.submit_limiter,
                group=self.config.queue.group,
                capacity=self.config.queue.capacity,
                list_limit=self.config.admission.list_limit,
            )
        return self._controller

    def get_gateway(self) -> StatusGateway:
        if self._gateway is None:
            self._gateway = StatusGateway(
                self.config.fanout.allowed_origins,
                events=self.get_broker().events,
                send_timeout_s=self.config.fanout.send_timeout_ms / 1000.0,
            )
        return self._gateway

    def build_worker(self, consumer: Optional[str] = None) -> Worker:
        broker = self.get_broker()
        cfg = WorkerConfig(
            group=self.config.queue.group,
            claim_idle_ms=self.config.queue.claim_idle_ms,
            retention_hours=self.config.queue.retention_hours,
            resilience_config=self.config.worker,
        )
        if consumer:
            cfg.consumer = consumer
        return Worker(
            queue=broker.queue,
            store=broker.store,
            events=broker.events,
            registry=self.registry,
            cfg=cfg,
        )

    async def startup(self) -> None:
        """
        Fatal-on-failure startup: schema, store reachability, consumer group.

        Raises StartupError; callers exit non-zero.
        """
        broker = self.get_broker()
        masked = mask_database_url(self.config.broker.database_url)

        schema = await broker.ensure_schema_initialized()
        if is_err(schema):
            raise StartupError(
                message='failed to initialize database schema',
                code=ErrorCode.SCHEMA_INIT_FAILED,
                notes=[f'database: {masked}', schema.err_value.message],
                help_text='check that the database exists and the user may create tables',
            )

        ping = await broker.ping()
        if is_err(ping):
            raise StartupError(
                message='record store is unreachable',
                code=ErrorCode.STORE_UNREACHABLE,
                notes=[f'database: {masked}', ping.err_value.message],
                help_text='check CONVEYOR_BROKER__DATABASE_URL and that PostgreSQL is running',
            )

        group = await broker.queue.ensure_group(self.config.queue.group)
        if is_err(group):
            raise StartupError(
                message=f'failed to create consumer group {self.config.queue.group!r}',
                code=ErrorCode.STORE_UNREACHABLE,
                notes=[group.err_value.message],
            )
        self.logger.info(f'Connected to {masked}')

    async def shutdown(self) -> None:
        """Close observers with a normal closure, then release the broker."""
        if self._gateway is not None:
            await self._gateway.stop()
            await self._gateway.close_all()
        if self._broker is not None:
            await self._broker.close_async()
            self._broker = None
        self._controller = None
        self._gateway = None

    # ----- validation -----

    def check(self, *, live: bool = False) -> list[ConveyorError]:
        """Validate wiring; with ``live``, also run ``SELECT 1`` against the store.

        Configuration values are already validated when ``AppConfig`` is built.
        """
        errors: list[ConveyorError] = []
        missing = self.registry.missing()
        if missing:
            errors.append(
                ConfigurationError(
                    message='task types without a handler',
                    code=ErrorCode.CONFIG_INVALID_HANDLERS,
                    notes=[f'missing: {", ".join(t.value for t in missing)}'],
                    help_text='register a handler for every TaskType',
                )
            )
        if live and not errors:
            errors.extend(self._check_store_connectivity())
        return errors

    def _check_store_connectivity(self) -> list[ConveyorError]:
        """SELECT 1 through a short-lived engine, independent of the cached broker."""
        errors: list[ConveyorError] = []
        engine_cfg = self.config.broker.model_dump(exclude={'database_url'}, exclude_none=True)
        health_engine = create_async_engine(self.config.broker.database_url, **engine_cfg)
        health_session_factory = async_sessionmaker(health_engine, expire_on_commit=False)

        async def _test_connection() -> None:
            try:
                async with health_session_factory() as session:
                    await session.execute(text('SELECT 1'))
            finally:
                await health_engine.dispose()

        try:
            asyncio.run(_test_connection())
        except DB_ERRORS as exc:
            errors.append(
                StartupError(
                    message='record store connectivity check failed',
                    code=ErrorCode.STORE_UNREACHABLE,
                    notes=[mask_database_url(self.config.broker.database_url), str(exc)],
                    help_text='check CONVEYOR_BROKER__DATABASE_URL',
                )
            )
        return errors
