# conveyor/core/brokers/postgres.py
from __future__ import annotations

import asyncio
import hashlib

from sqlalchemy import text
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from conveyor.core.brokers.events import PostgresEventBus
from conveyor.core.brokers.listener import PostgresListener
from conveyor.core.brokers.postgres_queue import PostgresStreamQueue
from conveyor.core.brokers.result_types import BrokerErrorCode, BrokerResult, broker_error
from conveyor.core.brokers.store import PostgresTaskStore
from conveyor.core.logging import get_logger
from conveyor.core.models.broker import PostgresConfig
from conveyor.core.models.task_pg import Base
from conveyor.core.types.result import Err, Ok, is_err
from conveyor.core.utils.db import DB_ERRORS
from conveyor.core.utils.url import to_psycopg_url


class PostgresBroker:
    """
    Owner of everything that talks to PostgreSQL.

    Holds one async engine and one LISTEN/NOTIFY listener, shared by:
      - queue: PostgresStreamQueue over the configured stream
      - store: PostgresTaskStore over ``conveyor_tasks``
      - events: PostgresEventBus on the status channel
    """

    def __init__(self, config: PostgresConfig, *, stream: str, event_channel: str):
        self.config = config
        self.logger = get_logger('broker')

        engine_cfg = self.config.model_dump(exclude={'database_url'}, exclude_none=True)
        self.async_engine = create_async_engine(self.config.database_url, **engine_cfg)
        self.session_factory = async_sessionmaker(self.async_engine, expire_on_commit=False)

        self.listener = PostgresListener(to_psycopg_url(self.config.database_url))
        self.queue = PostgresStreamQueue(self.session_factory, stream, self.listener)
        self.store = PostgresTaskStore(self.session_factory)
        self.events = PostgresEventBus(self.session_factory, self.listener, event_channel)

        self._initialized = False
        self.logger.info('PostgresBroker initialized')

    def _schema_advisory_key(self) -> int:
        """Stable 64-bit advisory lock key; distinct clusters never contend."""
        basis = self.config.database_url.encode('utf-8', errors='ignore')
        h = hashlib.sha256(b'conveyor-schema:' + basis).digest()
        return int.from_bytes(h[:8], byteorder='big', signed=True)

    async def ensure_schema_initialized(self) -> BrokerResult[None]:
        """
        Create tables if missing and start the listener.

        Safe to call multiple times and from multiple processes; DDL is
        serialized by a transaction-scoped advisory lock.
        """
        if self._initialized:
            return Ok(None)
        try:
            async with self.async_engine.begin() as conn:
                await conn.execute(
                    text('SELECT pg_advisory_xact_lock(CAST(:key AS BIGINT))'),
                    {'key': self._schema_advisory_key()},
                )
                await conn.run_sync(Base.metadata.create_all)
        except asyncio.CancelledError:
            raise
        except DB_ERRORS as exc:
            return Err(
                broker_error(
                    BrokerErrorCode.SCHEMA_INIT_FAILED, 'Failed to initialize schema', exc
                )
            )

        started = await self.listener.start()
        if is_err(started):
            return started
        self._initialized = True
        return Ok(None)

    async def ping(self) -> BrokerResult[None]:
        return await self.store.ping()

    async def close_async(self) -> None:
        await self.queue.close()
        await self.listener.close()
        await self.async_engine.dispose()
