# conveyor/core/brokers/events.py
"""Status event bus over PostgreSQL NOTIFY."""

from __future__ import annotations

import asyncio
from asyncio import Queue
from typing import Protocol

from psycopg import Notify
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from conveyor.core.brokers.listener import PostgresListener
from conveyor.core.brokers.result_types import BrokerErrorCode, BrokerResult, broker_error
from conveyor.core.codec.serde import SerializationError, encode_event
from conveyor.core.models.tasks import StatusEvent
from conveyor.core.types.result import Err, Ok, is_err
from conveyor.core.utils.db import DB_ERRORS


class EventSubscription(Protocol):
    async def next_payload(self) -> str: ...

    async def close(self) -> None: ...


class EventBus(Protocol):
    """Best-effort broadcast of status events. No persistence, no replay."""

    async def publish(self, event: StatusEvent) -> BrokerResult[None]: ...

    async def subscribe(self) -> BrokerResult[EventSubscription]: ...


class NotifySubscription:
    """One local subscriber of the event channel."""

    def __init__(self, listener: PostgresListener, channel: str, queue: Queue[Notify]) -> None:
        self._listener = listener
        self._channel = channel
        self._queue = queue

    async def next_payload(self) -> str:
        notification = await self._queue.get()
        return notification.payload

    async def close(self) -> None:
        await self._listener.unsubscribe(self._channel, self._queue)


class PostgresEventBus:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        listener: PostgresListener,
        channel: str,
    ) -> None:
        self.session_factory = session_factory
        self.listener = listener
        self.channel = channel

    async def publish(self, event: StatusEvent) -> BrokerResult[None]:
        try:
            payload = encode_event(event)
            async with self.session_factory() as session:
                await session.execute(
                    text('SELECT pg_notify(:channel, :payload)'),
                    {'channel': self.channel, 'payload': payload},
                )
                await session.commit()
                return Ok(None)
        except asyncio.CancelledError:
            raise
        except (SerializationError, *DB_ERRORS) as exc:
            return Err(
                broker_error(
                    BrokerErrorCode.PUBLISH_FAILED,
                    f'Failed to publish {event.status.value} for task {event.task_id}',
                    exc,
                )
            )

    async def subscribe(self) -> BrokerResult[EventSubscription]:
        sub = await self.listener.listen(self.channel)
        if is_err(sub):
            return sub
        return Ok(NotifySubscription(self.listener, self.channel, sub.ok_value))
