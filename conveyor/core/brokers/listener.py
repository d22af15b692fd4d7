# conveyor/core/brokers/listener.py
"""
PostgreSQL LISTEN/NOTIFY fan-in for conveyor processes.

Channels:
  - stream_<stream>: an entry was appended (wakes blocked group reads)
  - <event channel> (default task_updates): JSON status events for observers

Each process holds one listener. A single dispatcher task consumes
``conn.notifies()`` and copies every notification into the bounded asyncio
queue of each local subscriber of that channel.
"""

from __future__ import annotations

import asyncio
import contextlib
from asyncio import Queue, Task
from collections import defaultdict
from typing import Optional

import psycopg
from psycopg import AsyncConnection, InterfaceError, Notify, OperationalError, sql

from conveyor.core.brokers.result_types import (
    BrokerErrorCode,
    BrokerOperationError,
    BrokerResult,
)
from conveyor.core.logging import get_logger
from conveyor.core.types.result import Err, Ok, is_err
from conveyor.core.utils.db import is_retryable_connection_error

logger = get_logger('listener')

_SUBSCRIBER_QUEUE_MAXSIZE: int = 4096
_RECONNECT_BACKOFF_START_S: float = 0.2
_RECONNECT_BACKOFF_MAX_S: float = 5.0


class PostgresListener:
    """
    LISTEN/NOTIFY wrapper distributing notifications to asyncio queues.

    Two autocommit connections are used:
      - dispatcher connection: only iterates ``notifies()``
      - command connection: issues UNLISTEN while the dispatcher is running

    Usage:
        listener = PostgresListener(psycopg_url)
        q = (await listener.listen('task_updates')).ok_value
        note = await q.get()
        await listener.unsubscribe('task_updates', q)
        await listener.close()

    A subscriber whose queue is full misses notifications; nothing blocks the
    dispatcher.
    """

    def __init__(self, database_url: str) -> None:
        self.database_url = database_url
        self._dispatcher_conn: Optional[AsyncConnection] = None
        self._command_conn: Optional[AsyncConnection] = None
        self._listen_channels: set[str] = set()
        self._subs: defaultdict[str, set[Queue[Notify]]] = defaultdict(set)
        self._dispatcher_task: Optional[Task[None]] = None
        self._lock = asyncio.Lock()

    async def start(self) -> BrokerResult[None]:
        """Open both connections. Safe to call more than once."""
        return await self._ensure_connections()

    async def _ensure_connections(self) -> BrokerResult[None]:
        created: list[AsyncConnection] = []
        try:
            if self._dispatcher_conn is None or self._dispatcher_conn.closed:
                self._dispatcher_conn = await psycopg.AsyncConnection.connect(
                    self.database_url, autocommit=True
                )
                created.append(self._dispatcher_conn)
                # Re-LISTEN after a reconnect
                for channel in self._listen_channels:
                    await self._dispatcher_conn.execute(
                        sql.SQL('LISTEN {}').format(sql.Identifier(channel))
                    )
            if self._command_conn is None or self._command_conn.closed:
                self._command_conn = await psycopg.AsyncConnection.connect(
                    self.database_url, autocommit=True
                )
                created.append(self._command_conn)
            return Ok(None)
        except (OperationalError, InterfaceError, OSError) as exc:
            # Do not leave half-initialized state behind
            for conn in created:
                with contextlib.suppress(OperationalError, InterfaceError, OSError):
                    await conn.close()
            if self._dispatcher_conn in created:
                self._dispatcher_conn = None
            if self._command_conn in created:
                self._command_conn = None
            return Err(
                BrokerOperationError(
                    code=BrokerErrorCode.LISTENER_START_FAILED,
                    message=f'Failed to establish listener connections: {exc}',
                    retryable=is_retryable_connection_error(exc),
                    exception=exc,
                )
            )

    async def _close_connections(self) -> None:
        for conn in (self._dispatcher_conn, self._command_conn):
            if conn is not None and not conn.closed:
                try:
                    await conn.close()
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    logger.debug(f'Ignoring error while closing listener connection: {exc}')
        self._dispatcher_conn = None
        self._command_conn = None

    async def _pause_dispatcher(self) -> bool:
        if self._dispatcher_task is None:
            return False
        self._dispatcher_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._dispatcher_task
        self._dispatcher_task = None
        return True

    def _start_dispatcher(self) -> None:
        if self._dispatcher_task is None:
            self._dispatcher_task = asyncio.create_task(
                self._dispatcher(), name='pg-listener-dispatcher'
            )

    def _distribute(self, notification: Notify) -> None:
        for q in list(self._subs.get(notification.channel, ())):
            try:
                q.put_nowait(notification)
            except asyncio.QueueFull:
                logger.debug(f'Subscriber queue full on {notification.channel}; dropping')

    async def _dispatcher(self) -> None:
        """Single consumer of ``notifies()``; reconnects with capped backoff."""
        backoff = _RECONNECT_BACKOFF_START_S
        while True:
            try:
                conn_r = await self._ensure_connections()
                if is_err(conn_r):
                    raise conn_r.err_value.exception or RuntimeError(conn_r.err_value.message)
                assert self._dispatcher_conn is not None
                async for notification in self._dispatcher_conn.notifies():
                    backoff = _RECONNECT_BACKOFF_START_S
                    self._distribute(notification)
            except asyncio.CancelledError:
                raise
            except (OperationalError, InterfaceError, OSError) as exc:
                logger.warning(f'Listener connection lost ({exc}); reconnecting in {backoff:.1f}s')
                await self._close_connections()
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, _RECONNECT_BACKOFF_MAX_S)
            except Exception as exc:
                logger.error(f'Unexpected listener error: {exc}')
                await self._close_connections()
                await asyncio.sleep(0.5)

    async def listen(self, channel_name: str) -> BrokerResult[Queue[Notify]]:
        """Subscribe to a channel; LISTEN is issued once per channel."""
        conn_r = await self._ensure_connections()
        if is_err(conn_r):
            err = conn_r.err_value
            return Err(
                BrokerOperationError(
                    code=BrokerErrorCode.LISTENER_SUBSCRIBE_FAILED,
                    message=f'Failed to subscribe to {channel_name!r}: {err.message}',
                    retryable=err.retryable,
                    exception=err.exception,
                )
            )

        try:
            async with self._lock:
                if channel_name not in self._listen_channels:
                    # LISTEN must not race the notifies() iterator on the same connection
                    was_running = await self._pause_dispatcher()
                    try:
                        assert self._dispatcher_conn is not None
                        await self._dispatcher_conn.execute(
                            sql.SQL('LISTEN {}').format(sql.Identifier(channel_name))
                        )
                        self._listen_channels.add(channel_name)
                    finally:
                        if was_running:
                            self._start_dispatcher()
                    self._start_dispatcher()

                q: Queue[Notify] = asyncio.Queue(maxsize=_SUBSCRIBER_QUEUE_MAXSIZE)
                self._subs[channel_name].add(q)
                return Ok(q)
        except (OperationalError, InterfaceError, OSError) as exc:
            return Err(
                BrokerOperationError(
                    code=BrokerErrorCode.LISTENER_SUBSCRIBE_FAILED,
                    message=f'Failed to subscribe to {channel_name!r}: {exc}',
                    retryable=is_retryable_connection_error(exc),
                    exception=exc,
                )
            )

    async def unsubscribe(self, channel_name: str, q: Optional[Queue[Notify]] = None) -> None:
        """Drop a local subscriber; UNLISTEN when it was the last one."""
        async with self._lock:
            subs = self._subs.get(channel_name)
            if subs is not None and q is not None:
                subs.discard(q)
            if subs:
                return
            self._subs.pop(channel_name, None)
            if channel_name in self._listen_channels:
                self._listen_channels.discard(channel_name)
                if self._dispatcher_conn is not None and not self._dispatcher_conn.closed:
                    was_running = await self._pause_dispatcher()
                    try:
                        await self._dispatcher_conn.execute(
                            sql.SQL('UNLISTEN {}').format(sql.Identifier(channel_name))
                        )
                    except (OperationalError, InterfaceError, OSError) as exc:
                        logger.debug(f'UNLISTEN {channel_name} failed: {exc}')
                    finally:
                        if was_running and self._listen_channels:
                            self._start_dispatcher()

    async def ping(self) -> bool:
        """Cheap liveness probe over the command connection."""
        if self._command_conn is None or self._command_conn.closed:
            return False
        try:
            await self._command_conn.execute('SELECT 1')
            return True
        except (OperationalError, InterfaceError, OSError):
            return False

    async def close(self) -> None:
        """Stop the dispatcher and close both connections. Idempotent."""
        await self._pause_dispatcher()
        await self._close_connections()
        self._subs.clear()
        self._listen_channels.clear()
