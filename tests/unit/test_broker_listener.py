"""Tests for PostgresListener (conveyor/core/brokers/listener.py).

Strategy: mock psycopg.AsyncConnection.connect to avoid real PostgreSQL and
drive the dispatcher with scripted ``notifies()`` generators.
"""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator
from unittest.mock import AsyncMock, MagicMock, PropertyMock, patch

import pytest
from psycopg import Notify, OperationalError, sql

from conveyor.core.brokers.listener import PostgresListener
from conveyor.core.brokers.result_types import BrokerErrorCode
from conveyor.core.types.result import is_err, is_ok

CONNECT = 'conveyor.core.brokers.listener.psycopg.AsyncConnection.connect'


def _notify(channel: str, payload: str = '') -> Notify:
    return Notify(channel, payload, 1234)


def _make_mock_conn(closed: bool = False, notes: list[Notify] | None = None) -> MagicMock:
    """Mock AsyncConnection whose ``notifies()`` yields ``notes`` then idles."""
    conn = MagicMock()
    type(conn).closed = PropertyMock(return_value=closed)
    conn.close = AsyncMock()
    conn.execute = AsyncMock()
    pending = list(notes or [])

    async def notifies() -> AsyncIterator[Notify]:
        while pending:
            yield pending.pop(0)
        await asyncio.Event().wait()

    conn.notifies = MagicMock(side_effect=notifies)
    return conn


def _render(query: Any) -> str:
    if isinstance(query, sql.Composed):
        return ''.join(_render(part) for part in query._obj)
    if isinstance(query, sql.SQL):
        return query._obj
    if isinstance(query, sql.Identifier):
        return '.'.join(f'"{s}"' for s in query._obj)
    return str(query)


def _executed(conn: MagicMock) -> list[str]:
    return [_render(call.args[0]) for call in conn.execute.await_args_list]


@pytest.mark.unit
class TestStart:
    @pytest.mark.asyncio
    async def test_opens_two_autocommit_connections(self) -> None:
        dispatcher, command = _make_mock_conn(), _make_mock_conn()
        with patch(CONNECT, new=AsyncMock(side_effect=[dispatcher, command])) as connect:
            listener = PostgresListener('postgresql://u:p@h/db')
            result = await listener.start()
            # Second start reuses open connections
            await listener.start()

        assert is_ok(result)
        assert connect.await_count == 2
        for call in connect.await_args_list:
            assert call.kwargs == {'autocommit': True}

    @pytest.mark.asyncio
    async def test_failure_leaves_no_half_state(self) -> None:
        dispatcher = _make_mock_conn()
        with patch(
            CONNECT, new=AsyncMock(side_effect=[dispatcher, OperationalError('refused')])
        ):
            listener = PostgresListener('postgresql://u:p@h/db')
            result = await listener.start()

        assert is_err(result)
        assert result.err_value.code is BrokerErrorCode.LISTENER_START_FAILED
        assert result.err_value.retryable is True
        dispatcher.close.assert_awaited_once()
        assert listener._dispatcher_conn is None
        assert listener._command_conn is None


@pytest.mark.unit
class TestListen:
    @pytest.mark.asyncio
    async def test_listen_issues_listen_once_per_channel(self) -> None:
        dispatcher, command = _make_mock_conn(), _make_mock_conn()
        with patch(CONNECT, new=AsyncMock(side_effect=[dispatcher, command])):
            listener = PostgresListener('postgresql://u:p@h/db')
            q1 = await listener.listen('task_updates')
            q2 = await listener.listen('task_updates')
        try:
            assert is_ok(q1) and is_ok(q2)
            assert q1.ok_value is not q2.ok_value
            assert _executed(dispatcher).count('LISTEN "task_updates"') == 1
            assert listener._dispatcher_task is not None
        finally:
            await listener.close()

    @pytest.mark.asyncio
    async def test_listen_reports_connection_failure(self) -> None:
        with patch(CONNECT, new=AsyncMock(side_effect=OSError('no route'))):
            listener = PostgresListener('postgresql://u:p@h/db')
            result = await listener.listen('task_updates')
        assert is_err(result)
        assert result.err_value.code is BrokerErrorCode.LISTENER_SUBSCRIBE_FAILED


@pytest.mark.unit
class TestDispatch:
    @pytest.mark.asyncio
    async def test_notifications_reach_every_subscriber_of_the_channel(self) -> None:
        dispatcher = _make_mock_conn(
            notes=[_notify('task_updates', '{"id":"t1"}'), _notify('conveyor_stream_tasks', '7')]
        )
        command = _make_mock_conn()
        with patch(CONNECT, new=AsyncMock(side_effect=[dispatcher, command])):
            listener = PostgresListener('postgresql://u:p@h/db')
            a = (await listener.listen('task_updates')).ok_value
            b = (await listener.listen('task_updates')).ok_value
            s = (await listener.listen('conveyor_stream_tasks')).ok_value
        try:
            note_a = await asyncio.wait_for(a.get(), timeout=1.0)
            note_b = await asyncio.wait_for(b.get(), timeout=1.0)
            note_s = await asyncio.wait_for(s.get(), timeout=1.0)
            assert note_a.payload == note_b.payload == '{"id":"t1"}'
            assert note_s.payload == '7'
        finally:
            await listener.close()

    def test_full_subscriber_queue_drops_instead_of_blocking(self) -> None:
        listener = PostgresListener('postgresql://u:p@h/db')
        full: asyncio.Queue[Notify] = asyncio.Queue(maxsize=1)
        full.put_nowait(_notify('c', 'old'))
        roomy: asyncio.Queue[Notify] = asyncio.Queue()
        listener._subs['c'] = {full, roomy}

        listener._distribute(_notify('c', 'new'))

        assert full.get_nowait().payload == 'old'
        assert roomy.get_nowait().payload == 'new'

    @pytest.mark.asyncio
    async def test_dispatcher_reconnects_and_relistens(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr('conveyor.core.brokers.listener._RECONNECT_BACKOFF_START_S', 0.0)
        broken = _make_mock_conn()

        async def dies() -> AsyncIterator[Notify]:
            raise OperationalError('server closed the connection')
            yield  # pragma: no cover

        broken.notifies = MagicMock(side_effect=dies)
        command = _make_mock_conn()
        fresh = _make_mock_conn(notes=[_notify('task_updates', 'after')])
        fresh_command = _make_mock_conn()
        with patch(
            CONNECT, new=AsyncMock(side_effect=[broken, command, fresh, fresh_command])
        ):
            listener = PostgresListener('postgresql://u:p@h/db')
            q = (await listener.listen('task_updates')).ok_value
            note = await asyncio.wait_for(q.get(), timeout=2.0)
        try:
            assert note.payload == 'after'
            assert 'LISTEN "task_updates"' in _executed(fresh)
        finally:
            await listener.close()


@pytest.mark.unit
class TestUnsubscribeAndClose:
    @pytest.mark.asyncio
    async def test_unlisten_only_after_last_subscriber(self) -> None:
        dispatcher, command = _make_mock_conn(), _make_mock_conn()
        with patch(CONNECT, new=AsyncMock(side_effect=[dispatcher, command])):
            listener = PostgresListener('postgresql://u:p@h/db')
            a = (await listener.listen('task_updates')).ok_value
            b = (await listener.listen('task_updates')).ok_value

        await listener.unsubscribe('task_updates', a)
        assert 'UNLISTEN "task_updates"' not in _executed(dispatcher)

        await listener.unsubscribe('task_updates', b)
        assert 'UNLISTEN "task_updates"' in _executed(dispatcher)
        assert 'task_updates' not in listener._listen_channels
        await listener.close()

    @pytest.mark.asyncio
    async def test_ping(self) -> None:
        listener = PostgresListener('postgresql://u:p@h/db')
        assert await listener.ping() is False

        dispatcher, command = _make_mock_conn(), _make_mock_conn()
        with patch(CONNECT, new=AsyncMock(side_effect=[dispatcher, command])):
            await listener.start()
        assert await listener.ping() is True

        command.execute.side_effect = OperationalError('gone')
        assert await listener.ping() is False
        await listener.close()

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self) -> None:
        dispatcher, command = _make_mock_conn(), _make_mock_conn()
        with patch(CONNECT, new=AsyncMock(side_effect=[dispatcher, command])):
            listener = PostgresListener('postgresql://u:p@h/db')
            await listener.listen('task_updates')

        await listener.close()
        await listener.close()

        dispatcher.close.assert_awaited_once()
        command.close.assert_awaited_once()
        assert listener._dispatcher_task is None
        assert not listener._subs
