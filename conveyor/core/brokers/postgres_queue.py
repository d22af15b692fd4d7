# conveyor/core/brokers/postgres_queue.py
"""
PostgreSQL-backed durable queue.

Layout:
  - conveyor_stream_entries: append-only log, ``seq`` is the entry id
  - conveyor_consumer_groups: one cursor (``last_delivered_seq``) per group
  - conveyor_pending_entries: delivered, unacknowledged entries per group

Appends of one stream are serialized by a transaction-scoped advisory lock,
so committed sequence ids always form a gap-free prefix and a cursor never
skips an entry that commits late.
"""

from __future__ import annotations

import asyncio
import hashlib
from asyncio import Queue
from typing import Optional, Sequence

from psycopg import Notify
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from conveyor.core.brokers.listener import PostgresListener
from conveyor.core.brokers.queue import QueueEntry
from conveyor.core.brokers.result_types import (
    BrokerErrorCode,
    BrokerOperationError,
    BrokerResult,
    broker_error,
)
from conveyor.core.logging import get_logger
from conveyor.core.types.result import Err, Ok, is_err
from conveyor.core.utils.db import DB_ERRORS

logger = get_logger('queue')

# Upper bound between polls when no append notification arrives
_POLL_INTERVAL_S: float = 0.5


def stream_channel(stream: str) -> str:
    """NOTIFY channel on which appends to ``stream`` are announced."""
    return f'conveyor_stream_{stream}'


class PostgresStreamQueue:
    """
    Durable queue over one stream.

    Delivery is serialized per group by locking the group row ``FOR UPDATE``
    while a batch is assigned, so two consumers never receive the same entry.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        stream: str,
        listener: Optional[PostgresListener] = None,
        *,
        poll_interval_s: float = _POLL_INTERVAL_S,
    ) -> None:
        self.session_factory = session_factory
        self.stream = stream
        self.channel = stream_channel(stream)
        self.listener = listener
        self.poll_interval_s = poll_interval_s
        self._wakeups: Optional[Queue[Notify]] = None
        self._append_lock_key = self._advisory_key(stream)

    @staticmethod
    def _advisory_key(stream: str) -> int:
        h = hashlib.sha256(b'conveyor-append:' + stream.encode('utf-8')).digest()
        return int.from_bytes(h[:8], byteorder='big', signed=True)

    async def append(self, task_id: str, body: str) -> BrokerResult[int]:
        try:
            async with self.session_factory() as session:
                await session.execute(
                    text('SELECT pg_advisory_xact_lock(CAST(:key AS BIGINT))'),
                    {'key': self._append_lock_key},
                )
                result = await session.execute(
                    text("""
                    INSERT INTO conveyor_stream_entries (stream, task_id, body, appended_at)
                    VALUES (:stream, :task_id, :body, NOW())
                    RETURNING seq
                """),
                    {'stream': self.stream, 'task_id': task_id, 'body': body},
                )
                seq = int(result.scalar_one())
                # Delivered on commit
                await session.execute(
                    text('SELECT pg_notify(:channel, :payload)'),
                    {'channel': self.channel, 'payload': str(seq)},
                )
                await session.commit()
                return Ok(seq)
        except asyncio.CancelledError:
            raise
        except DB_ERRORS as exc:
            return Err(
                broker_error(
                    BrokerErrorCode.APPEND_FAILED, f'Failed to append task {task_id}', exc
                )
            )

    async def ensure_group(self, group: str) -> BrokerResult[None]:
        """Create ``group`` with its cursor at the start of the log, if missing."""
        try:
            async with self.session_factory() as session:
                await session.execute(
                    text("""
                    INSERT INTO conveyor_consumer_groups (stream, group_name, last_delivered_seq, created_at)
                    VALUES (:stream, :group, 0, NOW())
                    ON CONFLICT (stream, group_name) DO NOTHING
                """),
                    {'stream': self.stream, 'group': group},
                )
                await session.commit()
                return Ok(None)
        except asyncio.CancelledError:
            raise
        except DB_ERRORS as exc:
            return Err(
                broker_error(
                    BrokerErrorCode.GROUP_CREATE_FAILED,
                    f'Failed to create consumer group {group!r}',
                    exc,
                )
            )

    async def _assign_batch(
        self, group: str, consumer: str, count: int
    ) -> BrokerResult[list[QueueEntry]]:
        try:
            async with self.session_factory() as session:
                cursor_row = (
                    await session.execute(
                        text("""
                        SELECT last_delivered_seq
                        FROM conveyor_consumer_groups
                        WHERE stream = :stream AND group_name = :group
                        FOR UPDATE
                    """),
                        {'stream': self.stream, 'group': group},
                    )
                ).fetchone()
                if cursor_row is None:
                    await session.rollback()
                    return Err(
                        BrokerOperationError(
                            code=BrokerErrorCode.READ_FAILED,
                            message=f'Consumer group {group!r} does not exist on stream {self.stream!r}',
                            retryable=False,
                        )
                    )

                rows = (
                    await session.execute(
                        text("""
                        SELECT seq, task_id, body
                        FROM conveyor_stream_entries
                        WHERE stream = :stream AND seq > :cursor
                        ORDER BY seq
                        LIMIT :count
                    """),
                        {'stream': self.stream, 'cursor': cursor_row[0], 'count': count},
                    )
                ).fetchall()
                if not rows:
                    await session.rollback()
                    return Ok([])

                seqs = [int(r[0]) for r in rows]
                await session.execute(
                    text("""
                    INSERT INTO conveyor_pending_entries
                        (stream, group_name, seq, consumer, delivered_at, delivery_count)
                    SELECT :stream, :group, s, :consumer, NOW(), 1
                    FROM unnest(CAST(:seqs AS BIGINT[])) AS s
                """),
                    {
                        'stream': self.stream,
                        'group': group,
                        'consumer': consumer,
                        'seqs': seqs,
                    },
                )
                await session.execute(
                    text("""
                    UPDATE conveyor_consumer_groups
                    SET last_delivered_seq = :last
                    WHERE stream = :stream AND group_name = :group
                """),
                    {'last': seqs[-1], 'stream': self.stream, 'group': group},
                )
                await session.commit()
                return Ok(
                    [QueueEntry(entry_id=int(r[0]), task_id=r[1], body=r[2]) for r in rows]
                )
        except asyncio.CancelledError:
            raise
        except DB_ERRORS as exc:
            return Err(
                broker_error(
                    BrokerErrorCode.READ_FAILED, f'Failed to read group {group!r}', exc
                )
            )

    async def _wakeup_queue(self) -> Optional[Queue[Notify]]:
        if self._wakeups is not None or self.listener is None:
            return self._wakeups
        sub = await self.listener.listen(self.channel)
        if is_err(sub):
            logger.debug(f'Append notifications unavailable, polling: {sub.err_value.message}')
            return None
        self._wakeups = sub.ok_value
        return self._wakeups

    async def read_group(
        self, group: str, consumer: str, count: int, block_ms: int
    ) -> BrokerResult[list[QueueEntry]]:
        """
        Deliver up to ``count`` new entries to ``consumer``.

        Waits up to ``block_ms`` for an append when the group is caught up.
        Returns an empty list when nothing arrived in time.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + block_ms / 1000.0
        wakeups = await self._wakeup_queue()

        while True:
            if wakeups is not None:
                # Stale wakeups carry no information once we are about to read
                while not wakeups.empty():
                    wakeups.get_nowait()

            batch = await self._assign_batch(group, consumer, count)
            if is_err(batch) or batch.ok_value:
                return batch

            remaining = deadline - loop.time()
            if remaining <= 0:
                return Ok([])
            wait_s = min(remaining, self.poll_interval_s)
            if wakeups is None:
                await asyncio.sleep(wait_s)
                continue
            try:
                await asyncio.wait_for(wakeups.get(), timeout=wait_s)
            except asyncio.TimeoutError:
                pass

    async def ack(self, group: str, entry_ids: Sequence[int]) -> BrokerResult[int]:
        if not entry_ids:
            return Ok(0)
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    text("""
                    DELETE FROM conveyor_pending_entries
                    WHERE stream = :stream AND group_name = :group
                      AND seq = ANY(CAST(:seqs AS BIGINT[]))
                """),
                    {'stream': self.stream, 'group': group, 'seqs': list(entry_ids)},
                )
                await session.commit()
                return Ok(getattr(result, 'rowcount', 0) or 0)
        except asyncio.CancelledError:
            raise
        except DB_ERRORS as exc:
            return Err(
                broker_error(
                    BrokerErrorCode.ACK_FAILED, f'Failed to ack entries {list(entry_ids)}', exc
                )
            )

    async def claim_stale(
        self, group: str, consumer: str, min_idle_ms: int, count: int
    ) -> BrokerResult[list[QueueEntry]]:
        """Take over pending entries whose consumer went quiet for ``min_idle_ms``."""
        try:
            async with self.session_factory() as session:
                rows = (
                    await session.execute(
                        text("""
                        WITH stale AS (
                            SELECT seq
                            FROM conveyor_pending_entries
                            WHERE stream = :stream AND group_name = :group
                              AND delivered_at < NOW() - make_interval(secs => CAST(:idle_s AS DOUBLE PRECISION))
                            ORDER BY seq
                            LIMIT :count
                            FOR UPDATE SKIP LOCKED
                        ),
                        claimed AS (
                            UPDATE conveyor_pending_entries p
                            SET consumer = :consumer,
                                delivered_at = NOW(),
                                delivery_count = p.delivery_count + 1
                            FROM stale
                            WHERE p.stream = :stream AND p.group_name = :group
                              AND p.seq = stale.seq
                            RETURNING p.seq, p.delivery_count
                        )
                        SELECT c.seq, e.task_id, e.body, c.delivery_count
                        FROM claimed c
                        JOIN conveyor_stream_entries e ON e.seq = c.seq
                        ORDER BY c.seq
                    """),
                        {
                            'stream': self.stream,
                            'group': group,
                            'consumer': consumer,
                            'idle_s': min_idle_ms / 1000.0,
                            'count': count,
                        },
                    )
                ).fetchall()
                await session.commit()
                return Ok(
                    [
                        QueueEntry(
                            entry_id=int(r[0]),
                            task_id=r[1],
                            body=r[2],
                            delivery_count=int(r[3]),
                        )
                        for r in rows
                    ]
                )
        except asyncio.CancelledError:
            raise
        except DB_ERRORS as exc:
            return Err(
                broker_error(
                    BrokerErrorCode.CLAIM_FAILED,
                    f'Failed to claim stale entries of group {group!r}',
                    exc,
                )
            )

    async def touch(
        self, group: str, consumer: str, entry_ids: Sequence[int]
    ) -> BrokerResult[list[int]]:
        """
        Refresh ``delivered_at`` of pending entries still owned by ``consumer``.

        Entries a peer already claimed are left alone and missing from the
        result, so the caller knows not to run them.
        """
        if not entry_ids:
            return Ok([])
        try:
            async with self.session_factory() as session:
                rows = (
                    await session.execute(
                        text("""
                        UPDATE conveyor_pending_entries
                        SET delivered_at = NOW()
                        WHERE stream = :stream AND group_name = :group
                          AND consumer = :consumer
                          AND seq = ANY(CAST(:seqs AS BIGINT[]))
                        RETURNING seq
                    """),
                        {
                            'stream': self.stream,
                            'group': group,
                            'consumer': consumer,
                            'seqs': list(entry_ids),
                        },
                    )
                ).fetchall()
                await session.commit()
                return Ok(sorted(int(r[0]) for r in rows))
        except asyncio.CancelledError:
            raise
        except DB_ERRORS as exc:
            return Err(
                broker_error(
                    BrokerErrorCode.TOUCH_FAILED,
                    f'Failed to refresh entries {list(entry_ids)}',
                    exc,
                )
            )

    async def depth(self, group: str) -> BrokerResult[int]:
        """Entries not yet acknowledged by ``group``: undelivered plus pending."""
        try:
            async with self.session_factory() as session:
                row = (
                    await session.execute(
                        text("""
                        SELECT
                            COALESCE((
                                SELECT COUNT(*) FROM conveyor_stream_entries e
                                WHERE e.stream = :stream
                                  AND e.seq > COALESCE(g.last_delivered_seq, 0)
                            ), 0)
                            + COALESCE((
                                SELECT COUNT(*) FROM conveyor_pending_entries p
                                WHERE p.stream = :stream AND p.group_name = :group
                            ), 0)
                        FROM (SELECT 1) AS one
                        LEFT JOIN conveyor_consumer_groups g
                          ON g.stream = :stream AND g.group_name = :group
                    """),
                        {'stream': self.stream, 'group': group},
                    )
                ).fetchone()
                return Ok(int(row[0]) if row is not None else 0)
        except asyncio.CancelledError:
            raise
        except DB_ERRORS as exc:
            return Err(
                broker_error(
                    BrokerErrorCode.DEPTH_QUERY_FAILED,
                    f'Failed to measure depth of group {group!r}',
                    exc,
                )
            )

    async def trim(self, group: str, older_than_hours: int) -> BrokerResult[int]:
        """Delete entries the group acknowledged more than ``older_than_hours`` ago."""
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    text("""
                    DELETE FROM conveyor_stream_entries e
                    USING conveyor_consumer_groups g
                    WHERE e.stream = :stream
                      AND g.stream = :stream AND g.group_name = :group
                      AND e.seq <= g.last_delivered_seq
                      AND e.appended_at < NOW() - make_interval(hours => CAST(:hours AS INTEGER))
                      AND NOT EXISTS (
                          SELECT 1 FROM conveyor_pending_entries p
                          WHERE p.stream = e.stream AND p.seq = e.seq
                      )
                """),
                    {'stream': self.stream, 'group': group, 'hours': older_than_hours},
                )
                await session.commit()
                return Ok(getattr(result, 'rowcount', 0) or 0)
        except asyncio.CancelledError:
            raise
        except DB_ERRORS as exc:
            return Err(
                broker_error(
                    BrokerErrorCode.TRIM_FAILED, f'Failed to trim stream {self.stream!r}', exc
                )
            )

    async def close(self) -> None:
        if self.listener is not None and self._wakeups is not None:
            await self.listener.unsubscribe(self.channel, self._wakeups)
        self._wakeups = None
