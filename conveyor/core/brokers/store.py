# conveyor/core/brokers/store.py
"""Task record store: the persisted status and retry history of each task."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional, Protocol

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from conveyor.core.brokers.result_types import BrokerErrorCode, BrokerResult, broker_error
from conveyor.core.models.task_pg import TaskModel
from conveyor.core.models.tasks import TaskRecord
from conveyor.core.types.result import Err, Ok
from conveyor.core.types.status import TaskStatus
from conveyor.core.utils.db import DB_ERRORS

_RECORD_COLUMNS = (
    'id, task_type, status, payload, retries, created_at, processing_time_ms, failed_reason'
)


@dataclass(frozen=True)
class AttemptStart:
    """
    Outcome of ``mark_in_progress``.

    ``status`` is ``IN_PROGRESS`` when the attempt may run. Otherwise the
    record was already final (completed, or failed with no retries left) and
    is returned unchanged.
    """

    retries: int
    status: TaskStatus

    @property
    def final(self) -> bool:
        return self.status is not TaskStatus.IN_PROGRESS


def is_final(status: TaskStatus, retries: int, max_retries: int) -> bool:
    return status is TaskStatus.COMPLETED or (
        status is TaskStatus.FAILED and retries >= max_retries
    )


class TaskStore(Protocol):
    """
    Record operations used by admission and the worker.

    Attempt outcomes (``mark_completed``, ``record_failure``) apply only to a
    record that is ``in_progress`` and return its retry count. ``None`` means
    no record exists (an orphaned queue entry) or the attempt no longer owns
    the record. Final records are never moved again.
    """

    async def insert_pending(
        self, task_id: str, task_type: str, payload: dict[str, Any]
    ) -> BrokerResult[None]: ...

    async def get(self, task_id: str) -> BrokerResult[Optional[TaskRecord]]: ...

    async def mark_in_progress(
        self, task_id: str, max_retries: int
    ) -> BrokerResult[Optional[AttemptStart]]: ...

    async def mark_completed(
        self, task_id: str, processing_time_ms: int
    ) -> BrokerResult[Optional[int]]: ...

    async def record_failure(
        self, task_id: str, reason: str
    ) -> BrokerResult[Optional[int]]: ...

    async def list_recent(self, limit: int) -> BrokerResult[list[TaskRecord]]: ...

    async def ping(self) -> BrokerResult[None]: ...


def _row_to_record(row: Any) -> TaskRecord:
    return TaskRecord(
        task_id=row[0],
        task_type=row[1],
        status=TaskStatus(row[2]),
        payload=row[3] if isinstance(row[3], dict) else {},
        retries=int(row[4] or 0),
        created_at=row[5],
        processing_time_ms=row[6],
        failed_reason=row[7],
    )


class PostgresTaskStore:
    """TaskStore over the ``conveyor_tasks`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def insert_pending(
        self, task_id: str, task_type: str, payload: dict[str, Any]
    ) -> BrokerResult[None]:
        now = datetime.now(timezone.utc)
        try:
            async with self.session_factory() as session:
                session.add(
                    TaskModel(
                        id=task_id,
                        task_type=task_type,
                        payload=payload,
                        status=TaskStatus.PENDING,
                        retries=0,
                        created_at=now,
                        updated_at=now,
                    )
                )
                await session.commit()
                return Ok(None)
        except asyncio.CancelledError:
            raise
        except DB_ERRORS as exc:
            return Err(
                broker_error(
                    BrokerErrorCode.RECORD_WRITE_FAILED,
                    f'Failed to insert record for task {task_id}',
                    exc,
                )
            )

    async def get(self, task_id: str) -> BrokerResult[Optional[TaskRecord]]:
        try:
            async with self.session_factory() as session:
                row = (
                    await session.execute(
                        text(f'SELECT {_RECORD_COLUMNS} FROM conveyor_tasks WHERE id = :id'),
                        {'id': task_id},
                    )
                ).fetchone()
                return Ok(_row_to_record(row) if row is not None else None)
        except asyncio.CancelledError:
            raise
        except DB_ERRORS as exc:
            return Err(
                broker_error(
                    BrokerErrorCode.RECORD_QUERY_FAILED, f'Failed to load task {task_id}', exc
                )
            )

    async def _update_returning_retries(
        self, task_id: str, statement: str, params: dict[str, Any]
    ) -> BrokerResult[Optional[int]]:
        try:
            async with self.session_factory() as session:
                row = (
                    await session.execute(text(statement), {'id': task_id, **params})
                ).fetchone()
                await session.commit()
                return Ok(int(row[0]) if row is not None else None)
        except asyncio.CancelledError:
            raise
        except DB_ERRORS as exc:
            return Err(
                broker_error(
                    BrokerErrorCode.RECORD_WRITE_FAILED,
                    f'Failed to update record for task {task_id}',
                    exc,
                )
            )

    async def mark_in_progress(
        self, task_id: str, max_retries: int
    ) -> BrokerResult[Optional[AttemptStart]]:
        """Start an attempt unless the record is already final; ``None`` when missing."""
        try:
            async with self.session_factory() as session:
                row = (
                    await session.execute(
                        text('SELECT status, retries FROM conveyor_tasks WHERE id = :id FOR UPDATE'),
                        {'id': task_id},
                    )
                ).fetchone()
                if row is None:
                    await session.commit()
                    return Ok(None)
                status, retries = TaskStatus(row[0]), int(row[1] or 0)
                if is_final(status, retries, max_retries):
                    await session.commit()
                    return Ok(AttemptStart(retries=retries, status=status))
                await session.execute(
                    text("""
                    UPDATE conveyor_tasks
                    SET status = 'in_progress', started_at = NOW(), updated_at = NOW()
                    WHERE id = :id
                """),
                    {'id': task_id},
                )
                await session.commit()
                return Ok(AttemptStart(retries=retries, status=TaskStatus.IN_PROGRESS))
        except asyncio.CancelledError:
            raise
        except DB_ERRORS as exc:
            return Err(
                broker_error(
                    BrokerErrorCode.RECORD_WRITE_FAILED,
                    f'Failed to start attempt for task {task_id}',
                    exc,
                )
            )

    async def mark_completed(
        self, task_id: str, processing_time_ms: int
    ) -> BrokerResult[Optional[int]]:
        return await self._update_returning_retries(
            task_id,
            """
            UPDATE conveyor_tasks
            SET status = 'completed',
                processing_time_ms = :processing_time_ms,
                completed_at = NOW(),
                updated_at = NOW()
            WHERE id = :id AND status = 'in_progress'
            RETURNING retries
            """,
            {'processing_time_ms': processing_time_ms},
        )

    async def record_failure(self, task_id: str, reason: str) -> BrokerResult[Optional[int]]:
        """Increment retries and mark failed in one statement; returns the new count."""
        return await self._update_returning_retries(
            task_id,
            """
            UPDATE conveyor_tasks
            SET status = 'failed',
                retries = retries + 1,
                failed_reason = :reason,
                failed_at = NOW(),
                updated_at = NOW()
            WHERE id = :id AND status = 'in_progress'
            RETURNING retries
            """,
            {'reason': reason},
        )

    async def list_recent(self, limit: int) -> BrokerResult[list[TaskRecord]]:
        """Most recently created records first."""
        try:
            async with self.session_factory() as session:
                rows = (
                    await session.execute(
                        text(f"""
                        SELECT {_RECORD_COLUMNS}
                        FROM conveyor_tasks
                        ORDER BY created_at DESC
                        LIMIT :limit
                    """),
                        {'limit': limit},
                    )
                ).fetchall()
                return Ok([_row_to_record(r) for r in rows])
        except asyncio.CancelledError:
            raise
        except DB_ERRORS as exc:
            return Err(
                broker_error(BrokerErrorCode.RECORD_QUERY_FAILED, 'Failed to list tasks', exc)
            )

    async def ping(self) -> BrokerResult[None]:
        try:
            async with self.session_factory() as session:
                await session.execute(text('SELECT 1'))
                return Ok(None)
        except asyncio.CancelledError:
            raise
        except DB_ERRORS as exc:
            return Err(
                broker_error(
                    BrokerErrorCode.HEALTH_CHECK_FAILED, 'Record store is unreachable', exc
                )
            )
