from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    BigInteger,
    DateTime,
    Enum as SQLAlchemyEnum,
    ForeignKeyConstraint,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from conveyor.core.types.status import TaskStatus


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for PostgreSQL models"""

    pass


class TaskModel(Base):
    """
    Task record: the persisted row of truth for a task's status.

    - id: str # uuid4, also carried by every queue entry for the task
    - task_type: str # one of TaskType values
    - payload: dict # opaque submitted payload
    - status: TaskStatus # pending, in_progress, completed, failed
    - retries: int # failed attempts so far, never decreases
    - processing_time_ms: int # duration of the successful attempt, set on completion
    - failed_reason: str # message of the last handler failure
    - created_at / updated_at / started_at / completed_at / failed_at: datetime
    """

    __tablename__ = 'conveyor_tasks'

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    task_type: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(
        JSONB, nullable=False, server_default=text("'{}'::jsonb")
    )
    status: Mapped[TaskStatus] = mapped_column(
        SQLAlchemyEnum(
            TaskStatus,
            native_enum=False,
            values_callable=lambda e: [m.value for m in e],
            length=16,
        ),
        nullable=False,
        default=TaskStatus.PENDING,
        index=True,
    )
    retries: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=text('0')
    )
    processing_time_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    failed_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text('NOW()')
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text('NOW()')
    )
    started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    failed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (Index('idx_conveyor_tasks_created_at', 'created_at'),)


class StreamEntryModel(Base):
    """
    Append-only stream log.

    - seq: int # monotonic sequence id assigned on append
    - stream: str # stream name
    - task_id: str # task the envelope belongs to (not a foreign key: orphans are legal)
    - body: str # JSON envelope as appended
    """

    __tablename__ = 'conveyor_stream_entries'

    seq: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    stream: Mapped[str] = mapped_column(String(63), nullable=False)
    task_id: Mapped[str] = mapped_column(String(36), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    appended_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text('NOW()')
    )

    __table_args__ = (Index('idx_conveyor_stream_entries_stream_seq', 'stream', 'seq'),)


class ConsumerGroupModel(Base):
    """Per-group delivery cursor over a stream."""

    __tablename__ = 'conveyor_consumer_groups'

    stream: Mapped[str] = mapped_column(String(63), primary_key=True)
    group_name: Mapped[str] = mapped_column(String(63), primary_key=True)
    last_delivered_seq: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=0, server_default=text('0')
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text('NOW()')
    )


class PendingEntryModel(Base):
    """
    Delivered but unacknowledged entries of a group.

    - consumer: str # consumer currently owning the delivery
    - delivered_at: datetime # last (re)delivery time, drives idle reclaim
    - delivery_count: int # 1 on first delivery, incremented on every reclaim
    """

    __tablename__ = 'conveyor_pending_entries'

    stream: Mapped[str] = mapped_column(String(63), primary_key=True)
    group_name: Mapped[str] = mapped_column(String(63), primary_key=True)
    seq: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    consumer: Mapped[str] = mapped_column(String(255), nullable=False)
    delivered_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text('NOW()')
    )
    delivery_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=1, server_default=text('1')
    )

    __table_args__ = (
        ForeignKeyConstraint(
            ['stream', 'group_name'],
            ['conveyor_consumer_groups.stream', 'conveyor_consumer_groups.group_name'],
            ondelete='CASCADE',
        ),
        Index(
            'idx_conveyor_pending_entries_idle',
            'stream',
            'group_name',
            'delivered_at',
        ),
    )
