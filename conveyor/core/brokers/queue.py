# conveyor/core/brokers/queue.py
"""Durable competing-consumer queue contract."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, Sequence

from conveyor.core.brokers.result_types import BrokerResult


@dataclass(frozen=True)
class QueueEntry:
    """
    One delivered entry.

    - entry_id: monotonic sequence id assigned on append
    - task_id: task the envelope belongs to
    - body: raw envelope as appended (may be malformed)
    - delivery_count: 1 on first delivery, higher after reclaims
    """

    entry_id: int
    task_id: str
    body: str
    delivery_count: int = 1


class DurableQueue(Protocol):
    """
    Append-only ordered log with consumer-group delivery.

    Within a group every entry is delivered to one consumer at a time and
    stays pending until acknowledged. Pending entries idle longer than a
    threshold can be claimed by another consumer.
    """

    async def append(self, task_id: str, body: str) -> BrokerResult[int]: ...

    async def ensure_group(self, group: str) -> BrokerResult[None]: ...

    async def read_group(
        self, group: str, consumer: str, count: int, block_ms: int
    ) -> BrokerResult[list[QueueEntry]]: ...

    async def ack(self, group: str, entry_ids: Sequence[int]) -> BrokerResult[int]: ...

    async def claim_stale(
        self, group: str, consumer: str, min_idle_ms: int, count: int
    ) -> BrokerResult[list[QueueEntry]]: ...

    async def touch(
        self, group: str, consumer: str, entry_ids: Sequence[int]
    ) -> BrokerResult[list[int]]:
        """Reset the idle time of entries ``consumer`` still owns; returns those ids."""
        ...

    async def depth(self, group: str) -> BrokerResult[int]: ...

    async def trim(self, group: str, older_than_hours: int) -> BrokerResult[int]: ...
