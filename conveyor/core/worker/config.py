"""Worker configuration dataclass."""

from __future__ import annotations

import os
import socket
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional

from conveyor.core.defaults import DEFAULT_CLAIM_IDLE_MS, DEFAULT_GROUP

if TYPE_CHECKING:
    from conveyor.core.models.resilience import WorkerResilienceConfig


def default_consumer_name() -> str:
    """Unique per process: ``<host>-<pid>-<8 hex>``."""
    return f'{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:8]}'


@dataclass
class WorkerConfig:
    group: str = DEFAULT_GROUP  # consumer group shared by every worker
    consumer: str = field(default_factory=default_consumer_name)  # this process in the group
    claim_idle_ms: int = DEFAULT_CLAIM_IDLE_MS  # reclaim pending entries idle this long
    retention_hours: Optional[int] = 24  # None disables stream trimming
    resilience_config: Optional['WorkerResilienceConfig'] = (
        None  # WorkerResilienceConfig, allow override
    )
