from conveyor.core.brokers.postgres import PostgresBroker
from conveyor.core.brokers.queue import DurableQueue, QueueEntry
from conveyor.core.brokers.result_types import (
    BrokerErrorCode,
    BrokerOperationError,
    BrokerResult,
)

__all__ = [
    'PostgresBroker',
    'DurableQueue',
    'QueueEntry',
    'BrokerErrorCode',
    'BrokerOperationError',
    'BrokerResult',
]
