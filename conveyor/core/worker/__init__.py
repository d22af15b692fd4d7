from conveyor.core.worker.config import WorkerConfig
from conveyor.core.worker.retry import RetryScheduler, compute_backoff_seconds
from conveyor.core.worker.worker import Worker

__all__ = ['Worker', 'WorkerConfig', 'RetryScheduler', 'compute_backoff_seconds']
