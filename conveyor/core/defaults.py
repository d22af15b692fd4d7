"""Shared default constants for conveyor."""

# Retries after which a failed task is abandoned (terminal FAILED).
MAX_RETRIES: int = 3

# Base unit for retry backoff: delay = unit * 2**retries.
DEFAULT_BACKOFF_UNIT_MS: int = 1_000

# Admission backpressure ceiling on approximate queue depth.
DEFAULT_QUEUE_CAPACITY: int = 1_000

DEFAULT_STREAM: str = 'tasks'
DEFAULT_GROUP: str = 'workers'
DEFAULT_EVENT_CHANNEL: str = 'task_updates'

# Pending (delivered, unacknowledged) entries idle longer than this are
# redelivered to another consumer of the group.
DEFAULT_CLAIM_IDLE_MS: int = 60_000

# Number of records returned by the list operation.
DEFAULT_LIST_LIMIT: int = 100

# WebSocket-style close code used for observers on shutdown.
NORMAL_CLOSURE: int = 1000

# Close code used when an observer's origin is not allowed.
POLICY_VIOLATION: int = 1008
