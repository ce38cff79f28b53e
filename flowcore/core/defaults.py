"""Shared default constants for the flowcore engine."""

# Default queue lease duration in milliseconds.
# A popped item that is not acked within this window is redelivered by
# reclaim_expired(), so a crashed poller's claims come back to the queue.
DEFAULT_LEASE_MS: int = 60_000  # 60 seconds

# Default number of items returned by batch_poll when no count is given.
DEFAULT_BATCH_POLL_COUNT: int = 10

# Mirrors TaskDefinition.response_timeout_seconds when no definition exists.
DEFAULT_RESPONSE_TIMEOUT_SECONDS: int = 3600

# Prefixes used when synthesizing dynamic fork children.
DYNAMIC_FORK_TASK_PREFIX: str = 'dynamic_fork_task'
DYNAMIC_FORK_SUBWORKFLOW_PREFIX: str = 'dynamic_fork_subworkflow'

# Stored in place of secret input values (JWT private keys, secret values).
REDACTED_VALUE: str = '***'

# Queue priorities run from 0 (default) to this value; higher is served first.
MAX_QUEUE_PRIORITY: int = 99
