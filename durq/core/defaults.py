"""Shared default constants for the durq library."""

# Table used by the generic work queue.
DEFAULT_QUEUE_TABLE: str = 'durq_queue'

# Table used by the domain event queue (audit/notification fan-out).
DEFAULT_EVENT_QUEUE_TABLE: str = 'durq_event_queue'

# Attempts allowed after the first claim; an item can be claimed max_retries + 1 times.
DEFAULT_MAX_RETRIES: int = 3

# Lease granted on each claim. A crashed worker's item becomes reclaimable after this.
DEFAULT_VISIBILITY_TIMEOUT_SECS: int = 300

# Idle sleep between polls when the queue is empty.
DEFAULT_POLL_INTERVAL_MS: int = 5_000

# Failure backoff is backoff_base ** retry_count seconds, capped below.
DEFAULT_BACKOFF_BASE: int = 4
DEFAULT_MAX_BACKOFF_SECONDS: int = 3_600

# Rows returned by list_by_type when the caller gives no limit (CLI).
DEFAULT_LIST_LIMIT: int = 50
