"""SQL statements for the queue store.

Every queue table shares one schema, so statements are rendered once per
table from the templates below.  The table name is validated and quoted
before interpolation; every value is a bound parameter.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache

from sqlalchemy import TextClause, text

from durq.core.models.queue import QUEUE_ITEM_COLUMNS
from durq.core.utils.db import quote_identifier

_RETURNING = ', '.join(f't.{col}' for col in QUEUE_ITEM_COLUMNS)
_SELECT = ', '.join(QUEUE_ITEM_COLUMNS)


# ---------- Enqueue ----------
# ON CONFLICT reports a duplicate id as "no row returned" instead of an
# IntegrityError that would abort the transaction.

_ENQUEUE = """
INSERT INTO {table} AS t (
  id, type, payload, status, retry_count, max_retries,
  visibility_timeout_secs, visible_at, created_at, updated_at
) VALUES (
  :id,
  :type,
  CAST(:payload AS JSONB),
  'pending',
  0,
  :max_retries,
  :visibility_timeout_secs,
  COALESCE(CAST(:visible_at AS TIMESTAMPTZ), NOW()),
  NOW(),
  NOW()
)
ON CONFLICT (id) DO NOTHING
RETURNING t.id;
"""


# ---------- Claim ----------
# Due pending items and processing items whose lease (visible_at) has
# expired are both candidates; the latter is the crash recovery path.
# retry_count is bumped here so a crash between claim and ack still
# consumes an attempt.

_CLAIM = """
WITH next AS (
  SELECT id
  FROM {table}
  WHERE status IN ('pending', 'processing')
    AND visible_at <= NOW()
    AND retry_count <= max_retries
  ORDER BY visible_at ASC
  LIMIT 1
  FOR UPDATE SKIP LOCKED
)
UPDATE {table} t
SET status = 'processing',
    started_at = NOW(),
    visible_at = NOW() + t.visibility_timeout_secs * INTERVAL '1 second',
    retry_count = t.retry_count + 1,
    worker_id = :worker_id,
    updated_at = NOW()
FROM next
WHERE t.id = next.id
RETURNING {returning};
"""


# ---------- Complete ----------
# worker_id is the fencing token: a worker whose lease was taken over
# matches zero rows. It is released on completion; the status guard
# rejects a second complete.

_COMPLETE = """
UPDATE {table}
SET status = 'completed',
    worker_id = NULL,
    completed_at = NOW(),
    updated_at = NOW()
WHERE id = :id
  AND status = 'processing'
  AND worker_id = :worker_id;
"""


# ---------- Fail ----------
# Exhausted items go to dead and keep their visible_at; others return to
# pending, visible again after the caller-supplied backoff.

_FAIL = """
UPDATE {table}
SET status = CASE
      WHEN retry_count >= max_retries THEN 'dead'
      ELSE 'pending'
    END,
    error_message = :error_message,
    failed_at = NOW(),
    visible_at = CASE
      WHEN retry_count >= max_retries THEN visible_at
      ELSE NOW() + CAST(:backoff_seconds AS INTEGER) * INTERVAL '1 second'
    END,
    worker_id = NULL,
    updated_at = NOW()
WHERE id = :id
  AND status = 'processing'
  AND worker_id = :worker_id;
"""


# ---------- Reads ----------

_LIST_BY_TYPE = """
SELECT {select}
FROM {table}
WHERE type = :type
ORDER BY created_at DESC
LIMIT :limit;
"""

_GET_ITEM = """
SELECT {select}
FROM {table}
WHERE id = :id;
"""


SCHEMA_ADVISORY_LOCK_SQL = text("""
    SELECT pg_advisory_xact_lock(CAST(:key AS BIGINT))
""")

PING_SQL = text('SELECT 1')


@dataclass(frozen=True, slots=True)
class QueueStatements:
    """Compiled statements bound to one queue table."""

    table_name: str
    enqueue: TextClause
    claim: TextClause
    complete: TextClause
    fail: TextClause
    list_by_type: TextClause
    get_item: TextClause


@lru_cache(maxsize=None)
def statements_for(table_name: str) -> QueueStatements:
    """Render the statement set for a queue table (raises ValueError on a bad name)."""
    table = quote_identifier(table_name)
    fmt = {'table': table, 'returning': _RETURNING, 'select': _SELECT}
    return QueueStatements(
        table_name=table_name,
        enqueue=text(_ENQUEUE.format(**fmt)),
        claim=text(_CLAIM.format(**fmt)),
        complete=text(_COMPLETE.format(**fmt)),
        fail=text(_FAIL.format(**fmt)),
        list_by_type=text(_LIST_BY_TYPE.format(**fmt)),
        get_item=text(_GET_ITEM.format(**fmt)),
    )
