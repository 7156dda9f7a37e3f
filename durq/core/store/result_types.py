"""Typed error types for queue store operations.

Result propagation policy
-------------------------
Where Result stops and exceptions take over:

* **Store layer** -- returns ``StoreResult``.  Never raises for
  operational failures (only for ``asyncio.CancelledError``).  Invalid
  arguments (negative backoff, non-positive limit, non-object payload)
  are programming errors and raise ``ValueError`` before any I/O.

* **Fencing** -- ``complete`` / ``fail`` return ``Ok(0)`` when the caller
  no longer holds the lease.  That is an expected outcome, not an error:
  callers check the row count.

* **Worker loop** -- handles ``StoreResult`` with real decisions: back off
  on retryable errors, stop on non-retryable ones, log lease loss.

* **Process boundaries** (CLI startup) -- convert ``Err`` to an exception
  and let the process crash.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from durq.core.types.result import Result


class StoreErrorCode(str, Enum):
    """Categorized store operation failure codes."""

    SCHEMA_INIT_FAILED = 'SCHEMA_INIT_FAILED'
    DUPLICATE_ID = 'DUPLICATE_ID'
    ENQUEUE_FAILED = 'ENQUEUE_FAILED'
    CLAIM_FAILED = 'CLAIM_FAILED'
    COMPLETE_FAILED = 'COMPLETE_FAILED'
    FAIL_FAILED = 'FAIL_FAILED'
    QUERY_FAILED = 'QUERY_FAILED'
    CLOSE_FAILED = 'CLOSE_FAILED'


@dataclass(slots=True, frozen=True)
class StoreOperationError:
    """Error payload carried inside Err(...) for store operations.

    Fields:
        code: which operation category failed
        message: human-readable description
        retryable: whether the caller can retry this operation
        exception: the original cause (if any)
    """

    code: StoreErrorCode
    message: str
    retryable: bool
    exception: BaseException | None = None


type StoreResult[T] = Result[T, StoreOperationError]
