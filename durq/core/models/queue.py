# durq/core/models/queue.py
from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping, Optional
from durq.core.codec.serde import Json, loads_payload
from durq.core.types.status import QueueItemStatus


QUEUE_ITEM_COLUMNS: tuple[str, ...] = (
    'id',
    'type',
    'payload',
    'status',
    'retry_count',
    'max_retries',
    'visibility_timeout_secs',
    'visible_at',
    'worker_id',
    'started_at',
    'completed_at',
    'failed_at',
    'error_message',
    'created_at',
    'updated_at',
)
"""Column order used by every statement that returns whole items."""


@dataclass(frozen=True)
class QueueItem:
    """
    Snapshot of a queue row as seen by the caller.

    Returned by claim_next (already transitioned to processing, with the lease
    stamped), list_by_type and get_item. It is a value, not a live record:
    state changes only happen through the store operations.
    """

    id: str
    type: str
    payload: dict[str, Json]
    status: QueueItemStatus
    retry_count: int
    max_retries: int
    visibility_timeout_secs: int
    visible_at: datetime
    created_at: datetime
    updated_at: datetime
    worker_id: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    extras: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def retries_exhausted(self) -> bool:
        """True when the next failure dead-letters the item."""
        return self.retry_count >= self.max_retries

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> 'QueueItem':
        """Build an item from a result row mapping (``result.mappings()``)."""
        data = dict(row)
        return cls(
            id=data.pop('id'),
            type=data.pop('type'),
            payload=loads_payload(data.pop('payload', None)),
            status=QueueItemStatus(data.pop('status')),
            retry_count=int(data.pop('retry_count')),
            max_retries=int(data.pop('max_retries')),
            visibility_timeout_secs=int(data.pop('visibility_timeout_secs')),
            visible_at=data.pop('visible_at'),
            created_at=data.pop('created_at'),
            updated_at=data.pop('updated_at'),
            worker_id=data.pop('worker_id', None),
            started_at=data.pop('started_at', None),
            completed_at=data.pop('completed_at', None),
            failed_at=data.pop('failed_at', None),
            error_message=data.pop('error_message', None),
            extras=data,
        )
