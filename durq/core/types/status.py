# core/types/status.py
"""
Core types and enums used throughout the library.
This module should not import from other library modules.
"""

from enum import Enum


class QueueItemStatus(Enum):
    """Queue item lifecycle status"""

    PENDING = 'pending'  # Waiting to become visible and be claimed.
    # Default status on enqueue, and the status a retryable failure returns to.

    PROCESSING = 'processing'  # Leased by a worker until visible_at.
    # Reclaimable by any worker once the lease has expired.

    COMPLETED = 'completed'  # Acknowledged by the lease holder.

    DEAD = 'dead'  # Failed with no retries left (dead-lettered).

    @property
    def is_terminal(self) -> bool:
        """Whether this status represents a final state (no further transitions)."""
        return self in QUEUE_TERMINAL_STATES


QUEUE_TERMINAL_STATES: frozenset[QueueItemStatus] = frozenset({
    QueueItemStatus.COMPLETED,
    QueueItemStatus.DEAD,
})

# Statuses the claim query may pick up (subject to visibility and retry budget).
QUEUE_CLAIMABLE_STATES: frozenset[QueueItemStatus] = frozenset({
    QueueItemStatus.PENDING,
    QueueItemStatus.PROCESSING,
})
