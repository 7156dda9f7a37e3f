"""Worker configuration dataclass."""

from __future__ import annotations

import os
import socket
import uuid
from dataclasses import dataclass
from typing import Optional

from durq.core.defaults import (
    DEFAULT_BACKOFF_BASE,
    DEFAULT_MAX_BACKOFF_SECONDS,
    DEFAULT_POLL_INTERVAL_MS,
)
from durq.core.errors import (
    ConfigurationError,
    ErrorCode,
    ValidationReport,
    raise_collected,
)


def default_worker_id() -> str:
    """hostname:pid:random suffix; unique per worker instance."""
    return f'{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}'


@dataclass
class WorkerConfig:
    # Fencing token stamped on every claimed row; must be unique per worker.
    # None gives every worker built from this config its own default_worker_id().
    worker_id: Optional[str] = None
    # Sleep between polls when the queue is empty.
    poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS
    # Failure backoff: backoff_base ** retry_count seconds, capped.
    backoff_base: int = DEFAULT_BACKOFF_BASE
    max_backoff_seconds: int = DEFAULT_MAX_BACKOFF_SECONDS
    enabled: bool = True

    def __post_init__(self) -> None:
        report = ValidationReport('worker')
        if self.worker_id is not None and not self.worker_id:
            report.add(
                ConfigurationError(
                    message='worker_id must be a non-empty string',
                    code=ErrorCode.CONFIG_INVALID_WORKER,
                    help_text='omit worker_id to get hostname:pid:<random>',
                )
            )
        if self.poll_interval_ms <= 0:
            report.add(
                ConfigurationError(
                    message='poll_interval_ms must be positive',
                    code=ErrorCode.CONFIG_INVALID_WORKER,
                    notes=[f'got poll_interval_ms={self.poll_interval_ms}'],
                )
            )
        if self.backoff_base < 1:
            report.add(
                ConfigurationError(
                    message='backoff_base must be >= 1',
                    code=ErrorCode.CONFIG_INVALID_WORKER,
                    notes=[f'got backoff_base={self.backoff_base}'],
                    help_text='use 1 for a constant 1s retry delay',
                )
            )
        if self.max_backoff_seconds < 0:
            report.add(
                ConfigurationError(
                    message='max_backoff_seconds must be non-negative',
                    code=ErrorCode.CONFIG_INVALID_WORKER,
                    notes=[f'got max_backoff_seconds={self.max_backoff_seconds}'],
                )
            )
        raise_collected(report)
