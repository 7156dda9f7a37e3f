"""durq - a durable, table-backed work queue on PostgreSQL"""

# Install Rust-style error handler on import
from .core.errors import install_error_handler as _install_error_handler

_install_error_handler()

from .core.app import Durq
from .core.models.app import AppConfig
from .core.models.broker import PostgresConfig
from .core.models.queue_config import QueueConfig
from .core.models.queue import QueueItem
from .core.models.resilience import WorkerResilienceConfig
from .core.defaults import DEFAULT_EVENT_QUEUE_TABLE, DEFAULT_QUEUE_TABLE
from .core.types.status import (
    QueueItemStatus,
    QUEUE_TERMINAL_STATES,
    QUEUE_CLAIMABLE_STATES,
)
from .core.errors import ErrorCode, ValidationReport, MultipleValidationErrors
from .core.registry.handlers import (
    HandlerRegistry,
    NotRegistered,
    DuplicateHandlerError,
)
from .core.store import (
    PostgresQueueStore,
    StoreErrorCode,
    StoreOperationError,
    StoreResult,
)
from .core.worker.config import WorkerConfig
from .core.worker.backoff import calculate_backoff
from .core.worker.worker import QueueWorker, PollOutcome, WorkerStoreError
from .core.types.result import Result, Ok, Err, is_ok, is_err

__all__ = [
    # Core
    'Durq',
    'AppConfig',
    'PostgresConfig',
    'QueueConfig',
    'QueueItem',
    'QueueItemStatus',
    'QUEUE_TERMINAL_STATES',
    'QUEUE_CLAIMABLE_STATES',
    'DEFAULT_QUEUE_TABLE',
    'DEFAULT_EVENT_QUEUE_TABLE',
    'ErrorCode',
    'ValidationReport',
    'MultipleValidationErrors',
    # Handlers
    'HandlerRegistry',
    'NotRegistered',
    'DuplicateHandlerError',
    # Store
    'PostgresQueueStore',
    'StoreErrorCode',
    'StoreOperationError',
    'StoreResult',
    # Worker
    'WorkerConfig',
    'WorkerResilienceConfig',
    'QueueWorker',
    'PollOutcome',
    'WorkerStoreError',
    'calculate_backoff',
    # Result type
    'Result',
    'Ok',
    'Err',
    'is_ok',
    'is_err',
]
