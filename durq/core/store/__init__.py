from durq.core.store.postgres import PostgresQueueStore
from durq.core.store.result_types import (
    StoreErrorCode,
    StoreOperationError,
    StoreResult,
)

__all__ = [
    'PostgresQueueStore',
    'StoreErrorCode',
    'StoreOperationError',
    'StoreResult',
]
