# durq/core/store/postgres.py
from __future__ import annotations
import asyncio, hashlib
import threading
from datetime import datetime
from typing import Any, Mapping, Optional
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, async_sessionmaker
from durq.core.codec.serde import dumps_payload
from durq.core.defaults import DEFAULT_LIST_LIMIT
from durq.core.models.broker import PostgresConfig
from durq.core.models.queue import QueueItem
from durq.core.models.queue_config import QueueConfig
from durq.core.models.queue_pg import Base, queue_model_for
from durq.core.store.result_types import (
    StoreErrorCode,
    StoreOperationError,
    StoreResult,
)
from durq.core.store.sql import (
    PING_SQL,
    SCHEMA_ADVISORY_LOCK_SQL,
    statements_for,
)
from durq.core.types.result import Err, Ok, is_err
from durq.core.utils.db import is_retryable_connection_error
from durq.core.utils.loop_runner import LoopRunner
from durq.core.utils.url import mask_database_url
from durq.core.logging import get_logger


class PostgresQueueStore:
    """
    PostgreSQL-backed durable work queue with lease-based claiming.

    Provides both async and sync APIs:
      - Async: enqueue_async(), claim_next_async(), complete_async(), fail_async(), ...
      - Sync: enqueue(), claim_next(), complete(), fail(), ... (run in a background event loop)

    Semantics:
      - At-least-once delivery: a claimed item whose lease (visible_at) expires
        without complete/fail becomes claimable again by any worker.
      - Concurrent claimers never block on each other (FOR UPDATE SKIP LOCKED).
      - complete/fail are fenced on worker_id and return the affected row count;
        0 means the lease was lost and is not an error.
      - All timestamps come from the database clock.

    Every operation returns a StoreResult and never raises for operational
    failures. Several stores (one per queue table) may share one engine and
    its loop runner.
    """

    def __init__(
        self,
        config: PostgresConfig,
        queue: Optional[QueueConfig] = None,
        *,
        engine: Optional[AsyncEngine] = None,
        loop_runner: Optional[LoopRunner] = None,
    ):
        self.config = config
        self.queue = queue or QueueConfig()
        self.logger = get_logger('store')

        # Validates the table name before any SQL is rendered.
        self.statements = statements_for(self.queue.table_name)
        self.model = queue_model_for(self.queue.table_name)

        self._owns_engine = engine is None
        self.async_engine = engine or create_async_engine(
            self.config.database_url, **self.config.engine_options()
        )
        self.session_factory = async_sessionmaker(
            self.async_engine, expire_on_commit=False
        )

        self._initialized = False
        self._init_lock: Optional[asyncio.Lock] = None
        # Sync facades; a store sharing another's engine must share its runner
        # too, since an engine's pool is bound to the loop that opened it.
        self._owns_runner = loop_runner is None
        self._loop_runner = loop_runner or LoopRunner()

        self.logger.info(
            f'PostgresQueueStore initialized '
            f'(table={self.queue.table_name}, url={mask_database_url(self.config.database_url)})'
        )

    @property
    def table_name(self) -> str:
        return self.queue.table_name

    def _schema_advisory_key(self) -> int:
        """
        Compute a stable 64-bit advisory lock key for schema initialization.

        Keyed on the database URL and table so that different clusters and
        different queues do not contend on the same lock.
        """
        basis = f'{self.config.database_url}|{self.queue.table_name}'.encode(
            'utf-8', errors='ignore'
        )
        h = hashlib.sha256(b'durq-schema:' + basis).digest()
        return int.from_bytes(h[:8], byteorder='big', signed=True)

    def _failure(
        self,
        code: StoreErrorCode,
        message: str,
        exc: BaseException,
    ) -> Err[StoreOperationError]:
        retryable = is_retryable_connection_error(exc)
        self.logger.error(
            f'{message} (table={self.queue.table_name}, retryable={retryable}): '
            f'{type(exc).__name__}: {exc}'
        )
        return Err(
            StoreOperationError(
                code=code,
                message=f'{message}: {exc}',
                retryable=retryable,
                exception=exc,
            )
        )

    async def _ensure_initialized(self) -> None:
        if self._initialized:
            return
        if self._init_lock is None:
            self._init_lock = asyncio.Lock()
        async with self._init_lock:
            if self._initialized:
                return
            table = self.model.__table__  # type: ignore[attr-defined]
            async with self.async_engine.begin() as conn:
                # Serialize DDL across processes sharing the database.
                await conn.execute(
                    SCHEMA_ADVISORY_LOCK_SQL,
                    {'key': self._schema_advisory_key()},
                )
                await conn.run_sync(
                    lambda sync_conn: Base.metadata.create_all(
                        sync_conn, tables=[table], checkfirst=True
                    )
                )
            self._initialized = True
            self.logger.debug(f'Schema ready for table {self.queue.table_name}')

    async def ensure_schema_initialized(self) -> StoreResult[None]:
        """
        Create the queue table and its indices if they do not exist.

        Safe to call multiple times and from multiple processes; guarded by a
        PostgreSQL advisory lock to avoid DDL races.
        """
        try:
            await self._ensure_initialized()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return self._failure(
                StoreErrorCode.SCHEMA_INIT_FAILED,
                'Schema initialization failed',
                exc,
            )
        return Ok(None)

    # ----------------- Async API -----------------

    async def enqueue_async(
        self,
        item_id: str,
        item_type: str,
        payload: Mapping[str, Any],
        *,
        max_retries: Optional[int] = None,
        visibility_timeout_secs: Optional[int] = None,
        visible_at: Optional[datetime] = None,
    ) -> StoreResult[str]:
        """
        Insert a new pending item.

        Omitted max_retries / visibility_timeout_secs fall back to the queue
        defaults; omitted visible_at means "due now" on the database clock.
        A future visible_at schedules a delayed item.

        Returns:
            Ok(item_id), or Err(DUPLICATE_ID) if the id already exists.

        Raises:
            ValueError: on invalid arguments (before touching the database).
        """
        if not item_id:
            raise ValueError('item_id must be a non-empty string')
        if not item_type:
            raise ValueError('item_type must be a non-empty string')
        retries = self.queue.default_max_retries if max_retries is None else max_retries
        if retries < 0:
            raise ValueError(f'max_retries must be >= 0, got {retries}')
        timeout = (
            self.queue.default_visibility_timeout_secs
            if visibility_timeout_secs is None
            else visibility_timeout_secs
        )
        if timeout <= 0:
            raise ValueError(f'visibility_timeout_secs must be > 0, got {timeout}')
        if visible_at is not None and visible_at.tzinfo is None:
            raise ValueError('visible_at must be timezone-aware')
        payload_json = dumps_payload(payload)

        init = await self.ensure_schema_initialized()
        if is_err(init):
            return Err(init.err_value)

        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    self.statements.enqueue,
                    {
                        'id': item_id,
                        'type': item_type,
                        'payload': payload_json,
                        'max_retries': retries,
                        'visibility_timeout_secs': timeout,
                        'visible_at': visible_at,
                    },
                )
                row = result.fetchone()
                await session.commit()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return self._failure(
                StoreErrorCode.ENQUEUE_FAILED,
                f'Failed to enqueue item {item_id}',
                exc,
            )

        if row is None:
            self.logger.warning(f'Item {item_id} already exists in {self.queue.table_name}')
            return Err(
                StoreOperationError(
                    code=StoreErrorCode.DUPLICATE_ID,
                    message=f'Item {item_id} already exists',
                    retryable=False,
                )
            )

        self.logger.debug(f'Enqueued {item_type} item {item_id}')
        return Ok(item_id)

    async def claim_next_async(self, worker_id: str) -> StoreResult[Optional[QueueItem]]:
        """
        Lease the next due item to worker_id.

        Picks the claimable item with the earliest visible_at, skipping rows
        locked by concurrent claimers, and in the same statement moves it to
        processing, bumps retry_count, stamps worker_id and sets the lease
        expiry (visible_at = NOW() + visibility_timeout_secs).

        Returns:
            Ok(QueueItem) as it is after the claim, or Ok(None) if nothing is due.
        """
        if not worker_id:
            raise ValueError('worker_id must be a non-empty string')

        init = await self.ensure_schema_initialized()
        if is_err(init):
            return Err(init.err_value)

        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    self.statements.claim,
                    {'worker_id': worker_id},
                )
                row = result.mappings().fetchone()
                await session.commit()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return self._failure(
                StoreErrorCode.CLAIM_FAILED,
                'Failed to claim next item',
                exc,
            )

        if row is None:
            return Ok(None)

        item = QueueItem.from_row(row)
        self.logger.debug(
            f'Worker {worker_id} claimed {item.type} item {item.id} '
            f'(attempt {item.retry_count}/{item.max_retries + 1})'
        )
        return Ok(item)

    async def complete_async(self, item_id: str, worker_id: str) -> StoreResult[int]:
        """
        Mark an item completed if worker_id still holds its lease.

        Returns:
            Ok(1) on success; Ok(0) if the item is not processing or is leased
            to someone else (lease lost, or already completed).
        """
        init = await self.ensure_schema_initialized()
        if is_err(init):
            return Err(init.err_value)

        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    self.statements.complete,
                    {'id': item_id, 'worker_id': worker_id},
                )
                rows = result.rowcount or 0
                await session.commit()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return self._failure(
                StoreErrorCode.COMPLETE_FAILED,
                f'Failed to complete item {item_id}',
                exc,
            )

        if rows == 0:
            self.logger.debug(f'Complete of {item_id} by {worker_id} matched no row')
        return Ok(rows)

    async def fail_async(
        self,
        item_id: str,
        worker_id: str,
        error_message: str,
        backoff_seconds: int,
    ) -> StoreResult[int]:
        """
        Record a failed attempt if worker_id still holds the lease.

        With retries left the item returns to pending and becomes visible
        again after backoff_seconds; otherwise it is dead-lettered and its
        visible_at is left as is. The lease is released either way.

        Returns:
            Ok(1) on success; Ok(0) when fencing rejects the call.
        """
        if backoff_seconds < 0:
            raise ValueError(f'backoff_seconds must be >= 0, got {backoff_seconds}')

        init = await self.ensure_schema_initialized()
        if is_err(init):
            return Err(init.err_value)

        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    self.statements.fail,
                    {
                        'id': item_id,
                        'worker_id': worker_id,
                        'error_message': error_message,
                        'backoff_seconds': int(backoff_seconds),
                    },
                )
                rows = result.rowcount or 0
                await session.commit()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return self._failure(
                StoreErrorCode.FAIL_FAILED,
                f'Failed to record failure for item {item_id}',
                exc,
            )

        if rows == 0:
            self.logger.debug(f'Fail of {item_id} by {worker_id} matched no row')
        return Ok(rows)

    async def list_by_type_async(
        self,
        item_type: str,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> StoreResult[list[QueueItem]]:
        """Items of one type in any status, newest first. Read-only."""
        if limit <= 0:
            raise ValueError(f'limit must be > 0, got {limit}')

        init = await self.ensure_schema_initialized()
        if is_err(init):
            return Err(init.err_value)

        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    self.statements.list_by_type,
                    {'type': item_type, 'limit': limit},
                )
                rows = result.mappings().fetchall()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return self._failure(
                StoreErrorCode.QUERY_FAILED,
                f'Failed to list items of type {item_type}',
                exc,
            )

        return Ok([QueueItem.from_row(row) for row in rows])

    async def get_item_async(self, item_id: str) -> StoreResult[Optional[QueueItem]]:
        """Fetch one item by id, or Ok(None) if it does not exist."""
        init = await self.ensure_schema_initialized()
        if is_err(init):
            return Err(init.err_value)

        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    self.statements.get_item,
                    {'id': item_id},
                )
                row = result.mappings().fetchone()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return self._failure(
                StoreErrorCode.QUERY_FAILED,
                f'Failed to fetch item {item_id}',
                exc,
            )

        return Ok(QueueItem.from_row(row) if row is not None else None)

    async def ping_async(self) -> StoreResult[None]:
        """Round-trip to the database without touching the schema."""
        try:
            async with self.async_engine.connect() as conn:
                await conn.execute(PING_SQL)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return self._failure(
                StoreErrorCode.QUERY_FAILED,
                'Database ping failed',
                exc,
            )
        return Ok(None)

    async def close_async(self) -> StoreResult[None]:
        """
        Dispose the engine (when this store created it) and stop the sync runner.

        A shared engine and runner are left to their owner.
        """
        first_exc: Optional[BaseException] = None
        if self._owns_engine:
            try:
                await self.async_engine.dispose()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                first_exc = exc

        # Stop the sync runner unless we are running on it.
        runner_thread = self._loop_runner._thread
        if (
            self._owns_runner
            and runner_thread is not None
            and runner_thread is not threading.current_thread()
        ):
            self._loop_runner.stop()

        if first_exc is not None:
            return self._failure(
                StoreErrorCode.CLOSE_FAILED,
                'Failed to close store',
                first_exc,
            )
        return Ok(None)

    # ----------------- Sync API -----------------

    def ensure_schema(self) -> StoreResult[None]:
        """Synchronous wrapper for ensure_schema_initialized()."""
        return self._loop_runner.call(self.ensure_schema_initialized)

    def enqueue(
        self,
        item_id: str,
        item_type: str,
        payload: Mapping[str, Any],
        *,
        max_retries: Optional[int] = None,
        visibility_timeout_secs: Optional[int] = None,
        visible_at: Optional[datetime] = None,
    ) -> StoreResult[str]:
        """Synchronous wrapper for enqueue_async()."""
        return self._loop_runner.call(
            self.enqueue_async,
            item_id,
            item_type,
            payload,
            max_retries=max_retries,
            visibility_timeout_secs=visibility_timeout_secs,
            visible_at=visible_at,
        )

    def claim_next(self, worker_id: str) -> StoreResult[Optional[QueueItem]]:
        """Synchronous wrapper for claim_next_async()."""
        return self._loop_runner.call(self.claim_next_async, worker_id)

    def complete(self, item_id: str, worker_id: str) -> StoreResult[int]:
        """Synchronous wrapper for complete_async()."""
        return self._loop_runner.call(self.complete_async, item_id, worker_id)

    def fail(
        self,
        item_id: str,
        worker_id: str,
        error_message: str,
        backoff_seconds: int,
    ) -> StoreResult[int]:
        """Synchronous wrapper for fail_async()."""
        return self._loop_runner.call(
            self.fail_async, item_id, worker_id, error_message, backoff_seconds
        )

    def list_by_type(
        self,
        item_type: str,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> StoreResult[list[QueueItem]]:
        """Synchronous wrapper for list_by_type_async()."""
        return self._loop_runner.call(self.list_by_type_async, item_type, limit)

    def get_item(self, item_id: str) -> StoreResult[Optional[QueueItem]]:
        """Synchronous wrapper for get_item_async()."""
        return self._loop_runner.call(self.get_item_async, item_id)

    def ping(self) -> StoreResult[None]:
        """Synchronous wrapper for ping_async()."""
        return self._loop_runner.call(self.ping_async)

    def close(self) -> StoreResult[None]:
        """
        Synchronous cleanup (runs close_async in background loop).
        """
        result: StoreResult[None]
        try:
            result = self._loop_runner.call(self.close_async)
        except Exception as exc:
            result = self._failure(
                StoreErrorCode.CLOSE_FAILED,
                'Failed to close store',
                exc,
            )
        finally:
            if self._owns_runner:
                self._loop_runner.stop()
        return result
