# durq/core/worker/worker.py
from __future__ import annotations
import asyncio
from enum import Enum
from typing import TYPE_CHECKING, Optional
from durq.core.logging import get_logger
from durq.core.models.queue import QueueItem
from durq.core.models.resilience import WorkerResilienceConfig
from durq.core.registry.handlers import Handler, HandlerRegistry, is_async_handler
from durq.core.types.result import is_err
from durq.core.worker.backoff import _RetryBackoff, calculate_backoff
from durq.core.worker.config import WorkerConfig, default_worker_id

if TYPE_CHECKING:
    from durq.core.store.postgres import PostgresQueueStore
    from durq.core.store.result_types import StoreOperationError

logger = get_logger('worker')


class PollOutcome(str, Enum):
    """What a single poll cycle did."""

    IDLE = 'IDLE'  # disabled, or nothing due
    COMPLETED = 'COMPLETED'  # handler succeeded (row count may still be 0)
    FAILED = 'FAILED'  # handler failed or missing; failure recorded
    ERROR = 'ERROR'  # the store reported an error


class WorkerStoreError(RuntimeError):
    """A non-retryable (or exhausted) store error that stops run_forever()."""

    def __init__(self, error: 'StoreOperationError') -> None:
        super().__init__(f'{error.code.value}: {error.message}')
        self.error = error


def _describe_exception(exc: BaseException) -> str:
    message = str(exc)
    return f'{type(exc).__name__}: {message}' if message else type(exc).__name__


class QueueWorker:
    """
    Polling loop over one queue:
      - Claims one due item at a time (lease-based, SKIP LOCKED)
      - Dispatches it to the handler registered for its type
      - Completes it on success, fails it with exponential backoff otherwise

    Delivery is at-least-once: a handler that outlives its lease may see the
    same item again on another worker, so handlers must be idempotent.
    """

    def __init__(
        self,
        store: 'PostgresQueueStore',
        handlers: HandlerRegistry,
        cfg: Optional[WorkerConfig] = None,
        resilience: Optional[WorkerResilienceConfig] = None,
    ):
        self.store = store
        self.handlers = handlers
        self.cfg = cfg or WorkerConfig()
        self._resilience = resilience or WorkerResilienceConfig()
        self._stop = asyncio.Event()
        self._last_error: Optional['StoreOperationError'] = None
        self.enabled = self.cfg.enabled
        self._worker_id = self.cfg.worker_id or default_worker_id()

    @property
    def worker_id(self) -> str:
        return self._worker_id

    def request_stop(self) -> None:
        """Request worker to stop gracefully after the current cycle."""
        self._stop.set()

    def pause(self) -> None:
        self.enabled = False

    def resume(self) -> None:
        self.enabled = True

    def _make_retry_backoff(self) -> _RetryBackoff:
        return _RetryBackoff(
            initial_ms=self._resilience.db_retry_initial_ms,
            max_ms=self._resilience.db_retry_max_ms,
            max_attempts=self._resilience.db_retry_max_attempts,
        )

    async def _sleep_with_stop(self, delay_seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=delay_seconds)
        except asyncio.TimeoutError:
            return

    # ----- one cycle -----

    async def run_once(self) -> PollOutcome:
        """Claim at most one item and process it to completion or failure."""
        self._last_error = None
        if not self.enabled:
            return PollOutcome.IDLE

        claimed = await self.store.claim_next_async(self.worker_id)
        if is_err(claimed):
            self._last_error = claimed.err_value
            logger.error(f'Claim failed: {claimed.err_value.message}')
            return PollOutcome.ERROR

        item = claimed.ok_value
        if item is None:
            return PollOutcome.IDLE

        logger.info(
            f'Processing {item.type} item {item.id} '
            f'(attempt {item.retry_count}, max_retries={item.max_retries})'
        )

        handler = self.handlers.get(item.type)
        if handler is None:
            reason = f'no handler registered for item type: {item.type}'
            logger.error(f'{reason} (item {item.id})')
            return await self._record_failure(item, reason, backoff_seconds=0)

        reason = await self._execute_handler(handler, item)
        if reason is not None:
            backoff = calculate_backoff(
                item.retry_count, self.cfg.backoff_base, self.cfg.max_backoff_seconds
            )
            logger.error(
                f'Handler for {item.type} item {item.id} failed '
                f'(retry_count={item.retry_count}, max_retries={item.max_retries}, '
                f'backoff={backoff}s): {reason}'
            )
            return await self._record_failure(item, reason, backoff_seconds=backoff)

        completed = await self.store.complete_async(item.id, self.worker_id)
        if is_err(completed):
            self._last_error = completed.err_value
            logger.error(f'Failed to mark item {item.id} completed: {completed.err_value.message}')
            return PollOutcome.ERROR
        if completed.ok_value == 0:
            logger.warning(
                f'Lease lost on item {item.id} before completion; '
                f'another worker owns it now'
            )
        else:
            logger.debug(f'Item {item.id} completed')
        return PollOutcome.COMPLETED

    async def _execute_handler(self, handler: Handler, item: QueueItem) -> Optional[str]:
        """Run the handler; return None on success or the failure reason."""
        try:
            if is_async_handler(handler):
                await handler(item)  # type: ignore[misc]
            else:
                await asyncio.to_thread(handler, item)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.debug(f'Handler exception for item {item.id}', exc_info=exc)
            return _describe_exception(exc)
        return None

    async def _record_failure(
        self,
        item: QueueItem,
        reason: str,
        *,
        backoff_seconds: int,
    ) -> PollOutcome:
        failed = await self.store.fail_async(
            item.id, self.worker_id, reason, backoff_seconds
        )
        if is_err(failed):
            self._last_error = failed.err_value
            logger.warning(f'Failed to mark item {item.id} as failed: {failed.err_value.message}')
            return PollOutcome.ERROR
        if failed.ok_value == 0:
            logger.warning(
                f'Lease lost on item {item.id} before failure was recorded; '
                f'another worker owns it now'
            )
        elif item.retries_exhausted:
            logger.error(f'Item {item.id} dead-lettered after {item.retry_count} attempts')
        return PollOutcome.FAILED

    # ----- main loop -----

    async def run_forever(self) -> None:
        """Poll until request_stop(); back off on transient store errors."""
        logger.info(f'Worker {self.worker_id} started on {self.store.table_name}')
        backoff = self._make_retry_backoff()
        poll_seconds = self.cfg.poll_interval_ms / 1000.0
        try:
            while not self._stop.is_set():
                outcome = await self.run_once()
                match outcome:
                    case PollOutcome.ERROR:
                        error = self._last_error
                        if error is None:
                            raise RuntimeError('store reported an error without details')
                        if not error.retryable:
                            logger.error(f'Non-retryable store error: {error.message}')
                            raise WorkerStoreError(error)
                        if not backoff.can_retry():
                            logger.error(
                                f'Worker loop failed after {backoff.attempts} attempts: {error.message}'
                            )
                            raise WorkerStoreError(error)
                        delay = backoff.next_delay_seconds()
                        logger.error(
                            f'Worker loop error: {error.message}. Retrying in {delay:.1f}s '
                            f'(attempt {backoff.attempts}/{backoff.max_attempts or "inf"})'
                        )
                        await self._sleep_with_stop(delay)
                    case PollOutcome.IDLE:
                        backoff.reset()
                        await self._sleep_with_stop(poll_seconds)
                    case _:
                        # Keep draining while items are due.
                        backoff.reset()
        finally:
            logger.info(f'Worker {self.worker_id} stopped')
