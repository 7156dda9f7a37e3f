"""Integration tests for PostgresQueueStore against a real PostgreSQL.

Covers the queue lifecycle: enqueue, lease-based claiming with SKIP LOCKED,
fenced complete/fail, crash recovery through lease expiry, the retry
budget, and list_by_type. Time is moved by rewriting visible_at instead of
sleeping.
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import text

from durq.core.store.postgres import PostgresQueueStore
from durq.core.store.result_types import StoreErrorCode
from durq.core.types.result import is_err, is_ok
from durq.core.types.status import QueueItemStatus


async def _shift_visible_at(store: PostgresQueueStore, item_id: str, seconds: int) -> None:
    """Set visible_at to NOW() + seconds (negative = in the past)."""
    async with store.async_engine.begin() as conn:
        await conn.execute(
            text(
                f'UPDATE "{store.table_name}" '
                "SET visible_at = NOW() + CAST(:secs AS INTEGER) * INTERVAL '1 second' "
                'WHERE id = :id'
            ),
            {'id': item_id, 'secs': seconds},
        )


async def _age_created_at(store: PostgresQueueStore, item_id: str, seconds_ago: int) -> None:
    async with store.async_engine.begin() as conn:
        await conn.execute(
            text(
                f'UPDATE "{store.table_name}" '
                "SET created_at = NOW() - CAST(:secs AS INTEGER) * INTERVAL '1 second' "
                'WHERE id = :id'
            ),
            {'id': item_id, 'secs': seconds_ago},
        )


async def _db_now(store: PostgresQueueStore) -> datetime:
    async with store.async_engine.connect() as conn:
        return (await conn.execute(text('SELECT NOW()'))).scalar_one()


async def _enqueue(store: PostgresQueueStore, item_type: str = 'email', **kwargs: object) -> str:
    item_id = str(uuid.uuid4())
    result = await store.enqueue_async(item_id, item_type, {'n': 1}, **kwargs)  # type: ignore[arg-type]
    assert is_ok(result), result
    return item_id


# =============================================================================
# Enqueue
# =============================================================================


@pytest.mark.integration
@pytest.mark.asyncio(loop_scope='function')
class TestEnqueue:
    async def test_new_item_is_pending_and_due(self, store: PostgresQueueStore) -> None:
        item_id = await _enqueue(store, max_retries=5)

        fetched = await store.get_item_async(item_id)
        item = fetched.ok_value
        assert item is not None
        assert item.status is QueueItemStatus.PENDING
        assert item.retry_count == 0
        assert item.max_retries == 5
        assert item.visibility_timeout_secs == 30
        assert item.worker_id is None
        assert item.payload == {'n': 1}
        assert item.visible_at <= await _db_now(store)

    async def test_duplicate_id_rejected_and_original_untouched(
        self, store: PostgresQueueStore
    ) -> None:
        await store.enqueue_async('dup', 'email', {'v': 1})

        second = await store.enqueue_async('dup', 'sms', {'v': 2})

        assert is_err(second)
        assert second.err_value.code == StoreErrorCode.DUPLICATE_ID
        item = (await store.get_item_async('dup')).ok_value
        assert item is not None
        assert item.type == 'email'
        assert item.payload == {'v': 1}

    async def test_long_opaque_id_accepted(self, store: PostgresQueueStore) -> None:
        item_id = 'tenant-42/' + 'x' * 300

        assert (await store.enqueue_async(item_id, 'email', {})).ok_value == item_id
        claimed = (await store.claim_next_async('w1')).ok_value
        assert claimed is not None and claimed.id == item_id

    async def test_future_visible_at_delays_claim(self, store: PostgresQueueStore) -> None:
        later = datetime.now(timezone.utc) + timedelta(hours=1)
        await _enqueue(store, visible_at=later)

        assert (await store.claim_next_async('w1')).ok_value is None


# =============================================================================
# Claim
# =============================================================================


@pytest.mark.integration
@pytest.mark.asyncio(loop_scope='function')
class TestClaim:
    async def test_claim_leases_item(self, store: PostgresQueueStore) -> None:
        item_id = await _enqueue(store)
        before = await _db_now(store)

        item = (await store.claim_next_async('w1')).ok_value

        assert item is not None
        assert item.id == item_id
        assert item.status is QueueItemStatus.PROCESSING
        assert item.worker_id == 'w1'
        assert item.retry_count == 1
        assert item.started_at is not None
        assert item.visible_at >= before + timedelta(seconds=29)

    async def test_claims_earliest_visible_first(self, store: PostgresQueueStore) -> None:
        newer = await _enqueue(store)
        older = await _enqueue(store)
        await _shift_visible_at(store, newer, -10)
        await _shift_visible_at(store, older, -60)

        first = (await store.claim_next_async('w1')).ok_value
        second = (await store.claim_next_async('w1')).ok_value

        assert first is not None and first.id == older
        assert second is not None and second.id == newer

    async def test_leased_item_not_claimable(self, store: PostgresQueueStore) -> None:
        await _enqueue(store)
        assert (await store.claim_next_async('w1')).ok_value is not None
        assert (await store.claim_next_async('w2')).ok_value is None

    async def test_empty_queue(self, store: PostgresQueueStore) -> None:
        result = await store.claim_next_async('w1')
        assert is_ok(result)
        assert result.ok_value is None

    async def test_concurrent_claimers_never_share_an_item(
        self, store: PostgresQueueStore
    ) -> None:
        ids = {await _enqueue(store) for _ in range(10)}

        results = await asyncio.gather(
            *(store.claim_next_async(f'w{i}') for i in range(15))
        )

        claimed = [r.ok_value.id for r in results if is_ok(r) and r.ok_value is not None]
        assert len(claimed) == len(set(claimed)) == 10
        assert set(claimed) == ids


# =============================================================================
# Complete / Fail with fencing
# =============================================================================


@pytest.mark.integration
@pytest.mark.asyncio(loop_scope='function')
class TestCompleteAndFail:
    async def test_complete_by_lease_holder(self, store: PostgresQueueStore) -> None:
        item_id = await _enqueue(store)
        await store.claim_next_async('w1')

        assert (await store.complete_async(item_id, 'w1')).ok_value == 1

        item = (await store.get_item_async(item_id)).ok_value
        assert item is not None
        assert item.status is QueueItemStatus.COMPLETED
        assert item.completed_at is not None
        assert item.worker_id is None
        # Completed items are never claimed again.
        await _shift_visible_at(store, item_id, -3600)
        assert (await store.claim_next_async('w2')).ok_value is None

    async def test_complete_by_other_worker_is_fenced(self, store: PostgresQueueStore) -> None:
        item_id = await _enqueue(store)
        await store.claim_next_async('w1')

        assert (await store.complete_async(item_id, 'w2')).ok_value == 0
        item = (await store.get_item_async(item_id)).ok_value
        assert item is not None and item.status is QueueItemStatus.PROCESSING

    async def test_complete_twice_second_is_noop(self, store: PostgresQueueStore) -> None:
        item_id = await _enqueue(store)
        await store.claim_next_async('w1')
        await store.complete_async(item_id, 'w1')

        assert (await store.complete_async(item_id, 'w1')).ok_value == 0

    async def test_fail_with_retries_left_returns_to_pending(
        self, store: PostgresQueueStore
    ) -> None:
        item_id = await _enqueue(store)
        await store.claim_next_async('w1')
        before = await _db_now(store)

        assert (await store.fail_async(item_id, 'w1', 'smtp down', 120)).ok_value == 1

        item = (await store.get_item_async(item_id)).ok_value
        assert item is not None
        assert item.status is QueueItemStatus.PENDING
        assert item.worker_id is None
        assert item.error_message == 'smtp down'
        assert item.failed_at is not None
        assert item.visible_at >= before + timedelta(seconds=119)
        assert (await store.claim_next_async('w1')).ok_value is None

    async def test_fail_with_zero_backoff_is_immediately_claimable(
        self, store: PostgresQueueStore
    ) -> None:
        item_id = await _enqueue(store)
        await store.claim_next_async('w1')
        await store.fail_async(item_id, 'w1', 'no handler', 0)

        again = (await store.claim_next_async('w2')).ok_value
        assert again is not None
        assert again.id == item_id
        assert again.retry_count == 2

    async def test_fail_by_other_worker_is_fenced(self, store: PostgresQueueStore) -> None:
        item_id = await _enqueue(store)
        await store.claim_next_async('w1')

        assert (await store.fail_async(item_id, 'w2', 'late', 0)).ok_value == 0
        item = (await store.get_item_async(item_id)).ok_value
        assert item is not None
        assert item.status is QueueItemStatus.PROCESSING
        assert item.worker_id == 'w1'

    async def test_exhausted_item_dead_lettered(self, store: PostgresQueueStore) -> None:
        item_id = await _enqueue(store, max_retries=2)
        for attempt in range(2):
            claimed = (await store.claim_next_async('w1')).ok_value
            assert claimed is not None and claimed.retry_count == attempt + 1
            await store.fail_async(item_id, 'w1', f'failure {attempt + 1}', 0)

        item = (await store.get_item_async(item_id)).ok_value
        assert item is not None
        assert item.status is QueueItemStatus.DEAD
        assert item.error_message == 'failure 2'
        assert item.worker_id is None
        await _shift_visible_at(store, item_id, -3600)
        assert (await store.claim_next_async('w1')).ok_value is None

    async def test_zero_max_retries_dead_on_first_failure(
        self, store: PostgresQueueStore
    ) -> None:
        item_id = await _enqueue(store, max_retries=0)
        await store.claim_next_async('w1')
        await store.fail_async(item_id, 'w1', 'boom', 0)

        item = (await store.get_item_async(item_id)).ok_value
        assert item is not None and item.status is QueueItemStatus.DEAD


# =============================================================================
# Crash recovery through lease expiry
# =============================================================================


@pytest.mark.integration
@pytest.mark.asyncio(loop_scope='function')
class TestLeaseExpiry:
    async def test_expired_lease_reclaimed_and_old_holder_fenced(
        self, store: PostgresQueueStore
    ) -> None:
        item_id = await _enqueue(store)
        await store.claim_next_async('crashed')
        await _shift_visible_at(store, item_id, -1)

        reclaimed = (await store.claim_next_async('rescuer')).ok_value

        assert reclaimed is not None
        assert reclaimed.id == item_id
        assert reclaimed.worker_id == 'rescuer'
        assert reclaimed.retry_count == 2
        assert (await store.complete_async(item_id, 'crashed')).ok_value == 0
        assert (await store.complete_async(item_id, 'rescuer')).ok_value == 1

    async def test_crash_loop_stops_when_budget_spent(self, store: PostgresQueueStore) -> None:
        item_id = await _enqueue(store, max_retries=1)
        # retry_count <= max_retries allows max_retries + 1 claims.
        for _ in range(2):
            assert (await store.claim_next_async('w')).ok_value is not None
            await _shift_visible_at(store, item_id, -1)

        assert (await store.claim_next_async('w')).ok_value is None
        item = (await store.get_item_async(item_id)).ok_value
        assert item is not None
        assert item.status is QueueItemStatus.PROCESSING
        assert item.retry_count == 2

    async def test_due_pending_item_over_budget_not_claimed(
        self, store: PostgresQueueStore
    ) -> None:
        item_id = await _enqueue(store, max_retries=1)
        async with store.async_engine.begin() as conn:
            await conn.execute(
                text(f'UPDATE "{store.table_name}" SET retry_count = 2 WHERE id = :id'),
                {'id': item_id},
            )
        await _shift_visible_at(store, item_id, -60)

        assert (await store.claim_next_async('w')).ok_value is None
        item = (await store.get_item_async(item_id)).ok_value
        assert item is not None
        assert item.status is QueueItemStatus.PENDING
        assert item.worker_id is None


# =============================================================================
# Reads and table isolation
# =============================================================================


@pytest.mark.integration
@pytest.mark.asyncio(loop_scope='function')
class TestListByType:
    async def test_newest_first_with_limit(self, store: PostgresQueueStore) -> None:
        oldest = await _enqueue(store, 'report')
        middle = await _enqueue(store, 'report')
        newest = await _enqueue(store, 'report')
        await _enqueue(store, 'email')
        await _age_created_at(store, oldest, 300)
        await _age_created_at(store, middle, 200)
        await _age_created_at(store, newest, 100)

        all_reports = (await store.list_by_type_async('report', limit=10)).ok_value
        top_two = (await store.list_by_type_async('report', limit=2)).ok_value

        assert [i.id for i in all_reports] == [newest, middle, oldest]
        assert [i.id for i in top_two] == [newest, middle]

    async def test_includes_every_status(self, store: PostgresQueueStore) -> None:
        done = await _enqueue(store, 'report')
        await store.claim_next_async('w1')
        await store.complete_async(done, 'w1')
        pending = await _enqueue(store, 'report')

        items = (await store.list_by_type_async('report')).ok_value
        statuses = {i.id: i.status for i in items}
        assert statuses == {
            done: QueueItemStatus.COMPLETED,
            pending: QueueItemStatus.PENDING,
        }

    async def test_unknown_type_empty(self, store: PostgresQueueStore) -> None:
        assert (await store.list_by_type_async('nothing')).ok_value == []


@pytest.mark.integration
@pytest.mark.asyncio(loop_scope='function')
class TestQueueIsolation:
    async def test_tables_do_not_share_items(
        self, store: PostgresQueueStore, event_store: PostgresQueueStore
    ) -> None:
        await event_store.enqueue_async('shared-id', 'audit', {'e': 1})

        assert (await store.claim_next_async('w1')).ok_value is None
        # Same id is free in the other table.
        assert is_ok(await store.enqueue_async('shared-id', 'email', {}))
        claimed = (await event_store.claim_next_async('w1')).ok_value
        assert claimed is not None and claimed.type == 'audit'


@pytest.mark.integration
@pytest.mark.asyncio(loop_scope='function')
class TestRoundTrips:
    async def test_due_time_order_not_insertion_order(self, store: PostgresQueueStore) -> None:
        plus_ten = await _enqueue(store)
        plus_zero = await _enqueue(store)
        plus_five = await _enqueue(store)
        await _shift_visible_at(store, plus_ten, -10)
        await _shift_visible_at(store, plus_zero, -30)
        await _shift_visible_at(store, plus_five, -20)

        order = []
        for _ in range(3):
            item = (await store.claim_next_async('w1')).ok_value
            assert item is not None
            order.append(item.id)

        assert order == [plus_zero, plus_five, plus_ten]

    async def test_retry_cycles_advance_visibility_then_dead_letter(
        self, store: PostgresQueueStore
    ) -> None:
        item_id = await _enqueue(store, max_retries=2)
        statuses = []
        for backoff in (60, 60):
            claimed = (await store.claim_next_async('w1')).ok_value
            assert claimed is not None
            before = await _db_now(store)
            await store.fail_async(item_id, 'w1', 'transient', backoff)
            item = (await store.get_item_async(item_id)).ok_value
            assert item is not None
            statuses.append(item.status)
            if item.status is QueueItemStatus.PENDING:
                assert item.visible_at >= before + timedelta(seconds=backoff - 1)
                await _shift_visible_at(store, item_id, -1)

        # The failure on the max_retries-th claim dead-letters the item.
        assert statuses == [QueueItemStatus.PENDING, QueueItemStatus.DEAD]
        item = (await store.get_item_async(item_id)).ok_value
        assert item is not None and item.retry_count == 2
        assert (await store.claim_next_async('w1')).ok_value is None
