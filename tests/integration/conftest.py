"""Integration test fixtures: a real PostgreSQL reached via DURQ_TEST_DATABASE_URL."""

from __future__ import annotations

import os
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy import text

from durq.core.models.broker import PostgresConfig
from durq.core.models.queue_config import QueueConfig
from durq.core.store.postgres import PostgresQueueStore
from durq.core.types.result import is_err

DB_URL = os.environ.get('DURQ_TEST_DATABASE_URL', '')


@pytest.fixture(scope='session')
def db_url() -> str:
    """Database connection URL; integration tests are skipped without one."""
    if not DB_URL:
        pytest.skip('DURQ_TEST_DATABASE_URL is not set')
    return DB_URL


async def _fresh_store(db_url: str, queue: QueueConfig) -> PostgresQueueStore:
    store = PostgresQueueStore(PostgresConfig(database_url=db_url, pool_size=20), queue)
    init = await store.ensure_schema_initialized()
    if is_err(init):
        pytest.fail(f'schema init failed: {init.err_value.message}')
    async with store.async_engine.begin() as conn:
        await conn.execute(text(f'TRUNCATE "{store.table_name}"'))
    return store


@pytest_asyncio.fixture
async def store(db_url: str) -> AsyncGenerator[PostgresQueueStore, None]:
    """Store on the primary queue table, emptied before each test."""
    st = await _fresh_store(db_url, QueueConfig(default_max_retries=3, default_visibility_timeout_secs=30))
    yield st
    await st.close_async()


@pytest_asyncio.fixture
async def event_store(db_url: str) -> AsyncGenerator[PostgresQueueStore, None]:
    """Store on the event queue table, emptied before each test."""
    st = await _fresh_store(db_url, QueueConfig(table_name='durq_event_queue'))
    yield st
    await st.close_async()
