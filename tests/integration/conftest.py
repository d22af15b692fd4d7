"""Integration test fixtures: a real PostgreSQL broker per test.

Set CONVEYOR_TEST_DATABASE_URL (e.g. in .env.test) to run these tests;
without it every integration test is skipped.
"""

from __future__ import annotations

import os
import uuid
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy import text

from conveyor.core.brokers.postgres import PostgresBroker
from conveyor.core.models.broker import PostgresConfig
from conveyor.core.types.result import is_err

DB_URL = os.environ.get('CONVEYOR_TEST_DATABASE_URL')


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    if DB_URL:
        return
    skip = pytest.mark.skip(reason='CONVEYOR_TEST_DATABASE_URL is not set')
    for item in items:
        if 'integration' in item.keywords:
            item.add_marker(skip)


@pytest.fixture
def db_url() -> str:
    assert DB_URL is not None
    return DB_URL


@pytest.fixture
def stream_name() -> str:
    """Unique stream per test, so tests never see each other's entries."""
    return f's_{uuid.uuid4().hex[:12]}'


@pytest_asyncio.fixture
async def broker(db_url: str, stream_name: str) -> AsyncGenerator[PostgresBroker, None]:
    """PostgresBroker with schema initialized; its stream is removed afterwards."""
    brk = PostgresBroker(
        PostgresConfig(database_url=db_url, pool_size=5, max_overflow=5),
        stream=stream_name,
        event_channel=f'ev_{stream_name}',
    )
    init = await brk.ensure_schema_initialized()
    if is_err(init):
        await brk.close_async()
        pytest.fail(f'schema init failed: {init.err_value.message}')
    yield brk
    async with brk.session_factory() as session:
        for table in ('conveyor_pending_entries', 'conveyor_consumer_groups', 'conveyor_stream_entries'):
            await session.execute(
                text(f'DELETE FROM {table} WHERE stream = :stream'), {'stream': stream_name}
            )
        await session.commit()
    await brk.close_async()


def new_task_id() -> str:
    return str(uuid.uuid4())
