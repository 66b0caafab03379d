"""
Integration tests for the PostgreSQL storage layer.

These tests verify that the asyncpg repositories and the migration executor
work correctly with a real database connection.

Requirements:
- PostgreSQL reachable through the POSTGRES_* environment variables
  (defaults: ingest_user@localhost:5432/ingest)

Tests are skipped when the database cannot be reached.

Run with: pytest tests/test_storage_integration.py -v
"""

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
import pytest_asyncio

from ingest_agent.config import get_settings
from ingest_agent.services.migration_gate import MigrationGate
from ingest_agent.storage.interfaces import ConnectionError
from ingest_agent.storage.migrations import PostgreSQLMigrationExecutor
from ingest_agent.storage.postgres import (
    PostgreSQLCheckpointRepository,
    PostgreSQLConnectionPool,
    PostgreSQLRawRecordRepository,
)
from ingest_agent.types import CheckpointState, MigrationGateState


T0 = datetime(2024, 3, 10, tzinfo=timezone.utc)


# ============================================================================
# Fixtures
# ============================================================================


@pytest_asyncio.fixture
async def postgres_pool():
    """Create PostgreSQL connection pool with the schema applied."""
    settings = get_settings()
    pool = PostgreSQLConnectionPool(
        host=settings.postgres_host,
        port=settings.postgres_port,
        database=settings.postgres_db,
        user=settings.postgres_user,
        password=settings.postgres_password,
        min_size=1,
        max_size=2,
    )
    try:
        await pool.connect()
    except ConnectionError as e:
        pytest.skip(f"PostgreSQL not available: {e}")

    await PostgreSQLMigrationExecutor(pool.pool).apply()
    yield pool
    await pool.close()


@pytest_asyncio.fixture
async def checkpoint_repo(postgres_pool):
    return PostgreSQLCheckpointRepository(postgres_pool.pool)


@pytest_asyncio.fixture
async def raw_record_repo(postgres_pool):
    return PostgreSQLRawRecordRepository(postgres_pool.pool)


@pytest.fixture
def params_key():
    """Unique key so repeated runs against one database do not collide."""
    return f"test:1:test_api_items:{uuid4().hex[:16]}"


# ============================================================================
# Migrations
# ============================================================================


@pytest.mark.asyncio
async def test_no_migration_pending_after_apply(postgres_pool):
    executor = PostgreSQLMigrationExecutor(postgres_pool.pool)

    assert await executor.pending() == []
    assert await executor.apply() == []


@pytest.mark.asyncio
async def test_gate_clear_on_migrated_database(postgres_pool):
    gate = MigrationGate(PostgreSQLMigrationExecutor(postgres_pool.pool))

    assert await gate.initialize() == MigrationGateState.CLEAR


# ============================================================================
# Checkpoints
# ============================================================================


@pytest.mark.asyncio
async def test_checkpoint_commit_and_load(checkpoint_repo, params_key):
    assert await checkpoint_repo.load(params_key) is None

    await checkpoint_repo.commit(
        CheckpointState(
            params_key=params_key,
            latest_success_start=T0,
            latest_success_end=T0 + timedelta(minutes=5),
            time_after=None,
            created_at=T0,
            updated_at=T0 + timedelta(minutes=5),
        )
    )
    loaded = await checkpoint_repo.load(params_key)

    assert loaded.latest_success_start == T0
    assert loaded.time_after is None


@pytest.mark.asyncio
async def test_checkpoint_commit_replaces_row(checkpoint_repo, params_key):
    for day in range(2):
        start = T0 + timedelta(days=day)
        await checkpoint_repo.commit(
            CheckpointState(
                params_key=params_key,
                latest_success_start=start,
                latest_success_end=start + timedelta(minutes=5),
                time_after=T0,
                created_at=T0,
                updated_at=start + timedelta(minutes=5),
            )
        )

    loaded = await checkpoint_repo.load(params_key)

    assert loaded.latest_success_start == T0 + timedelta(days=1)
    assert loaded.time_after == T0
    assert loaded.created_at == T0


# ============================================================================
# Raw Records
# ============================================================================


@pytest.mark.asyncio
async def test_raw_records_append_and_list(raw_record_repo, params_key):
    ids = await raw_record_repo.append(params_key, "test_api_items", [b'{"id": 1}', b'{"id": 2}'], T0)

    records = await raw_record_repo.list(params_key, "test_api_items")

    assert len(ids) == 2
    assert ids[0] < ids[1]
    assert [r.data for r in records] == [b'{"id": 1}', b'{"id": 2}']
    assert await raw_record_repo.count(params_key, "test_api_items") == 2


@pytest.mark.asyncio
async def test_raw_records_invalidate(raw_record_repo, params_key):
    await raw_record_repo.append(params_key, "test_api_items", [b"a", b"b", b"c"], T0)

    assert await raw_record_repo.invalidate(params_key, "test_api_items") == 3
    assert await raw_record_repo.count(params_key, "test_api_items") == 0
    assert await raw_record_repo.invalidate(params_key, "test_api_items") == 0
