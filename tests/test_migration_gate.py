"""
Unit tests for the migration gate state machine.
"""

import asyncio

import pytest

from ingest_agent.services.migration_gate import (
    DB_MIGRATION_REQUIRED,
    MigrationFailedError,
    MigrationGate,
    MigrationPendingError,
)
from ingest_agent.storage.memory import InMemoryMigrationExecutor
from ingest_agent.types import MigrationGateState


def failing_script():
    raise RuntimeError("column already exists")


@pytest.fixture
def applied():
    return []


@pytest.fixture
def executor(applied):
    return InMemoryMigrationExecutor(
        scripts=[
            ("20240101000001", lambda: applied.append("20240101000001")),
            ("20240301000001", lambda: applied.append("20240301000001")),
        ],
        applied=["20240101000001"],
    )


@pytest.mark.asyncio
async def test_no_pending_migration_keeps_gate_clear():
    gate = MigrationGate(InMemoryMigrationExecutor(scripts=[("1", lambda: None)], applied=["1"]))

    state = await gate.initialize()

    assert state == MigrationGateState.CLEAR
    gate.check()


@pytest.mark.asyncio
async def test_pending_migration_blocks_requests(executor):
    gate = MigrationGate(executor)

    await gate.initialize()

    assert gate.state == MigrationGateState.PENDING_CONFIRMATION
    assert gate.requires_confirmation
    assert gate.pending_versions == ["20240301000001"]
    for _ in range(3):
        with pytest.raises(MigrationPendingError) as exc_info:
            gate.check()
    assert "/proceed-db-migration" in str(exc_info.value)


def test_operator_message_mentions_data_loss_and_downgrade():
    assert "may wipe collected data" in DB_MIGRATION_REQUIRED
    assert "/proceed-db-migration" in DB_MIGRATION_REQUIRED
    assert "downgrade" in DB_MIGRATION_REQUIRED


@pytest.mark.asyncio
async def test_confirm_applies_and_clears(executor, applied):
    gate = MigrationGate(executor)
    await gate.initialize()

    state = await gate.confirm()

    assert state == MigrationGateState.CLEAR
    assert applied == ["20240301000001"]
    assert await executor.pending() == []
    gate.check()


@pytest.mark.asyncio
async def test_confirm_is_idempotent(executor, applied):
    gate = MigrationGate(executor)
    await gate.initialize()

    await gate.confirm()
    await gate.confirm()

    assert applied == ["20240301000001"]
    assert gate.state == MigrationGateState.CLEAR


@pytest.mark.asyncio
async def test_concurrent_confirmations_migrate_once(executor, applied):
    gate = MigrationGate(executor)
    await gate.initialize()

    states = await asyncio.gather(gate.confirm(), gate.confirm(), gate.confirm())

    assert states == [MigrationGateState.CLEAR] * 3
    assert applied == ["20240301000001"]


@pytest.mark.asyncio
async def test_failed_migration_is_terminal():
    executor = InMemoryMigrationExecutor(scripts=[("20240301000001", failing_script)])
    gate = MigrationGate(executor)
    await gate.initialize()

    with pytest.raises(MigrationFailedError):
        await gate.confirm()

    assert gate.state == MigrationGateState.FAILED
    assert "column already exists" in str(gate.last_error)

    with pytest.raises(MigrationFailedError):
        gate.check()

    # No automatic retry
    with pytest.raises(MigrationFailedError):
        await gate.confirm()
    assert gate.state == MigrationGateState.FAILED


@pytest.mark.asyncio
async def test_initialize_runs_once(executor):
    gate = MigrationGate(executor)
    await gate.initialize()
    await gate.confirm()

    state = await gate.initialize()

    assert state == MigrationGateState.CLEAR
