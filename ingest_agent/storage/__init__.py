"""
Storage layer for the ingestion core.

This package provides interfaces and implementations for the checkpoint
store, the raw record sink and schema migrations.
"""

# Interface exports
from ingest_agent.storage.interfaces import (
    CheckpointRepository,
    ConnectionError,
    MigrationError,
    MigrationExecutor,
    RawRecordRepository,
    StorageError,
)

# Concrete implementations
from ingest_agent.storage.memory import (
    InMemoryCheckpointRepository,
    InMemoryMigrationExecutor,
    InMemoryRawRecordRepository,
)
from ingest_agent.storage.postgres import (
    PostgreSQLCheckpointRepository,
    PostgreSQLConnectionPool,
    PostgreSQLRawRecordRepository,
)
from ingest_agent.storage.migrations import MIGRATION_SCRIPTS, PostgreSQLMigrationExecutor

__all__ = [
    # Interfaces
    "CheckpointRepository",
    "RawRecordRepository",
    "MigrationExecutor",
    # Exceptions
    "StorageError",
    "ConnectionError",
    "MigrationError",
    # In-memory implementations
    "InMemoryCheckpointRepository",
    "InMemoryRawRecordRepository",
    "InMemoryMigrationExecutor",
    # PostgreSQL implementations
    "PostgreSQLConnectionPool",
    "PostgreSQLCheckpointRepository",
    "PostgreSQLRawRecordRepository",
    "PostgreSQLMigrationExecutor",
    "MIGRATION_SCRIPTS",
]
