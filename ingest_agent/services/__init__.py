"""Process-wide services."""

from ingest_agent.services.migration_gate import (
    CONFIRMATION_PATH,
    DB_MIGRATION_REQUIRED,
    MigrationFailedError,
    MigrationGate,
    MigrationGateError,
    MigrationPendingError,
)

__all__ = [
    "CONFIRMATION_PATH",
    "DB_MIGRATION_REQUIRED",
    "MigrationFailedError",
    "MigrationGate",
    "MigrationGateError",
    "MigrationPendingError",
]
