"""
Storage layer interface contracts.

This module defines Protocol classes for the checkpoint store, the raw record
sink and the schema migration executor. PostgreSQL and in-memory
implementations satisfy the same contracts.
"""

from datetime import datetime
from typing import List, Optional, Protocol, Sequence

from ingest_agent.types import CheckpointState, RawRecord


# ============================================================================
# Repository Interfaces
# ============================================================================


class CheckpointRepository(Protocol):
    """Durable record of the last successful collection window per params key."""

    async def load(self, params_key: str) -> Optional[CheckpointState]:
        """
        Load the checkpoint of a params key.

        Args:
            params_key: Key of the collection params

        Returns:
            The checkpoint if one was committed, None otherwise
        """
        ...

    async def commit(self, state: CheckpointState) -> None:
        """
        Store a checkpoint, replacing the previous one for the same key.

        All-or-nothing; last writer wins between concurrent commits.

        Raises:
            StorageError: If the write fails (the previous checkpoint is kept)
        """
        ...


class RawRecordRepository(Protocol):
    """Append-only store of raw records keyed by params key and table."""

    async def append(
        self,
        params_key: str,
        table: str,
        records: Sequence[bytes],
        collected_at: datetime,
    ) -> List[int]:
        """
        Append a batch of records.

        Returns:
            Ids assigned to the records, monotonic per params key
        """
        ...

    async def invalidate(self, params_key: str, table: str) -> int:
        """
        Logically delete every live record of a params key.

        Returns:
            Number of records invalidated
        """
        ...

    async def list(self, params_key: str, table: str) -> List[RawRecord]:
        """Return live records of a params key in id order."""
        ...

    async def count(self, params_key: str, table: str) -> int:
        """Count live records of a params key."""
        ...


class MigrationExecutor(Protocol):
    """Detects and applies pending schema migrations."""

    async def pending(self) -> List[str]:
        """
        List migration scripts not yet applied.

        Returns:
            Version identifiers in apply order
        """
        ...

    async def apply(self) -> List[str]:
        """
        Apply every pending script in order.

        Returns:
            Version identifiers applied

        Raises:
            MigrationError: If a script fails; earlier scripts stay applied
        """
        ...


# ============================================================================
# Exceptions
# ============================================================================


class StorageError(Exception):
    """Base exception for storage operations."""

    pass


class ConnectionError(StorageError):
    """Exception raised when connection to storage fails."""

    pass


class MigrationError(StorageError):
    """Exception raised when a migration script fails."""

    def __init__(self, version: str, message: str):
        self.version = version
        super().__init__(f"Migration {version} failed: {message}")
