"""
PostgreSQL repository implementations.

This module provides asyncpg-based implementations of the checkpoint store
and the raw record sink.
"""

import logging
from datetime import datetime
from typing import List, Optional, Sequence

import asyncpg
from asyncpg import Pool

from ingest_agent.storage.interfaces import ConnectionError, StorageError
from ingest_agent.types import CheckpointState, RawRecord

logger = logging.getLogger(__name__)


# ============================================================================
# Connection Pool Management
# ============================================================================


class PostgreSQLConnectionPool:
    """
    Manages PostgreSQL connection pool lifecycle.

    A single shared pool is handed to every repository instance.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 5432,
        database: str = "ingest",
        user: str = "ingest_user",
        password: str = "ingest_password",
        min_size: int = 2,
        max_size: int = 10,
    ):
        self.host = host
        self.port = port
        self.database = database
        self.user = user
        self.password = password
        self.min_size = min_size
        self.max_size = max_size
        self._pool: Optional[Pool] = None

    async def connect(self) -> Pool:
        """
        Create and return a connection pool.

        Raises:
            ConnectionError: If connection fails
        """
        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                host=self.host,
                port=self.port,
                database=self.database,
                user=self.user,
                password=self.password,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=60,
            )
            logger.info(
                f"PostgreSQL connection pool created: {self.host}:{self.port}/{self.database}"
            )
            return self._pool
        except Exception as e:
            logger.error(f"Failed to create connection pool: {e}")
            raise ConnectionError(f"Database connection failed: {e}")

    async def close(self):
        """Close the connection pool."""
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
            logger.info("PostgreSQL connection pool closed")

    @property
    def pool(self) -> Optional[Pool]:
        """Get the current pool instance."""
        return self._pool


# ============================================================================
# Helper Functions
# ============================================================================


def _row_to_checkpoint(row: asyncpg.Record) -> CheckpointState:
    return CheckpointState(
        params_key=row["params_key"],
        latest_success_start=row["latest_success_start"],
        latest_success_end=row["latest_success_end"],
        time_after=row["time_after"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_raw_record(row: asyncpg.Record) -> RawRecord:
    return RawRecord(
        id=row["id"],
        params_key=row["params_key"],
        table=row["table_name"],
        data=bytes(row["data"]),
        collected_at=row["collected_at"],
    )


# ============================================================================
# Repository Implementations
# ============================================================================


class PostgreSQLCheckpointRepository:
    """PostgreSQL implementation of CheckpointRepository."""

    def __init__(self, pool: Pool):
        self.pool = pool

    async def load(self, params_key: str) -> Optional[CheckpointState]:
        try:
            row = await self.pool.fetchrow(
                "SELECT * FROM _collector_checkpoints WHERE params_key = $1",
                params_key,
            )
        except Exception as e:
            logger.error(f"Failed to load checkpoint {params_key}: {e}")
            raise StorageError(f"Failed to load checkpoint: {e}")

        return _row_to_checkpoint(row) if row is not None else None

    async def commit(self, state: CheckpointState) -> None:
        # Single upsert statement: applied entirely or not at all
        query = """
            INSERT INTO _collector_checkpoints (
                params_key, latest_success_start, latest_success_end,
                time_after, created_at, updated_at
            ) VALUES ($1, $2, $3, $4, $5, $6)
            ON CONFLICT (params_key) DO UPDATE SET
                latest_success_start = EXCLUDED.latest_success_start,
                latest_success_end = EXCLUDED.latest_success_end,
                time_after = EXCLUDED.time_after,
                updated_at = EXCLUDED.updated_at
        """
        try:
            await self.pool.execute(
                query,
                state.params_key,
                state.latest_success_start,
                state.latest_success_end,
                state.time_after,
                state.created_at,
                state.updated_at,
            )
            logger.debug(f"Committed checkpoint {state.params_key}")
        except Exception as e:
            logger.error(f"Failed to commit checkpoint {state.params_key}: {e}")
            raise StorageError(f"Failed to commit checkpoint: {e}")


class PostgreSQLRawRecordRepository:
    """PostgreSQL implementation of RawRecordRepository."""

    def __init__(self, pool: Pool):
        self.pool = pool

    async def append(
        self,
        params_key: str,
        table: str,
        records: Sequence[bytes],
        collected_at: datetime,
    ) -> List[int]:
        if not records:
            return []

        query = """
            INSERT INTO _raw_records (table_name, params_key, data, collected_at)
            SELECT $1, $2, data, $4 FROM unnest($3::bytea[]) WITH ORDINALITY AS t(data, ord)
            ORDER BY ord
            RETURNING id
        """
        try:
            rows = await self.pool.fetch(query, table, params_key, list(records), collected_at)
            return sorted(row["id"] for row in rows)
        except Exception as e:
            logger.error(f"Failed to append {len(records)} raw records to {table}: {e}")
            raise StorageError(f"Failed to append raw records: {e}")

    async def invalidate(self, params_key: str, table: str) -> int:
        try:
            status = await self.pool.execute(
                """
                UPDATE _raw_records SET invalidated = TRUE
                WHERE table_name = $1 AND params_key = $2 AND NOT invalidated
                """,
                table,
                params_key,
            )
            # asyncpg returns the command tag, e.g. "UPDATE 42"
            return int(status.split()[-1])
        except Exception as e:
            logger.error(f"Failed to invalidate raw records of {table}: {e}")
            raise StorageError(f"Failed to invalidate raw records: {e}")

    async def list(self, params_key: str, table: str) -> List[RawRecord]:
        try:
            rows = await self.pool.fetch(
                """
                SELECT * FROM _raw_records
                WHERE table_name = $1 AND params_key = $2 AND NOT invalidated
                ORDER BY id
                """,
                table,
                params_key,
            )
            return [_row_to_raw_record(row) for row in rows]
        except Exception as e:
            logger.error(f"Failed to list raw records of {table}: {e}")
            raise StorageError(f"Failed to list raw records: {e}")

    async def count(self, params_key: str, table: str) -> int:
        try:
            return await self.pool.fetchval(
                """
                SELECT COUNT(*) FROM _raw_records
                WHERE table_name = $1 AND params_key = $2 AND NOT invalidated
                """,
                table,
                params_key,
            )
        except Exception as e:
            logger.error(f"Failed to count raw records of {table}: {e}")
            raise StorageError(f"Failed to count raw records: {e}")
