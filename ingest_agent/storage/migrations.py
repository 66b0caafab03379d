"""
Schema migration scripts and their PostgreSQL executor.

Scripts are applied in version order, each inside its own transaction, and
recorded in ``_migration_history``. The executor never applies anything on
its own: the migration gate decides when ``apply`` runs.
"""

import logging
from typing import List, NamedTuple, Sequence, Tuple

from asyncpg import Pool

from ingest_agent.storage.interfaces import MigrationError

logger = logging.getLogger(__name__)


class MigrationScript(NamedTuple):
    """One versioned schema change."""

    version: str
    name: str
    statements: Tuple[str, ...]


MIGRATION_SCRIPTS: Tuple[MigrationScript, ...] = (
    MigrationScript(
        version="20240101000001",
        name="create collector checkpoints",
        statements=(
            """
            CREATE TABLE IF NOT EXISTS _collector_checkpoints (
                params_key TEXT PRIMARY KEY,
                latest_success_start TIMESTAMPTZ NOT NULL,
                latest_success_end TIMESTAMPTZ NOT NULL,
                time_after TIMESTAMPTZ,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            )
            """,
        ),
    ),
    MigrationScript(
        version="20240101000002",
        name="create raw records",
        statements=(
            """
            CREATE TABLE IF NOT EXISTS _raw_records (
                id BIGSERIAL PRIMARY KEY,
                table_name TEXT NOT NULL,
                params_key TEXT NOT NULL,
                data BYTEA NOT NULL,
                collected_at TIMESTAMPTZ NOT NULL,
                invalidated BOOLEAN NOT NULL DEFAULT FALSE
            )
            """,
            """
            CREATE INDEX IF NOT EXISTS idx_raw_records_params
                ON _raw_records (table_name, params_key)
                WHERE NOT invalidated
            """,
        ),
    ),
)


HISTORY_DDL = """
    CREATE TABLE IF NOT EXISTS _migration_history (
        version TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        applied_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
"""


class PostgreSQLMigrationExecutor:
    """
    MigrationExecutor running scripts against PostgreSQL.

    Attributes:
        pool: asyncpg connection pool
        scripts: Scripts known to this build, in apply order
    """

    def __init__(self, pool: Pool, scripts: Sequence[MigrationScript] = MIGRATION_SCRIPTS):
        self.pool = pool
        self.scripts = sorted(scripts, key=lambda s: s.version)

    async def _applied_versions(self) -> set:
        async with self.pool.acquire() as conn:
            await conn.execute(HISTORY_DDL)
            rows = await conn.fetch("SELECT version FROM _migration_history")
        return {row["version"] for row in rows}

    async def pending(self) -> List[str]:
        applied = await self._applied_versions()
        return [s.version for s in self.scripts if s.version not in applied]

    async def apply(self) -> List[str]:
        applied = await self._applied_versions()
        done = []

        for script in self.scripts:
            if script.version in applied:
                continue

            logger.info(f"Applying migration {script.version}: {script.name}")
            try:
                async with self.pool.acquire() as conn:
                    async with conn.transaction():
                        for statement in script.statements:
                            await conn.execute(statement)
                        await conn.execute(
                            "INSERT INTO _migration_history (version, name) VALUES ($1, $2)",
                            script.version,
                            script.name,
                        )
            except Exception as e:
                logger.error(f"Migration {script.version} failed: {e}")
                raise MigrationError(script.version, str(e))

            done.append(script.version)

        logger.info(f"Applied {len(done)} migrations")
        return done
