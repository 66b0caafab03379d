"""
Migration gate.

A process-wide state machine that blocks every inbound request while schema
migrations are pending, until an operator explicitly confirms them:

    CLEAR -> PENDING_CONFIRMATION -> EXECUTING -> CLEAR
                                              \\-> FAILED (terminal)

The gate is created at process start, initialized once against the migration
executor, and injected into the request pipeline.
"""

import asyncio
import logging
from typing import List, Optional

from ingest_agent.observability.metrics import gate_rejections_counter, set_gate_state
from ingest_agent.storage.interfaces import MigrationExecutor
from ingest_agent.types import MigrationGateState

logger = logging.getLogger(__name__)

CONFIRMATION_PATH = "/proceed-db-migration"

DB_MIGRATION_REQUIRED = f"""
New migration scripts detected. Database migration is required to launch the ingestion service.
WARNING: Performing migration may wipe collected data for consistency and re-collecting data may be required.
To proceed, please send a request to <ingest-endpoint>{CONFIRMATION_PATH}.
Alternatively, you may downgrade back to the previous version.
"""

DB_MIGRATION_FAILED = """
Database migration failed. The service cannot serve requests until an operator repairs the database.
Inspect the logs for the failing migration script, fix it, and restart the service.
"""


class MigrationGateError(Exception):
    """Base class of gate rejections."""

    operator_message = DB_MIGRATION_REQUIRED

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.operator_message.strip())


class MigrationPendingError(MigrationGateError):
    """Migrations are pending confirmation (or running)."""


class MigrationFailedError(MigrationGateError):
    """A confirmed migration failed; the gate is closed for good."""

    operator_message = DB_MIGRATION_FAILED


class MigrationGate:
    """
    Gate guarding all inbound requests.

    Transitions are serialized by an asyncio lock. ``check`` only reads the
    current state and is safe to call on every request.

    Attributes:
        executor: Detects and applies migration scripts
        pending_versions: Versions detected at initialization
        last_error: Error of the failed migration, if any
    """

    def __init__(self, executor: MigrationExecutor):
        self.executor = executor
        self._state = MigrationGateState.CLEAR
        self._lock = asyncio.Lock()
        self._initialized = False
        self.pending_versions: List[str] = []
        self.last_error: Optional[BaseException] = None
        set_gate_state(self._state)

    @property
    def state(self) -> MigrationGateState:
        return self._state

    @property
    def requires_confirmation(self) -> bool:
        return self._state == MigrationGateState.PENDING_CONFIRMATION

    def _transition(self, state: MigrationGateState):
        logger.info(f"Migration gate: {self._state.value} -> {state.value}")
        self._state = state
        set_gate_state(state)

    async def initialize(self) -> MigrationGateState:
        """
        Detect pending migrations at process start.

        Returns:
            The resulting state
        """
        async with self._lock:
            if self._initialized:
                return self._state
            self._initialized = True

            self.pending_versions = await self.executor.pending()
            if self.pending_versions:
                logger.warning(
                    f"{len(self.pending_versions)} migration scripts pending: "
                    f"{', '.join(self.pending_versions)}; waiting for confirmation"
                )
                self._transition(MigrationGateState.PENDING_CONFIRMATION)
            return self._state

    def check(self) -> None:
        """
        Admit or reject a request.

        Raises:
            MigrationPendingError: While confirmation is pending or migration runs
            MigrationFailedError: After a failed migration
        """
        state = self._state
        if state == MigrationGateState.CLEAR:
            return

        gate_rejections_counter.labels(state=state.value).inc()
        if state == MigrationGateState.FAILED:
            raise MigrationFailedError()
        raise MigrationPendingError()

    async def confirm(self) -> MigrationGateState:
        """
        Apply pending migrations after operator confirmation.

        Idempotent: returns immediately when nothing is pending. Does not retry
        a failed migration.

        Raises:
            MigrationFailedError: If the migration fails now or failed before
        """
        async with self._lock:
            if self._state == MigrationGateState.CLEAR:
                return self._state
            if self._state == MigrationGateState.FAILED:
                raise MigrationFailedError(f"migration previously failed: {self.last_error}")

            self._transition(MigrationGateState.EXECUTING)
            try:
                applied = await self.executor.apply()
            except Exception as e:
                self.last_error = e
                self._transition(MigrationGateState.FAILED)
                logger.error(f"Migration failed: {e}", exc_info=True)
                raise MigrationFailedError(f"error executing migration: {e}") from e

            logger.info(f"Applied migrations: {', '.join(applied) or 'none'}")
            self.pending_versions = []
            self._transition(MigrationGateState.CLEAR)
            return self._state

    async def shutdown(self) -> None:
        """Release the gate at process exit."""
        logger.info(f"Migration gate shut down in state {self._state.value}")
