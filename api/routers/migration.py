"""
Migration confirmation endpoint.

The only endpoint the migration gate lets through while migrations are
pending.
"""

import logging

from fastapi import APIRouter, Depends, status

from api.dependencies import get_migration_gate
from api.errors import error_response
from api.schemas.common import SuccessResponse
from ingest_agent.services.migration_gate import (
    CONFIRMATION_PATH,
    MigrationFailedError,
    MigrationGate,
)
from ingest_agent.types import MigrationGateState

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Migration"])


@router.get(
    CONFIRMATION_PATH,
    response_model=SuccessResponse,
    summary="Confirm and run pending database migrations",
)
async def proceed_db_migration(gate: MigrationGate = Depends(get_migration_gate)):
    """
    Run pending migrations synchronously.

    Idempotent: succeeds immediately when nothing is pending. A failed
    migration closes the gate for good and is reported as 500.
    """
    if gate.state == MigrationGateState.CLEAR:
        return SuccessResponse(message="No migration pending", data={"state": gate.state.value})

    pending = list(gate.pending_versions)
    logger.info(f"Operator confirmed migrations {', '.join(pending)}")

    try:
        state = await gate.confirm()
    except MigrationFailedError as e:
        return error_response(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            error="Database migration failed",
            code="MIGRATION_FAILED",
            detail=str(e),
        )

    return SuccessResponse(
        message="Database migration completed",
        data={"state": state.value, "applied": pending},
    )
