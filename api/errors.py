"""
HTTP mapping of ingestion errors.

Shared by the exception handlers, the migration gate middleware and the
pipeline router, so every rejection carries the same ErrorResponse body.
"""

from datetime import datetime, timezone
from typing import Optional

from fastapi import status
from fastapi.responses import JSONResponse

from api.schemas.common import ErrorResponse
from ingest_agent.ingestion.base import CollectErrorKind
from ingest_agent.services.migration_gate import MigrationFailedError, MigrationGateError

COLLECT_ERROR_STATUS = {
    CollectErrorKind.ALREADY_RUNNING: status.HTTP_409_CONFLICT,
    CollectErrorKind.CANCELLED: status.HTTP_409_CONFLICT,
    CollectErrorKind.BRIDGE_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
    CollectErrorKind.UPSTREAM_UNAVAILABLE: status.HTTP_502_BAD_GATEWAY,
    CollectErrorKind.MALFORMED_RESPONSE: status.HTTP_502_BAD_GATEWAY,
}

COLLECT_ERROR_TITLES = {
    CollectErrorKind.ALREADY_RUNNING: "Collection already running",
    CollectErrorKind.CANCELLED: "Collection cancelled",
    CollectErrorKind.BRIDGE_UNAVAILABLE: "Remote plugin unavailable",
    CollectErrorKind.UPSTREAM_UNAVAILABLE: "Upstream API unavailable",
    CollectErrorKind.MALFORMED_RESPONSE: "Malformed upstream response",
}


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).replace(tzinfo=None).isoformat() + "Z"


def error_response(
    status_code: int,
    error: str,
    code: str,
    detail: Optional[str] = None,
) -> JSONResponse:
    """Build a JSON ErrorResponse."""
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(
            error=error,
            detail=detail,
            code=code,
            timestamp=utc_timestamp(),
        ).model_dump(),
    )


def status_for_error_kind(kind: Optional[str]) -> int:
    """
    HTTP status of a failed run, by the error kind of its failing subtask.

    Unknown kinds (plain subtask exceptions) map to 500.
    """
    try:
        return COLLECT_ERROR_STATUS[CollectErrorKind(kind)]
    except ValueError:
        return status.HTTP_500_INTERNAL_SERVER_ERROR


def gate_error_response(exc: MigrationGateError) -> JSONResponse:
    """428 rejection carrying the operator message of the gate state."""
    code = "MIGRATION_FAILED" if isinstance(exc, MigrationFailedError) else "MIGRATION_REQUIRED"
    return error_response(
        status.HTTP_428_PRECONDITION_REQUIRED,
        error=exc.operator_message.strip(),
        code=code,
        detail=str(exc),
    )
