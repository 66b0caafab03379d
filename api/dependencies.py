"""
FastAPI dependency injection providers.

This module provides the application state and the ingestion services held
by it to the routers.
"""

from typing import Optional

from fastapi import Depends, HTTPException, Request, status

from ingest_agent.ingestion.bridge import RemotePluginBridge
from ingest_agent.ingestion.orchestrator import PipelineOrchestrator
from ingest_agent.ingestion.registry import DispatchTable
from ingest_agent.services.migration_gate import MigrationGate
from ingest_agent.storage.interfaces import CheckpointRepository, RawRecordRepository


async def get_app_state(request: Request):
    """
    Get the application state created by ``create_app``.

    Raises:
        HTTPException: If the service has not finished starting
    """
    state = getattr(request.app.state, "ingest", None)
    if state is None or not state.ready:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service is starting",
        )
    return state


async def get_migration_gate(state=Depends(get_app_state)) -> MigrationGate:
    return state.gate


async def get_dispatch_table(state=Depends(get_app_state)) -> DispatchTable:
    return state.dispatch_table


async def get_orchestrator(state=Depends(get_app_state)) -> PipelineOrchestrator:
    return state.orchestrator


async def get_bridge(state=Depends(get_app_state)) -> Optional[RemotePluginBridge]:
    """Remote plugin bridge, or None when remote plugins are disabled."""
    return state.bridge


async def require_bridge(
    bridge: Optional[RemotePluginBridge] = Depends(get_bridge),
) -> RemotePluginBridge:
    """
    Remote plugin bridge for endpoints that need it.

    Raises:
        HTTPException: If remote plugins are disabled
    """
    if bridge is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Remote plugins are disabled",
        )
    return bridge


async def get_checkpoint_repository(state=Depends(get_app_state)) -> CheckpointRepository:
    return state.checkpoints


async def get_raw_record_repository(state=Depends(get_app_state)) -> RawRecordRepository:
    return state.raw_records
