"""
Checkpoint inspection endpoint.

Operators read a collection's checkpoint to decide safe re-run windows.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from api.dependencies import get_checkpoint_repository, get_raw_record_repository
from api.schemas.pipelines import CheckpointResponse
from ingest_agent.storage.interfaces import CheckpointRepository, RawRecordRepository

router = APIRouter(prefix="/checkpoints", tags=["Checkpoints"])


@router.get("/{params_key}", response_model=CheckpointResponse, summary="Get a checkpoint")
async def get_checkpoint(
    params_key: str,
    table: Optional[str] = Query(None, description="Raw table, to count its live records"),
    checkpoints: CheckpointRepository = Depends(get_checkpoint_repository),
    raw_records: RawRecordRepository = Depends(get_raw_record_repository),
) -> CheckpointResponse:
    state = await checkpoints.load(params_key)
    if state is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No checkpoint for {params_key}",
        )

    count = await raw_records.count(params_key, table) if table else None
    return CheckpointResponse(**state.model_dump(), raw_records=count)
