"""
Pipeline trigger endpoint.
"""

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from api.dependencies import get_orchestrator
from api.errors import status_for_error_kind
from api.schemas.pipelines import PipelineRunRequest, PipelineRunResponse
from ingest_agent.ingestion.orchestrator import PipelineOrchestrator
from ingest_agent.types import SubTaskStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/pipelines", tags=["Pipelines"])


@router.post(
    "/run",
    response_model=PipelineRunResponse,
    summary="Run a plugin's subtasks",
    responses={
        409: {"description": "Collection already running or cancelled"},
        502: {"description": "Upstream API failed or returned a malformed payload"},
        503: {"description": "Remote plugin unreachable"},
    },
)
async def run_pipeline(
    request: PipelineRunRequest,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    """
    Run a plugin's enabled subtasks in declared order and wait for them.

    The run stops at the first failed subtask. A failed run answers with the
    status of its error kind and still carries every result reached.
    """
    results = await orchestrator.run_plugin(
        request.plugin,
        options=request.options,
        subtasks=request.subtasks,
        skip_subtasks=request.skip_subtasks,
        time_after=request.time_after,
    )

    failed = next((r for r in results if r.status == SubTaskStatus.FAILED), None)
    response = PipelineRunResponse(plugin=request.plugin, success=failed is None, results=results)

    if failed is None:
        return response

    logger.warning(f"Pipeline {request.plugin} failed at {failed.subtask}: {failed.error}")
    return JSONResponse(
        status_code=status_for_error_kind(failed.error_kind),
        content=response.model_dump(mode="json"),
    )
