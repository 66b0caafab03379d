"""
Liveness and metrics endpoints.
"""

from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Depends
from fastapi.responses import Response

from api import __version__
from api.dependencies import get_app_state
from ingest_agent.observability.metrics import render_metrics

router = APIRouter(tags=["Health"])


@router.get("/ping", summary="Liveness probe")
async def ping(state=Depends(get_app_state)) -> Dict[str, Any]:
    return {
        "status": "ok",
        "version": __version__,
        "gate": state.gate.state.value,
        "uptime_seconds": (datetime.now(timezone.utc) - state.started_at).total_seconds(),
    }


@router.get("/metrics", summary="Prometheus metrics")
async def metrics() -> Response:
    body, content_type = render_metrics()
    return Response(content=body, media_type=content_type)
