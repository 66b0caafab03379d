"""
Plugin endpoints.

``GET /plugins`` lists the dispatch table. ``POST /plugins/register`` is the
registration endpoint of remote plugin processes; it lives on its own router
so the app mounts it only when remote plugins are enabled.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends

from api.dependencies import get_bridge, get_dispatch_table, require_bridge
from api.schemas.pipelines import PluginInfo, PluginListResponse
from ingest_agent.ingestion.bridge import RemotePluginBridge
from ingest_agent.ingestion.protocol import REGISTER_PATH, RegisterResponse
from ingest_agent.ingestion.registry import DispatchTable
from ingest_agent.types import PluginRegistration

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Plugins"])
registration_router = APIRouter(tags=["Plugins"])


@router.get("/plugins", response_model=PluginListResponse, summary="List dispatchable plugins")
async def list_plugins(
    table: DispatchTable = Depends(get_dispatch_table),
    bridge: Optional[RemotePluginBridge] = Depends(get_bridge),
) -> PluginListResponse:
    plugins = []
    for name in table.plugins():
        remote = table.is_remote(name)
        registration = bridge.get_registration(name) if (remote and bridge) else None
        plugins.append(
            PluginInfo(
                name=name,
                remote=remote,
                endpoint=registration.endpoint if registration else None,
                subtasks=[handle.meta for handle in table.subtasks(name)],
            )
        )
    return PluginListResponse(plugins=plugins, total=len(plugins))


@registration_router.post(
    REGISTER_PATH,
    response_model=RegisterResponse,
    summary="Register a remote plugin",
)
async def register_plugin(
    registration: PluginRegistration,
    bridge: RemotePluginBridge = Depends(require_bridge),
) -> RegisterResponse:
    """
    Register (or re-register) a remote plugin.

    Rejections (protocol mismatch, invalid declarations, local name
    collision) are answered with 400.
    """
    logger.info(
        f"Registration request from {registration.plugin_name} at {registration.endpoint}"
    )
    return await bridge.register(registration)
