"""
TAPD collector plugin.

Collects worklogs (timesheets) of one TAPD workspace into the
``tapd_api_worklogs`` raw table, incrementally once a checkpoint exists.
TAPD filters on calendar dates, so the lower bound is formatted in the
workspace's zone (China Standard Time unless configured otherwise).
"""

import json
import logging
from typing import Any, Dict, List, Optional

import aiohttp
from pydantic import BaseModel, ValidationError, field_validator

from ingest_agent.config import get_settings
from ingest_agent.ingestion.api_client import AiohttpApiClient, ApiClient, ApiResponse
from ingest_agent.ingestion.base import Connector, ParseError
from ingest_agent.ingestion.collector import StatefulApiCollector
from ingest_agent.ingestion.registry import (
    LocalSubTask,
    PluginDefinition,
    PluginPrepareError,
    register_plugin,
)
from ingest_agent.ingestion.subtask import TaskContext
from ingest_agent.types import CollectionParams, DomainType, QueryContext, SubTaskMeta

logger = logging.getLogger(__name__)

PLUGIN_NAME = "tapd"
RAW_WORKLOG_TABLE = "tapd_api_worklogs"
DEFAULT_BASE_URL = "https://api.tapd.cn"
CST_ZONE = "Asia/Shanghai"


class TapdOptions(BaseModel):
    """Options of one TAPD run."""

    connection_id: str
    workspace_id: int
    timezone: str = CST_ZONE
    base_url: str = DEFAULT_BASE_URL
    username: Optional[str] = None
    password: Optional[str] = None

    model_config = {"extra": "ignore"}

    @field_validator("connection_id", mode="before")
    @classmethod
    def _connection_id_as_text(cls, value):
        # 1 and "1" name the same connection and must share one params key
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value


class TapdTaskData:
    """Task data shared by the subtasks of one TAPD run."""

    def __init__(self, options: TapdOptions, api_client: ApiClient, owns_client: bool):
        self.options = options
        self.api_client = api_client
        self.owns_client = owns_client


def create_raw_data_params(options: TapdOptions, table: str) -> CollectionParams:
    """Collection identity of one workspace's raw table."""
    return CollectionParams(
        plugin=PLUGIN_NAME,
        connection_id=options.connection_id,
        table=table,
        options={"ConnectionId": options.connection_id, "WorkspaceId": options.workspace_id},
        timezone=options.timezone,
    )


def get_raw_message_array_from_response(response: ApiResponse) -> List[bytes]:
    """
    Split a TAPD list response into one raw record per element of ``data``.

    Raises:
        ParseError: If the body is not JSON or ``data`` is not a list
    """
    try:
        payload = json.loads(response.body)
    except (ValueError, UnicodeDecodeError) as e:
        raise ParseError(f"response is not JSON: {e}")

    if not isinstance(payload, dict) or "data" not in payload:
        raise ParseError("response has no 'data' field")

    data = payload["data"]
    if data is None:
        return []
    if not isinstance(data, list):
        raise ParseError(f"'data' is a {type(data).__name__}, expected a list")

    return [
        json.dumps(item, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
        for item in data
    ]


class WorklogConnector(Connector):
    """Query builder and parser of the ``timesheets`` endpoint."""

    url_template = "timesheets"
    page_size = 100

    def __init__(self, workspace_id: int, page_size: Optional[int] = None):
        self.workspace_id = workspace_id
        if page_size is not None:
            self.page_size = page_size

    def build_query(self, ctx: QueryContext) -> Dict[str, str]:
        query = {
            "workspace_id": str(self.workspace_id),
            "page": str(ctx.page_number),
            "limit": str(ctx.page_size),
            "order": "created asc",
        }
        if ctx.lower_bound is not None:
            query["modified"] = f">{ctx.lower_bound.strftime('%Y-%m-%d')}"
        return query

    def parse_response(self, response: ApiResponse) -> List[bytes]:
        return get_raw_message_array_from_response(response)


async def collect_worklogs(ctx: TaskContext) -> None:
    """Collect TAPD worklogs into ``tapd_api_worklogs``."""
    data: TapdTaskData = ctx.data
    services = ctx.services
    params = create_raw_data_params(data.options, RAW_WORKLOG_TABLE)

    ctx.logger.info("collect worklogs")
    async with StatefulApiCollector(
        params,
        services.checkpoints,
        services.raw_records,
        services.locks,
        time_after=ctx.time_after,
    ) as collector:
        connector = WorklogConnector(data.options.workspace_id, page_size=services.page_size)
        await collector.execute(
            connector,
            data.api_client,
            cancel_event=ctx.cancel_event,
            concurrency=services.page_concurrency,
        )


COLLECT_WORKLOG_META = SubTaskMeta(
    name="collectWorklogs",
    enabled_by_default=True,
    description="collect Tapd worklogs",
    domain_types=[DomainType.TICKET],
)


@register_plugin
class TapdPlugin(PluginDefinition):
    """TAPD project management plugin."""

    name = PLUGIN_NAME
    description = "collect TAPD data"

    def subtasks(self) -> List[LocalSubTask]:
        return [LocalSubTask(COLLECT_WORKLOG_META, collect_worklogs)]

    async def prepare_task_data(self, ctx: TaskContext) -> TapdTaskData:
        try:
            options = TapdOptions(**ctx.options)
        except ValidationError as e:
            raise PluginPrepareError(f"invalid tapd options: {e.error_count()} errors") from e

        try:
            create_raw_data_params(options, RAW_WORKLOG_TABLE)
        except ValidationError as e:
            raise PluginPrepareError(f"invalid tapd timezone '{options.timezone}'") from e

        factory = ctx.services.api_client_factory if ctx.services else None
        if factory is not None:
            return TapdTaskData(options, factory(ctx.options), owns_client=False)

        auth = None
        if options.username:
            auth = aiohttp.BasicAuth(options.username, options.password or "")
        settings = get_settings()
        client = AiohttpApiClient(
            options.base_url,
            auth=auth,
            retries=settings.api_client_retries,
            timeout_seconds=settings.api_client_timeout_seconds,
        )
        return TapdTaskData(options, client, owns_client=True)

    async def close_task_data(self, data: Any) -> None:
        if isinstance(data, TapdTaskData) and data.owns_client:
            await data.api_client.close()
