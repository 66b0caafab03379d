"""
Schemas of the pipeline, plugin and checkpoint endpoints.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ingest_agent.types import SubTaskMeta, SubTaskResult


class PipelineRunRequest(BaseModel):
    """Request to run one plugin's subtasks."""

    plugin: str = Field(..., min_length=1, description="Plugin name")
    subtasks: Optional[List[str]] = Field(
        None, description="Explicit subtask selection; others are skipped"
    )
    skip_subtasks: Optional[List[str]] = Field(None, description="Subtasks to skip")
    options: Dict[str, Any] = Field(default_factory=dict, description="Plugin options")
    time_after: Optional[datetime] = Field(
        None, description="Collect only data updated after this instant"
    )

    model_config = {
        "json_schema_extra": {
            "example": {
                "plugin": "tapd",
                "options": {"connection_id": 1, "workspace_id": 991},
                "time_after": "2024-01-01T00:00:00+08:00",
            }
        }
    }


class PipelineRunResponse(BaseModel):
    """Outcome of a plugin run."""

    plugin: str
    success: bool = Field(..., description="Whether no subtask failed")
    results: List[SubTaskResult] = Field(default_factory=list)


class PluginInfo(BaseModel):
    """One dispatchable plugin."""

    name: str = Field(..., description="Plugin name")
    remote: bool = Field(..., description="Whether the plugin runs out of process")
    endpoint: Optional[str] = Field(None, description="RPC endpoint of a remote plugin")
    subtasks: List[SubTaskMeta] = Field(default_factory=list)


class PluginListResponse(BaseModel):
    """All dispatchable plugins."""

    plugins: List[PluginInfo] = Field(default_factory=list)
    total: int = Field(..., ge=0)


class CheckpointResponse(BaseModel):
    """Checkpoint of one collection, with its live raw record count."""

    params_key: str
    latest_success_start: Optional[datetime] = None
    latest_success_end: Optional[datetime] = None
    time_after: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    raw_records: Optional[int] = Field(
        None, description="Live raw records of the collection, when the table is given"
    )
