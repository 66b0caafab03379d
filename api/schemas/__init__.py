"""
API schemas for request and response models.

This module defines Pydantic models used for API serialization.
"""

from api.schemas.common import ErrorResponse, SuccessResponse
from api.schemas.pipelines import (
    CheckpointResponse,
    PipelineRunRequest,
    PipelineRunResponse,
    PluginInfo,
    PluginListResponse,
)

__all__ = [
    # Common
    "ErrorResponse",
    "SuccessResponse",
    # Pipelines
    "CheckpointResponse",
    "PipelineRunRequest",
    "PipelineRunResponse",
    "PluginInfo",
    "PluginListResponse",
]
