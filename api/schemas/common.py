"""
Common API schemas used across endpoints.
"""

from typing import Any, Optional

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str = Field(..., description="Error message")
    detail: Optional[str] = Field(None, description="Detailed error information")
    code: str = Field(..., description="Error code")
    timestamp: str = Field(..., description="ISO 8601 timestamp")

    model_config = {
        "json_schema_extra": {
            "example": {
                "error": "Collection already running",
                "detail": "collection tapd:1:tapd_api_worklogs:5d41402abc4b2a76 is already running",
                "code": "ALREADY_RUNNING",
                "timestamp": "2024-01-15T10:30:00Z",
            }
        }
    }


class SuccessResponse(BaseModel):
    """Standard success response."""

    success: bool = Field(True, description="Operation success status")
    message: Optional[str] = Field(None, description="Success message")
    data: Optional[Any] = Field(None, description="Response data")

    model_config = {
        "json_schema_extra": {
            "example": {
                "success": True,
                "message": "Database migration completed",
                "data": {"state": "clear"},
            }
        }
    }
