"""
Shared type definitions for the ingestion core.

This module contains the data model used across the collector, the checkpoint
store, the subtask runner, the remote plugin bridge and the migration gate.
These types serve as the contract between the different components.
"""

import hashlib
import json
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator


# ============================================================================
# Enums
# ============================================================================


class DomainType(str, Enum):
    """Domain tags a subtask may declare."""

    CODE = "CODE"
    TICKET = "TICKET"
    CODE_REVIEW = "CODEREVIEW"
    CICD = "CICD"
    CROSS = "CROSS"


class MigrationGateState(str, Enum):
    """Process-wide state of the migration gate."""

    CLEAR = "clear"
    PENDING_CONFIRMATION = "pending_confirmation"
    EXECUTING = "executing"
    FAILED = "failed"  # Terminal, requires operator intervention


class SubTaskStatus(str, Enum):
    """Outcome of one subtask invocation."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class CollectionMode(str, Enum):
    """Collection mode decided before the pagination loop starts."""

    FULL = "full"
    INCREMENTAL = "incremental"


# ============================================================================
# Collection Models
# ============================================================================


class CollectionParams(BaseModel):
    """
    Identity of one collection unit.

    The params key is derived from the plugin name, connection id, raw table
    name, the caller-supplied options and the connector's time zone. Two runs
    with equal params share a checkpoint and a set of raw records.
    """

    plugin: str
    connection_id: str
    table: str
    options: Dict[str, Any] = Field(default_factory=dict)
    timezone: str = "UTC"

    model_config = {"frozen": True}

    @field_validator("timezone")
    @classmethod
    def _known_zone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown time zone: {value}")
        return value

    @property
    def options_json(self) -> str:
        """Canonical JSON encoding of the options (sorted keys)."""
        return json.dumps(self.options, sort_keys=True, separators=(",", ":"), default=str)

    @property
    def options_hash(self) -> str:
        return hashlib.sha256(
            f"{self.options_json}|{self.timezone}".encode("utf-8")
        ).hexdigest()[:16]

    @property
    def key(self) -> str:
        return f"{self.plugin}:{self.connection_id}:{self.table}:{self.options_hash}"

    @property
    def zone(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


class CheckpointState(BaseModel):
    """Durable marker of the last successful collection window for one params key."""

    params_key: str
    latest_success_start: datetime
    latest_success_end: datetime
    time_after: Optional[datetime] = None  # Lower bound the committed run was asked for
    created_at: datetime
    updated_at: datetime

    model_config = {"frozen": True}


class RawRecord(BaseModel):
    """Unparsed source payload persisted verbatim."""

    id: int
    params_key: str
    table: str
    data: bytes
    collected_at: datetime

    model_config = {"frozen": True}


class PageCursor(BaseModel):
    """Transient position within one run. Never persisted."""

    page_number: int = Field(1, ge=1)
    page_size: int = Field(100, ge=1)


class QueryContext(BaseModel):
    """
    Everything a connector's query builder may look at.

    ``lower_bound`` is already normalized into the connector's declared zone,
    so formatting it as a calendar date yields the date the upstream expects.
    """

    page_number: int
    page_size: int
    incremental: bool
    lower_bound: Optional[datetime] = None
    params: CollectionParams

    model_config = {"frozen": True}


# ============================================================================
# Plugin Models
# ============================================================================


class SubTaskMeta(BaseModel):
    """
    Metadata of one named unit of pipeline work.

    The entry point itself is not part of the model: local plugins bind it in
    the dispatch table, remote plugins are reached through the bridge.
    """

    name: str = Field(..., min_length=1)
    enabled_by_default: bool = True
    description: str = ""
    domain_types: List[DomainType] = Field(default_factory=list)

    model_config = {"frozen": True}


class PluginRegistration(BaseModel):
    """Registration payload presented by a remote plugin process."""

    plugin_name: str = Field(..., min_length=1)
    endpoint: str = Field(..., min_length=1)
    subtasks: List[SubTaskMeta] = Field(default_factory=list)
    protocol_version: str
    description: str = ""

    @field_validator("endpoint")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")


class SubTaskResult(BaseModel):
    """What the runner reports to the orchestrator for one subtask."""

    plugin: str
    subtask: str
    status: SubTaskStatus
    error_kind: Optional[str] = None
    error: Optional[str] = None
    started_at: datetime
    finished_at: datetime

    @property
    def duration_seconds(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()
