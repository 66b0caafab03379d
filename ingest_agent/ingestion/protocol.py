"""
Wire protocol between the orchestrator and remote plugin processes.

Every message is a pydantic model serialized as JSON. Versions are
``MAJOR.MINOR`` strings; peers are compatible when the major parts match.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

PROTOCOL_VERSION = "1.0"

REGISTER_PATH = "/plugins/register"
INVOKE_PATH = "/subtasks/invoke"
PING_PATH = "/ping"


class ProtocolVersionError(ValueError):
    """Raised when a peer speaks an incompatible protocol version."""


def parse_version(version: str) -> Tuple[int, int]:
    """
    Split a ``MAJOR.MINOR`` version string.

    Raises:
        ProtocolVersionError: If the string is malformed
    """
    parts = str(version).strip().split(".")
    if len(parts) != 2 or not all(part.isdigit() for part in parts):
        raise ProtocolVersionError(f"malformed protocol version '{version}'")
    return int(parts[0]), int(parts[1])


def negotiate(peer_version: str, own_version: str = PROTOCOL_VERSION) -> str:
    """
    Check a peer's version against ours.

    Returns:
        The version both sides speak (the lower minor of the shared major)

    Raises:
        ProtocolVersionError: If the major versions differ
    """
    peer_major, peer_minor = parse_version(peer_version)
    own_major, own_minor = parse_version(own_version)
    if peer_major != own_major:
        raise ProtocolVersionError(
            f"protocol version {peer_version} is incompatible with {own_version}"
        )
    return f"{own_major}.{min(peer_minor, own_minor)}"


# ============================================================================
# Messages
# ============================================================================


class RegisterResponse(BaseModel):
    """Answer to a registration request."""

    plugin_name: str
    protocol_version: str
    subtasks: List[str] = Field(default_factory=list)
    replaced: bool = False


class WireTaskContext(BaseModel):
    """Serialized TaskContext."""

    plugin: str
    options: Dict[str, Any] = Field(default_factory=dict)
    time_after: Optional[datetime] = None


class InvokeRequest(BaseModel):
    """Request to run one subtask in a remote plugin process."""

    protocol_version: str = PROTOCOL_VERSION
    plugin: str
    subtask: str
    context: WireTaskContext


class InvokeResponse(BaseModel):
    """Result of a remote subtask run."""

    success: bool
    error: Optional[str] = None
    error_kind: Optional[str] = None


class BootstrapRequest(BaseModel):
    """Sent to plugin launchers at orchestrator startup."""

    orchestrator_port: int
    protocol_version: str = PROTOCOL_VERSION
    register_path: str = REGISTER_PATH
