"""
Base classes and errors for stateful data collection.

This module defines the capability interface every connector implements
(a query builder and a response parser) and the typed error raised by the
collector and the remote plugin bridge.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Dict, List

from ingest_agent.ingestion.api_client import ApiResponse
from ingest_agent.types import QueryContext


class CollectErrorKind(str, Enum):
    """Why a collection run or a bridge invocation failed."""

    UPSTREAM_UNAVAILABLE = "UpstreamUnavailable"
    MALFORMED_RESPONSE = "MalformedResponse"
    ALREADY_RUNNING = "AlreadyRunning"
    BRIDGE_UNAVAILABLE = "BridgeUnavailable"
    CANCELLED = "Cancelled"


class CollectError(Exception):
    """Exception raised when a collection run or a remote invocation fails."""

    def __init__(self, kind: CollectErrorKind, message: str = ""):
        self.kind = kind
        self.message = message or kind.value
        super().__init__(f"{kind.value}: {self.message}")


class SubTaskError(Exception):
    """Exception raised when a subtask entry point fails for any other reason."""

    def __init__(self, message: str, kind: str = None):
        self.kind = kind
        super().__init__(message)


class ParseError(ValueError):
    """Raised by response parsers when the payload is not what they expect."""


class Connector(ABC):
    """
    Capability interface of one upstream endpoint.

    A connector knows how to turn a page position into query parameters and
    how to pull opaque records out of a response body. The collector depends
    only on this interface.
    """

    # Path passed to the ApiClient, relative to its base URL
    url_template: str = ""

    # Page size, fixed for the duration of one run
    page_size: int = 100

    @abstractmethod
    def build_query(self, ctx: QueryContext) -> Dict[str, str]:
        """
        Build query parameters for one page.

        Must be deterministic for identical inputs.

        Args:
            ctx: Page position, collection mode and zone-normalized lower bound

        Returns:
            Mapping of query parameter names to values
        """
        pass

    @abstractmethod
    def parse_response(self, response: ApiResponse) -> List[bytes]:
        """
        Extract raw records from a response.

        Must not mutate external state. An empty list ends the pagination loop.

        Raises:
            ParseError: If the payload is malformed
        """
        pass

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} ({self.url_template})>"
