"""
Mock implementations for testing.

These mocks stand in for upstream APIs and remote plugin processes so the
collector, bridge and API can be exercised without a network.
"""

from tests.mocks.clock import TickingClock
from tests.mocks.upstream import (
    MockApiClient,
    MockBridgeTransport,
    json_records,
    page_body,
    page_query,
)

__all__ = [
    "MockApiClient",
    "MockBridgeTransport",
    "TickingClock",
    "json_records",
    "page_body",
    "page_query",
]
