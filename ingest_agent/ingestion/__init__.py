"""
Ingestion layer of the ingestion core.

This package provides the stateful incremental collector, the subtask
runner, the plugin registry and dispatch table, and the remote plugin bridge.
"""

# Errors and connector interface
from ingest_agent.ingestion.base import (
    CollectError,
    CollectErrorKind,
    Connector,
    ParseError,
    SubTaskError,
)
from ingest_agent.ingestion.api_client import (
    AiohttpApiClient,
    ApiClient,
    ApiClientError,
    ApiResponse,
)

# Collection
from ingest_agent.ingestion.collector import (
    CollectionSummary,
    FunctionConnector,
    StatefulApiCollector,
    collect,
)
from ingest_agent.ingestion.locks import CollectionLockRegistry

# Subtasks, plugins and dispatch
from ingest_agent.ingestion.subtask import (
    CollectingReporter,
    SubTaskRunner,
    TaskContext,
    TaskServices,
)
from ingest_agent.ingestion.registry import (
    DispatchTable,
    LocalSubTask,
    PluginDefinition,
    PluginPrepareError,
    PluginRegistry,
    discover_plugins,
    install_local_plugins,
    register_plugin,
)
from ingest_agent.ingestion.bridge import (
    AiohttpBridgeTransport,
    BridgeRegistrationError,
    RemotePluginBridge,
    TransportError,
)
from ingest_agent.ingestion.orchestrator import PipelineOrchestrator, UnknownPluginError

__all__ = [
    # Errors and connector interface
    "CollectError",
    "CollectErrorKind",
    "Connector",
    "ParseError",
    "SubTaskError",
    "AiohttpApiClient",
    "ApiClient",
    "ApiClientError",
    "ApiResponse",
    # Collection
    "CollectionSummary",
    "FunctionConnector",
    "StatefulApiCollector",
    "collect",
    "CollectionLockRegistry",
    # Subtasks, plugins and dispatch
    "CollectingReporter",
    "SubTaskRunner",
    "TaskContext",
    "TaskServices",
    "DispatchTable",
    "LocalSubTask",
    "PluginDefinition",
    "PluginPrepareError",
    "PluginRegistry",
    "discover_plugins",
    "install_local_plugins",
    "register_plugin",
    "AiohttpBridgeTransport",
    "BridgeRegistrationError",
    "RemotePluginBridge",
    "TransportError",
    "PipelineOrchestrator",
    "UnknownPluginError",
]
