"""
Remote plugin bridge.

Plugins may run in their own process. Such a process registers with the
orchestrator by presenting a PluginRegistration; the bridge validates it and
installs one remote handle per declared subtask into the dispatch table.
Invoking a remote handle serializes the task context, performs an RPC call
to the plugin's endpoint and deserializes the result.

At startup the bridge can also dial out to plugin launchers, passing the
orchestrator's port so launched processes know where to register.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Protocol, Sequence

import aiohttp
from pydantic import ValidationError

from ingest_agent.ingestion.base import CollectError, CollectErrorKind, SubTaskError
from ingest_agent.ingestion.protocol import (
    INVOKE_PATH,
    PING_PATH,
    PROTOCOL_VERSION,
    BootstrapRequest,
    InvokeRequest,
    InvokeResponse,
    ProtocolVersionError,
    RegisterResponse,
    WireTaskContext,
    negotiate,
)
from ingest_agent.ingestion.registry import DispatchTable, PluginRegistry, SubTaskHandle
from ingest_agent.ingestion.subtask import TaskContext
from ingest_agent.observability.metrics import bridge_invocations_counter, remote_plugins_gauge
from ingest_agent.types import PluginRegistration, SubTaskMeta

logger = logging.getLogger(__name__)


# ============================================================================
# Transport
# ============================================================================


class TransportError(Exception):
    """Raised when an RPC call could not be completed."""


class BridgeTransport(Protocol):
    """JSON-over-HTTP transport used by the bridge."""

    async def post(self, url: str, payload: Dict[str, Any], timeout: float) -> Dict[str, Any]:
        """
        POST a JSON payload and return the decoded JSON answer.

        Raises:
            TransportError: On connection errors, timeouts or non-2xx answers
        """
        ...

    async def get(self, url: str, timeout: float) -> Dict[str, Any]:
        """GET a URL and return the decoded JSON answer."""
        ...


class AiohttpBridgeTransport:
    """BridgeTransport over a shared aiohttp session."""

    def __init__(self):
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def _request(self, method: str, url: str, timeout: float, payload=None) -> Dict[str, Any]:
        session = await self._get_session()
        try:
            async with session.request(
                method,
                url,
                json=payload,
                timeout=aiohttp.ClientTimeout(total=timeout),
            ) as resp:
                if resp.status >= 300:
                    body = await resp.text()
                    raise TransportError(f"{method} {url} returned HTTP {resp.status}: {body[:200]}")
                return await resp.json(content_type=None) or {}
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise TransportError(f"{method} {url} failed: {type(e).__name__}: {e}") from e

    async def post(self, url: str, payload: Dict[str, Any], timeout: float) -> Dict[str, Any]:
        return await self._request("POST", url, timeout, payload)

    async def get(self, url: str, timeout: float) -> Dict[str, Any]:
        return await self._request("GET", url, timeout)

    async def close(self):
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None


# ============================================================================
# Bridge
# ============================================================================


class BridgeRegistrationError(ValueError):
    """Raised when a registration request is rejected."""


class RemoteSubTaskHandle(SubTaskHandle):
    """Dispatch table entry reaching a subtask through the bridge."""

    remote = True

    def __init__(self, bridge: "RemotePluginBridge", plugin: str, meta: SubTaskMeta, endpoint: str):
        super().__init__(plugin, meta)
        self.bridge = bridge
        self.endpoint = endpoint

    async def invoke(self, ctx: TaskContext) -> None:
        await self.bridge.call(self.endpoint, self.plugin, self.meta.name, ctx)

    def describe(self) -> Dict[str, Any]:
        description = super().describe()
        description["endpoint"] = self.endpoint
        return description


class RemotePluginBridge:
    """
    Registration and invocation of out-of-process plugins.

    Attributes:
        dispatch_table: Table receiving remote handles
        transport: JSON transport for RPC calls
        protocol_version: Version this orchestrator speaks
        timeout_seconds: Timeout of one invocation
        ping_timeout_seconds: Timeout of one liveness probe
    """

    def __init__(
        self,
        dispatch_table: DispatchTable,
        transport: Optional[BridgeTransport] = None,
        protocol_version: str = PROTOCOL_VERSION,
        timeout_seconds: float = 300.0,
        ping_timeout_seconds: float = 5.0,
    ):
        self.dispatch_table = dispatch_table
        self.transport = transport or AiohttpBridgeTransport()
        self.protocol_version = protocol_version
        self.timeout_seconds = timeout_seconds
        self.ping_timeout_seconds = ping_timeout_seconds
        self._registrations: Dict[str, PluginRegistration] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Inbound registration
    # ------------------------------------------------------------------

    def _validate(self, registration: PluginRegistration) -> str:
        try:
            version = negotiate(registration.protocol_version, self.protocol_version)
        except ProtocolVersionError as e:
            raise BridgeRegistrationError(str(e))

        name = registration.plugin_name
        if not registration.subtasks:
            raise BridgeRegistrationError(f"plugin '{name}' declares no subtasks")

        names = [meta.name for meta in registration.subtasks]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise BridgeRegistrationError(
                f"plugin '{name}' declares duplicate subtasks: {', '.join(duplicates)}"
            )

        is_local = PluginRegistry.get_plugin(name) is not None or (
            self.dispatch_table.has_plugin(name) and name not in self._registrations
        )
        if is_local:
            raise BridgeRegistrationError(f"plugin name '{name}' is taken by a local plugin")

        return version

    async def register(self, registration: PluginRegistration) -> RegisterResponse:
        """
        Validate a registration and install its dispatch entries.

        A plugin registering again under the same name replaces every prior
        entry.

        Raises:
            BridgeRegistrationError: If the registration is rejected
        """
        async with self._lock:
            version = self._validate(registration)
            name = registration.plugin_name
            replaced = name in self._registrations

            handles = [
                RemoteSubTaskHandle(self, name, meta, registration.endpoint)
                for meta in registration.subtasks
            ]
            self.dispatch_table.install(name, handles)
            self._registrations[name] = registration
            remote_plugins_gauge.set(len(self._registrations))

        logger.info(
            f"{'Re-registered' if replaced else 'Registered'} remote plugin {name} "
            f"at {registration.endpoint} ({len(handles)} subtasks, protocol {version})"
        )
        return RegisterResponse(
            plugin_name=name,
            protocol_version=version,
            subtasks=[meta.name for meta in registration.subtasks],
            replaced=replaced,
        )

    async def unregister(self, plugin_name: str) -> bool:
        """Remove a remote plugin and its dispatch entries."""
        async with self._lock:
            return self._unregister_locked(plugin_name)

    def _unregister_locked(self, plugin_name: str) -> bool:
        if self._registrations.pop(plugin_name, None) is None:
            return False
        self.dispatch_table.remove(plugin_name)
        remote_plugins_gauge.set(len(self._registrations))
        logger.warning(f"Unregistered remote plugin {plugin_name}")
        return True

    def registrations(self) -> List[PluginRegistration]:
        return list(self._registrations.values())

    def get_registration(self, plugin_name: str) -> Optional[PluginRegistration]:
        return self._registrations.get(plugin_name)

    # ------------------------------------------------------------------
    # Invocation
    # ------------------------------------------------------------------

    async def invoke(self, plugin: str, subtask: str, ctx: TaskContext) -> None:
        """
        Run a remote subtask through the dispatch table.

        Raises:
            LookupError: If no remote entry exists for (plugin, subtask)
            CollectError: BRIDGE_UNAVAILABLE on transport failure (not retried)
            SubTaskError: If the plugin reports a failure
        """
        handle = self.dispatch_table.get(plugin, subtask)
        if handle is None or not handle.remote:
            raise LookupError(f"no remote subtask {plugin}.{subtask}")
        await handle.invoke(ctx)

    async def call(self, endpoint: str, plugin: str, subtask: str, ctx: TaskContext) -> None:
        request = InvokeRequest(
            protocol_version=self.protocol_version,
            plugin=plugin,
            subtask=subtask,
            context=WireTaskContext(**ctx.to_wire()),
        )

        try:
            payload = await self.transport.post(
                f"{endpoint}{INVOKE_PATH}",
                request.model_dump(mode="json"),
                self.timeout_seconds,
            )
        except TransportError as e:
            bridge_invocations_counter.labels(plugin=plugin, outcome="unavailable").inc()
            logger.error(f"Bridge call {plugin}.{subtask} failed: {e}")
            raise CollectError(CollectErrorKind.BRIDGE_UNAVAILABLE, str(e)) from e

        try:
            response = InvokeResponse.model_validate(payload)
        except ValidationError as e:
            bridge_invocations_counter.labels(plugin=plugin, outcome="unavailable").inc()
            raise CollectError(
                CollectErrorKind.BRIDGE_UNAVAILABLE,
                f"malformed response from {endpoint}: {e.error_count()} errors",
            ) from e

        if not response.success:
            bridge_invocations_counter.labels(plugin=plugin, outcome="remote_error").inc()
            raise SubTaskError(response.error or "remote subtask failed", kind=response.error_kind)

        bridge_invocations_counter.labels(plugin=plugin, outcome="success").inc()

    # ------------------------------------------------------------------
    # Liveness
    # ------------------------------------------------------------------

    async def check_connections(self) -> List[str]:
        """
        Ping every registered plugin and drop those that do not answer.

        Returns:
            Names of the plugins removed
        """
        snapshot = list(self._registrations.values())
        removed = []

        for registration in snapshot:
            try:
                await self.transport.get(
                    f"{registration.endpoint}{PING_PATH}", self.ping_timeout_seconds
                )
                continue
            except TransportError as e:
                logger.warning(f"Remote plugin {registration.plugin_name} unreachable: {e}")

            async with self._lock:
                # Skip if the plugin re-registered while we were pinging
                if self._registrations.get(registration.plugin_name) is registration:
                    self._unregister_locked(registration.plugin_name)
                    removed.append(registration.plugin_name)

        return removed

    async def run_health_loop(self, interval_seconds: float) -> None:
        """Periodically call ``check_connections`` until cancelled."""
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await self.check_connections()
            except Exception as e:
                logger.error(f"Remote plugin health check failed: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Outbound bootstrap
    # ------------------------------------------------------------------

    async def bootstrap(self, launchers: Sequence[str], port: int) -> Dict[str, bool]:
        """
        Ask each launcher to start its plugins and register back on ``port``.

        Failures are logged, never raised.

        Returns:
            Launcher URL -> whether the launcher acknowledged
        """
        request = BootstrapRequest(orchestrator_port=port, protocol_version=self.protocol_version)
        outcome = {}

        for launcher in launchers:
            try:
                await self.transport.post(
                    launcher, request.model_dump(mode="json"), self.ping_timeout_seconds
                )
                outcome[launcher] = True
                logger.info(f"Bootstrapped remote plugin launcher {launcher}")
            except TransportError as e:
                outcome[launcher] = False
                logger.error(f"Failed to bootstrap remote plugin launcher {launcher}: {e}")

        return outcome

    async def close(self):
        close = getattr(self.transport, "close", None)
        if close is not None:
            await close()
