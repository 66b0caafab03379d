"""
Migration gate middleware.

Installed as an ASGI layer in front of routing so no router or mounted app
can be reached while the gate is closed. Only the confirmation path is let
through. CORS stays outside it so browsers can read the rejection.
"""

import logging
from typing import Iterable

from starlette import status
from starlette.types import ASGIApp, Receive, Scope, Send
from starlette.websockets import WebSocketClose

from api.errors import gate_error_response
from ingest_agent.services.migration_gate import CONFIRMATION_PATH, MigrationGateError

logger = logging.getLogger(__name__)


class MigrationGateMiddleware:
    """
    Reject every HTTP request with 428 unless the migration gate is clear.

    Websocket handshakes are closed with a policy-violation code instead.

    The gate is looked up on ``app.state.ingest`` per request, so the app can
    be built before its lifespan creates the gate.
    """

    def __init__(self, app: ASGIApp, exempt_paths: Iterable[str] = (CONFIRMATION_PATH,)):
        self.app = app
        self.exempt_paths = frozenset(path.rstrip("/") for path in exempt_paths)

    def _is_exempt(self, scope: Scope) -> bool:
        path = scope.get("path", "").rstrip("/")
        return path in self.exempt_paths

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] not in ("http", "websocket") or self._is_exempt(scope):
            await self.app(scope, receive, send)
            return

        app = scope.get("app")
        state = getattr(getattr(app, "state", None), "ingest", None)
        gate = getattr(state, "gate", None)

        if gate is not None:
            try:
                gate.check()
            except MigrationGateError as e:
                method = scope.get("method", "WEBSOCKET")
                logger.debug(f"Rejected {method} {scope['path']}: gate {gate.state.value}")
                if scope["type"] == "websocket":
                    close = WebSocketClose(
                        code=status.WS_1008_POLICY_VIOLATION,
                        reason=f"migration gate {gate.state.value}",
                    )
                    await close(scope, receive, send)
                    return
                response = gate_error_response(e)
                await response(scope, receive, send)
                return

        await self.app(scope, receive, send)
