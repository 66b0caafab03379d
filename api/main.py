"""
FastAPI main application of the ingestion service.

This module builds the FastAPI app, wires storage, the migration gate, the
plugin dispatch table and the remote plugin bridge into the application
state, configures middleware and error handlers, and includes the routers.
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from api import __version__
from api.errors import (
    COLLECT_ERROR_STATUS,
    COLLECT_ERROR_TITLES,
    error_response,
    gate_error_response,
)
from api.middleware import MigrationGateMiddleware
from ingest_agent.config import Settings, get_settings
from ingest_agent.ingestion.base import CollectError
from ingest_agent.ingestion.bridge import (
    BridgeRegistrationError,
    BridgeTransport,
    RemotePluginBridge,
)
from ingest_agent.ingestion.locks import CollectionLockRegistry
from ingest_agent.ingestion.orchestrator import PipelineOrchestrator, UnknownPluginError
from ingest_agent.ingestion.registry import (
    DispatchTable,
    PluginPrepareError,
    discover_plugins,
    install_local_plugins,
)
from ingest_agent.ingestion.subtask import TaskServices
from ingest_agent.observability.logging import setup_logging
from ingest_agent.services.migration_gate import MigrationGate, MigrationGateError
from ingest_agent.storage.interfaces import (
    CheckpointRepository,
    MigrationExecutor,
    RawRecordRepository,
)

logger = logging.getLogger(__name__)


# Application state
class AppState:
    """
    Application state container.

    Storage, migration executor, bridge transport and API client factory may
    be supplied up front; whatever is missing is built from settings at
    startup.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        checkpoints: Optional[CheckpointRepository] = None,
        raw_records: Optional[RawRecordRepository] = None,
        migration_executor: Optional[MigrationExecutor] = None,
        bridge_transport: Optional[BridgeTransport] = None,
        api_client_factory=None,
        configure_logging: bool = True,
    ):
        self.settings = settings or get_settings()
        self.checkpoints = checkpoints
        self.raw_records = raw_records
        self.migration_executor = migration_executor
        self.bridge_transport = bridge_transport
        self.api_client_factory = api_client_factory
        self.configure_logging = configure_logging

        self.db_pool = None
        self.locks = CollectionLockRegistry()
        self.dispatch_table = DispatchTable()
        self.gate: Optional[MigrationGate] = None
        self.bridge: Optional[RemotePluginBridge] = None
        self.orchestrator: Optional[PipelineOrchestrator] = None
        self.background_tasks: List[asyncio.Task] = []
        self.started_at: Optional[datetime] = None
        self.ready = False


async def _init_storage(state: AppState) -> None:
    settings = state.settings

    if state.checkpoints is not None and state.raw_records is not None:
        if state.migration_executor is None:
            from ingest_agent.storage.memory import InMemoryMigrationExecutor

            state.migration_executor = InMemoryMigrationExecutor()
        return

    if settings.storage_backend == "postgres":
        from ingest_agent.storage.migrations import PostgreSQLMigrationExecutor
        from ingest_agent.storage.postgres import (
            PostgreSQLCheckpointRepository,
            PostgreSQLConnectionPool,
            PostgreSQLRawRecordRepository,
        )

        state.db_pool = PostgreSQLConnectionPool(
            host=settings.postgres_host,
            port=settings.postgres_port,
            database=settings.postgres_db,
            user=settings.postgres_user,
            password=settings.postgres_password,
            min_size=settings.postgres_min_pool,
            max_size=settings.postgres_max_pool,
        )
        pool = await state.db_pool.connect()
        state.checkpoints = PostgreSQLCheckpointRepository(pool)
        state.raw_records = PostgreSQLRawRecordRepository(pool)
        if state.migration_executor is None:
            state.migration_executor = PostgreSQLMigrationExecutor(pool)
        logger.info("✅ PostgreSQL storage initialized")
        return

    from ingest_agent.storage.memory import (
        InMemoryCheckpointRepository,
        InMemoryMigrationExecutor,
        InMemoryRawRecordRepository,
    )

    state.checkpoints = InMemoryCheckpointRepository()
    state.raw_records = InMemoryRawRecordRepository()
    if state.migration_executor is None:
        state.migration_executor = InMemoryMigrationExecutor()
    logger.info("✅ In-memory storage initialized")


async def startup(state: AppState) -> None:
    """Initialize storage, the migration gate, plugins and the bridge."""
    settings = state.settings
    if state.configure_logging:
        setup_logging(settings.log_level, settings.log_file, settings.log_json)

    logger.info("🚀 Starting ingestion service...")
    state.started_at = datetime.now(timezone.utc)

    await _init_storage(state)

    state.gate = MigrationGate(state.migration_executor)
    await state.gate.initialize()
    if state.gate.requires_confirmation:
        logger.warning("Database migration required; requests are blocked until confirmed")

    discover_plugins()
    installed = install_local_plugins(state.dispatch_table)
    logger.info(f"✅ Installed {len(installed)} local plugins")

    if settings.enable_remote_plugins:
        state.bridge = RemotePluginBridge(
            state.dispatch_table,
            transport=state.bridge_transport,
            timeout_seconds=settings.bridge_timeout_seconds,
        )

    services = TaskServices(
        checkpoints=state.checkpoints,
        raw_records=state.raw_records,
        locks=state.locks,
        api_client_factory=state.api_client_factory,
        page_concurrency=settings.collector_concurrency,
        page_size=settings.collector_page_size,
    )
    state.orchestrator = PipelineOrchestrator(state.dispatch_table, services)
    state.ready = True

    if state.bridge is not None:
        # Launchers dial back into the registration endpoint, so they are
        # contacted once the server is accepting requests
        if settings.remote_plugin_launchers:
            state.background_tasks.append(
                asyncio.create_task(
                    state.bridge.bootstrap(settings.remote_plugin_launchers, settings.port)
                )
            )
        state.background_tasks.append(
            asyncio.create_task(
                state.bridge.run_health_loop(settings.remote_plugin_health_interval)
            )
        )

    logger.info("✅ Ingestion service startup complete")


async def shutdown(state: AppState) -> None:
    """Stop background tasks and release resources."""
    logger.info("🛑 Shutting down ingestion service...")
    state.ready = False

    for task in state.background_tasks:
        task.cancel()
    if state.background_tasks:
        await asyncio.gather(*state.background_tasks, return_exceptions=True)
    state.background_tasks = []

    if state.bridge is not None:
        try:
            await state.bridge.close()
        except Exception as e:
            logger.error(f"Error closing remote plugin bridge: {e}")

    if state.db_pool is not None:
        try:
            await state.db_pool.close()
            logger.info("✅ Database connection pool closed")
        except Exception as e:
            logger.error(f"Error closing database pool: {e}")

    if state.gate is not None:
        await state.gate.shutdown()

    logger.info("✅ Ingestion service shutdown complete")


def register_exception_handlers(app: FastAPI) -> None:
    """Map ingestion errors onto the common ErrorResponse body."""

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return error_response(
            exc.status_code,
            error=str(exc.detail),
            code=f"HTTP_{exc.status_code}",
            detail=str(exc.detail),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return error_response(
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            error="Validation Error",
            code="VALIDATION_ERROR",
            detail=str(exc),
        )

    @app.exception_handler(MigrationGateError)
    async def migration_gate_exception_handler(request: Request, exc: MigrationGateError):
        return gate_error_response(exc)

    @app.exception_handler(CollectError)
    async def collect_exception_handler(request: Request, exc: CollectError):
        return error_response(
            COLLECT_ERROR_STATUS.get(exc.kind, status.HTTP_500_INTERNAL_SERVER_ERROR),
            error=COLLECT_ERROR_TITLES.get(exc.kind, "Collection failed"),
            code=exc.kind.name,
            detail=exc.message,
        )

    @app.exception_handler(BridgeRegistrationError)
    async def registration_exception_handler(request: Request, exc: BridgeRegistrationError):
        return error_response(
            status.HTTP_400_BAD_REQUEST,
            error="Plugin registration rejected",
            code="REGISTRATION_REJECTED",
            detail=str(exc),
        )

    @app.exception_handler(PluginPrepareError)
    async def prepare_exception_handler(request: Request, exc: PluginPrepareError):
        return error_response(
            status.HTTP_400_BAD_REQUEST,
            error="Invalid plugin options",
            code="INVALID_OPTIONS",
            detail=str(exc),
        )

    @app.exception_handler(UnknownPluginError)
    async def unknown_plugin_exception_handler(request: Request, exc: UnknownPluginError):
        return error_response(
            status.HTTP_404_NOT_FOUND,
            error="Unknown plugin or subtask",
            code="NOT_FOUND",
            detail=str(exc),
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle unexpected exceptions."""
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return error_response(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            error="Internal Server Error",
            code="INTERNAL_ERROR",
            detail="An unexpected error occurred",
        )


def create_app(state: Optional[AppState] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        state: Application state; built from environment settings if omitted

    Returns:
        The app, with the registration endpoint mounted only when remote
        plugins are enabled
    """
    state = state or AppState()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await startup(state)
        try:
            yield
        finally:
            await shutdown(state)

    app = FastAPI(
        title="Ingestion Service API",
        description="""
        ## Stateful incremental data ingestion

        Runs collector plugins that page through upstream APIs, store raw
        records and checkpoint each collection so the next run only fetches
        what changed.

        ### Features

        - **Incremental collection** driven by per-collection checkpoints
        - **Remote plugins** registering over HTTP and invoked by RPC
        - **Migration gate** blocking all requests until pending database
          migrations are confirmed at `/proceed-db-migration`
        """,
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.ingest = state

    # Gate first so CORS wraps it
    app.add_middleware(MigrationGateMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
        allow_credentials=True,
        allow_methods=["PUT", "PATCH", "POST", "GET", "OPTIONS"],
        allow_headers=["Origin", "Content-Type"],
        expose_headers=["Content-Length"],
        max_age=120 * 3600,
    )

    register_exception_handlers(app)

    @app.get("/", tags=["Root"])
    async def root() -> Dict[str, Any]:
        """
        API root endpoint providing basic information.
        """
        return {
            "name": "Ingestion Service API",
            "version": __version__,
            "status": "operational",
            "docs": "/docs",
            "endpoints": {
                "ping": "/ping",
                "metrics": "/metrics",
                "plugins": "/plugins",
                "pipelines": "/pipelines/run",
                "checkpoints": "/checkpoints/{params_key}",
                "migration": "/proceed-db-migration",
            },
        }

    # Import routers here to avoid circular imports
    from api.routers import checkpoints, health, migration, pipelines, plugins

    app.include_router(migration.router)
    app.include_router(health.router)
    app.include_router(plugins.router)
    app.include_router(pipelines.router)
    app.include_router(checkpoints.router)

    if state.settings.enable_remote_plugins:
        app.include_router(plugins.registration_router)
        logger.info("Remote plugin registration endpoint enabled")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "api.main:app",
        host="0.0.0.0",
        port=get_settings().port,
        log_level="info",
    )
