"""
Subtask execution.

A subtask entry point is an async callable taking a read-only TaskContext.
It returns nothing on success and raises on failure. The runner dispatches
it, logs start and failure, skips disabled subtasks, and hands a
SubTaskResult to the orchestrator's reporter. It never retries.
"""

import asyncio
import logging
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Protocol

from ingest_agent.ingestion.api_client import ApiClient
from ingest_agent.ingestion.base import CollectError, SubTaskError
from ingest_agent.ingestion.locks import CollectionLockRegistry
from ingest_agent.observability.logging import log_context, log_error
from ingest_agent.observability.metrics import subtask_runs_counter
from ingest_agent.storage.interfaces import CheckpointRepository, RawRecordRepository
from ingest_agent.types import SubTaskMeta, SubTaskResult, SubTaskStatus

logger = logging.getLogger(__name__)


class TaskServices:
    """
    Shared collaborators handed to every subtask.

    Attributes:
        checkpoints: Checkpoint store
        raw_records: Raw record sink
        locks: Per-params lock registry
        api_client_factory: Optional override building the upstream client
            from plugin options; plugins fall back to their own client
        page_concurrency: Page workers per collection run
        page_size: Records requested per page, None for each connector's default
    """

    def __init__(
        self,
        checkpoints: CheckpointRepository,
        raw_records: RawRecordRepository,
        locks: Optional[CollectionLockRegistry] = None,
        api_client_factory: Optional[Callable[[Mapping[str, Any]], ApiClient]] = None,
        page_concurrency: int = 1,
        page_size: Optional[int] = None,
    ):
        self.checkpoints = checkpoints
        self.raw_records = raw_records
        self.locks = locks or CollectionLockRegistry()
        self.api_client_factory = api_client_factory
        self.page_concurrency = page_concurrency
        self.page_size = page_size


class TaskContext:
    """
    Read-only context of one plugin run.

    Attributes:
        plugin: Plugin name
        options: Plugin-scoped options (immutable view)
        time_after: Caller-supplied lower bound for collectors
        cancel_event: Run-level cancellation signal
        services: Shared collaborators, None for remote-only contexts
        data: Task data the plugin prepared from the options
    """

    def __init__(
        self,
        plugin: str,
        options: Optional[Mapping[str, Any]] = None,
        time_after: Optional[datetime] = None,
        cancel_event: Optional[asyncio.Event] = None,
        services: Optional[TaskServices] = None,
        data: Any = None,
    ):
        self._plugin = plugin
        self._options = MappingProxyType(dict(options or {}))
        self._time_after = time_after
        self._cancel_event = cancel_event or asyncio.Event()
        self._services = services
        self._data = data

    @property
    def plugin(self) -> str:
        return self._plugin

    @property
    def options(self) -> Mapping[str, Any]:
        return self._options

    @property
    def time_after(self) -> Optional[datetime]:
        return self._time_after

    @property
    def cancel_event(self) -> asyncio.Event:
        return self._cancel_event

    @property
    def services(self) -> Optional[TaskServices]:
        return self._services

    @property
    def data(self) -> Any:
        return self._data

    @property
    def logger(self) -> logging.Logger:
        return logging.getLogger(f"ingest_agent.plugins.{self._plugin}")

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def with_data(self, data: Any) -> "TaskContext":
        """Copy of this context carrying plugin task data."""
        return TaskContext(
            plugin=self._plugin,
            options=self._options,
            time_after=self._time_after,
            cancel_event=self._cancel_event,
            services=self._services,
            data=data,
        )

    def to_wire(self) -> Dict[str, Any]:
        """Serializable form sent across the bridge."""
        return {
            "plugin": self._plugin,
            "options": dict(self._options),
            "time_after": self._time_after.isoformat() if self._time_after else None,
        }


SubTaskEntryPoint = Callable[[TaskContext], Awaitable[None]]


class SubTaskReporter(Protocol):
    """Orchestrator channel receiving subtask outcomes."""

    async def report(self, result: SubTaskResult) -> None:
        ...


class CollectingReporter:
    """Reporter keeping results in memory, in report order."""

    def __init__(self):
        self.results: List[SubTaskResult] = []

    async def report(self, result: SubTaskResult) -> None:
        self.results.append(result)


class SubTaskRunner:
    """
    Runs subtask entry points under a task context.

    Args:
        reporter: Destination of every SubTaskResult; results are only logged
            when omitted
    """

    def __init__(self, reporter: Optional[SubTaskReporter] = None):
        self.reporter = reporter

    async def run(
        self,
        ctx: TaskContext,
        meta: SubTaskMeta,
        entry_point: SubTaskEntryPoint,
        enabled: Optional[bool] = None,
    ) -> SubTaskResult:
        """
        Run one subtask.

        Args:
            ctx: Task context
            meta: Subtask metadata
            entry_point: Async callable implementing the subtask
            enabled: Explicit override of ``meta.enabled_by_default``

        Returns:
            The reported result; failures are reported, not raised
        """
        is_enabled = meta.enabled_by_default if enabled is None else enabled
        started_at = datetime.now(timezone.utc)

        with log_context(plugin=ctx.plugin, subtask=meta.name):
            if not is_enabled:
                logger.info(f"Skipping disabled subtask {ctx.plugin}.{meta.name}")
                return await self._finish(ctx, meta, SubTaskStatus.SKIPPED, started_at)

            if ctx.cancelled:
                error = SubTaskError("task cancelled before start", kind="Cancelled")
                return await self._finish(ctx, meta, SubTaskStatus.FAILED, started_at, error)

            logger.info(f"Executing subtask {ctx.plugin}.{meta.name}")
            try:
                await entry_point(ctx)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log_error(logger, f"Subtask {ctx.plugin}.{meta.name} failed: {e}", e)
                return await self._finish(ctx, meta, SubTaskStatus.FAILED, started_at, e)

            logger.info(f"Finished subtask {ctx.plugin}.{meta.name}")
            return await self._finish(ctx, meta, SubTaskStatus.SUCCEEDED, started_at)

    async def _finish(
        self,
        ctx: TaskContext,
        meta: SubTaskMeta,
        status: SubTaskStatus,
        started_at: datetime,
        error: Optional[BaseException] = None,
    ) -> SubTaskResult:
        error_kind = None
        if isinstance(error, CollectError):
            error_kind = error.kind.value
        elif isinstance(error, SubTaskError) and error.kind:
            error_kind = error.kind
        elif error is not None:
            error_kind = type(error).__name__

        result = SubTaskResult(
            plugin=ctx.plugin,
            subtask=meta.name,
            status=status,
            error_kind=error_kind,
            error=str(error) if error is not None else None,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
        )
        subtask_runs_counter.labels(plugin=ctx.plugin, subtask=meta.name, status=status.value).inc()
        logger.debug(
            f"Subtask {ctx.plugin}.{meta.name} {status.value} in {result.duration_seconds:.2f}s"
        )

        if self.reporter is not None:
            await self.reporter.report(result)
        return result
