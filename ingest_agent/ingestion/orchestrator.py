"""
Plugin run orchestration.

Resolves a plugin's subtasks through the dispatch table, prepares the shared
task context, and runs each subtask in declared order through the
SubTaskRunner. Local and remote plugins go through the same path.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence

from ingest_agent.ingestion.registry import DispatchTable, PluginRegistry
from ingest_agent.ingestion.subtask import SubTaskRunner, TaskContext, TaskServices
from ingest_agent.types import SubTaskResult, SubTaskStatus

logger = logging.getLogger(__name__)


class UnknownPluginError(LookupError):
    """Raised when a plugin or one of the requested subtasks is not dispatchable."""


class PipelineOrchestrator:
    """
    Runs plugins on behalf of the scheduler and the API.

    Retry policy is not applied here: a failed result is returned to the
    caller, which decides whether to re-trigger.

    Attributes:
        dispatch_table: Local and remote subtask handles
        services: Shared collaborators handed to every task context
        runner: Subtask runner reporting each outcome
    """

    def __init__(
        self,
        dispatch_table: DispatchTable,
        services: TaskServices,
        runner: Optional[SubTaskRunner] = None,
    ):
        self.dispatch_table = dispatch_table
        self.services = services
        self.runner = runner or SubTaskRunner()

    def _resolve_enabled(
        self,
        plugin: str,
        names: List[str],
        subtasks: Optional[Sequence[str]],
        skip_subtasks: Optional[Sequence[str]],
    ) -> Dict[str, Optional[bool]]:
        requested = set(subtasks or []) | set(skip_subtasks or [])
        unknown = sorted(requested - set(names))
        if unknown:
            raise UnknownPluginError(f"plugin '{plugin}' has no subtasks {', '.join(unknown)}")

        overrides: Dict[str, Optional[bool]] = {}
        for name in names:
            if skip_subtasks and name in skip_subtasks:
                overrides[name] = False
            elif subtasks is not None:
                overrides[name] = name in subtasks
            else:
                overrides[name] = None
        return overrides

    async def run_plugin(
        self,
        plugin: str,
        options: Optional[Mapping[str, Any]] = None,
        subtasks: Optional[Sequence[str]] = None,
        skip_subtasks: Optional[Sequence[str]] = None,
        time_after: Optional[datetime] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> List[SubTaskResult]:
        """
        Run a plugin's subtasks in declared order.

        Args:
            plugin: Plugin name
            options: Plugin-scoped options
            subtasks: Explicit selection; unselected subtasks are skipped
            skip_subtasks: Subtasks to skip regardless of their default
            time_after: Lower bound passed to collectors
            cancel_event: Run-level cancellation signal

        Returns:
            One result per subtask reached; the run stops at the first failure

        Raises:
            UnknownPluginError: If the plugin or a named subtask is unknown
            PluginPrepareError: If a local plugin rejects its options
        """
        handles = self.dispatch_table.subtasks(plugin)
        if not handles:
            raise UnknownPluginError(f"plugin '{plugin}' is not registered")

        overrides = self._resolve_enabled(
            plugin, [h.meta.name for h in handles], subtasks, skip_subtasks
        )

        ctx = TaskContext(
            plugin=plugin,
            options=options,
            time_after=time_after,
            cancel_event=cancel_event,
            services=self.services,
        )

        definition = None if self.dispatch_table.is_remote(plugin) else PluginRegistry.get_plugin(plugin)
        data = None
        if definition is not None:
            data = await definition.prepare_task_data(ctx)
            ctx = ctx.with_data(data)

        logger.info(f"Running plugin {plugin} ({len(handles)} subtasks)")
        results = []
        try:
            for handle in handles:
                result = await self.runner.run(
                    ctx, handle.meta, handle.invoke, enabled=overrides[handle.meta.name]
                )
                results.append(result)
                if result.status == SubTaskStatus.FAILED:
                    logger.warning(
                        f"Plugin {plugin} stopped at failed subtask {handle.meta.name}"
                    )
                    break
        finally:
            if definition is not None:
                await definition.close_task_data(data)

        return results
