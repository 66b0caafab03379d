"""
Unit tests for the plugin registry, dispatch table and pipeline orchestrator.
"""

from typing import List

import pytest

from ingest_agent.ingestion.orchestrator import PipelineOrchestrator, UnknownPluginError
from ingest_agent.ingestion.registry import (
    DispatchTable,
    LocalSubTask,
    PluginDefinition,
    PluginPrepareError,
    PluginRegistry,
    discover_plugins,
    install_local_plugins,
)
from ingest_agent.ingestion.subtask import CollectingReporter, SubTaskRunner, TaskServices
from ingest_agent.storage.memory import InMemoryCheckpointRepository, InMemoryRawRecordRepository
from ingest_agent.types import SubTaskMeta, SubTaskStatus


# ============================================================================
# Test Fixtures
# ============================================================================


class DemoPlugin(PluginDefinition):
    """Three-step plugin recording what ran."""

    name = "demo"
    description = "demo plugin"

    def __init__(self):
        super().__init__()
        self.calls: List[str] = []
        self.closed: List[object] = []
        self.fail_on: str = ""

    def _step(self, step: str):
        async def entry_point(ctx):
            self.calls.append(step)
            assert ctx.data == {"workspace": ctx.options["workspace_id"]}
            if step == self.fail_on:
                raise RuntimeError(f"{step} failed")

        return entry_point

    def subtasks(self) -> List[LocalSubTask]:
        return [
            LocalSubTask(SubTaskMeta(name="collectA"), self._step("collectA")),
            LocalSubTask(SubTaskMeta(name="extractA"), self._step("extractA")),
            LocalSubTask(SubTaskMeta(name="collectB", enabled_by_default=False), self._step("collectB")),
        ]

    async def prepare_task_data(self, ctx):
        if "workspace_id" not in ctx.options:
            raise PluginPrepareError("workspace_id is required")
        return {"workspace": ctx.options["workspace_id"]}

    async def close_task_data(self, data):
        self.closed.append(data)


class BrokenPlugin(PluginDefinition):
    name = "broken"

    def subtasks(self) -> List[LocalSubTask]:
        async def noop(ctx):
            return None

        return [LocalSubTask(SubTaskMeta(name="same"), noop), LocalSubTask(SubTaskMeta(name="same"), noop)]


@pytest.fixture
def demo_plugin():
    PluginRegistry.unregister(DemoPlugin.name)
    PluginRegistry.register(DemoPlugin)
    yield PluginRegistry.get_plugin(DemoPlugin.name)
    PluginRegistry.unregister(DemoPlugin.name)


@pytest.fixture
def table(demo_plugin):
    table = DispatchTable()
    install_local_plugins(table)
    return table


@pytest.fixture
def reporter():
    return CollectingReporter()


@pytest.fixture
def orchestrator(table, reporter):
    services = TaskServices(InMemoryCheckpointRepository(), InMemoryRawRecordRepository())
    return PipelineOrchestrator(table, services, SubTaskRunner(reporter))


# ============================================================================
# Registry
# ============================================================================


def test_duplicate_plugin_name_is_rejected(demo_plugin):
    with pytest.raises(ValueError):
        PluginRegistry.register(DemoPlugin)


def test_duplicate_subtask_names_are_rejected():
    with pytest.raises(ValueError):
        PluginRegistry.register(BrokenPlugin)
    assert PluginRegistry.get_plugin("broken") is None


def test_discover_plugins_registers_builtin_collectors():
    PluginRegistry.unregister("tapd")

    found = discover_plugins()

    assert "tapd" in [plugin.name for plugin in found]
    assert PluginRegistry.get_plugin("tapd") is not None


def test_install_local_plugins_fills_dispatch_table(table):
    handles = table.subtasks("demo")

    assert [h.meta.name for h in handles] == ["collectA", "extractA", "collectB"]
    assert not table.is_remote("demo")
    assert table.get("demo", "extractA").describe()["remote"] is False


# ============================================================================
# Orchestrator
# ============================================================================


@pytest.mark.asyncio
async def test_runs_enabled_subtasks_in_declared_order(orchestrator, demo_plugin, reporter):
    results = await orchestrator.run_plugin("demo", options={"workspace_id": 7})

    assert demo_plugin.calls == ["collectA", "extractA"]
    assert [r.status for r in results] == [
        SubTaskStatus.SUCCEEDED,
        SubTaskStatus.SUCCEEDED,
        SubTaskStatus.SKIPPED,
    ]
    assert reporter.results == results
    assert demo_plugin.closed == [{"workspace": 7}]


@pytest.mark.asyncio
async def test_explicit_selection_enables_only_selected(orchestrator, demo_plugin):
    results = await orchestrator.run_plugin(
        "demo", options={"workspace_id": 7}, subtasks=["collectB"]
    )

    assert demo_plugin.calls == ["collectB"]
    assert [r.subtask for r in results if r.status == SubTaskStatus.SUCCEEDED] == ["collectB"]


@pytest.mark.asyncio
async def test_skip_subtasks_wins_over_default(orchestrator, demo_plugin):
    await orchestrator.run_plugin("demo", options={"workspace_id": 7}, skip_subtasks=["collectA"])

    assert demo_plugin.calls == ["extractA"]


@pytest.mark.asyncio
async def test_run_stops_at_first_failure(orchestrator, demo_plugin):
    demo_plugin.fail_on = "collectA"

    results = await orchestrator.run_plugin("demo", options={"workspace_id": 7})

    assert demo_plugin.calls == ["collectA"]
    assert len(results) == 1
    assert results[0].status == SubTaskStatus.FAILED
    assert results[0].error_kind == "RuntimeError"
    assert demo_plugin.closed == [{"workspace": 7}]


@pytest.mark.asyncio
async def test_unknown_plugin(orchestrator):
    with pytest.raises(UnknownPluginError):
        await orchestrator.run_plugin("nope")


@pytest.mark.asyncio
async def test_unknown_subtask(orchestrator):
    with pytest.raises(UnknownPluginError):
        await orchestrator.run_plugin("demo", options={"workspace_id": 7}, subtasks=["collectZ"])


@pytest.mark.asyncio
async def test_invalid_options_fail_before_any_subtask(orchestrator, demo_plugin):
    with pytest.raises(PluginPrepareError):
        await orchestrator.run_plugin("demo", options={})

    assert demo_plugin.calls == []
