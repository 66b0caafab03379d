"""
Plugin registry and dispatch table.

Local plugins register their definition class at import time through
``@register_plugin``. The dispatch table maps (plugin, subtask) to a handle
that can invoke the subtask, whether it runs in-process or behind the remote
plugin bridge.
"""

import importlib
import inspect
import logging
import pkgutil
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List, NamedTuple, Optional, Sequence, Type

from ingest_agent.ingestion.subtask import SubTaskEntryPoint, TaskContext
from ingest_agent.types import SubTaskMeta

logger = logging.getLogger(__name__)


class PluginPrepareError(ValueError):
    """Raised when a plugin cannot prepare task data from its options."""


class LocalSubTask(NamedTuple):
    """A subtask implemented in this process."""

    meta: SubTaskMeta
    entry_point: SubTaskEntryPoint


class PluginDefinition(ABC):
    """
    Abstract base class for in-process plugins.

    Subclasses set ``name`` and list their subtasks in execution order.
    """

    name: str
    description: str = ""

    def __init__(self):
        if not getattr(self, "name", None):
            raise NotImplementedError(
                f"{self.__class__.__name__} must define 'name' attribute"
            )

    @abstractmethod
    def subtasks(self) -> List[LocalSubTask]:
        """Return the plugin's subtasks in execution order."""
        pass

    async def prepare_task_data(self, ctx: TaskContext) -> Any:
        """
        Build the task data every subtask of one run shares.

        Default implementation prepares nothing.

        Raises:
            PluginPrepareError: If the options are invalid
        """
        return None

    async def close_task_data(self, data: Any) -> None:
        """Release resources held by task data once the run is over."""
        pass

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} ({self.name})>"


class PluginRegistry:
    """Registry of in-process plugin definitions."""

    _instances: Dict[str, PluginDefinition] = {}

    @classmethod
    def register(cls, plugin_class: Type[PluginDefinition]) -> None:
        """
        Register a plugin class.

        Raises:
            ValueError: If the plugin name is already registered or a subtask
                name repeats within the plugin
        """
        instance = plugin_class()
        name = instance.name

        if name in cls._instances:
            raise ValueError(f"Plugin '{name}' is already registered")

        names = [subtask.meta.name for subtask in instance.subtasks()]
        if len(names) != len(set(names)):
            raise ValueError(f"Plugin '{name}' declares duplicate subtask names")

        cls._instances[name] = instance

    @classmethod
    def get_plugin(cls, name: str) -> Optional[PluginDefinition]:
        return cls._instances.get(name)

    @classmethod
    def get_all_plugins(cls) -> List[PluginDefinition]:
        return list(cls._instances.values())

    @classmethod
    def get_plugin_names(cls) -> List[str]:
        return list(cls._instances.keys())

    @classmethod
    def unregister(cls, name: str) -> bool:
        return cls._instances.pop(name, None) is not None

    @classmethod
    def clear(cls) -> None:
        cls._instances.clear()


def register_plugin(plugin_class: Type[PluginDefinition]) -> Type[PluginDefinition]:
    """
    Decorator for auto-registering plugins.

    Usage:
        @register_plugin
        class MyPlugin(PluginDefinition):
            ...
    """
    PluginRegistry.register(plugin_class)
    return plugin_class


# ============================================================================
# Dispatch Table
# ============================================================================


class SubTaskHandle(ABC):
    """Invocation handle stored in the dispatch table."""

    remote: bool = False

    def __init__(self, plugin: str, meta: SubTaskMeta):
        self.plugin = plugin
        self.meta = meta

    @abstractmethod
    async def invoke(self, ctx: TaskContext) -> None:
        """Run the subtask; raise on failure."""
        pass

    def describe(self) -> Dict[str, Any]:
        return {
            "name": self.meta.name,
            "enabled_by_default": self.meta.enabled_by_default,
            "description": self.meta.description,
            "domain_types": [d.value for d in self.meta.domain_types],
            "remote": self.remote,
        }


class LocalSubTaskHandle(SubTaskHandle):
    """Handle calling an in-process entry point."""

    def __init__(self, plugin: str, meta: SubTaskMeta, entry_point: SubTaskEntryPoint):
        super().__init__(plugin, meta)
        self.entry_point = entry_point

    async def invoke(self, ctx: TaskContext) -> None:
        await self.entry_point(ctx)


class DispatchTable:
    """Mapping from (plugin name, subtask name) to invocation handles."""

    def __init__(self):
        self._entries: Dict[str, Dict[str, SubTaskHandle]] = {}
        self._lock = threading.Lock()

    def install(self, plugin: str, handles: Sequence[SubTaskHandle]) -> None:
        """Replace every entry of ``plugin`` with ``handles`` (order kept)."""
        with self._lock:
            self._entries[plugin] = {handle.meta.name: handle for handle in handles}
        logger.info(f"Installed {len(handles)} subtasks for plugin {plugin}")

    def remove(self, plugin: str) -> bool:
        with self._lock:
            removed = self._entries.pop(plugin, None) is not None
        if removed:
            logger.info(f"Removed dispatch entries of plugin {plugin}")
        return removed

    def get(self, plugin: str, subtask: str) -> Optional[SubTaskHandle]:
        with self._lock:
            return self._entries.get(plugin, {}).get(subtask)

    def subtasks(self, plugin: str) -> List[SubTaskHandle]:
        with self._lock:
            return list(self._entries.get(plugin, {}).values())

    def plugins(self) -> List[str]:
        with self._lock:
            return list(self._entries.keys())

    def has_plugin(self, plugin: str) -> bool:
        with self._lock:
            return plugin in self._entries

    def is_remote(self, plugin: str) -> bool:
        handles = self.subtasks(plugin)
        return bool(handles) and all(handle.remote for handle in handles)


def discover_plugins(package: str = "ingest_agent.collectors") -> List[PluginDefinition]:
    """
    Import every module of ``package`` and register the plugins it defines.

    Plugins normally register themselves through ``@register_plugin``; any
    PluginDefinition subclass found but not registered (e.g. after the
    registry was cleared) is registered here.

    Returns:
        Plugins defined by the scanned modules
    """
    logger.info(f"Loading plugins from {package}")
    found = []

    try:
        root = importlib.import_module(package)
    except ImportError as e:
        logger.warning(f"Plugin package {package} cannot be imported: {e}")
        return []

    for module_info in pkgutil.iter_modules(getattr(root, "__path__", [])):
        if module_info.name.startswith("_"):
            continue

        module_name = f"{package}.{module_info.name}"
        try:
            module = importlib.import_module(module_name)
        except Exception as e:
            logger.error(f"Failed to load plugin module {module_name}: {e}", exc_info=True)
            continue

        for _, obj in inspect.getmembers(module, inspect.isclass):
            if (
                issubclass(obj, PluginDefinition)
                and obj is not PluginDefinition
                and not inspect.isabstract(obj)
                and obj.__module__ == module.__name__
            ):
                if PluginRegistry.get_plugin(obj.name) is None:
                    PluginRegistry.register(obj)
                found.append(PluginRegistry.get_plugin(obj.name))
                logger.info(f"Loaded plugin: {obj.name}")

    logger.info(
        f"Successfully loaded {len(found)} plugins; registered: "
        f"{', '.join(PluginRegistry.get_plugin_names())}"
    )
    return found


def install_local_plugins(table: DispatchTable) -> List[str]:
    """
    Install every registered in-process plugin into the dispatch table.

    Returns:
        Names of the installed plugins
    """
    installed = []
    for plugin in PluginRegistry.get_all_plugins():
        handles = [
            LocalSubTaskHandle(plugin.name, subtask.meta, subtask.entry_point)
            for subtask in plugin.subtasks()
        ]
        table.install(plugin.name, handles)
        installed.append(plugin.name)
    return installed
