"""Shared fixtures: an in-memory backend and a ready panel injector."""

import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Tuple, Union

import pytest

PROJECT_ROOT = str(Path(__file__).resolve().parent.parent)
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from lib.meridian.backend import Backend, BackendUnavailableError
from lib.meridian.module_loader import ModuleLoader
from lib.meridian.panels import PanelInjector
from lib.meridian.registry import PipelineUIRegistry, PipelineUIRegistryEntry

Handler = Union[Dict[str, Any], Exception, Callable[[Dict[str, Any]], Any]]


class FakeBackend(Backend):
    """Scriptable backend: per-pipeline canned replies, every call recorded."""

    def __init__(self, *, connected: bool = True, orchestrate: bool = True) -> None:
        self._connected = connected
        self._orchestrate = orchestrate
        self.handlers: Dict[int, Handler] = {}
        self.calls: List[Tuple[int, Dict[str, Any]]] = []
        self.orchestrate_reply: Handler = {"success": True, "response": ""}
        self.orchestrate_calls: List[Dict[str, Any]] = []
        self.tasks: List[Dict[str, Any]] = []
        self.config: Dict[str, Any] = {}
        self.config_updates: List[Dict[str, Any]] = []
        self.stats: Dict[str, Any] = {"uptime_s": 1}
        self.closed = False

    @property
    def connected(self) -> bool:
        return self._connected

    @connected.setter
    def connected(self, value: bool) -> None:
        self._connected = value

    @property
    def supports_orchestrate(self) -> bool:
        return self._orchestrate

    def calls_for(self, pipeline_id: int) -> List[Dict[str, Any]]:
        return [inp for pid, inp in self.calls if pid == pipeline_id]

    async def execute(self, pipeline_id: int, input: Dict[str, Any]) -> Dict[str, Any]:
        self.calls.append((pipeline_id, dict(input)))
        return _resolve(self.handlers.get(pipeline_id, {}), input)

    async def orchestrate(self, request: Dict[str, Any]) -> Dict[str, Any]:
        if not self._orchestrate:
            raise BackendUnavailableError("Orchestration entry point not available")
        self.orchestrate_calls.append(dict(request))
        return _resolve(self.orchestrate_reply, request)

    async def task_list(self) -> List[Dict[str, Any]]:
        return list(self.tasks)

    async def task_status(self, task_id: int) -> Dict[str, Any]:
        for task in self.tasks:
            if task["id"] == task_id:
                return task
        return {}

    async def task_cancel(self, task_id: int) -> bool:
        return any(t["id"] == task_id for t in self.tasks)

    async def config_get(self) -> Dict[str, Any]:
        return dict(self.config)

    async def config_set(self, updates: Dict[str, Any]) -> bool:
        self.config_updates.append(updates)
        return True

    async def get_stats(self) -> Dict[str, Any]:
        return dict(self.stats)

    async def close(self) -> None:
        self.closed = True


def _resolve(handler: Handler, input: Dict[str, Any]) -> Any:
    if isinstance(handler, Exception):
        raise handler
    if callable(handler):
        return handler(input)
    return dict(handler)


class EchoPanel:
    """Minimal duck-typed panel module."""

    def __init__(self, title: str = "Echo") -> None:
        self.title = title
        self.activations = 0
        self.deactivations = 0

    def render(self, context) -> str:
        return f"{self.title}:{context.panel_id}:{context.initial_data}"

    def on_activate(self) -> None:
        self.activations += 1

    def on_deactivate(self) -> None:
        self.deactivations += 1


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def registry():
    entries = PipelineUIRegistry.with_defaults().entries()
    entries.append(PipelineUIRegistryEntry(pipeline_id=36, has_ui_module=True, name="Graph", icon="🕸️"))
    entries.append(PipelineUIRegistryEntry(pipeline_id=50, has_ui_module=False, name="Headless", icon="🔧"))
    return PipelineUIRegistry(entries)


@pytest.fixture
def loader():
    loader = ModuleLoader(use_entry_points=False)
    loader.register(36, lambda: EchoPanel("Graph"))
    return loader


@pytest.fixture
def injector(registry, loader):
    inj = PanelInjector(registry, loader)
    inj.mount_core_panels()
    return inj
