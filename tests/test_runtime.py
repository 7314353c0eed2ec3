"""Tests for lib/meridian/runtime.py (the composition root)."""

import sys
from pathlib import Path

import pytest

PROJECT_ROOT = str(Path(__file__).resolve().parent.parent)
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from lib.meridian.config import StudioConfig
from lib.meridian.runtime import StudioRuntime
from lib.meridian.voice import SilentSource

from conftest import FakeBackend

REGISTRY = {
    "registry": [
        {"id": 5, "name": "Tasks", "has_ui": True},
        {"id": 6, "name": "Workspace", "has_ui": True},
        {"id": 7, "name": "Library", "has_ui": True},
        {"id": 8, "name": "Settings", "has_ui": True},
        {"id": 36, "name": "Graph", "has_ui": True},
    ]
}


def _runtime(backend, loader, **config):
    return StudioRuntime(
        StudioConfig(**config),
        backend,
        loader=loader,
        source_factory=SilentSource,
        watch_tasks=False,
    )


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_mounts_panels_and_loads_config(self, backend, loader):
        backend.handlers[2] = REGISTRY
        backend.config = {"voice": {"output_enabled": False}}
        rt = _runtime(backend, loader, project_id=9)

        await rt.start()
        try:
            assert rt.started
            assert [p.id for p in rt.injector.ordered()] == ["workspace", "tasks", "library", "settings"]
            assert rt.injector.registry.has_pipeline_ui(36)
            state = rt.injector.get_shared_state()
            assert state["config"] == {"voice": {"output_enabled": False}}
            assert state["workspace"]["project_id"] == 9
            assert "output_enabled = False" in rt.injector.render("settings")
        finally:
            await rt.stop()
        assert backend.closed
        assert not rt.started

    @pytest.mark.asyncio
    async def test_offline_start_uses_default_registry(self, loader):
        backend = FakeBackend(connected=False)
        rt = _runtime(backend, loader)
        await rt.start()
        try:
            assert len(rt.injector) == 4
            assert backend.calls == []
            assert rt.status()["connected"] is False
            assert await rt.conversation.handle_submit("hello") is None
        finally:
            await rt.stop()

    @pytest.mark.asyncio
    async def test_start_twice_is_noop(self, backend, loader):
        rt = _runtime(backend, loader)
        await rt.start()
        await rt.start()
        assert len(backend.calls_for(2)) == 1
        await rt.stop()


class TestOperations:
    @pytest.mark.asyncio
    async def test_affect_toggle_persists_flag(self, backend, loader):
        rt = _runtime(backend, loader, affect_poll_s=60)
        await rt.start()
        try:
            await rt.set_affect_enabled(True)
            assert rt.affect.polling
            assert rt.config.affect_enabled
            await rt.set_affect_enabled(False)
            assert not rt.affect.polling
            assert backend.config_updates == [
                {"features": {"consciousness_enabled": True}},
                {"features": {"consciousness_enabled": False}},
            ]
        finally:
            await rt.stop()

    @pytest.mark.asyncio
    async def test_turns_reach_workspace_panel(self, backend, loader):
        backend.orchestrate_reply = {"success": True, "response": "hi"}
        rt = _runtime(backend, loader)
        await rt.start()
        try:
            await rt.conversation.handle_submit("hello")
            recent = rt.injector.get_shared_state()["recent_turns"]
            assert [t["content"] for t in recent] == ["hello", "hi"]
            rendered = rt.injector.render("workspace")
            assert "you> hello" in rendered
            assert "ai > hi" in rendered
        finally:
            await rt.stop()

    @pytest.mark.asyncio
    async def test_stats_and_status(self, backend, loader):
        backend.stats = {"uptime_s": 42}
        rt = _runtime(backend, loader)
        await rt.start()
        try:
            assert await rt.refresh_stats() == {"uptime_s": 42}
            status = rt.status()
            assert status["stats"] == {"uptime_s": 42}
            assert status["active_panel"] == "workspace"
            assert status["state"] == "idle"
            assert status["pending_tasks"] is None
        finally:
            await rt.stop()

    @pytest.mark.asyncio
    async def test_task_refresh_updates_badge_in_status(self, backend, loader):
        backend.handlers[2] = REGISTRY
        backend.tasks = [{"id": 1, "pipeline_id": 36, "status": "running"}]
        rt = _runtime(backend, loader)
        await rt.start()
        try:
            await rt.task_watcher.refresh()
            assert rt.status()["pending_tasks"] == 1
            assert rt.injector.active_id == "pipeline-36"
        finally:
            await rt.stop()
