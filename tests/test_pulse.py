"""Tests for meridian/pulse/app.py via FastAPI's TestClient."""

import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

PROJECT_ROOT = str(Path(__file__).resolve().parent.parent)
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from lib.meridian.config import StudioConfig
from lib.meridian.panels import InjectOptions
from lib.meridian.runtime import StudioRuntime
from lib.meridian.voice import SilentSource
from meridian.pulse.app import create_app

from conftest import FakeBackend


@pytest.fixture
def runtime(loader, registry):
    backend = FakeBackend()
    backend.orchestrate_reply = {"success": True, "response": "hi"}
    rt = StudioRuntime(
        StudioConfig(),
        backend,
        loader=loader,
        source_factory=SilentSource,
        watch_tasks=False,
    )
    rt.injector.attach_registry(registry)
    rt.injector.mount_core_panels()
    return rt


@pytest.fixture
def client(runtime):
    return TestClient(create_app(runtime))


class TestPulseStatus:
    def test_dashboard_html(self, client):
        resp = client.get("/")
        assert resp.status_code == 200
        assert "Meridian Pulse" in resp.text

    def test_status(self, client):
        data = client.get("/api/status").json()
        assert data["pulse"] == "ok"
        assert data["connected"] is True
        assert data["strategy"] == "orchestrate"
        assert data["panels"] == 4


class TestPulsePanels:
    def test_list_panels(self, client):
        data = client.get("/api/panels").json()
        assert data["active"] == "workspace"
        assert [p["id"] for p in data["panels"]] == ["workspace", "tasks", "library", "settings"]
        assert data["panels"][0]["state"] == "active"
        assert data["panels"][1]["state"] == "inactive"

    def test_render_panel(self, client):
        data = client.get("/api/panels/tasks").json()
        assert "No tasks" in data["content"]

    def test_unknown_panel(self, client):
        assert client.get("/api/panels/nope").status_code == 404
        assert client.post("/api/panels/nope/activate").status_code == 404
        assert client.delete("/api/panels/nope").status_code == 404

    def test_activate(self, client):
        resp = client.post("/api/panels/library/activate")
        assert resp.json() == {"active": "library"}

    def test_core_panel_cannot_be_closed(self, client):
        resp = client.delete("/api/panels/settings")
        assert resp.status_code == 409
        assert "settings" in [p["id"] for p in client.get("/api/panels").json()["panels"]]

    def test_close_injected_panel(self, client, runtime):
        runtime.injector.inject(36, InjectOptions(make_active=True))
        resp = client.delete("/api/panels/pipeline-36")
        assert resp.json() == {"removed": "pipeline-36", "active": "workspace"}


class TestPulseConversation:
    def test_submit_and_transcript(self, client):
        resp = client.post("/api/submit", json={"text": "hello"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["accepted"] is True
        assert body["reply"]["content"] == "hi"

        turns = client.get("/api/transcript").json()["turns"]
        assert [(t["role"], t["content"]) for t in turns] == [("user", "hello"), ("assistant", "hi")]

    def test_blank_submit_rejected(self, client):
        resp = client.post("/api/submit", json={"text": "  "})
        assert resp.status_code == 409
        assert resp.json()["accepted"] is False

    def test_submit_validation(self, client):
        assert client.post("/api/submit", json={}).status_code == 422

    def test_affect_disabled(self, client):
        assert client.get("/api/affect").json() == {"enabled": False, "affect": None, "reflection": None}
