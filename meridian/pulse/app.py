#!/usr/bin/env python3
"""Meridian Pulse: FastAPI dashboard over a running Meridian Studio runtime."""

from __future__ import annotations

import sys
import time
from contextlib import asynccontextmanager
from dataclasses import asdict
from pathlib import Path
from typing import Optional

# Ensure repo root is importable when running as a script.
_REPO_ROOT = Path(__file__).resolve().parents[2]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from fastapi import FastAPI, HTTPException
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import BaseModel

from lib.meridian.config import StudioConfig
from lib.meridian.runtime import StudioRuntime
from lib.ports import HOST, PULSE_PORT


class SubmitRequest(BaseModel):
    text: str


def create_app(runtime: Optional[StudioRuntime] = None) -> FastAPI:
    """Build the dashboard app.

    With no *runtime*, one is built from the environment and started and
    stopped with the app's lifespan.  A supplied runtime is owned by the
    caller.
    """
    owned = runtime is None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if owned:
            await app.state.runtime.start()
        try:
            yield
        finally:
            if owned:
                await app.state.runtime.stop()

    app = FastAPI(title="Meridian Pulse", docs_url="/docs", lifespan=lifespan)
    app.state.runtime = runtime or StudioRuntime(StudioConfig.from_env())

    def _runtime() -> StudioRuntime:
        return app.state.runtime

    # ── HTML dashboard (root) ──────────────────────────────────────
    @app.get("/", response_class=HTMLResponse)
    async def dashboard():
        return HTMLResponse(_DASHBOARD_HTML)

    # ── /api/status: heartbeat and health probe ─────────────────────
    @app.get("/api/status")
    async def api_status():
        result: dict = {"pulse": "ok", "timestamp": time.time()}
        result.update(_runtime().status())
        return JSONResponse(result)

    # ── panels ─────────────────────────────────────────────────────
    @app.get("/api/panels")
    async def api_panels():
        injector = _runtime().injector
        return JSONResponse({
            "active": injector.active_id,
            "panels": [
                {**p.to_dict(), "state": injector.state_of(p.id).value}
                for p in injector.ordered()
            ],
        })

    @app.get("/api/panels/{panel_id}")
    async def api_panel_render(panel_id: str):
        injector = _runtime().injector
        if panel_id not in injector:
            raise HTTPException(status_code=404, detail=f"No panel {panel_id}")
        return JSONResponse({"id": panel_id, "content": injector.render(panel_id)})

    @app.post("/api/panels/{panel_id}/activate")
    async def api_panel_activate(panel_id: str):
        injector = _runtime().injector
        if not injector.set_active(panel_id):
            raise HTTPException(status_code=404, detail=f"No panel {panel_id}")
        return JSONResponse({"active": injector.active_id})

    @app.delete("/api/panels/{panel_id}")
    async def api_panel_close(panel_id: str):
        injector = _runtime().injector
        panel = injector.get(panel_id)
        if panel is None:
            raise HTTPException(status_code=404, detail=f"No panel {panel_id}")
        if not injector.uninject(panel_id):
            raise HTTPException(status_code=409, detail=f"Panel {panel_id} cannot be closed")
        return JSONResponse({"removed": panel_id, "active": injector.active_id})

    # ── conversation ───────────────────────────────────────────────
    @app.get("/api/transcript")
    async def api_transcript():
        rt = _runtime()
        return JSONResponse({
            "state": rt.conversation.state.value,
            "turns": [t.to_dict() for t in rt.transcript.turns()],
        })

    @app.post("/api/submit")
    async def api_submit(body: SubmitRequest):
        rt = _runtime()
        turn = await rt.conversation.handle_submit(body.text)
        if turn is None:
            return JSONResponse(
                {"accepted": False, "reason": "empty prompt or backend not connected"},
                status_code=409,
            )
        return JSONResponse({"accepted": True, "reply": turn.to_dict()})

    # ── affect ─────────────────────────────────────────────────────
    @app.get("/api/affect")
    async def api_affect():
        bridge = _runtime().affect
        return JSONResponse({
            "enabled": bridge.enabled,
            "affect": asdict(bridge.affect) if bridge.affect else None,
            "reflection": asdict(bridge.reflection) if bridge.reflection else None,
        })

    return app


# ── Dashboard HTML ─────────────────────────────────────────────────

_DASHBOARD_HTML = r"""<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8"/>
<title>Meridian Pulse</title>
<style>
:root { --bg: #0e1016; --bg2: #151820; --text1: #e2e4e9; --text3: #6b7489; --green: #00C49A; --red: #FF4D4D; }
body { background: var(--bg); color: var(--text1); font-family: 'JetBrains Mono', monospace; font-size: 12px; margin: 0; }
header { background: var(--bg2); padding: 12px 20px; display: flex; gap: 12px; align-items: center; }
.dot { width: 8px; height: 8px; border-radius: 50%; background: var(--red); }
.dot.ok { background: var(--green); }
nav button { background: none; color: var(--text1); border: 1px solid #2a3042; margin-right: 4px; cursor: pointer; }
nav button.active { border-color: var(--green); }
pre, #turns { padding: 12px 20px; white-space: pre-wrap; }
.meta { color: var(--text3); }
</style>
</head>
<body>
<header><span class="dot" id="dot"></span><strong>Meridian</strong><span class="meta" id="meta"></span></header>
<nav id="tabs" style="padding: 8px 20px"></nav>
<pre id="panel"></pre>
<div id="turns"></div>
<script>
async function refresh() {
  const status = await (await fetch('/api/status')).json();
  document.getElementById('dot').className = status.connected ? 'dot ok' : 'dot';
  document.getElementById('meta').textContent =
    status.strategy + ' · ' + status.state + (status.emotion ? ' · ' + status.emotion : '');
  const panels = await (await fetch('/api/panels')).json();
  const tabs = document.getElementById('tabs');
  tabs.innerHTML = '';
  for (const p of panels.panels) {
    const b = document.createElement('button');
    b.textContent = p.icon + ' ' + p.label + (p.badge ? ' (' + p.badge + ')' : '');
    if (p.id === panels.active) b.className = 'active';
    b.onclick = async () => { await fetch('/api/panels/' + p.id + '/activate', {method: 'POST'}); refresh(); };
    tabs.appendChild(b);
  }
  const view = await (await fetch('/api/panels/' + panels.active)).json();
  document.getElementById('panel').textContent = view.content;
  const transcript = await (await fetch('/api/transcript')).json();
  document.getElementById('turns').textContent =
    transcript.turns.map(t => (t.role === 'user' ? 'you> ' : 'ai>  ') + t.content).join('\n');
}
refresh();
setInterval(refresh, 2000);
</script>
</body>
</html>
"""


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=HOST, port=PULSE_PORT)
