"""Built-in panel modules for the core tabs and the log viewer.

Panels render plain text from the shared panel state; the runtime and the
task bridge keep these keys current:

    workspace     {"project_id", "workspace_id"}
    recent_turns  [{"role", "content", "emotion"}, ...]
    tasks         [{"id", "pipeline_id", "status", "progress"}, ...]
    config        backend configuration mapping
    stats         latest connection stats
"""

from __future__ import annotations

import collections
import logging
from typing import Any, Deque, Dict, List, Mapping, Optional

from lib.meridian.module_loader import PanelContext, PanelMeta, PanelModule

_STATUS_MARKS = {
    "running": "▶",
    "queued": "…",
    "completed": "✓",
    "failed": "✗",
    "cancelled": "–",
    "paused": "‖",
    "awaiting_clarification": "?",
}


def _heading(meta: PanelMeta) -> str:
    return f"{meta.icon} {meta.title}"


class WorkspacePanel(PanelModule):
    meta = PanelMeta(title="Workspace", icon="📁", version="1.0")

    def render(self, context: PanelContext) -> str:
        state = context.shared_state.get()
        workspace = state.get("workspace") or {}
        lines = [_heading(self.meta)]
        project = workspace.get("project_id")
        lines.append(f"  project:   {project if project is not None else '(none)'}")
        lines.append(f"  workspace: {workspace.get('workspace_id') or '(none)'}")

        turns = state.get("recent_turns") or []
        if turns:
            lines.append("")
            for turn in turns[-5:]:
                marker = "you" if turn.get("role") == "user" else "ai "
                emotion = f" [{turn['emotion']}]" if turn.get("emotion") else ""
                lines.append(f"  {marker}> {turn.get('content', '')}{emotion}")
        return "\n".join(lines)


class TasksPanel(PanelModule):
    meta = PanelMeta(title="Tasks", icon="📋", version="1.0")

    def render(self, context: PanelContext) -> str:
        tasks: List[Mapping[str, Any]] = context.shared_state.get().get("tasks") or []
        lines = [_heading(self.meta)]
        if not tasks:
            lines.append("  No tasks")
            return "\n".join(lines)
        for task in tasks:
            status = str(task.get("status", "queued"))
            progress = float(task.get("progress") or 0.0)
            lines.append(
                f"  {_STATUS_MARKS.get(status, '?')} #{task.get('id')} "
                f"pipeline {task.get('pipeline_id')} {status} {progress:.0%}"
            )
        return "\n".join(lines)


class LibraryPanel(PanelModule):
    meta = PanelMeta(title="Library", icon="📚", version="1.0")

    def render(self, context: PanelContext) -> str:
        items = context.initial_data or context.shared_state.get().get("library") or []
        lines = [_heading(self.meta)]
        if not items:
            lines.append("  Library is empty")
        for item in items:
            if isinstance(item, Mapping):
                lines.append(f"  - {item.get('name') or item.get('id')}")
            else:
                lines.append(f"  - {item}")
        return "\n".join(lines)


class SettingsPanel(PanelModule):
    meta = PanelMeta(title="Settings", icon="⚙️", version="1.0")

    def render(self, context: PanelContext) -> str:
        config = context.shared_state.get().get("config") or {}
        lines = [_heading(self.meta)]
        if not config:
            lines.append("  Settings not loaded")
        for key, value in _flatten(config):
            lines.append(f"  {key} = {value}")
        return "\n".join(lines)


def _flatten(mapping: Mapping[str, Any], prefix: str = "") -> List[tuple]:
    rows: List[tuple] = []
    for key in sorted(mapping):
        value = mapping[key]
        name = f"{prefix}{key}"
        if isinstance(value, Mapping):
            rows.extend(_flatten(value, f"{name}."))
        else:
            rows.append((name, value))
    return rows


# ===================================================================
# Log viewer
# ===================================================================

class RingBufferHandler(logging.Handler):
    """Keeps the last *capacity* formatted records in memory."""

    def __init__(self, capacity: int = 200) -> None:
        super().__init__()
        self.records: Deque[str] = collections.deque(maxlen=capacity)
        self.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.records.append(self.format(record))
        except Exception:
            self.handleError(record)


class LogViewerPanel(PanelModule):
    """Tails ``meridian.*`` log records while the panel is selected."""

    meta = PanelMeta(title="Logs", icon="📜", version="1.0")

    def __init__(self, logger_name: str = "meridian", lines: int = 20) -> None:
        self._logger = logging.getLogger(logger_name)
        self._lines = lines
        self.handler = RingBufferHandler()
        self._attached = False

    def on_activate(self) -> None:
        if not self._attached:
            self._logger.addHandler(self.handler)
            self._attached = True

    def on_deactivate(self) -> None:
        if self._attached:
            self._logger.removeHandler(self.handler)
            self._attached = False

    def render(self, context: PanelContext) -> str:
        lines = [_heading(self.meta)]
        seed: Optional[Dict[str, Any]] = context.initial_data if isinstance(context.initial_data, dict) else None
        if seed and seed.get("id") is not None:
            lines.append(f"  task #{seed['id']} ({seed.get('status', 'running')})")
        records = list(self.handler.records)[-self._lines:]
        if not records:
            lines.append("  No log records yet")
        lines.extend(f"  {line}" for line in records)
        return "\n".join(lines)
