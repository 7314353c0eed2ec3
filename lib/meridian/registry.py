"""Pipeline UI registry: which pipelines have a panel, and what to call it.

Populated once at startup (from the backend when it answers, otherwise
from the core defaults) and read-only thereafter.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional

from lib.meridian.backend import Backend, BackendError
from lib.meridian.config import (
    CORE_PANEL_DEFINITIONS,
    LOG_VIEWER_PIPELINE,
    THEME_LOADER_PIPELINE,
)

logger = logging.getLogger("meridian.registry")

GENERIC_ICON = "🔧"

# Client-side aesthetics only; the registry never depends on these.
_DEFAULT_ICONS: Dict[int, str] = {
    5: "📋",
    6: "📁",
    7: "📚",
    8: "⚙️",
    18: "🔍",
    22: "🕸️",
    30: "📎",
    31: "🔗",
    32: "📦",
    37: "📜",
}


@dataclass(frozen=True)
class PipelineUIRegistryEntry:
    """Immutable registry row for one pipeline."""

    pipeline_id: int
    has_ui_module: bool
    name: str
    icon: str
    is_tab: bool = False
    category: str = "core"

    @classmethod
    def from_payload(cls, payload: Mapping) -> PipelineUIRegistryEntry:
        pipeline_id = int(payload["id"])
        return cls(
            pipeline_id=pipeline_id,
            has_ui_module=bool(payload.get("has_ui", False)),
            name=str(payload.get("name") or f"Pipeline {pipeline_id}"),
            icon=str(payload.get("icon") or icon_for(pipeline_id)),
            is_tab=bool(payload.get("is_tab", False)),
            category=str(payload.get("category") or "core"),
        )


def icon_for(pipeline_id: int) -> str:
    return _DEFAULT_ICONS.get(pipeline_id, GENERIC_ICON)


def default_entries() -> List[PipelineUIRegistryEntry]:
    """Core tabs plus the log viewer; used when the backend has no registry."""
    entries = [
        PipelineUIRegistryEntry(
            pipeline_id=d.pipeline_id,
            has_ui_module=True,
            name=d.label,
            icon=d.icon,
            is_tab=True,
        )
        for d in CORE_PANEL_DEFINITIONS
    ]
    entries.append(
        PipelineUIRegistryEntry(
            pipeline_id=LOG_VIEWER_PIPELINE,
            has_ui_module=True,
            name="LogViewer",
            icon=icon_for(LOG_VIEWER_PIPELINE),
        )
    )
    return entries


class PipelineUIRegistry:
    """Read-only lookup table keyed by pipeline id."""

    def __init__(self, entries: Iterable[PipelineUIRegistryEntry]) -> None:
        table = {e.pipeline_id: e for e in entries}
        self._entries: Mapping[int, PipelineUIRegistryEntry] = MappingProxyType(table)

    @classmethod
    def with_defaults(cls) -> PipelineUIRegistry:
        return cls(default_entries())

    @classmethod
    async def from_backend(cls, backend: Backend) -> PipelineUIRegistry:
        """Fetch the registry through the theme loader, falling back to defaults."""
        try:
            result = await backend.execute(
                THEME_LOADER_PIPELINE, {"action": "GetPipelineRegistry"}
            )
            rows = result.get("registry") or []
            entries = [PipelineUIRegistryEntry.from_payload(row) for row in rows]
        except (BackendError, KeyError, TypeError, ValueError) as exc:
            logger.warning("Pipeline registry unavailable, using core defaults: %s", exc)
            return cls.with_defaults()

        if not entries:
            logger.warning("Backend returned an empty pipeline registry, using core defaults")
            return cls.with_defaults()
        logger.info("Loaded pipeline registry (%d entries)", len(entries))
        return cls(entries)

    def has_pipeline_ui(self, pipeline_id: int) -> bool:
        """Capability query; never loads the module."""
        entry = self._entries.get(pipeline_id)
        return entry is not None and entry.has_ui_module

    def get(self, pipeline_id: int) -> Optional[PipelineUIRegistryEntry]:
        return self._entries.get(pipeline_id)

    def name_for(self, pipeline_id: int) -> str:
        entry = self._entries.get(pipeline_id)
        return entry.name if entry else f"Pipeline {pipeline_id}"

    def icon_for(self, pipeline_id: int) -> str:
        entry = self._entries.get(pipeline_id)
        return entry.icon if entry else icon_for(pipeline_id)

    def entries(self) -> List[PipelineUIRegistryEntry]:
        return sorted(self._entries.values(), key=lambda e: e.pipeline_id)

    def with_ui(self) -> List[PipelineUIRegistryEntry]:
        return [e for e in self.entries() if e.has_ui_module]

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, pipeline_id: object) -> bool:
        return pipeline_id in self._entries
