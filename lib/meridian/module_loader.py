"""Runtime resolution of pipeline panel modules.

Panels are addressed by pipeline id only, never by file path, so a new
panel ships as a Python object reachable from one of these sources
(checked in order):

1. ``ModuleLoader.register(pipeline_id, factory)`` calls
2. configured dotted paths (``MERIDIAN_PANEL_MODULES="37=pkg.mod:Panel"``)
3. the ``meridian.panels`` entry-point group (entry name = pipeline id)
4. the built-in panels shipped in :mod:`lib.meridian.builtin_panels`

A panel module is anything with a callable ``render(context) -> str``;
``on_activate``/``on_deactivate`` hooks and a ``meta`` object are optional.
Loading never raises: an absent, malformed or crashing module yields
``None`` and a warning.
"""

from __future__ import annotations

import importlib
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from importlib.metadata import entry_points
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Set, Tuple

logger = logging.getLogger("meridian.modules")

ENTRY_POINT_GROUP = "meridian.panels"

_BUILTIN_MODULES: Dict[int, str] = {
    5: "lib.meridian.builtin_panels:TasksPanel",
    6: "lib.meridian.builtin_panels:WorkspacePanel",
    7: "lib.meridian.builtin_panels:LibraryPanel",
    8: "lib.meridian.builtin_panels:SettingsPanel",
    37: "lib.meridian.builtin_panels:LogViewerPanel",
}


# ===================================================================
# Panel plugin interface
# ===================================================================

@dataclass(frozen=True)
class PanelMeta:
    title: Optional[str] = None
    icon: Optional[str] = None
    version: Optional[str] = None


class SharedPanelState:
    """Key/value state every mounted panel can read, merge into, and watch."""

    def __init__(self) -> None:
        self._state: Dict[str, Any] = {}
        self._listeners: Set[Callable[[Dict[str, Any]], None]] = set()

    def get(self) -> Dict[str, Any]:
        return dict(self._state)

    def update(self, updates: Mapping[str, Any]) -> None:
        self._state = {**self._state, **updates}
        snapshot = dict(self._state)
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as exc:
                logger.warning("Shared state listener failed: %s", exc)

    def subscribe(self, listener: Callable[[Dict[str, Any]], None]) -> Callable[[], None]:
        """Register *listener*; returns the matching unsubscribe callable."""
        self._listeners.add(listener)
        return lambda: self._listeners.discard(listener)


@dataclass
class PanelContext:
    """Everything a panel module receives when asked to render."""

    pipeline_id: int
    panel_id: str
    execute: Callable[[int, Dict[str, Any]], Awaitable[Dict[str, Any]]]
    shared_state: SharedPanelState
    initial_data: Any = None
    extras: Dict[str, Any] = field(default_factory=dict)


class PanelModule(ABC):
    """Base class for panel modules.  Duck-typed objects are accepted too."""

    meta: PanelMeta = PanelMeta()

    @abstractmethod
    def render(self, context: PanelContext) -> str:
        ...

    def on_activate(self) -> None:
        return None

    def on_deactivate(self) -> None:
        return None


def is_valid_module(obj: Any) -> bool:
    return obj is not None and callable(getattr(obj, "render", None))


# ===================================================================
# ModuleLoader
# ===================================================================

class ModuleLoader:
    """Resolves and caches panel modules.

    Instances are cached per ``(pipeline_id, panel_id)``: two panels mounted
    from the same pipeline under different ids get separate module objects,
    so activation hooks and any state a module keeps stay with its own panel.
    """

    def __init__(
        self,
        dotted_paths: Optional[Mapping[int, str]] = None,
        *,
        use_entry_points: bool = True,
        use_builtins: bool = True,
    ) -> None:
        self._factories: Dict[int, Callable[[], Any]] = {}
        self._dotted_paths: Dict[int, str] = dict(dotted_paths or {})
        self._use_entry_points = use_entry_points
        self._use_builtins = use_builtins
        self._cache: Dict[Tuple[int, Optional[str]], Any] = {}

    def register(self, pipeline_id: int, factory: Callable[[], Any]) -> None:
        """Register a zero-argument factory (a class works) for *pipeline_id*."""
        self._factories[pipeline_id] = factory
        self.clear_cache(pipeline_id)

    def load_module(self, pipeline_id: int, panel_id: Optional[str] = None) -> Optional[Any]:
        """Return a ready panel module for *pipeline_id*, or ``None``.

        *panel_id* names the panel the module will back; each distinct id
        gets its own instance.
        """
        key = (pipeline_id, panel_id)
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        factory = self._resolve_factory(pipeline_id)
        if factory is None:
            logger.warning("No UI module found for pipeline %d", pipeline_id)
            return None

        try:
            # classes and factory functions are called; ready objects are used as-is
            if isinstance(factory, type) or not is_valid_module(factory):
                module = factory()
            else:
                module = factory
        except Exception as exc:
            logger.warning("UI module for pipeline %d failed to instantiate: %s", pipeline_id, exc)
            return None

        if not is_valid_module(module):
            logger.warning("UI module for pipeline %d is missing a render function", pipeline_id)
            return None

        self._cache[key] = module
        return module

    def clear_cache(self, pipeline_id: Optional[int] = None) -> None:
        if pipeline_id is None:
            self._cache.clear()
        else:
            for key in [k for k in self._cache if k[0] == pipeline_id]:
                del self._cache[key]

    def known_pipelines(self) -> List[int]:
        ids = set(self._factories) | set(self._dotted_paths)
        if self._use_builtins:
            ids |= set(_BUILTIN_MODULES)
        return sorted(ids)

    # ---- resolution --------------------------------------------------------

    def _resolve_factory(self, pipeline_id: int) -> Optional[Any]:
        if pipeline_id in self._factories:
            return self._factories[pipeline_id]

        path = self._dotted_paths.get(pipeline_id)
        if path:
            return self._import_target(pipeline_id, path)

        if self._use_entry_points:
            target = self._from_entry_points(pipeline_id)
            if target is not None:
                return target

        if self._use_builtins and pipeline_id in _BUILTIN_MODULES:
            return self._import_target(pipeline_id, _BUILTIN_MODULES[pipeline_id])
        return None

    def _import_target(self, pipeline_id: int, path: str) -> Optional[Any]:
        module_name, _, attr = path.partition(":")
        try:
            target: Any = importlib.import_module(module_name)
            for part in filter(None, attr.split(".")):
                target = getattr(target, part)
        except Exception as exc:
            logger.warning("Cannot import UI module %r for pipeline %d: %s", path, pipeline_id, exc)
            return None
        return target

    def _from_entry_points(self, pipeline_id: int) -> Optional[Any]:
        try:
            matches = [ep for ep in entry_points(group=ENTRY_POINT_GROUP) if ep.name == str(pipeline_id)]
        except Exception as exc:
            logger.debug("Entry point scan failed: %s", exc)
            return None
        if not matches:
            return None
        try:
            return matches[0].load()
        except Exception as exc:
            logger.warning("Entry point for pipeline %d failed to load: %s", pipeline_id, exc)
            return None
