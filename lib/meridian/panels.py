"""Panel injector: owns the panels mounted in the single content region.

Per-panel lifecycle::

    Uninjected --inject--> Injected --set_active--> Active
                              ^                       |
                              +---- (other panel) <---+
    Injected/Active --uninject--> Uninjected (removed)

Only one panel is Active at a time; selecting a panel makes every other
mounted panel Inactive without unmounting it.  Core panels are mounted
once at startup and can never be uninjected.

The panel collection is mutated only through ``inject``, ``uninject``,
``set_active`` and ``set_badge``.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Dict, List, Optional

from lib.meridian.backend import BackendUnavailableError
from lib.meridian.config import (
    CORE_PANEL_DEFINITIONS,
    DEFAULT_PANEL_ID,
    is_core_pipeline,
    panel_id_for,
)
from lib.meridian.module_loader import ModuleLoader, PanelContext, SharedPanelState
from lib.meridian.registry import PipelineUIRegistry

logger = logging.getLogger("meridian.panels")

_CORE_IDS_BY_PIPELINE = {d.pipeline_id: d.id for d in CORE_PANEL_DEFINITIONS}

PanelListener = Callable[[str, Optional["PanelDescriptor"]], None]


class PanelState(enum.Enum):
    UNINJECTED = "uninjected"
    INACTIVE = "inactive"
    ACTIVE = "active"


@dataclass(frozen=True)
class PanelDescriptor:
    """A mounted panel.  Replaced (never patched) when its badge changes."""

    id: str
    pipeline_id: int
    label: str
    icon: str
    is_core: bool
    badge: Optional[int] = None
    closeable: bool = True
    props: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "pipeline_id": self.pipeline_id,
            "label": self.label,
            "icon": self.icon,
            "is_core": self.is_core,
            "badge": self.badge,
            "closeable": self.closeable,
        }


@dataclass
class InjectOptions:
    id: Optional[str] = None
    label: Optional[str] = None
    icon: Optional[str] = None
    make_active: bool = False
    initial_data: Any = None


async def _no_backend(pipeline_id: int, input: Dict[str, Any]) -> Dict[str, Any]:
    raise BackendUnavailableError("Pipeline execution not available")


class PanelInjector:
    """Ordered collection of mounted panels plus the current selection."""

    def __init__(
        self,
        registry: PipelineUIRegistry,
        loader: ModuleLoader,
        *,
        default_panel_id: str = DEFAULT_PANEL_ID,
        execute: Optional[Callable[[int, Dict[str, Any]], Awaitable[Dict[str, Any]]]] = None,
        shared_state: Optional[SharedPanelState] = None,
    ) -> None:
        self._registry = registry
        self._loader = loader
        self._default_panel_id = default_panel_id
        self._execute = execute or _no_backend
        self.shared_state = shared_state or SharedPanelState()

        self._panels: Dict[str, PanelDescriptor] = {}
        self._modules: Dict[str, Any] = {}
        self._active_id: str = default_panel_id
        self._listeners: List[PanelListener] = []
        self._core_mounted = False

    # ---- queries -----------------------------------------------------------

    @property
    def active_id(self) -> str:
        return self._active_id

    @property
    def active_panel(self) -> Optional[PanelDescriptor]:
        return self._panels.get(self._active_id)

    @property
    def registry(self) -> PipelineUIRegistry:
        return self._registry

    def panels(self) -> List[PanelDescriptor]:
        """Mounted panels in injection order."""
        return list(self._panels.values())

    def ordered(self) -> List[PanelDescriptor]:
        """Core panels first, then pipeline panels, each in injection order."""
        core = [p for p in self._panels.values() if p.is_core]
        rest = [p for p in self._panels.values() if not p.is_core]
        return core + rest

    def get(self, panel_id: str) -> Optional[PanelDescriptor]:
        return self._panels.get(panel_id)

    def panels_for(self, pipeline_id: int) -> List[PanelDescriptor]:
        return [p for p in self._panels.values() if p.pipeline_id == pipeline_id]

    def state_of(self, panel_id: str) -> PanelState:
        if panel_id not in self._panels:
            return PanelState.UNINJECTED
        if panel_id == self._active_id:
            return PanelState.ACTIVE
        return PanelState.INACTIVE

    def __len__(self) -> int:
        return len(self._panels)

    def __contains__(self, panel_id: object) -> bool:
        return panel_id in self._panels

    # ---- listeners ---------------------------------------------------------

    def subscribe(self, listener: PanelListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self, event: str, panel: Optional[PanelDescriptor]) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, panel)
            except Exception as exc:
                logger.warning("Panel listener failed on %s: %s", event, exc)

    def attach_registry(self, registry: PipelineUIRegistry) -> None:
        """Swap in the startup registry; only allowed before anything is mounted."""
        if self._panels:
            raise RuntimeError("Pipeline registry is fixed once panels are mounted")
        self._registry = registry

    # ---- lifecycle ---------------------------------------------------------

    def mount_core_panels(self) -> List[PanelDescriptor]:
        """Mount every core panel once; later calls are no-ops."""
        if self._core_mounted:
            return [p for p in self._panels.values() if p.is_core]
        self._core_mounted = True

        mounted: List[PanelDescriptor] = []
        for definition in sorted(CORE_PANEL_DEFINITIONS, key=lambda d: d.order):
            if definition.id in self._panels:
                continue
            module = self._loader.load_module(definition.pipeline_id, definition.id)
            if module is None:
                logger.warning("Core panel %r has no UI module; skipping", definition.id)
                continue
            panel = PanelDescriptor(
                id=definition.id,
                pipeline_id=definition.pipeline_id,
                label=definition.label,
                icon=definition.icon,
                is_core=True,
                closeable=False,
            )
            self._mount(panel, module)
            mounted.append(panel)

        if self._active_id in self._modules:
            self._call_hook(self._active_id, "on_activate")
        logger.info("Mounted %d core panels", len(mounted))
        return mounted

    def inject(
        self,
        pipeline_id: int,
        options: Optional[InjectOptions] = None,
    ) -> Optional[PanelDescriptor]:
        """Mount a panel for *pipeline_id*; idempotent per computed panel id.

        Returns the (new or existing) descriptor, or ``None`` when the
        pipeline's UI module could not be loaded.
        """
        opts = options or InjectOptions()
        core = is_core_pipeline(pipeline_id)
        if core:
            # one core panel per core pipeline, whatever id the caller asked for
            panel_id = _CORE_IDS_BY_PIPELINE[pipeline_id]
        else:
            panel_id = opts.id or panel_id_for(pipeline_id)

        existing = self._panels.get(panel_id)
        if existing is not None:
            if opts.make_active:
                self.set_active(panel_id)
            return existing

        module = self._loader.load_module(pipeline_id, panel_id)
        if module is None:
            logger.warning("Injection of pipeline %d aborted: no usable UI module", pipeline_id)
            return None

        meta = getattr(module, "meta", None)
        panel = PanelDescriptor(
            id=panel_id,
            pipeline_id=pipeline_id,
            label=opts.label or getattr(meta, "title", None) or self._registry.name_for(pipeline_id),
            icon=opts.icon or getattr(meta, "icon", None) or self._registry.icon_for(pipeline_id),
            is_core=core,
            closeable=not core,
            props={"initial_data": opts.initial_data},
        )
        self._mount(panel, module)
        logger.info("Injected panel %s (pipeline %d)", panel_id, pipeline_id)

        if opts.make_active:
            self.set_active(panel_id)
        return panel

    def uninject(self, panel_id: str) -> bool:
        """Remove a non-core panel.  Returns ``False`` when rejected or unknown."""
        panel = self._panels.get(panel_id)
        if panel is None:
            logger.debug("uninject(%s): no such panel", panel_id)
            return False
        if panel.is_core:
            logger.warning("Refusing to uninject core panel %s", panel_id)
            return False

        was_active = panel_id == self._active_id
        if was_active:
            self._call_hook(panel_id, "on_deactivate")
        del self._panels[panel_id]
        self._modules.pop(panel_id, None)
        logger.info("Uninjected panel %s", panel_id)
        self._notify("uninjected", panel)

        if was_active:
            remaining = self.ordered()
            fallback = remaining[0].id if remaining else self._default_panel_id
            self._select(fallback)
        return True

    def set_active(self, panel_id: str) -> bool:
        """Select *panel_id*; every other panel becomes Inactive."""
        if panel_id not in self._panels:
            logger.warning("set_active(%s): no such panel", panel_id)
            return False
        if panel_id == self._active_id:
            return True
        self._call_hook(self._active_id, "on_deactivate")
        self._select(panel_id)
        return True

    def set_badge(self, panel_id: str, badge: Optional[int]) -> bool:
        panel = self._panels.get(panel_id)
        if panel is None:
            return False
        if panel.badge == badge:
            return True
        updated = replace(panel, badge=badge)
        self._panels[panel_id] = updated
        self._notify("badge", updated)
        return True

    # ---- rendering ---------------------------------------------------------

    def render(self, panel_id: Optional[str] = None) -> str:
        """Render *panel_id* (default: the active panel) through its module."""
        target = panel_id or self._active_id
        panel = self._panels.get(target)
        module = self._modules.get(target)
        if panel is None or module is None:
            return "No panel selected"
        context = PanelContext(
            pipeline_id=panel.pipeline_id,
            panel_id=panel.id,
            execute=self._execute,
            shared_state=self.shared_state,
            initial_data=panel.props.get("initial_data"),
        )
        try:
            return str(module.render(context))
        except Exception as exc:
            logger.warning("Panel %s failed to render: %s", target, exc)
            return f"{panel.icon} {panel.label}: failed to render ({exc})"

    def render_active(self) -> str:
        return self.render(self._active_id)

    # ---- shared state ------------------------------------------------------

    def get_shared_state(self) -> Dict[str, Any]:
        return self.shared_state.get()

    def set_shared_state(self, updates: Dict[str, Any]) -> None:
        self.shared_state.update(updates)

    def subscribe_state(self, listener: Callable[[Dict[str, Any]], None]) -> Callable[[], None]:
        return self.shared_state.subscribe(listener)

    # ---- internal ----------------------------------------------------------

    def _mount(self, panel: PanelDescriptor, module: Any) -> None:
        self._panels[panel.id] = panel
        self._modules[panel.id] = module
        self._notify("injected", panel)

    def _select(self, panel_id: str) -> None:
        self._active_id = panel_id
        if panel_id in self._modules:
            self._call_hook(panel_id, "on_activate")
        self._notify("activated", self._panels.get(panel_id))

    def _call_hook(self, panel_id: str, hook: str) -> None:
        fn = getattr(self._modules.get(panel_id), hook, None)
        if not callable(fn):
            return
        try:
            fn()
        except Exception as exc:
            logger.warning("Panel %s %s hook failed: %s", panel_id, hook, exc)
