"""Configuration and well-known identifiers for the Meridian core.

Every tunable is env-overridable through ``MERIDIAN_*`` variables::

    MERIDIAN_BACKEND_URL=http://127.0.0.1:7777
    MERIDIAN_AFFECT_ENABLED=0           # affect/reflection/voice output features
    MERIDIAN_SPEECH_OUTPUT=1            # local switch for speech playback
    MERIDIAN_ORCHESTRATE=1              # primary orchestration entry point wired
    MERIDIAN_AFFECT_POLL_S=5.0
    MERIDIAN_VOICE_POLL_S=0.5
    MERIDIAN_STATS_POLL_S=30.0
    MERIDIAN_TASK_POLL_S=2.0
    MERIDIAN_TOKEN_BUDGET=100000
    MERIDIAN_PANEL_MODULES=37=my_pkg.panels:LogPanel
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from lib.env_utils import env_flag, env_float, env_int, env_mapping, env_str
from lib.ports import BACKEND_URL

# ---------------------------------------------------------------------------
# Pipeline identifiers
# ---------------------------------------------------------------------------
THEME_LOADER_PIPELINE = 2
TASK_MANAGER_PIPELINE = 5
WORKSPACE_PIPELINE = 6
LIBRARY_PIPELINE = 7
SETTINGS_PIPELINE = 8
PROMPT_PIPELINE = 9
VOICE_PIPELINE = 10
CONTEXT_AGGREGATION_PIPELINE = 21
LOG_VIEWER_PIPELINE = 37
EMOTIONAL_STATE_PIPELINE = 40
SELF_MODEL_PIPELINE = 43
ILOOP_PIPELINE = 44


@dataclass(frozen=True)
class CorePanelDefinition:
    """A panel that is mounted once at startup and never removed."""

    id: str
    pipeline_id: int
    label: str
    icon: str
    order: int


CORE_PANEL_DEFINITIONS: Tuple[CorePanelDefinition, ...] = (
    CorePanelDefinition("workspace", WORKSPACE_PIPELINE, "Workspace", "📁", 0),
    CorePanelDefinition("tasks", TASK_MANAGER_PIPELINE, "Tasks", "📋", 1),
    CorePanelDefinition("library", LIBRARY_PIPELINE, "Library", "📚", 2),
    CorePanelDefinition("settings", SETTINGS_PIPELINE, "Settings", "⚙️", 3),
)

CORE_PIPELINE_IDS = frozenset(d.pipeline_id for d in CORE_PANEL_DEFINITIONS)
TASKS_PANEL_ID = "tasks"
DEFAULT_PANEL_ID = "workspace"


def is_core_pipeline(pipeline_id: int) -> bool:
    return pipeline_id in CORE_PIPELINE_IDS


def panel_id_for(pipeline_id: int) -> str:
    """Deterministic id of a non-core panel mounted for *pipeline_id*."""
    return f"pipeline-{pipeline_id}"


# ---------------------------------------------------------------------------
# StudioConfig
# ---------------------------------------------------------------------------

@dataclass
class StudioConfig:
    """Runtime configuration for the Meridian core.

    Attributes
    ----------
    backend_url:
        Base URL of the task engine's HTTP boundary.
    affect_enabled:
        Feature flag for affect/reflection polling, affect triggers and
        speech output.  Off by default.
    speech_output:
        Local switch for speech playback; the backend must also report
        speech output as enabled.
    orchestrate_enabled:
        Whether the primary one-shot orchestration entry point is wired.
        When false the store-level fallback strategy is used.
    panel_modules:
        Pipeline id -> ``"package.module:attr"`` for runtime panel modules.
    """

    backend_url: str = BACKEND_URL
    request_timeout_s: float = 30.0
    affect_enabled: bool = False
    speech_output: bool = True
    orchestrate_enabled: bool = True
    affect_poll_s: float = 5.0
    voice_poll_s: float = 0.5
    stats_poll_s: float = 30.0
    task_poll_s: float = 2.0
    token_budget: int = 100_000
    project_id: Optional[int] = None
    workspace_id: Optional[int] = None
    user_id: int = 1
    device_id: int = 1
    selected_model: str = ""
    default_voice: str = "neutral"
    default_speech_rate: float = 1.0
    default_panel_id: str = DEFAULT_PANEL_ID
    panel_modules: Dict[int, str] = field(default_factory=dict)

    @classmethod
    def from_env(cls) -> StudioConfig:
        """Build a :class:`StudioConfig` from ``MERIDIAN_*`` environment variables."""
        project_id = env_int("MERIDIAN_PROJECT_ID", 0)
        workspace_id = env_int("MERIDIAN_WORKSPACE_ID", 0)
        return cls(
            backend_url=env_str("MERIDIAN_BACKEND_URL", BACKEND_URL),
            request_timeout_s=env_float("MERIDIAN_REQUEST_TIMEOUT_S", 30.0),
            affect_enabled=env_flag("MERIDIAN_AFFECT_ENABLED", False),
            speech_output=env_flag("MERIDIAN_SPEECH_OUTPUT", True),
            orchestrate_enabled=env_flag("MERIDIAN_ORCHESTRATE", True),
            affect_poll_s=env_float("MERIDIAN_AFFECT_POLL_S", 5.0),
            voice_poll_s=env_float("MERIDIAN_VOICE_POLL_S", 0.5),
            stats_poll_s=env_float("MERIDIAN_STATS_POLL_S", 30.0),
            task_poll_s=env_float("MERIDIAN_TASK_POLL_S", 2.0),
            token_budget=env_int("MERIDIAN_TOKEN_BUDGET", 100_000),
            project_id=project_id or None,
            workspace_id=workspace_id or None,
            user_id=env_int("MERIDIAN_USER_ID", 1),
            device_id=env_int("MERIDIAN_DEVICE_ID", 1),
            selected_model=env_str("MERIDIAN_MODEL", ""),
            default_voice=env_str("MERIDIAN_VOICE", "neutral"),
            default_speech_rate=env_float("MERIDIAN_SPEECH_RATE", 1.0),
            default_panel_id=env_str("MERIDIAN_DEFAULT_PANEL", DEFAULT_PANEL_ID),
            panel_modules=env_mapping("MERIDIAN_PANEL_MODULES"),
        )
