"""Composition root: wires every Meridian component around one backend.

Usage::

    runtime = StudioRuntime(StudioConfig.from_env())
    await runtime.start()
    await runtime.conversation.handle_submit("hello")
    await runtime.stop()
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Any, Callable, Dict, Optional

from lib.meridian.affect import AffectSnapshot, AffectStateBridge, ReflectionSnapshot
from lib.meridian.backend import Backend, BackendError, HttpBackend
from lib.meridian.config import TASKS_PANEL_ID, StudioConfig
from lib.meridian.conversation import (
    ConversationOrchestrator,
    ConversationTurn,
    PromptBuffer,
    Transcript,
)
from lib.meridian.module_loader import ModuleLoader
from lib.meridian.panels import PanelInjector
from lib.meridian.pollers import PeriodicPoller
from lib.meridian.registry import PipelineUIRegistry
from lib.meridian.task_bridge import TaskLifecycleBridge, TaskWatcher
from lib.meridian.voice import AudioPlayer, AudioSource, VoiceBridge, default_audio_source

logger = logging.getLogger("meridian.runtime")

_RECENT_TURNS = 10


class StudioRuntime:
    """Owns the backend, the panel injector, the conversation and the pollers."""

    def __init__(
        self,
        config: StudioConfig,
        backend: Optional[Backend] = None,
        *,
        loader: Optional[ModuleLoader] = None,
        source_factory: Callable[[], AudioSource] = default_audio_source,
        player: Optional[AudioPlayer] = None,
        watch_tasks: bool = True,
    ) -> None:
        self.config = config
        self.backend = backend or HttpBackend(
            config.backend_url,
            timeout_s=config.request_timeout_s,
            orchestrate_enabled=config.orchestrate_enabled,
        )
        self.loader = loader or ModuleLoader(config.panel_modules)
        self.injector = PanelInjector(
            PipelineUIRegistry.with_defaults(),
            self.loader,
            default_panel_id=config.default_panel_id,
            execute=self.backend.execute,
        )
        self.tasks = TaskLifecycleBridge(self.injector)
        self.task_watcher = TaskWatcher(self.backend, self.tasks, interval_s=config.task_poll_s)

        self.prompt = PromptBuffer()
        self.transcript = Transcript()
        self.affect = AffectStateBridge(
            self.backend,
            enabled=config.affect_enabled,
            interval_s=config.affect_poll_s,
        )
        self.voice = VoiceBridge(
            self.backend,
            self.prompt,
            config,
            affect=self.affect,
            source_factory=source_factory,
            player=player,
        )
        self.conversation = ConversationOrchestrator(
            self.backend,
            config,
            transcript=self.transcript,
            prompt=self.prompt,
            affect=self.affect,
            voice=self.voice,
        )

        self.stats: Dict[str, Any] = {}
        self._stats_poller = PeriodicPoller("stats", config.stats_poll_s, self.refresh_stats)
        self._watch_tasks = watch_tasks
        self._started = False

        self.transcript.subscribe(self._on_turn)
        self.affect.subscribe(self._on_affect)

    @property
    def started(self) -> bool:
        return self._started

    # ---- lifecycle ---------------------------------------------------------

    async def start(self) -> None:
        if self._started:
            return
        connected = await self.backend.connect()
        if connected:
            registry = await PipelineUIRegistry.from_backend(self.backend)
            self.injector.attach_registry(registry)
        else:
            logger.warning("Backend offline at startup; using the default pipeline registry")

        self.injector.mount_core_panels()
        self.injector.set_shared_state({
            "workspace": {
                "project_id": self.config.project_id,
                "workspace_id": self.config.workspace_id,
            },
        })
        if connected:
            await self.refresh_config()

        if self._watch_tasks:
            self.task_watcher.start()
        self._stats_poller.start()
        self.affect.start()
        self._started = True
        logger.info(
            "Meridian runtime started (backend %s, strategy %s)",
            "connected" if connected else "offline",
            self.conversation.strategy.name,
        )

    async def stop(self) -> None:
        """Tear down every poller, the voice session and the backend client."""
        await self.voice.stop()
        await self.affect.stop()
        await self.task_watcher.stop()
        await self._stats_poller.stop()
        await self.conversation.close()
        await self.backend.close()
        self._started = False
        logger.info("Meridian runtime stopped")

    # ---- operations --------------------------------------------------------

    async def set_affect_enabled(self, enabled: bool) -> None:
        """Toggle affect features and persist the flag on the backend."""
        self.config.affect_enabled = enabled
        await self.affect.set_enabled(enabled)
        try:
            await self.backend.config_set({"features": {"consciousness_enabled": enabled}})
        except BackendError as exc:
            logger.warning("Could not persist affect flag: %s", exc)

    async def refresh_stats(self) -> Dict[str, Any]:
        self.stats = await self.backend.get_stats()
        self.injector.set_shared_state({"stats": self.stats})
        return self.stats

    async def refresh_config(self) -> Optional[Dict[str, Any]]:
        try:
            config = await self.backend.config_get()
        except BackendError as exc:
            logger.warning("Backend configuration unavailable: %s", exc)
            return None
        self.injector.set_shared_state({"config": config})
        return config

    def status(self) -> Dict[str, Any]:
        affect = self.affect.affect
        return {
            "connected": self.backend.connected,
            "started": self._started,
            "strategy": self.conversation.strategy.name,
            "state": self.conversation.state.value,
            "active_panel": self.injector.active_id,
            "panels": len(self.injector),
            "turns": len(self.transcript),
            "affect_enabled": self.affect.enabled,
            "emotion": affect.primary_emotion if affect else None,
            "listening": self.voice.listening,
            "speaking": self.voice.speaking,
            "pending_tasks": self.injector.get(TASKS_PANEL_ID).badge if TASKS_PANEL_ID in self.injector else None,
            "stats": self.stats,
        }

    # ---- listeners ---------------------------------------------------------

    def _on_turn(self, turn: ConversationTurn) -> None:
        recent = [t.to_dict() for t in self.transcript.turns()[-_RECENT_TURNS:]]
        self.injector.set_shared_state({"recent_turns": recent})

    def _on_affect(
        self,
        affect: Optional[AffectSnapshot],
        reflection: Optional[ReflectionSnapshot],
    ) -> None:
        self.injector.set_shared_state({
            "affect": asdict(affect) if affect else None,
            "reflection": asdict(reflection) if reflection else None,
        })
