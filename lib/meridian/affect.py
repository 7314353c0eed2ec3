"""Advisory emotional-state and reflection snapshots polled from the backend.

Snapshots are replaced wholesale on every successful poll and are never
patched.  Everything here is a silent no-op while the affect feature flag
is off.

Usage::

    bridge = AffectStateBridge(backend, enabled=True)
    bridge.start()                      # 5 s poll
    bridge.trigger(success=True)        # fire-and-forget
    print(bridge.affect.primary_emotion)
    await bridge.stop()
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Mapping, Optional

from lib.meridian.backend import Backend
from lib.meridian.config import EMOTIONAL_STATE_PIPELINE, ILOOP_PIPELINE
from lib.meridian.pollers import BackgroundTasks, PeriodicPoller

logger = logging.getLogger("meridian.affect")

TRIGGER_SUCCESS = "task_success"
TRIGGER_FAILURE = "task_failure"
_TRIGGER_INTENSITY = 0.5


def _clamp(value: Any, lo: float, hi: float, default: float) -> float:
    try:
        return max(lo, min(hi, float(value)))
    except (TypeError, ValueError):
        return default


# ===================================================================
# Snapshots
# ===================================================================

@dataclass(frozen=True)
class AffectSnapshot:
    primary_emotion: str = "neutral"
    intensity: float = 0.0
    secondary_emotion: Optional[str] = None
    valence: float = 0.0
    arousal: float = 0.0

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> AffectSnapshot:
        """Accepts the emotional-state pipeline output or a flat mapping.

        The pipeline reports ``{"state": {"primary_emotions": [{"emotion",
        "intensity"}, ...], "valence", "arousal"}}``; the first two emotions
        become primary and secondary.
        """
        state = payload.get("state") if isinstance(payload.get("state"), Mapping) else payload
        emotions = state.get("primary_emotions") or []
        first = emotions[0] if emotions else {}
        second = emotions[1] if len(emotions) > 1 else {}

        primary = state.get("primary_emotion") or first.get("emotion") or "neutral"
        secondary = state.get("secondary_emotion") or second.get("emotion")
        intensity = state.get("intensity", first.get("intensity", 0.0))
        return cls(
            primary_emotion=str(primary),
            intensity=_clamp(intensity, 0.0, 1.0, 0.0),
            secondary_emotion=str(secondary) if secondary else None,
            valence=_clamp(state.get("valence", 0.0), -1.0, 1.0, 0.0),
            arousal=_clamp(state.get("arousal", 0.0), 0.0, 1.0, 0.0),
        )

    def describe(self) -> str:
        text = f"{self.primary_emotion} ({self.intensity:.0%})"
        if self.secondary_emotion:
            text += f" / {self.secondary_emotion}"
        return text


@dataclass(frozen=True)
class ReflectionSnapshot:
    is_active: bool = False
    current_question: str = ""
    questions_asked: int = 0
    insights_generated: int = 0

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> ReflectionSnapshot:
        loop = payload.get("i_loop") if isinstance(payload.get("i_loop"), Mapping) else payload
        current = loop.get("current_state") if isinstance(loop.get("current_state"), Mapping) else loop
        question = loop.get("question") or loop.get("current_question") or ""
        if isinstance(question, Mapping):
            question = question.get("question") or ""
        return cls(
            is_active=bool(current.get("is_active", False)),
            current_question=str(question),
            questions_asked=int(current.get("questions_asked") or 0),
            insights_generated=int(current.get("insights_generated") or 0),
        )


AffectListener = Callable[[Optional[AffectSnapshot], Optional[ReflectionSnapshot]], None]


# ===================================================================
# AffectStateBridge
# ===================================================================

class AffectStateBridge:
    """Polls affect and reflection state and republishes it read-only."""

    def __init__(
        self,
        backend: Backend,
        *,
        enabled: bool = False,
        interval_s: float = 5.0,
    ) -> None:
        self._backend = backend
        self._enabled = enabled
        self._affect: Optional[AffectSnapshot] = None
        self._reflection: Optional[ReflectionSnapshot] = None
        self._listeners: List[AffectListener] = []
        self._poller = PeriodicPoller("affect", interval_s, self.refresh)
        self._background = BackgroundTasks("affect")
        self.refresh_count = 0

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def affect(self) -> Optional[AffectSnapshot]:
        return self._affect

    @property
    def reflection(self) -> Optional[ReflectionSnapshot]:
        return self._reflection

    @property
    def polling(self) -> bool:
        return self._poller.running

    def subscribe(self, listener: AffectListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    # ---- lifecycle ---------------------------------------------------------

    def start(self) -> None:
        if self._enabled:
            self._poller.start()

    async def stop(self) -> None:
        await self._poller.stop()
        await self._background.cancel_all()

    async def set_enabled(self, enabled: bool) -> None:
        """Flip the feature flag, starting or tearing down the poller."""
        if enabled == self._enabled:
            return
        self._enabled = enabled
        if enabled:
            self._poller.start()
        else:
            await self.stop()
        logger.info("Affect features %s", "enabled" if enabled else "disabled")

    # ---- polling -----------------------------------------------------------

    async def refresh(self) -> None:
        """Fetch both snapshots; each is replaced only when its call succeeds.

        Raises the first failure after applying whatever did succeed, so a
        poller logs it and carries on.
        """
        if not self._enabled:
            return
        self.refresh_count += 1
        affect_result, reflection_result = await asyncio.gather(
            self._backend.execute(EMOTIONAL_STATE_PIPELINE, {"action": "GetCurrent"}),
            self._backend.execute(ILOOP_PIPELINE, {"action": "GetILoopStatus"}),
            return_exceptions=True,
        )

        errors: List[BaseException] = []
        if isinstance(affect_result, BaseException):
            errors.append(affect_result)
        else:
            self._affect = AffectSnapshot.from_payload(affect_result)
        if isinstance(reflection_result, BaseException):
            errors.append(reflection_result)
        else:
            self._reflection = ReflectionSnapshot.from_payload(reflection_result)

        self._notify()
        if errors:
            raise errors[0]

    def trigger(self, success: bool) -> Optional[asyncio.Task]:
        """Report a task outcome to the affect subsystem without waiting."""
        if not self._enabled:
            return None
        payload = {
            "action": "ProcessTrigger",
            "trigger_type": TRIGGER_SUCCESS if success else TRIGGER_FAILURE,
            "source": "orchestrator",
            "intensity": _TRIGGER_INTENSITY,
        }
        return self._background.spawn(
            self._backend.execute(EMOTIONAL_STATE_PIPELINE, payload),
            label=payload["trigger_type"],
        )

    def refresh_later(self) -> Optional[asyncio.Task]:
        """Schedule one out-of-band refresh; failures are only logged."""
        if not self._enabled:
            return None
        return self._background.spawn(self.refresh(), label="refresh")

    async def drain(self) -> None:
        await self._background.drain()

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self._affect, self._reflection)
            except Exception as exc:
                logger.warning("Affect listener failed: %s", exc)
