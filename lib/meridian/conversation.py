"""Conversation orchestration: prompt in, transcript out.

One submission moves the orchestrator through::

    Idle --handle_submit--> Submitting --reply--> Speaking --playback end--> Idle
                                  \\--(no speech)--------------------------> Idle

The request goes out through a :class:`SubmissionStrategy` picked once at
construction: :class:`OrchestrateStrategy` when the backend exposes the
one-shot orchestration entry point, :class:`PipelineFallbackStrategy`
otherwise.  Whatever happens, the user sees exactly one Assistant turn per
User turn.

Submissions are serialized with an ``asyncio.Lock``; every Assistant turn
also carries ``reply_to`` with the id of the User turn it answers.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterator, List, Optional, Tuple

from lib.meridian.backend import Backend, PipelineError
from lib.meridian.config import (
    CONTEXT_AGGREGATION_PIPELINE,
    PROMPT_PIPELINE,
    StudioConfig,
)
from lib.meridian.pollers import BackgroundTasks

if TYPE_CHECKING:
    from lib.meridian.affect import AffectStateBridge
    from lib.meridian.voice import VoiceBridge

logger = logging.getLogger("meridian.conversation")

CONCERNED = "concerned"
PLACEHOLDER_TEXT = "Processing..."
_FALLBACK_CONTEXT_BUDGET = 50_000
_HISTORY_LIMIT = 100


# ===================================================================
# Transcript
# ===================================================================

class Role(enum.Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class ConversationTurn:
    id: int
    role: Role
    content: str
    timestamp: int
    emotion: Optional[str] = None
    reply_to: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role.value,
            "content": self.content,
            "timestamp": self.timestamp,
            "emotion": self.emotion,
            "reply_to": self.reply_to,
        }


class TurnClock:
    """Wall-clock milliseconds, bumped so ids stay strictly increasing."""

    def __init__(self, now: Callable[[], float] = time.time) -> None:
        self._now = now
        self._last = 0

    def next_id(self) -> int:
        stamp = max(int(self._now() * 1000), self._last + 1)
        self._last = stamp
        return stamp


class Transcript:
    """Append-only turn list; the only in-place edit is :meth:`replace`."""

    def __init__(self) -> None:
        self._turns: List[ConversationTurn] = []
        self._listeners: List[Callable[[ConversationTurn], None]] = []

    def append(self, turn: ConversationTurn) -> ConversationTurn:
        self._turns.append(turn)
        self._notify(turn)
        return turn

    def replace(self, turn_id: int, turn: ConversationTurn) -> bool:
        """Swap the turn whose id is *turn_id* for *turn*, keeping its position."""
        for index, existing in enumerate(self._turns):
            if existing.id == turn_id:
                self._turns[index] = turn
                self._notify(turn)
                return True
        return False

    def get(self, turn_id: int) -> Optional[ConversationTurn]:
        for turn in self._turns:
            if turn.id == turn_id:
                return turn
        return None

    def turns(self) -> List[ConversationTurn]:
        return list(self._turns)

    def last(self) -> Optional[ConversationTurn]:
        return self._turns[-1] if self._turns else None

    def subscribe(self, listener: Callable[[ConversationTurn], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def __len__(self) -> int:
        return len(self._turns)

    def __iter__(self) -> Iterator[ConversationTurn]:
        return iter(list(self._turns))

    def _notify(self, turn: ConversationTurn) -> None:
        for listener in list(self._listeners):
            try:
                listener(turn)
            except Exception as exc:
                logger.warning("Transcript listener failed: %s", exc)


class PromptBuffer:
    """The prompt input field plus a bounded history of submitted prompts."""

    def __init__(self, text: str = "") -> None:
        self._text = text
        self.history: List[str] = []

    @property
    def text(self) -> str:
        return self._text

    def set(self, text: str) -> None:
        self._text = text

    def clear(self) -> None:
        self._text = ""

    def append_transcription(self, text: str) -> str:
        """Space-join *text* onto whatever is already typed."""
        text = text.strip()
        if text:
            self._text = f"{self._text} {text}" if self._text.strip() else text
        return self._text

    def remember(self, prompt: str) -> None:
        self.history.append(prompt)
        del self.history[:-_HISTORY_LIMIT]


# ===================================================================
# Submission strategies
# ===================================================================

@dataclass
class SubmissionRequest:
    prompt: str
    project_id: Optional[int] = None
    workspace_id: Optional[int] = None
    user_id: int = 1
    device_id: int = 1
    affect_enabled: bool = False
    token_budget: int = 100_000
    model: str = ""

    def to_orchestrate_payload(self) -> Dict[str, Any]:
        return {
            "prompt": self.prompt,
            "project_id": self.project_id,
            "workspace_id": self.workspace_id,
            "user_id": self.user_id,
            "device_id": self.device_id,
            "consciousness_enabled": self.affect_enabled,
            "token_budget": self.token_budget,
            "model_config": {"model_identifier": self.model},
        }


@dataclass
class Reply:
    text: str
    emotion: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


class SubmissionStrategy(ABC):
    """How one prompt reaches the backend."""

    name = "abstract"
    #: Show a placeholder Assistant turn while the request is in flight.
    uses_placeholder = False

    def __init__(self, backend: Backend) -> None:
        self._backend = backend

    @abstractmethod
    async def request(self, req: SubmissionRequest) -> Reply:
        """Send *req*; raise on any failure."""
        ...


class OrchestrateStrategy(SubmissionStrategy):
    name = "orchestrate"

    async def request(self, req: SubmissionRequest) -> Reply:
        result = await self._backend.orchestrate(req.to_orchestrate_payload())
        if not result.get("success", False):
            raise PipelineError(str(result.get("error") or "Orchestration failed"))
        return Reply(
            text=str(result.get("response") or ""),
            emotion=result.get("emotion"),
            raw=result,
        )


class PipelineFallbackStrategy(SubmissionStrategy):
    """Context aggregation (when a project is set) followed by the prompt pipeline."""

    name = "pipeline"
    uses_placeholder = True

    async def request(self, req: SubmissionRequest) -> Reply:
        context = await self._aggregate_context(req.project_id)
        result = await self._backend.execute(
            PROMPT_PIPELINE,
            {"prompt": req.prompt, "aggregated_context": context, "model": req.model},
        )
        text = result.get("response") or result.get("text") or ""
        return Reply(text=str(text), emotion=result.get("emotion"), raw=result)

    async def _aggregate_context(self, project_id: Optional[int]) -> str:
        if not project_id:
            return ""
        try:
            result = await self._backend.execute(
                CONTEXT_AGGREGATION_PIPELINE,
                {
                    "action": "ForProject",
                    "project_id": project_id,
                    "token_budget": _FALLBACK_CONTEXT_BUDGET,
                },
            )
        except Exception as exc:
            logger.warning("Context aggregation failed, sending prompt without it: %s", exc)
            return ""
        context = result.get("context") or {}
        return str(context.get("context_text") or "") if isinstance(context, dict) else ""


def select_strategy(backend: Backend) -> SubmissionStrategy:
    if backend.supports_orchestrate:
        return OrchestrateStrategy(backend)
    logger.info("Orchestration entry point not available; using pipeline fallback")
    return PipelineFallbackStrategy(backend)


# ===================================================================
# ConversationOrchestrator
# ===================================================================

class OrchestratorState(enum.Enum):
    IDLE = "idle"
    SUBMITTING = "submitting"
    SPEAKING = "speaking"


class ConversationOrchestrator:
    """Owns the transcript and drives one request/response cycle per prompt."""

    def __init__(
        self,
        backend: Backend,
        config: StudioConfig,
        *,
        strategy: Optional[SubmissionStrategy] = None,
        transcript: Optional[Transcript] = None,
        prompt: Optional[PromptBuffer] = None,
        affect: Optional[AffectStateBridge] = None,
        voice: Optional[VoiceBridge] = None,
        clock: Optional[TurnClock] = None,
    ) -> None:
        self._backend = backend
        self._config = config
        self.strategy = strategy or select_strategy(backend)
        self.transcript = transcript or Transcript()
        self.prompt = prompt or PromptBuffer()
        self._affect = affect
        self._voice = voice
        self._clock = clock or TurnClock()
        self._lock = asyncio.Lock()
        self._background = BackgroundTasks("conversation")
        self._submitting = 0
        self._speaking = 0

    @property
    def state(self) -> OrchestratorState:
        if self._submitting:
            return OrchestratorState.SUBMITTING
        if self._speaking:
            return OrchestratorState.SPEAKING
        return OrchestratorState.IDLE

    @property
    def busy(self) -> bool:
        """Whether the submit affordance should be disabled."""
        return self._submitting > 0

    @property
    def affect_enabled(self) -> bool:
        return self._affect is not None and self._affect.enabled

    async def handle_submit(self, text: Optional[str] = None) -> Optional[ConversationTurn]:
        """Submit *text* (default: the prompt buffer).

        Returns the final Assistant turn, or ``None`` when the submission was
        rejected (empty input or no backend connection).
        """
        prompt = (self.prompt.text if text is None else text).strip()
        if not prompt:
            return None
        if not self._backend.connected:
            logger.info("Submit ignored: backend not connected")
            return None

        user_turn = self.transcript.append(self._turn(Role.USER, prompt))
        self.prompt.remember(prompt)

        self._submitting += 1
        try:
            async with self._lock:
                turn, reply = await self._submit(prompt, user_turn)
        finally:
            self._submitting -= 1

        success = reply is not None
        if success and self.prompt.text.strip() == prompt:
            self.prompt.clear()

        if self.affect_enabled:
            self._affect.trigger(success)
            if success:
                self._affect.refresh_later()
            if success and reply.text and self._voice is not None:
                self._start_speaking(reply.text)
        return turn

    async def drain(self) -> None:
        """Wait for background speech to finish."""
        await self._background.drain()

    async def close(self) -> None:
        await self._background.cancel_all()

    # ---- internal ----------------------------------------------------------

    async def _submit(
        self, prompt: str, user_turn: ConversationTurn
    ) -> Tuple[ConversationTurn, Optional[Reply]]:
        placeholder: Optional[ConversationTurn] = None
        if self.strategy.uses_placeholder:
            placeholder = self.transcript.append(
                self._turn(Role.ASSISTANT, PLACEHOLDER_TEXT, reply_to=user_turn.id)
            )

        reply: Optional[Reply] = None
        try:
            reply = await self.strategy.request(self._build_request(prompt))
            content, emotion = reply.text, reply.emotion
        except Exception as exc:
            logger.warning("Submission via %s failed: %s", self.strategy.name, exc)
            logger.debug("Submission failure detail", exc_info=True)
            content, emotion = f"Error: {exc}", CONCERNED

        if placeholder is not None:
            final = replace(placeholder, content=content, emotion=emotion)
            self.transcript.replace(placeholder.id, final)
        else:
            final = self.transcript.append(
                self._turn(Role.ASSISTANT, content, emotion=emotion, reply_to=user_turn.id)
            )
        return final, reply

    def _build_request(self, prompt: str) -> SubmissionRequest:
        cfg = self._config
        return SubmissionRequest(
            prompt=prompt,
            project_id=cfg.project_id,
            workspace_id=cfg.workspace_id,
            user_id=cfg.user_id,
            device_id=cfg.device_id,
            affect_enabled=self.affect_enabled,
            token_budget=cfg.token_budget,
            model=cfg.selected_model,
        )

    def _turn(
        self,
        role: Role,
        content: str,
        *,
        emotion: Optional[str] = None,
        reply_to: Optional[int] = None,
    ) -> ConversationTurn:
        turn_id = self._clock.next_id()
        return ConversationTurn(
            id=turn_id,
            role=role,
            content=content,
            timestamp=turn_id,
            emotion=emotion,
            reply_to=reply_to,
        )

    def _start_speaking(self, text: str) -> None:
        self._speaking += 1

        async def _speak() -> None:
            try:
                await self._voice.speak(text)
            finally:
                self._speaking -= 1

        self._background.spawn(_speak(), label="speak")
