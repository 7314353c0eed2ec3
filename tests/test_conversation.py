"""Tests for lib/meridian/conversation.py.

Covers the orchestrate and pipeline-fallback submission paths, error
turns, affect side effects and the transcript invariants.

Run with:
    pytest tests/test_conversation.py -v
"""

import asyncio
import sys
from pathlib import Path

import pytest

PROJECT_ROOT = str(Path(__file__).resolve().parent.parent)
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from lib.meridian.affect import AffectStateBridge
from lib.meridian.config import StudioConfig
from lib.meridian.conversation import (
    CONCERNED,
    PLACEHOLDER_TEXT,
    ConversationOrchestrator,
    OrchestrateStrategy,
    OrchestratorState,
    PipelineFallbackStrategy,
    PromptBuffer,
    Reply,
    Role,
    SubmissionRequest,
    SubmissionStrategy,
    Transcript,
    TurnClock,
    select_strategy,
)

from conftest import FakeBackend


class FakeVoice:
    def __init__(self):
        self.spoken = []

    async def speak(self, text):
        self.spoken.append(text)
        return True


class SlowStrategy(SubmissionStrategy):
    """Echo strategy that records how many requests overlap."""

    name = "slow"

    def __init__(self, backend):
        super().__init__(backend)
        self.in_flight = 0
        self.max_in_flight = 0

    async def request(self, req):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        await asyncio.sleep(0.01)
        self.in_flight -= 1
        return Reply(text=f"re: {req.prompt}")


def _orchestrator(backend, *, affect_enabled=False, voice=None, **config):
    cfg = StudioConfig(affect_enabled=affect_enabled, **config)
    affect = AffectStateBridge(backend, enabled=affect_enabled)
    return ConversationOrchestrator(backend, cfg, affect=affect, voice=voice), affect


# ===================================================================
# Primary path
# ===================================================================

class TestOrchestratePath:
    @pytest.mark.asyncio
    async def test_hello_hi(self, backend):
        backend.orchestrate_reply = {"success": True, "response": "hi"}
        orch, affect = _orchestrator(backend, affect_enabled=True)
        assert isinstance(orch.strategy, OrchestrateStrategy)

        turn = await orch.handle_submit("hello")
        await affect.drain()

        turns = orch.transcript.turns()
        assert [(t.role, t.content) for t in turns] == [(Role.USER, "hello"), (Role.ASSISTANT, "hi")]
        assert turn is turns[-1]
        assert turn.reply_to == turns[0].id
        assert affect.refresh_count == 1
        triggers = [c for c in backend.calls_for(40) if c["action"] == "ProcessTrigger"]
        assert [c["trigger_type"] for c in triggers] == ["task_success"]
        assert orch.state is OrchestratorState.IDLE

    @pytest.mark.asyncio
    async def test_request_payload(self, backend):
        backend.orchestrate_reply = {"success": True, "response": "ok"}
        orch, _ = _orchestrator(backend, project_id=4, token_budget=2000, selected_model="m1")
        await orch.handle_submit("plan it")
        payload = backend.orchestrate_calls[0]
        assert payload["prompt"] == "plan it"
        assert payload["project_id"] == 4
        assert payload["consciousness_enabled"] is False
        assert payload["token_budget"] == 2000
        assert payload["model_config"] == {"model_identifier": "m1"}

    @pytest.mark.asyncio
    async def test_reply_emotion_kept(self, backend):
        backend.orchestrate_reply = {"success": True, "response": "yay", "emotion": "joy"}
        orch, _ = _orchestrator(backend)
        turn = await orch.handle_submit("news")
        assert turn.emotion == "joy"

    @pytest.mark.asyncio
    async def test_no_affect_calls_when_disabled(self, backend):
        backend.orchestrate_reply = {"success": True, "response": "hi"}
        orch, affect = _orchestrator(backend, affect_enabled=False)
        await orch.handle_submit("hello")
        await affect.drain()
        assert backend.calls_for(40) == []
        assert affect.refresh_count == 0

    @pytest.mark.asyncio
    async def test_reply_spoken_when_affect_enabled(self, backend):
        backend.orchestrate_reply = {"success": True, "response": "hi there"}
        voice = FakeVoice()
        orch, affect = _orchestrator(backend, affect_enabled=True, voice=voice)
        await orch.handle_submit("hello")
        await orch.drain()
        await affect.drain()
        assert voice.spoken == ["hi there"]

    @pytest.mark.asyncio
    async def test_reply_not_spoken_when_affect_disabled(self, backend):
        backend.orchestrate_reply = {"success": True, "response": "hi there"}
        voice = FakeVoice()
        orch, _ = _orchestrator(backend, voice=voice)
        await orch.handle_submit("hello")
        await orch.drain()
        assert voice.spoken == []


# ===================================================================
# Fallback path
# ===================================================================

class TestFallbackPath:
    @pytest.mark.asyncio
    async def test_placeholder_replaced_in_place(self):
        backend = FakeBackend(orchestrate=False)
        seen = []

        def prompt_pipeline(payload):
            seen.append([(t.role, t.content) for t in orch.transcript])
            return {"response": "fallback reply"}

        backend.handlers[9] = prompt_pipeline
        orch, _ = _orchestrator(backend)
        assert isinstance(orch.strategy, PipelineFallbackStrategy)

        await orch.handle_submit("hello")

        assert seen == [[(Role.USER, "hello"), (Role.ASSISTANT, PLACEHOLDER_TEXT)]]
        turns = orch.transcript.turns()
        assert len(turns) == 2
        assert turns[1].content == "fallback reply"
        assert turns[1].reply_to == turns[0].id

    @pytest.mark.asyncio
    async def test_placeholder_id_is_kept(self):
        backend = FakeBackend(orchestrate=False)
        backend.handlers[9] = {"response": "done"}
        ids = []
        orch, _ = _orchestrator(backend)
        orch.transcript.subscribe(lambda turn: ids.append(turn.id))
        await orch.handle_submit("hello")
        # user, placeholder, replacement
        assert len(ids) == 3
        assert ids[1] == ids[2]

    @pytest.mark.asyncio
    async def test_context_aggregated_for_project(self):
        backend = FakeBackend(orchestrate=False)
        backend.handlers[21] = {"context": {"context_text": "project notes"}}
        backend.handlers[9] = {"response": "ok"}
        orch, _ = _orchestrator(backend, project_id=12, selected_model="m2")
        await orch.handle_submit("summarize")
        assert backend.calls_for(21) == [
            {"action": "ForProject", "project_id": 12, "token_budget": 50000}
        ]
        assert backend.calls_for(9) == [
            {"prompt": "summarize", "aggregated_context": "project notes", "model": "m2"}
        ]

    @pytest.mark.asyncio
    async def test_context_skipped_without_project(self):
        backend = FakeBackend(orchestrate=False)
        backend.handlers[9] = {"response": "ok"}
        orch, _ = _orchestrator(backend)
        await orch.handle_submit("hi")
        assert backend.calls_for(21) == []
        assert backend.calls_for(9)[0]["aggregated_context"] == ""

    @pytest.mark.asyncio
    async def test_context_failure_still_sends_prompt(self):
        backend = FakeBackend(orchestrate=False)
        backend.handlers[21] = RuntimeError("aggregator down")
        backend.handlers[9] = {"response": "ok"}
        orch, _ = _orchestrator(backend, project_id=3)
        turn = await orch.handle_submit("hi")
        assert turn.content == "ok"

    @pytest.mark.asyncio
    async def test_fallback_error_replaces_placeholder(self):
        backend = FakeBackend(orchestrate=False)
        backend.handlers[9] = RuntimeError("model offline")
        orch, _ = _orchestrator(backend)
        await orch.handle_submit("hi")
        turns = orch.transcript.turns()
        assert len(turns) == 2
        assert turns[1].content == "Error: model offline"
        assert turns[1].emotion == CONCERNED
        assert all(t.content != PLACEHOLDER_TEXT for t in turns)


# ===================================================================
# Errors
# ===================================================================

class TestErrors:
    @pytest.mark.asyncio
    async def test_exception_becomes_concerned_turn(self, backend):
        backend.orchestrate_reply = RuntimeError("boom")
        orch, affect = _orchestrator(backend, affect_enabled=True)
        orch.prompt.set("hello")
        turn = await orch.handle_submit()
        await affect.drain()

        assert turn.role is Role.ASSISTANT
        assert turn.content == "Error: boom"
        assert turn.emotion == CONCERNED
        assert orch.prompt.text == "hello"
        triggers = [c["trigger_type"] for c in backend.calls_for(40) if c["action"] == "ProcessTrigger"]
        assert triggers == ["task_failure"]
        assert affect.refresh_count == 0

    @pytest.mark.asyncio
    async def test_unsuccessful_result_is_an_error(self, backend):
        backend.orchestrate_reply = {"success": False, "error": "quota exceeded"}
        orch, _ = _orchestrator(backend)
        turn = await orch.handle_submit("hello")
        assert turn.content == "Error: quota exceeded"
        assert turn.emotion == CONCERNED

    @pytest.mark.asyncio
    async def test_one_assistant_turn_per_user_turn(self, backend):
        replies = iter([{"success": True, "response": "a"}, RuntimeError("b"), {"success": False}])

        def _next(_req):
            reply = next(replies)
            if isinstance(reply, Exception):
                raise reply
            return reply

        backend.orchestrate_reply = _next
        orch, _ = _orchestrator(backend)
        for text in ("one", "two", "three"):
            await orch.handle_submit(text)
        roles = [t.role for t in orch.transcript]
        assert roles == [Role.USER, Role.ASSISTANT] * 3


# ===================================================================
# Rejections
# ===================================================================

class TestRejections:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("text", ["", "   ", "\n\t"])
    async def test_blank_input_ignored(self, backend, text):
        orch, _ = _orchestrator(backend)
        assert await orch.handle_submit(text) is None
        assert len(orch.transcript) == 0
        assert backend.orchestrate_calls == []

    @pytest.mark.asyncio
    async def test_disconnected_backend_ignored(self):
        backend = FakeBackend(connected=False)
        orch, _ = _orchestrator(backend)
        orch.prompt.set("hello")
        assert await orch.handle_submit() is None
        assert len(orch.transcript) == 0
        assert orch.prompt.text == "hello"
        assert backend.orchestrate_calls == []


# ===================================================================
# Serialization and prompt handling
# ===================================================================

class TestSerialization:
    @pytest.mark.asyncio
    async def test_submissions_do_not_overlap(self, backend):
        strategy = SlowStrategy(backend)
        orch = ConversationOrchestrator(backend, StudioConfig(), strategy=strategy)
        await asyncio.gather(orch.handle_submit("a"), orch.handle_submit("b"))

        assert strategy.max_in_flight == 1
        turns = orch.transcript.turns()
        by_id = {t.id: t for t in turns}
        for turn in turns:
            if turn.role is Role.ASSISTANT:
                assert turn.content == f"re: {by_id[turn.reply_to].content}"

    @pytest.mark.asyncio
    async def test_busy_while_submitting(self, backend):
        strategy = SlowStrategy(backend)
        orch = ConversationOrchestrator(backend, StudioConfig(), strategy=strategy)
        task = asyncio.ensure_future(orch.handle_submit("a"))
        await asyncio.sleep(0)
        assert orch.busy
        assert orch.state is OrchestratorState.SUBMITTING
        await task
        assert not orch.busy

    @pytest.mark.asyncio
    async def test_prompt_cleared_and_remembered(self, backend):
        backend.orchestrate_reply = {"success": True, "response": "ok"}
        orch, _ = _orchestrator(backend)
        orch.prompt.set("  hello  ")
        await orch.handle_submit()
        assert orch.prompt.text == ""
        assert orch.prompt.history == ["hello"]

    def test_select_strategy(self):
        assert isinstance(select_strategy(FakeBackend()), OrchestrateStrategy)
        assert isinstance(select_strategy(FakeBackend(orchestrate=False)), PipelineFallbackStrategy)


# ===================================================================
# Building blocks
# ===================================================================

class TestBuildingBlocks:
    def test_turn_ids_strictly_increase_on_frozen_clock(self):
        clock = TurnClock(now=lambda: 1000.0)
        ids = [clock.next_id() for _ in range(5)]
        assert ids == sorted(set(ids))
        assert ids[0] == 1_000_000

    def test_transcript_replace_unknown_id(self):
        transcript = Transcript()
        assert transcript.replace(1, None) is False

    def test_turn_to_dict(self):
        clock = TurnClock(now=lambda: 2.0)
        orch = ConversationOrchestrator(FakeBackend(), StudioConfig(), clock=clock)
        turn = orch._turn(Role.ASSISTANT, "hi", emotion="calm", reply_to=5)
        assert turn.to_dict() == {
            "id": 2000,
            "role": "assistant",
            "content": "hi",
            "timestamp": 2000,
            "emotion": "calm",
            "reply_to": 5,
        }

    def test_prompt_buffer_appends_transcriptions(self):
        buf = PromptBuffer("draft")
        buf.append_transcription("  more words ")
        assert buf.text == "draft more words"
        empty = PromptBuffer()
        empty.append_transcription("first")
        empty.append_transcription("")
        assert empty.text == "first"

    def test_prompt_history_is_bounded(self):
        buf = PromptBuffer()
        for n in range(150):
            buf.remember(str(n))
        assert len(buf.history) == 100
        assert buf.history[0] == "50"

    def test_orchestrate_payload_defaults(self):
        payload = SubmissionRequest(prompt="x").to_orchestrate_payload()
        assert payload["project_id"] is None
        assert payload["user_id"] == 1
        assert payload["token_budget"] == 100_000
