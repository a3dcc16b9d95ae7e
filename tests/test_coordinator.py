"""Tests for the TurnCoordinator.

A scripted runtime stands in for the conversation graph so each test
controls exactly which outputs the coordinator sees and when.

Run:
    uv run pytest tests/test_coordinator.py -v
"""

from __future__ import annotations

import asyncio
import base64
from unittest.mock import AsyncMock

import numpy as np
import pytest

from tutor_engine.background_worker import TaskSupervisor
from tutor_engine.pipeline.coordinator import RestartPolicy, TurnCoordinator, TurnState
from tutor_engine.pipeline.history import commit_assistant_reply, reconcile_turn
from tutor_engine.pipeline.outputs import (
    ContentChunk,
    ContentStream,
    GraphError,
    TranscriptText,
    TTSChunk,
    TTSOutputStream,
    TurnComplete,
    UnknownOutput,
)
from tutor_engine.pipeline.registry import SessionRegistry

SESSION_ID = "conn_test"
NO_COOLDOWN = RestartPolicy(max_attempts=3, cooldown=0, reset_after=30)


class ScriptedRuntime:
    """GraphRuntime whose executions replay the given async-generator scripts."""

    def __init__(self, *scripts) -> None:
        self.scripts = list(scripts)
        self.starts = 0
        self.options = []
        self.close_session = AsyncMock()
        self.stop = AsyncMock()

    def start(self, stream, options):
        script = self.scripts[min(self.starts, len(self.scripts) - 1)]
        self.starts += 1
        self.options.append(options)
        return script(stream, options)

    async def pronounce(self, text, language_code):
        yield TTSChunk(np.zeros(4, dtype=np.float32))


async def _ends_immediately(stream, options):
    return
    yield  # pragma: no cover


async def _waits_for_input_end(stream, options):
    async for _ in stream:
        pass
    return
    yield  # pragma: no cover


def _sent(ws) -> list[dict]:
    return [c.args[0] for c in ws.send_json.call_args_list]


def _types(ws) -> list[str]:
    return [m["type"] for m in _sent(ws)]


async def _wait_for_message(ws, msg_type: str, timeout: float = 2.0) -> dict:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        for message in _sent(ws):
            if message["type"] == msg_type:
                return message
        await asyncio.sleep(0.01)
    raise AssertionError(f"{msg_type} never sent; got {_types(ws)}")


def _make(runtime, *, policy=NO_COOLDOWN, max_buffered=2_000):
    registry = SessionRegistry()
    registry.create(SESSION_ID)
    ws = AsyncMock()
    supervisor = TaskSupervisor()
    coordinator = TurnCoordinator(
        SESSION_ID,
        ws,
        runtime,
        registry,
        supervisor,
        restart_policy=policy,
        max_buffered=max_buffered,
    )
    return coordinator, registry, ws, supervisor


def _pcm16_b64(samples: int = 160) -> str:
    return base64.b64encode(np.zeros(samples, dtype="<i2").tobytes()).decode()


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


class TestTurnFlow:
    @pytest.mark.asyncio
    async def test_messages_are_sent_in_turn_order(self):
        registry_ref = {}

        async def one_turn(stream, options):
            session = registry_ref["registry"].get(options.session_id)
            text = reconcile_turn(session, "Hola")
            yield TurnComplete(text, "abc#1")

            async def chunks():
                yield ContentChunk("¡Hola! ")
                yield ContentChunk("¿Cómo estás?")

            yield ContentStream(chunks())
            commit_assistant_reply(session, "¡Hola! ¿Cómo estás?")

            async def audio():
                yield TTSChunk(np.zeros(4, dtype=np.float32), text="¡Hola!")
                yield TTSChunk(np.zeros(4, dtype="<f4").tobytes(), text="¿Cómo estás?", sample_rate=24_000)

            yield TTSOutputStream(audio())
            async for _ in stream:
                pass

        runtime = ScriptedRuntime(one_turn)
        coordinator, registry, ws, _ = _make(runtime)
        registry_ref["registry"] = registry

        coordinator.start()
        await _wait_for_message(ws, "conversation_update")
        await coordinator.destroy()
        await asyncio.wait_for(coordinator.run_task, timeout=2)

        assert _types(ws) == [
            "transcription",
            "llm_response_chunk",
            "llm_response_chunk",
            "llm_response_complete",
            "audio_stream",
            "audio_stream",
            "audio_stream_complete",
            "conversation_update",
        ]
        sent = _sent(ws)
        assert sent[0]["text"] == "Hola"
        assert sent[0]["interactionId"] == "abc#1"
        assert all(m["interactionId"] == "abc#1" for m in sent[1:6])
        assert sent[3]["text"] == "¡Hola! ¿Cómo estás?"
        assert [sent[4]["isFirstChunk"], sent[5]["isFirstChunk"]] == [True, False]
        assert [sent[4]["sampleRate"], sent[5]["sampleRate"]] == [22_050, 24_000]
        assert sent[4]["audioFormat"] == "float32"
        assert [m["role"] for m in sent[7]["messages"]] == ["user", "assistant"]
        assert coordinator.state is TurnState.IDLE
        assert runtime.starts == 1

    @pytest.mark.asyncio
    async def test_enrichment_callbacks_receive_recent_messages(self):
        registry_ref = {}

        async def one_turn(stream, options):
            session = registry_ref["registry"].get(options.session_id)
            reconcile_turn(session, "Me llamo Ana")
            yield TurnComplete("Me llamo Ana", "abc#1")
            commit_assistant_reply(session, "¡Mucho gusto, Ana!")

            async def audio():
                yield TTSChunk(np.zeros(4, dtype=np.float32))

            yield TTSOutputStream(audio())
            async for _ in stream:
                pass

        coordinator, registry, ws, _ = _make(ScriptedRuntime(one_turn))
        registry_ref["registry"] = registry
        flashcards, feedback, memory, introduction = AsyncMock(), AsyncMock(), AsyncMock(), AsyncMock()
        coordinator.set_flashcard_callback(flashcards)
        coordinator.set_feedback_callback(feedback)
        coordinator.set_memory_callback(memory)
        coordinator.set_introduction_callback(introduction)

        coordinator.start()
        await _wait_for_message(ws, "conversation_update")
        await asyncio.sleep(0.05)
        await coordinator.destroy()

        flashcards.assert_awaited_once()
        assert [m.content for m in flashcards.call_args.args[0]] == ["Me llamo Ana", "¡Mucho gusto, Ana!"]
        feedback.assert_awaited_once()
        assert feedback.call_args.args[1] == "Me llamo Ana"
        memory.assert_awaited_once()
        introduction.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_partial_turn_signal_and_unknown_output_are_ignored(self):
        async def script(stream, options):
            yield TurnComplete("Hol", "abc#1", interaction_complete=False)
            yield UnknownOutput({"weird": True})
            yield TranscriptText("  texto  ")
            async for _ in stream:
                pass

        coordinator, _, ws, _ = _make(ScriptedRuntime(script))
        coordinator.start()
        await _wait_for_message(ws, "transcription")
        await coordinator.destroy()

        sent = _sent(ws)
        assert len(sent) == 1
        assert sent[0]["text"] == "texto"
        assert "interactionId" not in sent[0]
        assert coordinator.state is TurnState.IDLE


# ---------------------------------------------------------------------------
# Barge-in
# ---------------------------------------------------------------------------


class TestInterruption:
    @pytest.mark.asyncio
    async def test_continuation_freezes_reply_and_suppresses_completion(self):
        registry_ref = {}

        async def interrupted_turn(stream, options):
            session = registry_ref["registry"].get(options.session_id)
            reconcile_turn(session, "Quiero ir")
            yield TurnComplete("Quiero ir", "abc#1")

            async def chunks():
                yield ContentChunk("¿Adónde")
                # The learner keeps talking while the reply streams.
                await session.on_speech_detected("abc#2")
                yield ContentChunk(" quieres ir?")

            yield ContentStream(chunks())

            async def audio():
                yield TTSChunk(np.zeros(4, dtype=np.float32))

            yield TTSOutputStream(audio())
            async for _ in stream:
                pass

        coordinator, registry, ws, _ = _make(ScriptedRuntime(interrupted_turn))
        registry_ref["registry"] = registry
        session = registry.get(SESSION_ID)

        coordinator.start()
        await _wait_for_message(ws, "speech_detected")
        await asyncio.sleep(0.05)

        types = _types(ws)
        assert types == [
            "transcription",
            "llm_response_chunk",
            "conversation_rollback",
            "interrupt",
            "speech_detected",
        ]
        sent = _sent(ws)
        assert sent[2]["removedCount"] == 1
        assert sent[3]["reason"] == "continuation_detected"
        assert sent[4]["interactionId"] == "abc#2"
        assert "llm_response_complete" not in types
        assert "audio_stream" not in types

        assert session.pending_transcript == "Quiero ir"
        assert session.frozen_response == "¿Adónde"
        assert session.is_processing_interrupted is True
        assert session.interruptions == 1
        assert session.messages == []
        assert coordinator.state is TurnState.IDLE

        await coordinator.destroy()

    @pytest.mark.asyncio
    async def test_barge_in_during_audio_rolls_back_the_whole_turn(self):
        registry_ref = {}

        async def interrupted_turn(stream, options):
            session = registry_ref["registry"].get(options.session_id)
            reconcile_turn(session, "Quiero ir")
            yield TurnComplete("Quiero ir", "abc#1")

            async def chunks():
                yield ContentChunk("¿Adónde quieres ir?")

            yield ContentStream(chunks())
            commit_assistant_reply(session, "¿Adónde quieres ir?")

            async def audio():
                yield TTSChunk(np.zeros(4, dtype=np.float32))
                await session.on_speech_detected("abc#2")
                yield TTSChunk(np.zeros(4, dtype=np.float32))

            yield TTSOutputStream(audio())
            async for _ in stream:
                pass

        coordinator, registry, ws, _ = _make(ScriptedRuntime(interrupted_turn))
        registry_ref["registry"] = registry
        session = registry.get(SESSION_ID)
        flashcards, feedback = AsyncMock(), AsyncMock()
        coordinator.set_flashcard_callback(flashcards)
        coordinator.set_feedback_callback(feedback)

        coordinator.start()
        await _wait_for_message(ws, "speech_detected")
        await asyncio.sleep(0.05)

        assert _types(ws) == [
            "transcription",
            "llm_response_chunk",
            "llm_response_complete",
            "audio_stream",
            "conversation_rollback",
            "interrupt",
            "speech_detected",
        ]
        rollback = _sent(ws)[4]
        assert rollback["removedCount"] == 2
        assert rollback["messages"] == []
        assert _sent(ws)[5]["reason"] == "continuation_detected"

        assert session.pending_transcript == "Quiero ir"
        assert session.frozen_response == "¿Adónde quieres ir?"
        assert session.messages == []
        flashcards.assert_not_called()
        feedback.assert_not_called()
        assert coordinator.state is TurnState.IDLE

        await coordinator.destroy()

    @pytest.mark.asyncio
    async def test_speech_while_completion_is_being_sent_starts_a_new_turn(self):
        registry_ref = {}

        async def one_turn(stream, options):
            session = registry_ref["registry"].get(options.session_id)
            reconcile_turn(session, "Hola")
            yield TurnComplete("Hola", "abc#1")
            commit_assistant_reply(session, "Hola, ¿cómo estás?")

            async def audio():
                yield TTSChunk(np.zeros(4, dtype=np.float32))

            yield TTSOutputStream(audio())
            async for _ in stream:
                pass

        coordinator, registry, ws, _ = _make(ScriptedRuntime(one_turn))
        registry_ref["registry"] = registry
        session = registry.get(SESSION_ID)
        flashcards = AsyncMock()
        coordinator.set_flashcard_callback(flashcards)
        speech = []

        async def slow_send(message):
            # The learner starts talking while the completion is still on the wire.
            if message["type"] == "audio_stream_complete":
                speech.append(asyncio.create_task(session.on_speech_detected("abc#2")))
                await asyncio.sleep(0.05)

        ws.send_json.side_effect = slow_send

        coordinator.start()
        await _wait_for_message(ws, "conversation_update")
        await asyncio.gather(*speech)
        await asyncio.sleep(0.01)

        types = _types(ws)
        assert types[-4:] == ["audio_stream_complete", "interrupt", "speech_detected", "conversation_update"]
        assert "conversation_rollback" not in types
        sent = _sent(ws)
        assert sent[-3]["reason"] == "speech_start"
        assert [m["content"] for m in sent[-1]["messages"]] == ["Hola", "Hola, ¿cómo estás?"]

        assert [m.role for m in session.messages] == ["user", "assistant"]
        assert session.pending_transcript is None
        assert session.frozen_response is None
        assert session.interruptions == 0
        flashcards.assert_awaited_once()
        assert [m.content for m in flashcards.call_args.args[0]] == ["Hola", "Hola, ¿cómo estás?"]

        await coordinator.destroy()

    @pytest.mark.asyncio
    async def test_speech_while_idle_is_a_plain_speech_start(self):
        coordinator, registry, ws, _ = _make(ScriptedRuntime(_waits_for_input_end))
        session = registry.get(SESSION_ID)

        await session.on_speech_detected("abc#1")
        await session.on_partial_transcript("abc#1", "Bue")

        assert _types(ws) == ["interrupt", "speech_detected", "partial_transcript"]
        assert _sent(ws)[0]["reason"] == "speech_start"
        assert _sent(ws)[1]["data"] == {"text": ""}
        assert _sent(ws)[2]["text"] == "Bue"
        assert session.interruptions == 0
        await coordinator.destroy()


# ---------------------------------------------------------------------------
# Errors and auto-restart
# ---------------------------------------------------------------------------


class TestRestartPolicy:
    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        runtime = ScriptedRuntime(_ends_immediately)
        coordinator, _, ws, _ = _make(runtime)

        coordinator.start()
        await asyncio.wait_for(coordinator.run_task, timeout=2)

        assert runtime.starts == 4
        assert _types(ws).count("connection_recovered") == 3
        error = _sent(ws)[-1]
        assert error["type"] == "error"
        assert error["code"] == "GRAPH_RESTART_FAILED"
        assert error["recoverable"] is False
        assert coordinator.restart_attempts == 3

    @pytest.mark.asyncio
    async def test_restart_uses_a_fresh_multiplexer(self):
        runtime = ScriptedRuntime(_ends_immediately, _waits_for_input_end)
        coordinator, registry, ws, _ = _make(runtime)
        first = coordinator.multiplexer

        coordinator.start()
        await _wait_for_message(ws, "connection_recovered")
        await asyncio.sleep(0.01)

        assert first.ended
        assert coordinator.multiplexer is not first
        assert registry.get(SESSION_ID).multiplexer is coordinator.multiplexer
        assert runtime.starts == 2
        await coordinator.destroy()
        await asyncio.wait_for(coordinator.run_task, timeout=2)

    @pytest.mark.asyncio
    async def test_execution_exception_sends_graph_failed_then_restarts(self):
        async def explodes(stream, options):
            raise RuntimeError("model exploded")
            yield  # pragma: no cover

        runtime = ScriptedRuntime(explodes, _waits_for_input_end)
        coordinator, _, ws, _ = _make(runtime)

        coordinator.start()
        await _wait_for_message(ws, "connection_recovered")

        error = next(m for m in _sent(ws) if m["type"] == "error")
        assert error["code"] == "GRAPH_FAILED"
        assert "model exploded" not in error["message"]
        await coordinator.destroy()

    @pytest.mark.asyncio
    async def test_graph_error_output_is_forwarded_and_benign_ones_absorbed(self):
        async def errors(stream, options):
            yield GraphError("Recognition produced no text")
            yield GraphError("Sorry, I couldn't come up with a reply.", code="GRAPH_FAILED")
            async for _ in stream:
                pass

        coordinator, _, ws, _ = _make(ScriptedRuntime(errors))
        coordinator.start()
        await _wait_for_message(ws, "error")
        await coordinator.destroy()

        errors_sent = [m for m in _sent(ws) if m["type"] == "error"]
        assert len(errors_sent) == 1
        assert errors_sent[0]["code"] == "GRAPH_FAILED"

    @pytest.mark.asyncio
    async def test_missing_session_is_not_restarted(self):
        runtime = ScriptedRuntime(_ends_immediately)
        coordinator, registry, ws, _ = _make(runtime)
        registry.remove(SESSION_ID)

        coordinator.start()
        await asyncio.wait_for(coordinator.run_task, timeout=2)

        assert runtime.starts == 0
        assert _sent(ws)[-1]["code"] == "SESSION_NOT_FOUND"


# ---------------------------------------------------------------------------
# Input and lifecycle
# ---------------------------------------------------------------------------


class TestInputAndLifecycle:
    def test_audio_and_text_are_queued(self):
        coordinator, _, _, _ = _make(ScriptedRuntime(_waits_for_input_end))
        coordinator.add_audio_chunk(_pcm16_b64())
        coordinator.send_text_message("  hola  ")
        coordinator.send_text_message("   ")
        assert coordinator.multiplexer.buffered == 2

    def test_undecodable_audio_is_dropped(self):
        coordinator, _, _, _ = _make(ScriptedRuntime(_waits_for_input_end))
        coordinator.add_audio_chunk("abc")
        assert coordinator.multiplexer.buffered == 0

    def test_set_language_switches_voice(self):
        coordinator, registry, _, _ = _make(ScriptedRuntime(_waits_for_input_end))
        coordinator.set_language("fr")
        session = registry.get(SESSION_ID)
        assert session.language_code == "fr"
        assert session.target_language == "French"

    def test_reset_clears_history(self):
        coordinator, registry, _, _ = _make(ScriptedRuntime(_waits_for_input_end))
        session = registry.get(SESSION_ID)
        session.add_message("user", "Hola")
        session.interaction_id = "abc#4"
        coordinator.reset()
        assert session.messages == []
        assert session.interaction_id == ""

    @pytest.mark.asyncio
    async def test_reset_during_a_turn_returns_to_idle(self):
        async def script(stream, options):
            yield TurnComplete("Hola", "abc#1")
            async for _ in stream:
                pass

        coordinator, registry, ws, _ = _make(ScriptedRuntime(script))
        session = registry.get(SESSION_ID)
        coordinator.start()
        await _wait_for_message(ws, "transcription")
        assert coordinator.state is TurnState.PROCESSING

        coordinator.reset()

        assert coordinator.state is TurnState.IDLE
        assert session.resets == 1
        await session.on_speech_detected("abc#2")
        assert _sent(ws)[-2]["reason"] == "speech_start"
        assert session.interruptions == 0

        await coordinator.destroy()

    @pytest.mark.asyncio
    async def test_destroy_is_idempotent(self):
        runtime = ScriptedRuntime(_waits_for_input_end)
        coordinator, registry, ws, _ = _make(runtime)
        coordinator.start()
        await asyncio.sleep(0.01)

        await coordinator.destroy()
        await coordinator.destroy()
        await asyncio.wait_for(coordinator.run_task, timeout=2)

        assert coordinator.destroyed
        assert SESSION_ID not in registry
        runtime.close_session.assert_awaited_once_with(SESSION_ID)
        assert runtime.starts == 1

        coordinator.add_audio_chunk(_pcm16_b64())
        coordinator.send_text_message("hola")
        assert _sent(ws) == []

    @pytest.mark.asyncio
    async def test_overflow_closes_the_session(self):
        coordinator, registry, ws, _ = _make(ScriptedRuntime(_waits_for_input_end), max_buffered=2)
        for _ in range(3):
            coordinator.add_audio_chunk(_pcm16_b64())
        coordinator.add_audio_chunk(_pcm16_b64())
        await asyncio.sleep(0.05)

        errors_sent = [m for m in _sent(ws) if m["type"] == "error"]
        assert len(errors_sent) == 1
        assert errors_sent[0]["code"] == "BUFFER_OVERFLOW"
        assert errors_sent[0]["recoverable"] is False
        ws.close.assert_awaited_once_with(code=1011)
        assert coordinator.destroyed
        assert SESSION_ID not in registry
