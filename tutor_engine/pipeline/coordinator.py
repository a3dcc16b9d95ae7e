"""TurnCoordinator: drives one session's conversation graph.

Starts the graph against the session's multiplexer, translates every graph
output into client messages, and handles barge-in: when the learner speaks
while a reply is still streaming, the reply is frozen and rolled back so the
next transcript can be stitched onto the interrupted one.

Cancellation is cooperative only.  The interruption flag is checked before
forwarding each LLM chunk, before forwarding each TTS chunk, and once after
each stream ends.  Nothing else is cancelled; the unread tail of an
abandoned stream is simply never consumed.
"""

from __future__ import annotations

import asyncio
import binascii
import enum
import logging
import math
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Coroutine

from fastapi import WebSocket

from ..audio.codec import convert_audio_to_base64, decode_base64_pcm16
from ..background_worker import TaskSupervisor
from ..constants import (
    FEEDBACK_CONTEXT_MESSAGES,
    FLASHCARD_CONTEXT_MESSAGES,
    GRAPH_MAX_RESTART_ATTEMPTS,
    GRAPH_RESTART_COOLDOWN,
    GRAPH_RESTART_RESET_AFTER,
    INPUT_SAMPLE_RATE,
    INTRODUCTION_CONTEXT_MESSAGES,
    MEMORY_CONTEXT_MESSAGES,
    MULTIPLEXER_MAX_BUFFERED,
    TTS_SAMPLE_RATE,
)
from ..errors import ErrorCode, TutorError, is_benign_error, send_error
from ..languages import get_language_config
from ..telemetry import get_tracer
from ..utils import now_ms
from .history import freeze_and_roll_back
from .multiplexer import AudioFrame, MultimodalStreamMultiplexer, StreamOverflowError
from .outputs import (
    MULTIMODAL_CONTENT,
    ContentStream,
    ExecutionOptions,
    GraphError,
    GraphOutput,
    GraphRuntime,
    TranscriptText,
    TTSOutputStream,
    TurnComplete,
    TypedStream,
    UnknownOutput,
)
from .registry import SessionRegistry
from .session_context import ChatMessage, Session

logger = logging.getLogger(__name__)

MessagesCallback = Callable[[list[ChatMessage]], Awaitable[None]]
FeedbackCallback = Callable[[list[ChatMessage], str], Awaitable[None]]


class TurnState(enum.Enum):
    IDLE = "idle"
    PROCESSING = "processing"
    INTERRUPTED = "interrupted"


@dataclass(frozen=True)
class RestartPolicy:
    max_attempts: int = GRAPH_MAX_RESTART_ATTEMPTS
    cooldown: float = GRAPH_RESTART_COOLDOWN
    reset_after: float = GRAPH_RESTART_RESET_AFTER


class TurnCoordinator:
    """Owns the lifecycle of one session's graph execution.

    Parameters
    ----------
    session_id : str
        Registry key of the session this coordinator drives.
    websocket : WebSocket
        Client socket all outbound messages are written to.
    runtime : GraphRuntime
        Conversation graph engine.
    registry : SessionRegistry
        Shared session table; ``destroy()`` removes the session from it.
    supervisor : TaskSupervisor
        Runs enrichment callbacks fire-and-forget.
    """

    def __init__(
        self,
        session_id: str,
        websocket: WebSocket,
        runtime: GraphRuntime,
        registry: SessionRegistry,
        supervisor: TaskSupervisor,
        *,
        restart_policy: RestartPolicy | None = None,
        idle_timeout: float | None = None,
        max_buffered: int = MULTIPLEXER_MAX_BUFFERED,
    ) -> None:
        self._session_id = session_id
        self._websocket = websocket
        self._runtime = runtime
        self._registry = registry
        self._supervisor = supervisor
        self._restart_policy = restart_policy or RestartPolicy()
        self._idle_timeout = idle_timeout
        self._max_buffered = max_buffered
        self._tracer = get_tracer()

        self._multiplexer = MultimodalStreamMultiplexer(max_buffered=max_buffered)
        self._run_task: asyncio.Task | None = None
        self._destroyed = False
        self._overflowed = False

        # Turn state
        self._turn_state = TurnState.IDLE
        self._current_transcript = ""
        self._current_interaction_id = ""
        self._response_chunks: list[str] = []

        # Auto-restart bookkeeping
        self._restart_attempts = 0
        self._last_restart_at: float | None = None

        # Enrichment triggers, wired by the inbound handler
        self._flashcard_callback: MessagesCallback | None = None
        self._feedback_callback: FeedbackCallback | None = None
        self._memory_callback: MessagesCallback | None = None
        self._introduction_callback: MessagesCallback | None = None

        session = registry.get(session_id)
        if session is not None:
            session.multiplexer = self._multiplexer
            session.on_speech_detected = self._handle_speech_detected
            session.on_partial_transcript = self._handle_partial_transcript

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def state(self) -> TurnState:
        return self._turn_state

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    @property
    def multiplexer(self) -> MultimodalStreamMultiplexer:
        return self._multiplexer

    @property
    def restart_attempts(self) -> int:
        return self._restart_attempts

    @property
    def run_task(self) -> asyncio.Task | None:
        return self._run_task

    def start(self) -> None:
        """Begin graph execution in the background (the caller does not wait)."""
        if self._destroyed:
            logger.warning("[Coordinator] start() on destroyed session %s ignored.", self._session_id)
            return
        if self._run_task is not None and not self._run_task.done():
            return
        self._run_task = asyncio.create_task(
            self._run_until_destroyed(), name=f"graph-{self._session_id}"
        )

    def add_audio_chunk(self, audio_b64: str) -> None:
        """Decode a base64 PCM16 chunk and queue it for the graph."""
        if self._destroyed:
            return
        try:
            samples = decode_base64_pcm16(audio_b64)
        except (binascii.Error, ValueError) as exc:
            logger.warning("[Coordinator] Dropping undecodable audio chunk: %s", exc)
            return
        if samples.size == 0:
            return
        try:
            self._multiplexer.push_audio(AudioFrame(samples, INPUT_SAMPLE_RATE))
        except StreamOverflowError as exc:
            self._handle_overflow(exc)

    def send_text_message(self, text: str) -> None:
        """Feed typed text into the same pipeline as speech."""
        text = text.strip()
        if not text or self._destroyed:
            return
        logger.info("[Coordinator] Text input: %.120s", text)
        try:
            self._multiplexer.push_text(text)
        except StreamOverflowError as exc:
            self._handle_overflow(exc)

    def set_language(self, language_code: str) -> None:
        """Switch language and voice for subsequent turns; the graph keeps running."""
        session = self._session()
        if session is None or session.language_code == language_code:
            return
        config = get_language_config(language_code)
        session.language_code = config.code
        session.voice_id = config.voice_id
        logger.info("[Coordinator] Session %s language → %s", self._session_id, config.name)

    def set_user_id(self, user_id: str) -> None:
        session = self._session()
        if session is not None:
            session.user_id = user_id

    def reset(self) -> None:
        """Start a new conversation: clear history, the interaction id and any live turn."""
        session = self._session()
        if session is not None:
            session.clear_conversation()
        self._mark_processing_complete()
        logger.info("[Coordinator] Conversation reset (session=%s)", self._session_id)

    async def destroy(self) -> None:
        """Release everything this session holds.  Safe to call more than once."""
        if self._destroyed:
            return
        self._destroyed = True
        self._multiplexer.end()

        session = self._session()
        if session is not None:
            session.on_speech_detected = None
            session.on_partial_transcript = None

        try:
            await self._runtime.close_session(self._session_id)
        except Exception as exc:
            logger.warning("[Coordinator] Failed to close transcription session %s: %s", self._session_id, exc)

        self._registry.remove(self._session_id)
        logger.info("[Coordinator] Session %s destroyed.", self._session_id)

    def set_flashcard_callback(self, callback: MessagesCallback | None) -> None:
        self._flashcard_callback = callback

    def set_feedback_callback(self, callback: FeedbackCallback | None) -> None:
        self._feedback_callback = callback

    def set_memory_callback(self, callback: MessagesCallback | None) -> None:
        self._memory_callback = callback

    def set_introduction_callback(self, callback: MessagesCallback | None) -> None:
        self._introduction_callback = callback

    # ------------------------------------------------------------------
    # Graph execution and auto-restart
    # ------------------------------------------------------------------

    async def _run_until_destroyed(self) -> None:
        while not self._destroyed:
            restartable = await self._execute_graph()
            if self._destroyed or not restartable:
                break
            if not await self._prepare_restart():
                break

    async def _execute_graph(self) -> bool:
        """Run one graph execution to completion; False means do not restart."""
        session = self._session()
        if session is None:
            logger.error("[Coordinator] No session %s in registry — graph not started.", self._session_id)
            await self._send_error(
                TutorError(message="Session is no longer available.", code=ErrorCode.SESSION_NOT_FOUND)
            )
            return False

        stream = TypedStream(MULTIMODAL_CONTENT, self._multiplexer.create_stream())
        options = ExecutionOptions(
            session_id=self._session_id,
            language_code=session.language_code,
            user_id=session.user_id,
            idle_timeout=self._idle_timeout,
        )
        execution: AsyncIterator[GraphOutput] | None = None
        logger.info("[Coordinator] Graph execution started (session=%s)", self._session_id)

        with self._tracer.start_as_current_span("graph.execution") as span:
            span.set_attribute("session.id", self._session_id)
            try:
                execution = self._runtime.start(stream, options)
                session.execution = execution
                async for output in execution:
                    if self._destroyed:
                        break
                    await self._process_output(output)
            except Exception as exc:
                if not self._destroyed:
                    logger.error("[Coordinator] Graph execution failed: %s", exc, exc_info=True)
                    if not is_benign_error(str(exc)):
                        await self._send_error(
                            TutorError(
                                message="Something went wrong while answering. Please try again.",
                                code=ErrorCode.GRAPH_FAILED,
                            )
                        )
            finally:
                session.execution = None
                await self._close_execution(execution)
                self._mark_processing_complete()

        logger.info("[Coordinator] Graph execution completed (session=%s)", self._session_id)
        return True

    async def _prepare_restart(self) -> bool:
        """Apply the restart policy; True when a fresh execution should start."""
        policy = self._restart_policy
        since_last = (
            time.monotonic() - self._last_restart_at if self._last_restart_at is not None else math.inf
        )
        if since_last > policy.reset_after:
            self._restart_attempts = 0

        if self._restart_attempts >= policy.max_attempts:
            logger.warning(
                "[Coordinator] Max restart attempts (%d) reached for session %s.",
                self._restart_attempts,
                self._session_id,
            )
            await self._send_error(
                TutorError(
                    message="Connection lost. Please refresh the page to continue the conversation.",
                    code=ErrorCode.GRAPH_RESTART_FAILED,
                    recoverable=False,
                )
            )
            return False

        if since_last < policy.cooldown:
            await asyncio.sleep(policy.cooldown - since_last)
            if self._destroyed:
                return False

        self._restart_attempts += 1
        self._last_restart_at = time.monotonic()
        logger.info(
            "[Coordinator] Restarting graph (attempt %d/%d, session=%s)",
            self._restart_attempts,
            policy.max_attempts,
            self._session_id,
        )

        self._multiplexer.end()
        self._multiplexer = MultimodalStreamMultiplexer(max_buffered=self._max_buffered)
        session = self._session()
        if session is not None:
            session.multiplexer = self._multiplexer

        await self._send({
            "type": "connection_recovered",
            "message": "Connection restored after idle timeout.",
            "timestamp": now_ms(),
        })
        return True

    async def _close_execution(self, execution: AsyncIterator[GraphOutput] | None) -> None:
        aclose = getattr(execution, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except Exception as exc:
            logger.debug("[Coordinator] Error closing graph execution: %s", exc)

    # ------------------------------------------------------------------
    # Output dispatch
    # ------------------------------------------------------------------

    async def _process_output(self, output: GraphOutput) -> None:
        if isinstance(output, TranscriptText):
            await self._handle_transcript_text(output)
        elif isinstance(output, TurnComplete):
            await self._handle_turn_complete(output)
        elif isinstance(output, ContentStream):
            await self._consume_content_stream(output)
        elif isinstance(output, TTSOutputStream):
            await self._consume_tts_stream(output)
        elif isinstance(output, GraphError):
            await self._handle_graph_error(output)
        elif isinstance(output, UnknownOutput):
            logger.debug("[Coordinator] Ignoring unknown graph output: %r", output.data)
        else:
            logger.debug("[Coordinator] Ignoring unsupported output type %s", type(output).__name__)

    async def _handle_transcript_text(self, output: TranscriptText) -> None:
        text = output.text.strip()
        if text:
            await self._send({"type": "transcription", "text": text, "timestamp": now_ms()})

    async def _handle_turn_complete(self, output: TurnComplete) -> None:
        # Partial signals would duplicate the partial_transcript stream.
        text = output.text.strip()
        if not output.interaction_complete or not text:
            return

        self._turn_state = TurnState.PROCESSING
        self._current_transcript = text
        self._current_interaction_id = output.interaction_id
        self._response_chunks = []
        logger.info("[Coordinator] Turn %s final: %.80s", output.interaction_id, text)

        await self._send({
            "type": "transcription",
            "text": text,
            "interactionId": output.interaction_id,
            "timestamp": now_ms(),
        })

    async def _consume_content_stream(self, output: ContentStream) -> None:
        interrupted = False
        with self._tracer.start_as_current_span("turn.llm_stream"):
            async for chunk in output:
                if self._destroyed:
                    return
                if self._is_interrupted():
                    interrupted = True
                    break
                if not chunk.text:
                    continue
                self._response_chunks.append(chunk.text)
                await self._send({
                    "type": "llm_response_chunk",
                    "text": chunk.text,
                    "interactionId": self._current_interaction_id,
                    "timestamp": now_ms(),
                })

        if interrupted or self._is_interrupted():
            logger.info("[Coordinator] LLM stream interrupted — completion suppressed.")
            return

        response = "".join(self._response_chunks).strip()
        if response:
            await self._send({
                "type": "llm_response_complete",
                "text": response,
                "interactionId": self._current_interaction_id,
                "timestamp": now_ms(),
            })

    async def _consume_tts_stream(self, output: TTSOutputStream) -> None:
        is_first_chunk = True
        interrupted = False
        try:
            with self._tracer.start_as_current_span("turn.tts_stream"):
                async for chunk in output:
                    if self._destroyed:
                        return
                    if self._is_interrupted():
                        interrupted = True
                        break
                    encoded = convert_audio_to_base64(chunk.audio)
                    if encoded is None:
                        continue
                    audio_b64, audio_format = encoded
                    await self._send({
                        "type": "audio_stream",
                        "audio": audio_b64,
                        "audioFormat": audio_format,
                        "sampleRate": chunk.sample_rate or TTS_SAMPLE_RATE,
                        "text": chunk.text,
                        "isFirstChunk": is_first_chunk,
                        "interactionId": self._current_interaction_id,
                        "timestamp": now_ms(),
                    })
                    is_first_chunk = False

            if interrupted or self._is_interrupted():
                logger.info("[Coordinator] TTS stream interrupted — completion suppressed.")
                return
        finally:
            self._mark_processing_complete()

        # Idle before any send can suspend: speech from here on opens a new turn.
        session = self._session()
        messages = list(session.messages) if session is not None else None
        await self._send({"type": "audio_stream_complete", "timestamp": now_ms()})
        if messages is None:
            return
        await self._send({
            "type": "conversation_update",
            "messages": [m.to_dict() for m in messages],
            "timestamp": now_ms(),
        })
        self._trigger_enrichment(messages)

    async def _handle_graph_error(self, output: GraphError) -> None:
        # An error ends the turn it belongs to.
        self._mark_processing_complete()
        if is_benign_error(output.message):
            logger.debug("[Coordinator] Benign graph error absorbed: %s", output.message)
            return
        logger.error("[Coordinator] Graph error: %s", output.message)
        await self._send_error(TutorError(message=output.message or "Unknown error", code=output.code))

    # ------------------------------------------------------------------
    # Interruption handling
    # ------------------------------------------------------------------

    async def _handle_speech_detected(self, interaction_id: str) -> None:
        if self._destroyed:
            return
        if self._turn_state is TurnState.PROCESSING and self._current_transcript:
            await self._interrupt_for_continuation()
            await self._send({"type": "interrupt", "reason": "continuation_detected", "timestamp": now_ms()})
        else:
            await self._send({"type": "interrupt", "reason": "speech_start", "timestamp": now_ms()})

        await self._send({
            "type": "speech_detected",
            "interactionId": interaction_id,
            "data": {"text": ""},
            "timestamp": now_ms(),
        })

    async def _interrupt_for_continuation(self) -> None:
        session = self._session()
        if session is None:
            return

        self._turn_state = TurnState.INTERRUPTED
        session.is_processing_interrupted = True
        session.interruptions += 1
        removed = freeze_and_roll_back(
            session, self._current_transcript, "".join(self._response_chunks)
        )
        logger.info(
            "[Coordinator] Continuation detected — interrupted turn %s (%d message(s) rolled back)",
            self._current_interaction_id,
            len(removed),
        )

        if removed:
            await self._send({
                "type": "conversation_rollback",
                "removedCount": len(removed),
                "messages": session.messages_as_dicts(),
                "timestamp": now_ms(),
            })

    async def _handle_partial_transcript(self, interaction_id: str, text: str) -> None:
        if self._destroyed or not text:
            return
        await self._send({
            "type": "partial_transcript",
            "text": text,
            "interactionId": interaction_id,
            "timestamp": now_ms(),
        })

    def _is_interrupted(self) -> bool:
        if self._turn_state is TurnState.INTERRUPTED:
            return True
        session = self._session()
        return bool(session is not None and session.is_processing_interrupted)

    def _mark_processing_complete(self) -> None:
        self._turn_state = TurnState.IDLE
        self._current_transcript = ""
        self._response_chunks = []

    # ------------------------------------------------------------------
    # Enrichment triggers
    # ------------------------------------------------------------------

    def _trigger_enrichment(self, messages: list[ChatMessage]) -> None:
        if self._flashcard_callback is not None:
            self._submit("flashcards", self._flashcard_callback, messages[-FLASHCARD_CONTEXT_MESSAGES:])

        if self._feedback_callback is not None:
            last_user = next((m for m in reversed(messages) if m.role == "user"), None)
            if last_user is not None:
                self._submit(
                    "feedback",
                    self._feedback_callback,
                    messages[-FEEDBACK_CONTEXT_MESSAGES:],
                    last_user.content,
                )

        if self._memory_callback is not None:
            self._submit("memory", self._memory_callback, messages[-MEMORY_CONTEXT_MESSAGES:])

        if self._introduction_callback is not None:
            self._submit("introduction", self._introduction_callback, messages[-INTRODUCTION_CONTEXT_MESSAGES:])

    def _submit(self, name: str, callback: Callable[..., Coroutine[Any, Any, Any]], *args: Any) -> None:
        try:
            self._supervisor.submit(f"{name}-{self._session_id}", callback(*args))
        except Exception as exc:
            logger.error("[Coordinator] Failed to schedule %s enrichment: %s", name, exc)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _session(self) -> Session | None:
        return self._registry.get(self._session_id)

    def _handle_overflow(self, exc: StreamOverflowError) -> None:
        if self._overflowed:
            return
        self._overflowed = True
        logger.error("[Coordinator] %s — closing session %s.", exc, self._session_id)
        self._supervisor.submit(f"overflow-{self._session_id}", self._close_for_overflow())

    async def _close_for_overflow(self) -> None:
        await self._send_error(
            TutorError(
                message="Audio backlog grew too large. Please reconnect.",
                code=ErrorCode.BUFFER_OVERFLOW,
                recoverable=False,
            )
        )
        try:
            await self._websocket.close(code=1011)
        except Exception as exc:
            logger.debug("[Coordinator] Socket close after overflow failed: %s", exc)
        await self.destroy()

    async def _send(self, message: dict[str, Any]) -> None:
        if self._destroyed:
            return
        try:
            await self._websocket.send_json(message)
        except Exception as exc:
            logger.debug("[Coordinator] Send of %s failed: %s", message.get("type"), exc)

    async def _send_error(self, error: TutorError) -> None:
        if self._destroyed:
            return
        error.session_id = self._session_id
        await send_error(self._websocket, error)
