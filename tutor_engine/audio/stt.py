"""AssemblyAI streaming (v3) transcription for real-time PCM-16 audio.

``TranscriptionAdapter.transcribe_turn`` is called once per turn by the
conversation graph.  It pulls items from the session's multiplexer stream,
forwards audio to a persistent per-session provider connection and returns
when one final turn has been accepted, or when typed text arrives.

Partial transcripts surface to the turn coordinator through the session's
``on_speech_detected`` / ``on_partial_transcript`` callbacks while a turn is
still forming; that is what makes barge-in detection possible.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable
from urllib.parse import urlencode

import websockets

from ..config import TURN_DETECTION_PRESETS, TurnDetectionPreset
from ..constants import (
    INPUT_SAMPLE_RATE,
    MAX_TRANSCRIPTION_DURATION,
    SILENCE_KEEPALIVE_INTERVAL,
    STT_INACTIVITY_TIMEOUT,
    STT_TERMINATE_GRACE,
    TURN_COMPLETION_TIMEOUT,
    TURN_DEBOUNCE,
)
from ..languages import get_language_config
from ..pipeline.multiplexer import MultimodalContent
from ..pipeline.session_context import Session
from ..utils import next_interaction_id
from .codec import float32_to_pcm16, silence_frame

logger = logging.getLogger(__name__)

_PUNCTUATION = re.compile(r"[.,!?;:'\"¿¡]")
_WHITESPACE = re.compile(r"\s+")


async def _read_next(stream: AsyncIterator[MultimodalContent]) -> MultimodalContent | None:
    try:
        return await anext(stream)
    except StopAsyncIteration:
        return None


class TranscriptionError(RuntimeError):
    """The provider connection could not be opened or dropped mid-turn."""


class TranscriptionTimeout(TranscriptionError):
    """No turn resolved within the maximum transcription duration."""


@dataclass
class TurnResult:
    text: str
    interaction_id: str
    from_text_input: bool = False


def normalize_transcript(text: str) -> str:
    """Lowercase, strip punctuation and collapse whitespace."""
    return _WHITESPACE.sub(" ", _PUNCTUATION.sub("", text.lower())).strip()


class TurnDeduplicator:
    """Rejects provider double-fires and stale re-emitted finals.

    A final is rejected when it lands inside the debounce window of the last
    accepted one, unless new speech was heard in between and the text is
    materially different.  Outside the window, a final with no new speech
    whose normalized text equals, contains or is contained in the previous
    one is rejected as a duplicate.
    """

    def __init__(self, *, debounce: float = TURN_DEBOUNCE, clock: Callable[[], float] = time.monotonic) -> None:
        self._debounce = debounce
        self._clock = clock
        self._last_text = ""
        self._last_accepted_at: float | None = None
        self._new_speech = False

    def mark_new_speech(self) -> None:
        self._new_speech = True

    def accept(self, text: str) -> bool:
        normalized = normalize_transcript(text)
        if not normalized:
            return False

        now = self._clock()
        last = self._last_text
        within_window = self._last_accepted_at is not None and now - self._last_accepted_at < self._debounce
        similar = bool(last) and (normalized == last or normalized in last or last in normalized)

        if within_window and (not self._new_speech or similar):
            logger.info("[STT] Debounced final turn: %.80s", text)
            return False
        if not self._new_speech and similar:
            logger.info("[STT] Duplicate final turn ignored: %.80s", text)
            return False

        self._last_text = normalized
        self._last_accepted_at = now
        self._new_speech = False
        return True

    def reset(self) -> None:
        self._last_text = ""
        self._last_accepted_at = None
        self._new_speech = False


class AssemblyAIConnection:
    """One streaming WebSocket to AssemblyAI.

    Parameters
    ----------
    session_id : str
        Owning session, used for log context.
    api_key : str
        AssemblyAI API key (from ASSEMBLYAI_API_KEY env var).
    preset : TurnDetectionPreset
        End-of-turn tuning sent as query parameters.
    speech_model : str
        ``universal-streaming-english`` or ``universal-streaming-multilingual``.
    on_message : callable
        Awaited with every decoded JSON message.
    on_lost : callable
        Called when the provider drops the connection unexpectedly.
    on_idle : callable
        Called after the connection closed itself for inactivity.
    """

    WS_URL = "wss://streaming.assemblyai.com/v3/ws"

    def __init__(
        self,
        session_id: str,
        *,
        api_key: str,
        preset: TurnDetectionPreset,
        speech_model: str,
        on_message: Callable[[dict[str, Any]], Awaitable[None]],
        on_lost: Callable[[str], None],
        on_idle: Callable[[], None],
        sample_rate: int = INPUT_SAMPLE_RATE,
        inactivity_timeout: float = STT_INACTIVITY_TIMEOUT,
    ) -> None:
        self._session_id = session_id
        self._api_key = api_key
        self._preset = preset
        self._speech_model = speech_model
        self._on_message = on_message
        self._on_lost = on_lost
        self._on_idle = on_idle
        self._sample_rate = sample_rate
        self._inactivity_timeout = inactivity_timeout

        self._ws: Any = None
        self._reader_task: asyncio.Task | None = None
        self._idle_handle: asyncio.TimerHandle | None = None
        self._idle_task: asyncio.Task | None = None
        self._closing = False
        self.provider_session_id = ""
        self.expires_at: float | None = None

    @property
    def url(self) -> str:
        params = {
            "sample_rate": self._sample_rate,
            "encoding": "pcm_s16le",
            "format_turns": "false",
            "end_of_turn_confidence_threshold": self._preset.end_of_turn_confidence_threshold,
            "min_end_of_turn_silence_when_confident": self._preset.min_end_of_turn_silence_when_confident,
            "max_turn_silence": self._preset.max_turn_silence,
            "speech_model": self._speech_model,
            "language_detection": "true",
        }
        return f"{self.WS_URL}?{urlencode(params)}"

    @property
    def is_open(self) -> bool:
        return self._ws is not None and not self._closing

    @property
    def is_expired(self) -> bool:
        return self.expires_at is not None and time.time() >= self.expires_at

    async def open(self) -> None:
        self._ws = await websockets.connect(self.url, additional_headers={"Authorization": self._api_key})
        self._reader_task = asyncio.create_task(self._read_loop(), name=f"stt-{self._session_id}")
        self._touch()
        logger.info("[STT] Connected to AssemblyAI (session=%s, model=%s)", self._session_id, self._speech_model)

    async def send_audio(self, pcm: bytes) -> None:
        if not self.is_open or not pcm:
            return
        try:
            await self._ws.send(pcm)
        except websockets.exceptions.ConnectionClosed as exc:
            logger.warning("[STT] Audio send on closed connection: %s", exc)
            return
        self._touch()

    async def close(self) -> None:
        """Terminate the provider session.  Safe to call more than once."""
        if self._closing:
            return
        self._closing = True
        self._cancel_idle_timer()

        ws = self._ws
        if ws is not None:
            try:
                await ws.send(json.dumps({"type": "Terminate"}))
                await asyncio.sleep(STT_TERMINATE_GRACE)
                await ws.close()
            except Exception as exc:
                logger.debug("[STT] Error while terminating session %s: %s", self._session_id, exc)

        reader = self._reader_task
        if reader is not None and not reader.done() and reader is not asyncio.current_task():
            reader.cancel()
        self._ws = None
        logger.info("[STT] Connection closed (session=%s)", self._session_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _read_loop(self) -> None:
        reason = "connection closed"
        try:
            async for raw in self._ws:
                if isinstance(raw, bytes):
                    continue
                try:
                    message = json.loads(raw)
                except json.JSONDecodeError:
                    logger.debug("[STT] Non-JSON frame ignored: %.80s", raw)
                    continue
                self._touch()
                if message.get("type") == "Begin":
                    self.provider_session_id = message.get("id", "")
                    expires_at = message.get("expires_at")
                    self.expires_at = float(expires_at) if expires_at else None
                    logger.info("[STT] Session began: %s (expires_at=%s)", self.provider_session_id, expires_at)
                    continue
                await self._on_message(message)
        except websockets.exceptions.ConnectionClosed as exc:
            reason = f"connection closed ({exc})"
        except Exception as exc:
            reason = str(exc)
            logger.warning("[STT] Transcript receive error: %s", exc)
        finally:
            if not self._closing:
                self._closing = True
                self._cancel_idle_timer()
                self._ws = None
                logger.warning("[STT] Provider connection lost (session=%s): %s", self._session_id, reason)
                self._on_lost(reason)

    def _touch(self) -> None:
        if self._closing:
            return
        self._cancel_idle_timer()
        loop = asyncio.get_running_loop()
        self._idle_handle = loop.call_later(self._inactivity_timeout, self._expire_idle)

    def _cancel_idle_timer(self) -> None:
        if self._idle_handle is not None:
            self._idle_handle.cancel()
            self._idle_handle = None

    def _expire_idle(self) -> None:
        logger.info(
            "[STT] No activity for %.0fs — closing session %s.", self._inactivity_timeout, self._session_id
        )
        self._idle_task = asyncio.create_task(self._close_idle())

    async def _close_idle(self) -> None:
        await self.close()
        self._on_idle()


class _SessionState:
    """Per-session turn bookkeeping; outlives individual provider connections."""

    def __init__(self, session: Session) -> None:
        self.session = session
        self.connection: AssemblyAIConnection | None = None
        self.dedup = TurnDeduplicator()
        self.turn: asyncio.Future[TurnResult | None] | None = None
        self.turn_interaction_id = ""
        self.speech_fired = False
        self.should_stop_processing = False
        self.stream: AsyncIterator[MultimodalContent] | None = None
        self.pending_read: asyncio.Task | None = None
        self.stream_exhausted = False
        self.warned_missing_key = False

    def cancel_pending_read(self) -> None:
        if self.pending_read is not None and not self.pending_read.done():
            self.pending_read.cancel()
        self.pending_read = None


class TranscriptionAdapter:
    """Owns one AssemblyAI connection per session and turns audio into turns.

    Parameters
    ----------
    api_key : str
        AssemblyAI API key.  With no key, audio is dropped and only typed
        text produces turns.
    preset : TurnDetectionPreset
        End-of-turn eagerness preset.
    """

    def __init__(
        self,
        api_key: str,
        *,
        preset: TurnDetectionPreset = TURN_DETECTION_PRESETS["medium"],
        max_duration: float = MAX_TRANSCRIPTION_DURATION,
        completion_timeout: float = TURN_COMPLETION_TIMEOUT,
    ) -> None:
        self._api_key = api_key
        self._preset = preset
        self._max_duration = max_duration
        self._completion_timeout = completion_timeout
        self._states: dict[str, _SessionState] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def transcribe_turn(
        self, session: Session, stream: AsyncIterator[MultimodalContent]
    ) -> TurnResult | None:
        """Consume *stream* until one turn resolves.

        Returns ``None`` once the stream is exhausted with no pending turn.
        Raises ``TranscriptionTimeout`` when audio kept flowing for the
        maximum duration without a final, and ``TranscriptionError`` when
        the provider connection fails.
        """
        state = self._state_for(session)
        self._attach_stream(state, stream)
        if state.stream_exhausted:
            return None

        loop = asyncio.get_running_loop()
        turn: asyncio.Future[TurnResult | None] = loop.create_future()
        state.turn = turn
        state.turn_interaction_id = next_interaction_id(session.interaction_id)
        state.speech_fired = False
        state.should_stop_processing = False
        deadline = loop.time() + self._max_duration

        try:
            while not turn.done():
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise TranscriptionTimeout(
                        f"No turn resolved within {self._max_duration:.0f}s of audio."
                    )
                read = self._next_read(state)
                await asyncio.wait({read, turn}, timeout=remaining, return_when=asyncio.FIRST_COMPLETED)
                if turn.done() or not read.done():
                    continue

                state.pending_read = None
                item = read.result()
                if item is None:
                    state.stream_exhausted = True
                    return await self._await_trailing_turn(state, turn)

                if item.is_text:
                    text = (item.text or "").strip()
                    if text:
                        self._resolve_turn(state, text, from_text_input=True)
                elif item.audio is not None:
                    connection = await self._connection_for(state)
                    if connection is not None:
                        await connection.send_audio(float32_to_pcm16(item.audio.data))

            return turn.result()
        finally:
            state.turn = None

    def release_stream(self, session_id: str) -> None:
        """Forget the input stream of an execution that has ended."""
        state = self._states.get(session_id)
        if state is None:
            return
        state.cancel_pending_read()
        state.stream = None
        state.stream_exhausted = False

    async def close_session(self, session_id: str) -> None:
        state = self._states.pop(session_id, None)
        if state is None:
            return
        state.cancel_pending_read()
        if state.turn is not None and not state.turn.done():
            state.turn.set_result(None)
        if state.connection is not None:
            connection, state.connection = state.connection, None
            await connection.close()
        logger.info("[STT] Transcription session %s released.", session_id)

    async def close_all(self) -> None:
        for session_id in list(self._states):
            await self.close_session(session_id)

    def has_session(self, session_id: str) -> bool:
        return session_id in self._states

    # ------------------------------------------------------------------
    # Provider events
    # ------------------------------------------------------------------

    async def _handle_message(self, state: _SessionState, message: dict[str, Any]) -> None:
        msg_type = message.get("type", "")
        if msg_type == "Turn":
            transcript = (message.get("transcript") or "").strip()
            if message.get("end_of_turn"):
                self._handle_final(state, transcript)
            else:
                await self._handle_partial(state, transcript)
        elif msg_type == "Termination":
            logger.info(
                "[STT] Provider session terminated (audio=%ss)", message.get("audio_duration_seconds")
            )
        elif "error" in message:
            logger.error("[STT] AssemblyAI error: %s", message["error"])
        else:
            logger.debug("[STT] Unhandled message type %r", msg_type)

    async def _handle_partial(self, state: _SessionState, text: str) -> None:
        if not text or state.should_stop_processing:
            return
        state.dedup.mark_new_speech()
        session = state.session
        interaction_id = state.turn_interaction_id or next_interaction_id(session.interaction_id)

        if not state.speech_fired:
            state.speech_fired = True
            logger.debug("[STT] Speech detected (interaction=%s)", interaction_id)
            await self._notify(session.on_speech_detected, interaction_id)
        await self._notify(session.on_partial_transcript, interaction_id, text)

    def _handle_final(self, state: _SessionState, text: str) -> None:
        if state.turn is None or state.turn.done():
            logger.debug("[STT] Final with no open turn ignored: %.80s", text)
            return
        if not text:
            return
        if state.dedup.accept(text):
            self._resolve_turn(state, text)

    def _resolve_turn(self, state: _SessionState, text: str, *, from_text_input: bool = False) -> None:
        if state.turn is None or state.turn.done():
            return
        session = state.session
        session.interaction_id = state.turn_interaction_id
        session.is_processing_interrupted = False
        state.should_stop_processing = True
        state.turn.set_result(TurnResult(text, state.turn_interaction_id, from_text_input))
        logger.info("[STT] Turn %s accepted: %.80s", state.turn_interaction_id, text)

    def _on_connection_lost(self, state: _SessionState, reason: str) -> None:
        state.connection = None
        if state.turn is not None and not state.turn.done():
            state.turn.set_exception(TranscriptionError(f"Transcription connection lost: {reason}"))

    def _on_connection_idle(self, state: _SessionState, connection: AssemblyAIConnection) -> None:
        if state.connection is connection:
            state.connection = None
        logger.info("[STT] Idle connection released (session=%s)", state.session.session_id)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _state_for(self, session: Session) -> _SessionState:
        state = self._states.get(session.session_id)
        if state is None or state.session is not session:
            state = _SessionState(session)
            self._states[session.session_id] = state
        return state

    def _attach_stream(self, state: _SessionState, stream: AsyncIterator[MultimodalContent]) -> None:
        if state.stream is stream:
            return
        state.cancel_pending_read()
        state.stream = stream
        state.stream_exhausted = False

    def _next_read(self, state: _SessionState) -> asyncio.Task:
        # An unfinished read carries over to the next turn; cancelling it
        # would finalize the stream's generator.
        if state.pending_read is None:
            state.pending_read = asyncio.create_task(_read_next(state.stream))
        return state.pending_read

    async def _connection_for(self, state: _SessionState) -> AssemblyAIConnection | None:
        if not self._api_key:
            if not state.warned_missing_key:
                logger.error("[STT] ASSEMBLYAI_API_KEY not set — audio input is ignored.")
                state.warned_missing_key = True
            return None

        connection = state.connection
        if connection is not None and connection.is_open and not connection.is_expired:
            return connection
        if connection is not None:
            logger.info("[STT] Provider session expired — reconnecting.")
            state.connection = None
            await connection.close()

        language = get_language_config(state.session.language_code)
        speech_model = (
            "universal-streaming-english"
            if language.stt_language_code.split("-")[0] == "en"
            else "universal-streaming-multilingual"
        )
        connection = AssemblyAIConnection(
            state.session.session_id,
            api_key=self._api_key,
            preset=self._preset,
            speech_model=speech_model,
            on_message=lambda message: self._handle_message(state, message),
            on_lost=lambda reason: self._on_connection_lost(state, reason),
            on_idle=lambda: self._on_connection_idle(state, connection),
        )
        try:
            await connection.open()
        except (OSError, websockets.exceptions.WebSocketException) as exc:
            raise TranscriptionError(f"Could not connect to transcription service: {exc}") from exc
        state.connection = connection
        return connection

    async def _await_trailing_turn(
        self, state: _SessionState, turn: asyncio.Future[TurnResult | None]
    ) -> TurnResult | None:
        """Give a turn in flight a short grace period after the input ended."""
        connection = state.connection
        if connection is None or not connection.is_open:
            return None

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._completion_timeout
        silence = silence_frame(SILENCE_KEEPALIVE_INTERVAL, INPUT_SAMPLE_RATE)
        while not turn.done():
            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.debug("[STT] No trailing turn after input ended.")
                return None
            await asyncio.wait({turn}, timeout=min(SILENCE_KEEPALIVE_INTERVAL, remaining))
            if not turn.done():
                await connection.send_audio(silence)
        return turn.result()

    async def _notify(self, callback: Callable[..., Awaitable[None]] | None, *args: Any) -> None:
        if callback is None:
            return
        try:
            await callback(*args)
        except Exception as exc:
            logger.warning("[STT] Transcript callback failed: %s", exc)
