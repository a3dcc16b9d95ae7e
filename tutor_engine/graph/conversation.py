"""ConversationGraph: the default graph runtime.

One execution per coordinator run:

  multiplexer stream ─► turn listener (STT adapter) ─► turn queue
        ─► reconcile history ─► TurnComplete
        ─► memory retrieval ─► dialogue prompt ─► ContentStream (Claude)
        ─► commit reply ─► TTSOutputStream (Cartesia)

The listener runs as its own task so speech for the next turn is picked up
(and barge-in detected) while the current reply is still streaming.  The
execution ends when the input stream is exhausted or no turn arrives within
the idle timeout; the coordinator decides whether to restart it.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Callable

from langchain_core.messages import BaseMessage

from ..audio.stt import TranscriptionAdapter, TranscriptionError, TranscriptionTimeout, TurnResult
from ..audio.tts import CartesiaTTS, TTSError
from ..constants import CONVERSATION_HISTORY_LIMIT, GRAPH_IDLE_TIMEOUT
from ..db import MemoryMatch, MemoryStore
from ..errors import ErrorCode
from ..languages import get_language_config
from ..pipeline.history import commit_assistant_reply, reconcile_turn
from ..pipeline.multiplexer import MultimodalContent
from ..pipeline.outputs import (
    MULTIMODAL_CONTENT,
    ContentChunk,
    ContentStream,
    ExecutionOptions,
    GraphError,
    GraphOutput,
    TTSChunk,
    TTSOutputStream,
    TurnComplete,
    TypedStream,
)
from ..pipeline.registry import SessionRegistry
from ..pipeline.session_context import Session
from .models import TextEmbedder, message_text
from .prompts import build_dialogue_messages

logger = logging.getLogger(__name__)

_TurnItem = TurnResult | Exception | None


class _ReplyBuffer:
    """Collects the streamed reply so the runtime can commit it afterwards."""

    def __init__(self) -> None:
        self.parts: list[str] = []
        self.error: Exception | None = None

    @property
    def text(self) -> str:
        return "".join(self.parts).strip()


async def _no_audio() -> AsyncIterator[TTSChunk]:
    return
    yield  # pragma: no cover


class ConversationGraph:
    """Speech-to-speech tutor pipeline implementing ``GraphRuntime``.

    Parameters
    ----------
    registry : SessionRegistry
        Session lookup by ``ExecutionOptions.session_id``.
    adapter : TranscriptionAdapter
        Per-session streaming STT.
    get_model : callable
        Returns the dialogue chat model (built lazily).
    tts : CartesiaTTS
        Speech synthesis for replies and one-shot pronunciation.
    embedder, memory_store : optional
        Long-term memory retrieval; skipped when either is unconfigured.
    """

    def __init__(
        self,
        *,
        registry: SessionRegistry,
        adapter: TranscriptionAdapter,
        get_model: Callable[[], Any],
        tts: CartesiaTTS,
        embedder: TextEmbedder | None = None,
        memory_store: MemoryStore | None = None,
        idle_timeout: float = GRAPH_IDLE_TIMEOUT,
        history_limit: int = CONVERSATION_HISTORY_LIMIT,
    ) -> None:
        self._registry = registry
        self._adapter = adapter
        self._get_model = get_model
        self._tts = tts
        self._embedder = embedder
        self._memory_store = memory_store
        self._idle_timeout = idle_timeout
        self._history_limit = history_limit
        self._stopped = False

    # ------------------------------------------------------------------
    # GraphRuntime
    # ------------------------------------------------------------------

    async def start(
        self, stream: TypedStream[MultimodalContent], options: ExecutionOptions
    ) -> AsyncIterator[GraphOutput]:
        if stream.element_type != MULTIMODAL_CONTENT:
            raise TypeError(f"Unsupported input stream type: {stream.element_type}")

        session = self._registry.get(options.session_id)
        if session is None:
            yield GraphError(
                f"Session {options.session_id} not found.", code=ErrorCode.SESSION_NOT_FOUND.value
            )
            return

        idle_timeout = options.idle_timeout or self._idle_timeout
        turns: asyncio.Queue[_TurnItem] = asyncio.Queue()
        listener = asyncio.create_task(
            self._listen(session, stream.__aiter__(), turns), name=f"listener-{session.session_id}"
        )
        logger.info("[Graph] Execution started (session=%s, idle_timeout=%.0fs)", session.session_id, idle_timeout)

        try:
            while not self._stopped:
                try:
                    item = await asyncio.wait_for(turns.get(), timeout=idle_timeout)
                except asyncio.TimeoutError:
                    logger.info("[Graph] No turn for %.0fs — ending execution (session=%s)", idle_timeout, session.session_id)
                    return
                if item is None:
                    logger.info("[Graph] Input stream exhausted (session=%s)", session.session_id)
                    return
                if isinstance(item, Exception):
                    yield GraphError(str(item))
                    return
                turn_outputs = self._run_turn(session, item)
                try:
                    async for output in turn_outputs:
                        yield output
                finally:
                    await turn_outputs.aclose()
        finally:
            listener.cancel()
            self._adapter.release_stream(session.session_id)

    async def close_session(self, session_id: str) -> None:
        await self._adapter.close_session(session_id)

    async def pronounce(self, text: str, language_code: str) -> AsyncIterator[TTSChunk]:
        """One-shot synthesis outside any session; ``TTSError`` propagates."""
        language = get_language_config(language_code)
        async for audio in self._tts.synthesize_stream(
            text, voice_id=language.voice_id, language=language.code, speed=language.speaking_rate
        ):
            yield TTSChunk(audio=audio, text=text, sample_rate=self._tts.sample_rate)

    async def stop(self) -> None:
        self._stopped = True
        await self._adapter.close_all()
        logger.info("[Graph] Runtime stopped.")

    # ------------------------------------------------------------------
    # Turn listener
    # ------------------------------------------------------------------

    async def _listen(
        self,
        session: Session,
        source: AsyncIterator[MultimodalContent],
        turns: asyncio.Queue[_TurnItem],
    ) -> None:
        try:
            while True:
                try:
                    result = await self._adapter.transcribe_turn(session, source)
                except TranscriptionTimeout as exc:
                    logger.info("[Graph] %s Listening again.", exc)
                    continue
                turns.put_nowait(result)
                if result is None:
                    return
        except TranscriptionError as exc:
            logger.warning("[Graph] Transcription failed (session=%s): %s", session.session_id, exc)
            turns.put_nowait(exc)
        except Exception as exc:
            logger.error("[Graph] Turn listener crashed: %s", exc, exc_info=True)
            turns.put_nowait(exc)

    # ------------------------------------------------------------------
    # One turn
    # ------------------------------------------------------------------

    async def _run_turn(self, session: Session, turn: TurnResult) -> AsyncIterator[GraphOutput]:
        interruptions_at_start = session.interruptions
        resets_at_start = session.resets
        text = reconcile_turn(session, turn.text)
        yield TurnComplete(text=text, interaction_id=turn.interaction_id)

        language = get_language_config(session.language_code)
        memories = await self._retrieve_memories(session, text)
        # The user message just reconciled is the prompt's current input.
        history = session.recent_messages(self._history_limit + 1)[:-1]
        prompt = build_dialogue_messages(language, history, text, memories)

        reply = _ReplyBuffer()
        chunks = self._stream_reply(prompt, reply)
        try:
            yield ContentStream(chunks)
        finally:
            await chunks.aclose()

        if reply.error is not None:
            yield GraphError(
                "Sorry, I couldn't come up with a reply. Please try again.",
                code=ErrorCode.GRAPH_FAILED.value,
            )
            return

        if session.interruptions != interruptions_at_start or session.is_processing_interrupted:
            logger.info("[Graph] Turn %s interrupted — reply not committed.", turn.interaction_id)
            yield TTSOutputStream(_no_audio())
            return

        if session.resets != resets_at_start:
            logger.info("[Graph] Conversation reset during turn %s — reply discarded.", turn.interaction_id)
            yield TTSOutputStream(_no_audio())
            return

        commit_assistant_reply(session, reply.text)
        audio = self._synthesize(session, reply.text)
        try:
            yield TTSOutputStream(audio)
        finally:
            await audio.aclose()

    async def _stream_reply(
        self, prompt: list[BaseMessage], reply: _ReplyBuffer
    ) -> AsyncIterator[ContentChunk]:
        try:
            async for chunk in self._get_model().astream(prompt):
                text = message_text(chunk)
                if not text:
                    continue
                reply.parts.append(text)
                yield ContentChunk(text)
        except Exception as exc:
            reply.error = exc
            logger.error("[Graph] LLM stream failed: %s", exc, exc_info=True)

    async def _synthesize(self, session: Session, text: str) -> AsyncIterator[TTSChunk]:
        if not text:
            return
        language = get_language_config(session.language_code)
        try:
            async for audio in self._tts.synthesize_stream(
                text, voice_id=session.voice_id, language=language.code, speed=language.speaking_rate
            ):
                yield TTSChunk(audio=audio, text=text, sample_rate=self._tts.sample_rate)
        except TTSError as exc:
            logger.error("[Graph] TTS failed (session=%s): %s", session.session_id, exc)

    async def _retrieve_memories(self, session: Session, text: str) -> list[MemoryMatch]:
        if not session.user_id or self._embedder is None or self._memory_store is None:
            return []
        if not (self._embedder.configured and self._memory_store.configured):
            return []
        try:
            embedding = await self._embedder.embed(text)
            if not embedding:
                return []
            memories = await self._memory_store.retrieve_memories(session.user_id, embedding)
        except Exception as exc:
            logger.warning("[Graph] Memory retrieval failed: %s", exc)
            return []
        if memories:
            logger.info("[Graph] %d relevant memories for this turn.", len(memories))
        return memories
