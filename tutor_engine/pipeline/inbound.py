"""Inbound WebSocket message handling for one connection.

Every client frame is a JSON object whose ``type`` selects a handler.  Bad
input is logged and ignored so one malformed frame never ends a session.
The handler also wires the coordinator's enrichment triggers to this
connection's processors and sends their results back to the client.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Sequence

from fastapi import WebSocket

from ..audio.codec import convert_audio_to_base64
from ..background_worker import TaskSupervisor
from ..constants import PRONOUNCE_TEXT_MAX_CHARS, TEXT_MESSAGE_MAX_CHARS, TTS_SAMPLE_RATE
from ..db import MemoryStore
from ..enrichment.feedback import FeedbackProcessor
from ..enrichment.flashcards import FlashcardProcessor
from ..enrichment.introduction import IntroductionStateProcessor
from ..enrichment.memory import MemoryProcessor
from ..errors import ErrorCode, TutorError, send_error
from ..graph.models import TextEmbedder
from ..languages import DEFAULT_LANGUAGE_CODE, get_language_config, resolve_language_code
from ..telemetry import record_flashcard_click
from ..utils import now_ms
from .coordinator import TurnCoordinator
from .outputs import GraphRuntime
from .registry import SessionRegistry
from .session_context import ChatMessage, Session

logger = logging.getLogger(__name__)

Handler = Callable[[dict[str, Any]], Awaitable[None]]


@dataclass
class ConnectionProcessors:
    """The enrichment processors owned by one connection."""

    flashcards: FlashcardProcessor
    feedback: FeedbackProcessor
    memory: MemoryProcessor
    introduction: IntroductionStateProcessor

    @classmethod
    def create(
        cls,
        get_model: Callable[[], Any],
        embedder: TextEmbedder,
        store: MemoryStore,
        language_code: str = DEFAULT_LANGUAGE_CODE,
    ) -> "ConnectionProcessors":
        return cls(
            flashcards=FlashcardProcessor(get_model, language_code),
            feedback=FeedbackProcessor(get_model, language_code),
            memory=MemoryProcessor(get_model, embedder, store, language_code),
            introduction=IntroductionStateProcessor(get_model, language_code),
        )

    def set_language(self, language_code: str) -> None:
        for processor in (self.flashcards, self.feedback, self.memory, self.introduction):
            processor.set_language(language_code)

    def reset(self) -> None:
        for processor in (self.flashcards, self.feedback, self.memory, self.introduction):
            processor.reset()


class ConnectionHandler:
    """Dispatches one connection's inbound messages.

    Parameters
    ----------
    connection_id : str
        Session id of this connection.
    websocket : WebSocket
        Client socket used for direct replies (errors, pronunciation audio).
    coordinator : TurnCoordinator
        Turn coordinator for this connection.
    processors : ConnectionProcessors
        Enrichment processors for this connection.
    runtime : GraphRuntime
        Used for one-shot pronunciation requests.
    is_shutting_down : callable
        Enrichment results are dropped once it returns True.
    """

    def __init__(
        self,
        connection_id: str,
        websocket: WebSocket,
        coordinator: TurnCoordinator,
        processors: ConnectionProcessors,
        runtime: GraphRuntime,
        registry: SessionRegistry,
        supervisor: TaskSupervisor,
        *,
        is_shutting_down: Callable[[], bool] = lambda: False,
    ) -> None:
        self._connection_id = connection_id
        self._websocket = websocket
        self._coordinator = coordinator
        self._processors = processors
        self._runtime = runtime
        self._registry = registry
        self._supervisor = supervisor
        self._is_shutting_down = is_shutting_down

        self._handlers: dict[str, Handler] = {
            "audio_chunk": self._on_audio_chunk,
            "text_message": self._on_text_message,
            "reset_flashcards": self._on_reset_flashcards,
            "conversation_context_reset": self._on_conversation_reset,
            "set_language": self._on_set_language,
            "user_context": self._on_user_context,
            "flashcard_clicked": self._on_flashcard_clicked,
            "tts_pronounce_request": self._on_pronounce_request,
        }

        coordinator.set_flashcard_callback(self._generate_flashcards)
        coordinator.set_feedback_callback(self._generate_feedback)
        coordinator.set_memory_callback(self._maybe_create_memory)
        coordinator.set_introduction_callback(self._update_introduction)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def handle_raw(self, raw: str) -> None:
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("[Inbound] Malformed JSON ignored (connection=%s)", self._connection_id)
            return
        if not isinstance(message, dict):
            logger.warning("[Inbound] Non-object message ignored (connection=%s)", self._connection_id)
            return
        await self.handle(message)

    async def handle(self, message: dict[str, Any]) -> None:
        msg_type = message.get("type")
        handler = self._handlers.get(msg_type) if isinstance(msg_type, str) else None
        if handler is None:
            logger.warning("[Inbound] Unknown message type %r ignored.", msg_type)
            return
        try:
            await handler(message)
        except Exception as exc:
            logger.error("[Inbound] Handling %s failed: %s", msg_type, exc, exc_info=True)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _on_audio_chunk(self, message: dict[str, Any]) -> None:
        audio = message.get("audio_data")
        if not isinstance(audio, str) or not audio:
            logger.warning("[Inbound] audio_chunk without audio_data ignored.")
            return
        self._coordinator.add_audio_chunk(audio)

    async def _on_text_message(self, message: dict[str, Any]) -> None:
        text = message.get("text")
        if not isinstance(text, str) or not text.strip():
            return
        text = text.strip()
        if len(text) > TEXT_MESSAGE_MAX_CHARS:
            logger.warning("[Inbound] text_message of %d chars rejected.", len(text))
            await send_error(
                self._websocket,
                TutorError(
                    message=f"Text message too long (max {TEXT_MESSAGE_MAX_CHARS} chars)",
                    code=ErrorCode.TEXT_TOO_LONG,
                    session_id=self._connection_id,
                ),
            )
            return
        self._coordinator.send_text_message(text)

    async def _on_reset_flashcards(self, message: dict[str, Any]) -> None:
        self._processors.flashcards.reset()
        logger.info("[Inbound] Flashcards reset (connection=%s)", self._connection_id)

    async def _on_conversation_reset(self, message: dict[str, Any]) -> None:
        self._coordinator.reset()
        self._processors.flashcards.reset()

    async def _on_set_language(self, message: dict[str, Any]) -> None:
        requested = message.get("languageCode")
        await self._switch_language(requested if isinstance(requested, str) else None)

    async def _on_user_context(self, message: dict[str, Any]) -> None:
        data = message.get("data") if isinstance(message.get("data"), dict) else message
        session = self._session()
        if session is None:
            return

        timezone = data.get("timezone")
        if isinstance(timezone, str):
            session.timezone = timezone

        user_id = data.get("userId")
        if isinstance(user_id, str) and user_id and user_id != session.user_id:
            self._coordinator.set_user_id(user_id)
            logger.info("[Inbound] User %s attached (connection=%s)", user_id[:8], self._connection_id)

        language_code = data.get("languageCode")
        if isinstance(language_code, str) and language_code:
            await self._switch_language(language_code)

    async def _on_flashcard_clicked(self, message: dict[str, Any]) -> None:
        card = message.get("card")
        if not isinstance(card, dict):
            logger.warning("[Inbound] flashcard_clicked without card ignored.")
            return
        session = self._session()
        record_flashcard_click({
            "connection_id": self._connection_id,
            "card_id": str(card.get("id", "")),
            "target_word": str(card.get("targetWord") or card.get("spanish") or ""),
            "english": str(card.get("english", "")),
            "source": str(message.get("source", "")),
            "timezone": session.timezone if session else "",
            "language_code": session.language_code if session else "",
        })

    async def _on_pronounce_request(self, message: dict[str, Any]) -> None:
        text = message.get("text")
        text = text.strip() if isinstance(text, str) else ""
        if not text:
            await self._send({"type": "tts_pronounce_error", "error": "Empty text"})
            return
        if len(text) > PRONOUNCE_TEXT_MAX_CHARS:
            await self._send({"type": "tts_pronounce_error", "error": "Text too long"})
            return

        session = self._session()
        requested = message.get("languageCode")
        language_code = (
            requested
            if isinstance(requested, str) and requested
            else (session.language_code if session else DEFAULT_LANGUAGE_CODE)
        )
        self._supervisor.submit(f"pronounce-{self._connection_id}", self._pronounce(text, language_code))

    # ------------------------------------------------------------------
    # Language switching and pronunciation
    # ------------------------------------------------------------------

    async def _switch_language(self, requested: str | None) -> None:
        language_code = resolve_language_code(requested)
        if language_code is None:
            logger.warning("[Inbound] Unsupported language %r ignored.", requested)
            return

        session = self._session()
        if session is None or session.language_code == language_code:
            return

        self._processors.set_language(language_code)
        self._coordinator.set_language(language_code)
        self._coordinator.reset()
        self._processors.reset()

        language = get_language_config(language_code)
        logger.info("[Inbound] Language switched to %s (connection=%s)", language.name, self._connection_id)
        await self._send({
            "type": "language_changed",
            "languageCode": language.code,
            "languageName": language.name,
            "teacherName": language.teacher.name,
        })

    async def _pronounce(self, text: str, language_code: str) -> None:
        try:
            async for chunk in self._runtime.pronounce(text, language_code):
                encoded = convert_audio_to_base64(chunk.audio)
                if encoded is None:
                    continue
                audio_b64, audio_format = encoded
                await self._send({
                    "type": "tts_pronounce_audio",
                    "audio": audio_b64,
                    "audioFormat": audio_format,
                    "sampleRate": chunk.sample_rate or TTS_SAMPLE_RATE,
                })
        except Exception as exc:
            logger.warning("[Inbound] Pronunciation failed for %.40r: %s", text, exc)
            await self._send({"type": "tts_pronounce_error", "error": "TTS failed"})
            return
        await self._send({"type": "tts_pronounce_complete"})

    # ------------------------------------------------------------------
    # Enrichment callbacks (run by the task supervisor)
    # ------------------------------------------------------------------

    async def _generate_flashcards(self, messages: Sequence[ChatMessage]) -> None:
        if self._is_shutting_down():
            return
        flashcards = await self._processors.flashcards.generate_flashcards(messages)
        if flashcards and not self._is_shutting_down():
            await self._send({"type": "flashcards_generated", "flashcards": flashcards})

    async def _generate_feedback(self, messages: Sequence[ChatMessage], last_user_text: str) -> None:
        if self._is_shutting_down():
            return
        feedback = await self._processors.feedback.generate_feedback(messages, last_user_text)
        if feedback and not self._is_shutting_down():
            await self._send({
                "type": "feedback_generated",
                "messageContent": last_user_text,
                "feedback": feedback,
            })

    async def _maybe_create_memory(self, messages: Sequence[ChatMessage]) -> None:
        if self._is_shutting_down():
            return
        memory = self._processors.memory
        memory.increment_turn()
        session = self._session()
        user_id = session.user_id if session else ""
        if user_id and memory.should_create_memory():
            memory.create_memory_async(self._supervisor, user_id, messages)

    async def _update_introduction(self, messages: Sequence[ChatMessage]) -> None:
        if self._is_shutting_down() or self._processors.introduction.is_complete():
            return
        state = await self._processors.introduction.update(messages)
        if state is not None and not self._is_shutting_down():
            await self._send({"type": "introduction_state_updated", "introduction_state": state.to_dict()})

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _session(self) -> Session | None:
        return self._registry.get(self._connection_id)

    async def _send(self, message: dict[str, Any]) -> None:
        message.setdefault("timestamp", now_ms())
        try:
            await self._websocket.send_json(message)
        except Exception as exc:
            logger.debug("[Inbound] Send of %s failed: %s", message.get("type"), exc)
