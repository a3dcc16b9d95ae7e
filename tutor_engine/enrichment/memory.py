"""Long-term memory extraction.

Every ``MEMORY_TURN_INTERVAL`` completed turns the recent conversation is
summarised into one memory candidate, embedded and written to Supabase.
Each stage is best-effort: a failure abandons that memory with a warning and
never reaches the conversation.
"""

from __future__ import annotations

import enum
import logging
from typing import Any, Callable, Sequence

from pydantic import BaseModel, field_validator

from ..background_worker import TaskSupervisor
from ..constants import MEMORY_CONTEXT_MESSAGES, MEMORY_DEFAULT_IMPORTANCE, MEMORY_MAX_TOPICS, MEMORY_TURN_INTERVAL
from ..db import MemoryRecord, MemoryStore
from ..graph.models import TextEmbedder
from ..graph.prompts import MEMORY_PROMPT, render_conversation
from ..languages import DEFAULT_LANGUAGE_CODE, get_language_config
from ..pipeline.session_context import ChatMessage
from ..telemetry import get_tracer
from .parsing import invoke_text, parse_model_output

logger = logging.getLogger(__name__)


class MemoryType(str, enum.Enum):
    LEARNING_PROGRESS = "learning_progress"
    PERSONAL_CONTEXT = "personal_context"


class MemoryOutput(BaseModel):
    memory: str
    type: MemoryType = MemoryType.PERSONAL_CONTEXT
    topics: list[str] = []
    importance: float = MEMORY_DEFAULT_IMPORTANCE

    @field_validator("memory", mode="before")
    @classmethod
    def _memory_text(cls, value: Any) -> str:
        if not isinstance(value, str) or not value.strip():
            raise ValueError("memory must be a non-empty string")
        return value.strip()

    @field_validator("type", mode="before")
    @classmethod
    def _known_type(cls, value: Any) -> MemoryType:
        try:
            return MemoryType(value)
        except ValueError:
            return MemoryType.PERSONAL_CONTEXT

    @field_validator("topics", mode="before")
    @classmethod
    def _string_topics(cls, value: Any) -> list[str]:
        if not isinstance(value, list):
            return []
        topics = [t.strip() for t in value if isinstance(t, str) and t.strip()]
        return topics[:MEMORY_MAX_TOPICS]

    @field_validator("importance", mode="before")
    @classmethod
    def _clamped_importance(cls, value: Any) -> float:
        if isinstance(value, bool):
            return MEMORY_DEFAULT_IMPORTANCE
        try:
            importance = float(value)
        except (TypeError, ValueError):
            return MEMORY_DEFAULT_IMPORTANCE
        return min(1.0, max(0.0, importance))


class MemoryProcessor:
    """Counts turns and turns every Nth one into a stored memory."""

    def __init__(
        self,
        get_model: Callable[[], Any],
        embedder: TextEmbedder,
        store: MemoryStore,
        language_code: str = DEFAULT_LANGUAGE_CODE,
        *,
        turn_interval: int = MEMORY_TURN_INTERVAL,
    ) -> None:
        self._get_model = get_model
        self._embedder = embedder
        self._store = store
        self._language_code = language_code
        self._turn_interval = turn_interval
        self._turn_count = 0

    @property
    def turn_count(self) -> int:
        return self._turn_count

    @property
    def language_code(self) -> str:
        return self._language_code

    def set_language(self, language_code: str) -> None:
        self._language_code = language_code

    def reset(self) -> None:
        self._turn_count = 0

    def increment_turn(self) -> None:
        self._turn_count += 1

    def should_create_memory(self) -> bool:
        return self._turn_count > 0 and self._turn_count % self._turn_interval == 0

    def create_memory_async(
        self, supervisor: TaskSupervisor, user_id: str, messages: Sequence[ChatMessage]
    ) -> str:
        """Schedule ``create_memory`` in the background and return the job id."""
        return supervisor.submit("memory", self.create_memory(user_id, list(messages)))

    async def create_memory(self, user_id: str, messages: Sequence[ChatMessage]) -> str | None:
        """Generate, embed and store one memory; returns its id or None."""
        if not user_id:
            return None
        if not self._store.configured:
            logger.debug("[Memory] Supabase not configured — memory creation skipped.")
            return None

        language = get_language_config(self._language_code)
        prompt = MEMORY_PROMPT.format_messages(
            target_language=language.name,
            conversation=render_conversation(list(messages)[-MEMORY_CONTEXT_MESSAGES:]),
        )

        with get_tracer().start_as_current_span("enrichment.memory"):
            try:
                output = await invoke_text(self._get_model, prompt)
            except Exception as exc:
                logger.warning("[Memory] Generation failed: %s", exc)
                return None

        parsed = parse_model_output(output, MemoryOutput, label="Memory")
        if parsed is None:
            logger.debug("[Memory] Nothing worth remembering this time.")
            return None

        embedding = await self._embedder.embed(parsed.memory)
        if not embedding:
            logger.warning("[Memory] Embedding failed — memory dropped.")
            return None

        record = MemoryRecord(
            user_id=user_id,
            content=parsed.memory,
            memory_type=parsed.type.value,
            topics=parsed.topics,
            importance=parsed.importance,
            embedding=embedding,
        )
        with get_tracer().start_as_current_span("memory.persist"):
            return await self._store.store_memory(record)
