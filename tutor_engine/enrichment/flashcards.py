"""Flashcard generation from the running conversation."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Sequence

from pydantic import AliasChoices, BaseModel, Field, field_validator

from ..graph.prompts import FLASHCARD_PROMPT, render_conversation
from ..languages import DEFAULT_LANGUAGE_CODE, get_language_config
from ..pipeline.session_context import ChatMessage
from ..telemetry import get_tracer
from ..utils import generate_message_id
from .parsing import invoke_text, parse_model_output

logger = logging.getLogger(__name__)


class FlashcardOutput(BaseModel):
    # ``spanish`` is the key older prompts asked for.
    target_word: str = Field(validation_alias=AliasChoices("targetWord", "target_word", "spanish"))
    english: str
    example: str = ""
    mnemonic: str = ""

    @field_validator("target_word", "english", "example", "mnemonic", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> str:
        return value.strip() if isinstance(value, str) else ""

    @field_validator("target_word", "english")
    @classmethod
    def _required(cls, value: str) -> str:
        if not value:
            raise ValueError("must not be empty")
        return value


class FlashcardProcessor:
    """Generates one new flashcard per completed turn, skipping known words."""

    def __init__(self, get_model: Callable[[], Any], language_code: str = DEFAULT_LANGUAGE_CODE) -> None:
        self._get_model = get_model
        self._language_code = language_code
        self._existing: list[dict[str, Any]] = []

    @property
    def language_code(self) -> str:
        return self._language_code

    @property
    def existing_flashcards(self) -> list[dict[str, Any]]:
        return list(self._existing)

    def set_language(self, language_code: str) -> None:
        self._language_code = language_code

    def reset(self) -> None:
        self._existing = []

    async def generate_flashcards(self, messages: Sequence[ChatMessage]) -> list[dict[str, Any]]:
        """Return zero or one new flashcards; never raises."""
        language = get_language_config(self._language_code)
        prompt = FLASHCARD_PROMPT.format_messages(
            teacher_name=language.teacher.name,
            target_language=language.name,
            conversation=render_conversation(messages),
            existing_words="\n".join(f"- Word: {card['targetWord']}" for card in self._existing) or "(none yet)",
        )

        with get_tracer().start_as_current_span("enrichment.flashcards"):
            try:
                output = await invoke_text(self._get_model, prompt)
            except Exception as exc:
                logger.warning("[Flashcards] Generation failed: %s", exc)
                return []

        parsed = parse_model_output(output, FlashcardOutput, label="Flashcards")
        if parsed is None:
            return []

        word = parsed.target_word.lower()
        if any(card["targetWord"].lower() == word for card in self._existing):
            logger.info("[Flashcards] Duplicate flashcard skipped: %s", parsed.target_word)
            return []

        card = {
            "id": generate_message_id(),
            "targetWord": parsed.target_word,
            "english": parsed.english,
            "example": parsed.example,
            "mnemonic": parsed.mnemonic,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        self._existing.append(card)
        logger.info("[Flashcards] New flashcard: %s → %s", card["targetWord"], card["english"])
        return [card]
