"""Introduction state: the learner's name, level and goal.

Extraction runs after each turn until all three are known.  Values only ever
fill in; an empty answer from the model never erases what is known.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Sequence

from pydantic import BaseModel, field_validator

from ..graph.prompts import INTRODUCTION_PROMPT, render_conversation
from ..languages import DEFAULT_LANGUAGE_CODE, get_language_config
from ..pipeline.session_context import ChatMessage
from ..telemetry import get_tracer
from .parsing import invoke_text, parse_model_output

logger = logging.getLogger(__name__)

_LEVELS = {
    "beginner": "beginner",
    "intermediate": "intermediate",
    "advanced": "advanced",
    "principiante": "beginner",
    "intermedio": "intermediate",
    "avanzado": "advanced",
    "débutant": "beginner",
    "intermédiaire": "intermediate",
    "avancé": "advanced",
}


class IntroductionOutput(BaseModel):
    name: str = ""
    level: str = ""
    goal: str = ""

    @field_validator("name", "goal", mode="before")
    @classmethod
    def _text(cls, value: Any) -> str:
        return value.strip() if isinstance(value, str) else ""

    @field_validator("level", mode="before")
    @classmethod
    def _level(cls, value: Any) -> str:
        if not isinstance(value, str):
            return ""
        return _LEVELS.get(value.strip().lower().rstrip(".!?,;:"), "")


@dataclass
class IntroductionState:
    name: str = ""
    level: str = ""
    goal: str = ""
    timestamp: str = ""

    @property
    def complete(self) -> bool:
        return bool(self.name and self.level and self.goal)

    def to_dict(self) -> dict[str, str]:
        return asdict(self)


class IntroductionStateProcessor:
    def __init__(self, get_model: Callable[[], Any], language_code: str = DEFAULT_LANGUAGE_CODE) -> None:
        self._get_model = get_model
        self._language_code = language_code
        self._state = IntroductionState()

    @property
    def state(self) -> IntroductionState:
        return self._state

    def is_complete(self) -> bool:
        return self._state.complete

    def set_language(self, language_code: str) -> None:
        self._language_code = language_code

    def reset(self) -> None:
        self._state = IntroductionState()

    async def update(self, messages: Sequence[ChatMessage]) -> IntroductionState | None:
        """Extract and merge; None when nothing was (or needed to be) learned."""
        if self.is_complete():
            return None

        language = get_language_config(self._language_code)
        prompt = INTRODUCTION_PROMPT.format_messages(
            target_language=language.name,
            conversation=render_conversation(messages),
            known_name=self._state.name or "(unknown)",
            known_level=self._state.level or "(unknown)",
            known_goal=self._state.goal or "(unknown)",
        )

        with get_tracer().start_as_current_span("enrichment.introduction"):
            try:
                output = await invoke_text(self._get_model, prompt)
            except Exception as exc:
                logger.warning("[Introduction] Extraction failed: %s", exc)
                return None

        parsed = parse_model_output(output, IntroductionOutput, label="Introduction")
        if parsed is None:
            return None

        changed = False
        for field_name in ("name", "level", "goal"):
            value = getattr(parsed, field_name)
            if value and value != getattr(self._state, field_name):
                setattr(self._state, field_name, value)
                changed = True
        if not changed:
            return None

        self._state.timestamp = datetime.now(timezone.utc).isoformat()
        logger.info(
            "[Introduction] name=%r level=%r goal=%r", self._state.name, self._state.level, self._state.goal
        )
        return self._state
