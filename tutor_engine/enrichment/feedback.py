"""One-sentence feedback on the learner's latest utterance."""

from __future__ import annotations

import logging
from typing import Any, Callable, Sequence

from ..graph.prompts import FEEDBACK_PROMPT, render_conversation
from ..languages import DEFAULT_LANGUAGE_CODE, get_language_config
from ..pipeline.session_context import ChatMessage
from ..telemetry import get_tracer
from .parsing import invoke_text

logger = logging.getLogger(__name__)


class FeedbackProcessor:
    def __init__(self, get_model: Callable[[], Any], language_code: str = DEFAULT_LANGUAGE_CODE) -> None:
        self._get_model = get_model
        self._language_code = language_code

    @property
    def language_code(self) -> str:
        return self._language_code

    def set_language(self, language_code: str) -> None:
        self._language_code = language_code

    def reset(self) -> None:
        """Feedback is stateless per call."""

    async def generate_feedback(self, messages: Sequence[ChatMessage], current_transcript: str) -> str:
        """Return one English sentence, or ``""`` on any failure."""
        if not current_transcript.strip():
            return ""

        # The tutor's reply to this utterance is not part of what is judged.
        context = list(messages)
        if context and context[-1].role == "assistant":
            context = context[:-1]

        language = get_language_config(self._language_code)
        prompt = FEEDBACK_PROMPT.format_messages(
            target_language=language.name,
            conversation=render_conversation(context),
            current_transcript=current_transcript,
        )

        with get_tracer().start_as_current_span("enrichment.feedback"):
            try:
                feedback = await invoke_text(self._get_model, prompt)
            except Exception as exc:
                logger.warning("[Feedback] Generation failed: %s", exc)
                return ""

        feedback = feedback.strip().strip('"').strip()
        if feedback:
            logger.debug("[Feedback] %s", feedback)
        return feedback
