"""Shared helpers for turning model replies into validated structures."""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Sequence, TypeVar

from pydantic import BaseModel, ValidationError

from ..graph.models import message_text

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_decoder = json.JSONDecoder()


def extract_json_object(text: str) -> dict[str, Any] | None:
    """Return the first JSON object embedded in *text*, or None.

    Models often wrap JSON in prose or code fences, so every ``{`` is tried
    as a starting point until one decodes to a dict.
    """
    start = text.find("{")
    while start != -1:
        try:
            value, _ = _decoder.raw_decode(text, start)
        except json.JSONDecodeError:
            start = text.find("{", start + 1)
            continue
        if isinstance(value, dict):
            return value
        start = text.find("{", start + 1)
    return None


def parse_model_output(text: str, model: type[ModelT], *, label: str) -> ModelT | None:
    data = extract_json_object(text)
    if data is None:
        logger.warning("[%s] No JSON object in model output: %.120s", label, text)
        return None
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        logger.warning("[%s] Model output failed validation: %s", label, exc.errors()[:3])
        return None


async def invoke_text(get_model: Callable[[], Any], prompt: Sequence[Any]) -> str:
    """Run one non-streaming completion and return its text."""
    response = await get_model().ainvoke(list(prompt))
    return message_text(response).strip()
