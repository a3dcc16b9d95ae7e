"""Model clients: the Claude chat model and the memory text embedder."""

from __future__ import annotations

import asyncio
import logging

import httpx
from langchain_anthropic import ChatAnthropic
from langchain_core.messages import BaseMessage

from ..constants import EMBEDDING_DIMENSIONS, LLM_MAX_TOKENS

logger = logging.getLogger(__name__)


def create_chat_model(
    api_key: str,
    model: str,
    *,
    temperature: float = 0.7,
    max_tokens: int = LLM_MAX_TOKENS,
) -> ChatAnthropic:
    """Build a Claude chat model; raises if ANTHROPIC_API_KEY is missing."""
    if not api_key:
        raise RuntimeError("ANTHROPIC_API_KEY is not set. Check .env in the service root.")
    logger.info("[Model] Using %s (temperature=%.1f)", model, temperature)
    return ChatAnthropic(
        model=model,
        temperature=temperature,
        max_tokens=max_tokens,
        api_key=api_key,
    )


class LazyChatModel:
    """Builds the chat model on first use.

    A missing ANTHROPIC_API_KEY then fails the first turn that needs the
    model instead of preventing the server from starting.
    """

    def __init__(self, api_key: str, model: str, **kwargs) -> None:
        self._api_key = api_key
        self._model_name = model
        self._kwargs = kwargs
        self._model: ChatAnthropic | None = None

    def get(self) -> ChatAnthropic:
        if self._model is None:
            self._model = create_chat_model(self._api_key, self._model_name, **self._kwargs)
        return self._model


def message_text(message: BaseMessage) -> str:
    """Flatten a chat message or chunk to text.

    Anthropic content is either a plain string or a list of content blocks.
    """
    content = message.content
    if isinstance(content, str):
        return content
    parts: list[str] = []
    for block in content:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts)


class TextEmbedder:
    """Embeds text through an OpenAI-compatible ``/v1/embeddings`` endpoint.

    Parameters
    ----------
    api_key : str
        Provider key (from EMBEDDING_API_KEY env var).
    url : str
        Full embeddings endpoint URL.
    model : str
        Embedding model name; must produce ``EMBEDDING_DIMENSIONS`` floats.
    """

    def __init__(self, api_key: str, url: str, model: str) -> None:
        self._api_key = api_key
        self._url = url
        self._model = model

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    async def embed(self, text: str, max_retries: int = 2) -> list[float] | None:
        """Return the embedding for *text*, or None when every attempt failed.

        Retries up to ``max_retries`` times on transient failures (network
        errors, 5xx responses) with linear backoff.
        """
        if not self._api_key:
            logger.error("[Embedder] EMBEDDING_API_KEY not set — cannot embed.")
            return None

        headers = {"Authorization": f"Bearer {self._api_key}", "Content-Type": "application/json"}
        payload = {"model": self._model, "input": text}

        last_error: Exception | None = None
        for attempt in range(max_retries + 1):
            try:
                async with httpx.AsyncClient(timeout=30.0) as client:
                    response = await client.post(self._url, headers=headers, json=payload)
                    response.raise_for_status()
                    data = response.json()

                try:
                    embedding = [float(v) for v in data["data"][0]["embedding"]]
                except (KeyError, IndexError, TypeError, ValueError):
                    logger.warning("[Embedder] Malformed embeddings response: %.200s", data)
                    return None
                if len(embedding) != EMBEDDING_DIMENSIONS:
                    logger.warning(
                        "[Embedder] Expected %d dimensions, got %d.", EMBEDDING_DIMENSIONS, len(embedding)
                    )
                    return None
                return embedding

            except httpx.HTTPStatusError as exc:
                last_error = exc
                # Only server errors are worth retrying
                if exc.response.status_code < 500:
                    logger.error("[Embedder] Client error %d: %s", exc.response.status_code, exc)
                    return None
                logger.warning(
                    "[Embedder] Server error %d (attempt %d/%d)",
                    exc.response.status_code,
                    attempt + 1,
                    max_retries + 1,
                )
            except (httpx.ConnectError, httpx.TimeoutException, httpx.ReadError) as exc:
                last_error = exc
                logger.warning("[Embedder] Network error (attempt %d/%d): %s", attempt + 1, max_retries + 1, exc)

            if attempt < max_retries:
                await asyncio.sleep(1.0 * (attempt + 1))

        logger.error("[Embedder] All %d embedding attempts failed: %s", max_retries + 1, last_error)
        return None
