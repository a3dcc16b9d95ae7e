"""Cartesia Sonic TTS client streaming float32 PCM for the browser player."""

from __future__ import annotations

import base64
import json
import logging
import uuid
from typing import AsyncGenerator

import websockets

from ..constants import DEFAULT_TTS_MODEL, TTS_SAMPLE_RATE

logger = logging.getLogger(__name__)


class TTSError(RuntimeError):
    """Cartesia refused the connection or reported a synthesis error."""


class CartesiaTTS:
    """Streams text to Cartesia Sonic and yields raw float32 audio chunks.

    Parameters
    ----------
    api_key : str
        Cartesia API key (from CARTESIA_API_KEY env var).
    model_id : str
        Sonic model; ``sonic-2`` covers every supported language.
    sample_rate : int
        Output PCM sample rate (default 22.05 kHz, matching the web player).
    """

    WS_URL = "wss://api.cartesia.ai/tts/websocket"
    API_VERSION = "2024-11-13"

    def __init__(
        self,
        api_key: str,
        *,
        model_id: str = DEFAULT_TTS_MODEL,
        sample_rate: int = TTS_SAMPLE_RATE,
    ) -> None:
        self._api_key = api_key
        self._model_id = model_id
        self._sample_rate = sample_rate

    @property
    def sample_rate(self) -> int:
        return self._sample_rate

    async def synthesize_stream(
        self,
        text: str,
        *,
        voice_id: str,
        language: str,
        speed: float | None = None,
    ) -> AsyncGenerator[bytes, None]:
        """Synthesize *text* and yield float32 LE audio chunks as they arrive.

        Raises ``TTSError`` when Cartesia rejects the request.
        """
        if not self._api_key:
            logger.error("[TTS] CARTESIA_API_KEY is empty — cannot synthesize audio.")
            return
        if not text.strip():
            return

        context_id = str(uuid.uuid4())
        request: dict = {
            "model_id": self._model_id,
            "transcript": text,
            "voice": {"mode": "id", "id": voice_id},
            "language": language,
            "output_format": {
                "container": "raw",
                "encoding": "pcm_f32le",
                "sample_rate": self._sample_rate,
            },
            "context_id": context_id,
            "continue": False,
        }
        if speed is not None and speed != 1.0:
            request["voice"]["__experimental_controls"] = {"speed": speed}

        headers = {"X-API-Key": self._api_key, "Cartesia-Version": self.API_VERSION}
        try:
            async with websockets.connect(self.WS_URL, additional_headers=headers) as ws:
                await ws.send(json.dumps(request))
                logger.info("[TTS] Synthesizing (%s): %.80s", language, text)

                async for raw in ws:
                    if isinstance(raw, bytes):
                        yield raw
                        continue

                    try:
                        msg = json.loads(raw)
                    except json.JSONDecodeError:
                        continue

                    msg_type = msg.get("type", "")
                    if msg_type == "done":
                        logger.debug("[TTS] Stream complete for context %s", context_id)
                        break
                    if msg_type == "error":
                        raise TTSError(f"Cartesia error: {msg.get('error') or msg}")
                    if msg.get("data"):
                        yield base64.b64decode(msg["data"])

        except websockets.exceptions.InvalidStatus as exc:
            raise TTSError(
                f"Cartesia rejected connection (status {exc.response.status_code}) — check CARTESIA_API_KEY."
            ) from exc
        except (OSError, websockets.exceptions.WebSocketException) as exc:
            raise TTSError(f"Cartesia WebSocket error: {exc}") from exc
