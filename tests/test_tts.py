"""Tests for the Cartesia TTS client.

``websockets.connect`` is patched with an async context manager yielding a
fake socket, so request building and frame handling run without network.

Run:
    uv run pytest tests/test_tts.py -v
"""

from __future__ import annotations

import base64
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from tutor_engine.audio.tts import CartesiaTTS, TTSError


class FakeTTSSocket:
    def __init__(self, *frames) -> None:
        self.frames = list(frames)
        self.send = AsyncMock()

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self.frames:
            raise StopAsyncIteration
        return self.frames.pop(0)


def _connect(socket):
    context = MagicMock()
    context.__aenter__ = AsyncMock(return_value=socket)
    context.__aexit__ = AsyncMock(return_value=False)
    return MagicMock(return_value=context)


async def _collect(tts, text="Hola", **kwargs):
    kwargs.setdefault("voice_id", "voice-es")
    kwargs.setdefault("language", "es")
    return [chunk async for chunk in tts.synthesize_stream(text, **kwargs)]


class TestSynthesizeStream:
    @pytest.mark.asyncio
    async def test_binary_and_base64_chunks_until_done(self):
        socket = FakeTTSSocket(
            b"\x00\x00\x80\x3f",
            json.dumps({"type": "chunk", "data": base64.b64encode(b"\x00\x00\x00\x00").decode()}),
            json.dumps({"type": "done"}),
            b"never-read",
        )
        connect = _connect(socket)
        tts = CartesiaTTS("cartesia-key", model_id="sonic-2")

        with patch("tutor_engine.audio.tts.websockets.connect", new=connect):
            chunks = await _collect(tts)

        assert chunks == [b"\x00\x00\x80\x3f", b"\x00\x00\x00\x00"]
        assert connect.call_args.args[0] == CartesiaTTS.WS_URL
        assert connect.call_args.kwargs["additional_headers"]["X-API-Key"] == "cartesia-key"

        request = json.loads(socket.send.await_args.args[0])
        assert request["model_id"] == "sonic-2"
        assert request["transcript"] == "Hola"
        assert request["voice"] == {"mode": "id", "id": "voice-es"}
        assert request["language"] == "es"
        assert request["output_format"]["encoding"] == "pcm_f32le"
        assert request["output_format"]["sample_rate"] == 22_050

    @pytest.mark.asyncio
    async def test_speed_control_is_sent_when_not_default(self):
        socket = FakeTTSSocket(json.dumps({"type": "done"}))
        with patch("tutor_engine.audio.tts.websockets.connect", new=_connect(socket)):
            await _collect(CartesiaTTS("key"), speed=0.8)

        request = json.loads(socket.send.await_args.args[0])
        assert request["voice"]["__experimental_controls"] == {"speed": 0.8}

    @pytest.mark.asyncio
    async def test_error_frame_raises(self):
        socket = FakeTTSSocket(json.dumps({"type": "error", "error": "invalid voice"}))
        with patch("tutor_engine.audio.tts.websockets.connect", new=_connect(socket)):
            with pytest.raises(TTSError, match="invalid voice"):
                await _collect(CartesiaTTS("key"))

    @pytest.mark.asyncio
    async def test_malformed_text_frames_are_skipped(self):
        socket = FakeTTSSocket("not json", json.dumps({"type": "timestamps"}), b"\x01\x02\x03\x04")
        with patch("tutor_engine.audio.tts.websockets.connect", new=_connect(socket)):
            assert await _collect(CartesiaTTS("key")) == [b"\x01\x02\x03\x04"]

    @pytest.mark.asyncio
    async def test_connection_failure_raises_tts_error(self):
        connect = MagicMock(side_effect=OSError("unreachable"))
        with patch("tutor_engine.audio.tts.websockets.connect", new=connect):
            with pytest.raises(TTSError, match="WebSocket error"):
                await _collect(CartesiaTTS("key"))

    @pytest.mark.asyncio
    async def test_missing_key_or_blank_text_yields_nothing(self):
        connect = MagicMock()
        with patch("tutor_engine.audio.tts.websockets.connect", new=connect):
            assert await _collect(CartesiaTTS("")) == []
            assert await _collect(CartesiaTTS("key"), text="   ") == []
        connect.assert_not_called()
