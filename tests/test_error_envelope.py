"""Tests for the TutorError envelope and send_error utility.

Run:
    uv run pytest tests/test_error_envelope.py -v
"""

from unittest.mock import AsyncMock

import pytest

from tutor_engine.errors import ErrorCode, TutorError, is_benign_error, send_error


class TestTutorErrorSerialization:
    """TutorError.to_dict() produces the expected JSON shape."""

    def test_basic_serialization(self):
        err = TutorError(
            message="Text message too long (max 200 chars)",
            code=ErrorCode.TEXT_TOO_LONG,
            session_id="conn_abc",
            timestamp=1234,
        )
        assert err.to_dict() == {
            "type": "error",
            "message": "Text message too long (max 200 chars)",
            "code": "TEXT_TOO_LONG",
            "recoverable": True,
            "timestamp": 1234,
        }

    def test_code_is_optional(self):
        d = TutorError(message="boom").to_dict()
        assert "code" not in d
        assert isinstance(d["timestamp"], int)

    def test_plain_string_code(self):
        assert TutorError(message="x", code="CUSTOM").to_dict()["code"] == "CUSTOM"

    def test_non_recoverable_error(self):
        err = TutorError(
            message="Connection lost. Please refresh the page to continue the conversation.",
            code=ErrorCode.GRAPH_RESTART_FAILED,
            recoverable=False,
        )
        assert err.to_dict()["recoverable"] is False


class TestBenignErrors:
    def test_allow_list_matches_case_insensitively(self):
        assert is_benign_error("Recognition produced no text")
        assert is_benign_error("stt: no speech recognized in 2s")

    def test_other_messages_are_not_benign(self):
        assert not is_benign_error("LLM timeout")
        assert not is_benign_error("")
        assert not is_benign_error(None)


class TestSendError:
    @pytest.mark.asyncio
    async def test_sends_json(self):
        ws = AsyncMock()
        await send_error(ws, TutorError(message="nope", code=ErrorCode.GRAPH_FAILED))
        ws.send_json.assert_awaited_once()
        payload = ws.send_json.call_args[0][0]
        assert payload["type"] == "error"
        assert payload["code"] == "GRAPH_FAILED"

    @pytest.mark.asyncio
    async def test_closed_socket_does_not_raise(self):
        ws = AsyncMock()
        ws.send_json.side_effect = RuntimeError("socket closed")
        await send_error(ws, TutorError(message="nope"))
        ws.send_json.assert_awaited_once()
