"""Production smoke tests: HTTP routes and one WebSocket session.

The app lifespan (provider clients, Supabase, telemetry) is bypassed; the
WebSocket test installs a stub runtime on ``app.state`` instead.

Run:
    uv run pytest tests/test_production_smoke.py -v
"""

from __future__ import annotations

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient

from tutor_engine.background_worker import TaskSupervisor
from tutor_engine.main import app
from tutor_engine.pipeline.registry import SessionRegistry

_STATE_KEYS = (
    "settings",
    "registry",
    "supervisor",
    "runtime",
    "embedder",
    "memory_store",
    "enrichment_model",
    "connections",
    "shutting_down",
)


class IdleRuntime:
    """Consumes input until it ends and never produces a turn."""

    def __init__(self) -> None:
        self.close_session = AsyncMock()
        self.stop = AsyncMock()

    async def start(self, stream, options):
        async for _ in stream:
            pass
        return
        yield  # pragma: no cover

    async def pronounce(self, text, language_code):
        return
        yield  # pragma: no cover


@pytest.fixture
def app_state():
    registry = SessionRegistry()
    values = {
        "settings": SimpleNamespace(graph_idle_timeout=None),
        "registry": registry,
        "supervisor": TaskSupervisor(),
        "runtime": IdleRuntime(),
        "embedder": MagicMock(configured=False),
        "memory_store": MagicMock(configured=False),
        "enrichment_model": MagicMock(),
        "connections": {},
        "shutting_down": False,
    }
    for key, value in values.items():
        setattr(app.state, key, value)
    yield SimpleNamespace(**values)
    for key in _STATE_KEYS:
        if hasattr(app.state, key):
            delattr(app.state, key)


# ---------------------------------------------------------------------------
# HTTP routes
# ---------------------------------------------------------------------------


class TestHealthEndpoint:
    @pytest.mark.asyncio
    async def test_health_without_lifespan(self):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "sessions": 0}

    @pytest.mark.asyncio
    async def test_health_counts_sessions(self, app_state):
        app_state.registry.create("conn_a")
        app_state.registry.create("conn_b")
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            resp = await client.get("/health")
        assert resp.json() == {"status": "ok", "sessions": 2}


class TestLanguagesEndpoint:
    @pytest.mark.asyncio
    async def test_lists_supported_languages(self):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            resp = await client.get("/api/languages")

        body = resp.json()
        assert body["default"] == "es"
        codes = {language["code"] for language in body["languages"]}
        assert {"es", "fr", "ja"} <= codes
        spanish = next(language for language in body["languages"] if language["code"] == "es")
        assert spanish["name"] == "Spanish"
        assert spanish["teacherName"]


# ---------------------------------------------------------------------------
# WebSocket session
# ---------------------------------------------------------------------------


class TestConversationSocket:
    def test_language_switch_round_trip(self, app_state):
        client = TestClient(app)
        with client.websocket_connect("/ws/conversation?languageCode=fr") as ws:
            ws.send_text("not json")
            ws.send_text(json.dumps({"type": "text_message", "text": "a" * 250}))
            assert ws.receive_json()["code"] == "TEXT_TOO_LONG"

            assert len(app_state.connections) == 1
            session = next(iter(app_state.registry))
            assert session.language_code == "fr"

            ws.send_text(json.dumps({"type": "set_language", "languageCode": "ja"}))
            message = ws.receive_json()
            assert session.language_code == "ja"

        assert message["type"] == "language_changed"
        assert message["languageCode"] == "ja"
        assert message["languageName"] == "Japanese"

    def test_unsupported_query_language_falls_back_to_default(self, app_state):
        client = TestClient(app)
        with client.websocket_connect("/ws/conversation?languageCode=xx") as ws:
            ws.send_text(json.dumps({"type": "set_language", "languageCode": "fr"}))
            message = ws.receive_json()

        # The switch is only announced because the session started in Spanish.
        assert message["type"] == "language_changed"
        assert message["languageCode"] == "fr"
