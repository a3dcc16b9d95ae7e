"""FastAPI app: health check, language list and the conversation WebSocket.

Data flow per connection:
  1. The browser sends base64 PCM16 ``audio_chunk`` frames (or typed text).
  2. The inbound handler pushes them into the coordinator's multiplexer.
  3. The conversation graph streams audio to AssemblyAI and waits for a turn.
  4. Each turn is answered by Claude (token stream) and spoken by Cartesia.
  5. The coordinator forwards transcripts, reply chunks and audio to the
     browser, handles barge-in, and schedules enrichment after the turn.
"""

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from dotenv import load_dotenv
from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect

from .audio.stt import TranscriptionAdapter
from .audio.tts import CartesiaTTS
from .background_worker import TaskSupervisor
from .config import load_settings
from .db import MemoryStore
from .graph.conversation import ConversationGraph
from .graph.models import LazyChatModel, TextEmbedder
from .languages import DEFAULT_LANGUAGE_CODE, SUPPORTED_LANGUAGES, resolve_language_code
from .pipeline.coordinator import TurnCoordinator
from .pipeline.inbound import ConnectionHandler, ConnectionProcessors
from .pipeline.registry import SessionRegistry
from .telemetry import init_telemetry
from .utils import generate_connection_id

load_dotenv()
logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# 1001 "going away": the server is shutting down.
_CLOSE_GOING_AWAY = 1001


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Build the shared services at startup and tear every session down at exit."""
    init_telemetry()
    settings = load_settings()

    registry = SessionRegistry()
    supervisor = TaskSupervisor()
    adapter = TranscriptionAdapter(settings.assemblyai_api_key, preset=settings.turn_detection)
    tts = CartesiaTTS(settings.cartesia_api_key, model_id=settings.tts_model)
    embedder = TextEmbedder(settings.embedding_api_key, settings.embedding_url, settings.embedding_model)
    memory_store = MemoryStore(settings.supabase_url, settings.supabase_service_role_key)
    dialogue_model = LazyChatModel(settings.anthropic_api_key, settings.llm_model)
    enrichment_model = LazyChatModel(settings.anthropic_api_key, settings.enrichment_model, temperature=0.3)

    runtime = ConversationGraph(
        registry=registry,
        adapter=adapter,
        get_model=dialogue_model.get,
        tts=tts,
        embedder=embedder,
        memory_store=memory_store,
        idle_timeout=settings.graph_idle_timeout,
    )

    app.state.settings = settings
    app.state.registry = registry
    app.state.supervisor = supervisor
    app.state.runtime = runtime
    app.state.embedder = embedder
    app.state.memory_store = memory_store
    app.state.enrichment_model = enrichment_model
    app.state.connections = {}
    app.state.shutting_down = False

    if not settings.assemblyai_api_key:
        logger.warning("[Startup] ASSEMBLYAI_API_KEY not set — only typed input will produce turns.")
    if not settings.supabase_configured:
        logger.info("[Startup] Supabase not configured — long-term memory disabled.")
    logger.info("[Startup] Tutor engine ready (eagerness=%s, model=%s).", settings.eagerness, settings.llm_model)

    yield

    await _shutdown(app)


async def _shutdown(app: FastAPI) -> None:
    state = app.state
    state.shutting_down = True
    connections: dict[str, tuple[WebSocket, TurnCoordinator]] = state.connections
    logger.info("[Shutdown] Closing %d connection(s).", len(connections))

    for connection_id, (websocket, _) in list(connections.items()):
        try:
            await websocket.close(code=_CLOSE_GOING_AWAY)
        except Exception as exc:
            logger.debug("[Shutdown] Close of %s failed: %s", connection_id, exc)

    await asyncio.gather(
        *(coordinator.destroy() for _, coordinator in list(connections.values())),
        return_exceptions=True,
    )
    connections.clear()

    state.supervisor.cancel_all()
    state.registry.clear()
    try:
        await state.runtime.stop()
    except Exception as exc:
        logger.warning("[Shutdown] Runtime stop failed: %s", exc)
    logger.info("[Shutdown] Complete.")


app = FastAPI(title="Language Tutor Engine", version="0.1.0", lifespan=lifespan)


@app.get("/health")
async def health(request: Request) -> dict:
    registry = getattr(request.app.state, "registry", None)
    return {"status": "ok", "sessions": len(registry) if registry is not None else 0}


@app.get("/api/languages")
async def languages() -> dict:
    return {
        "languages": [config.to_dict() for config in SUPPORTED_LANGUAGES.values()],
        "default": DEFAULT_LANGUAGE_CODE,
    }


@app.websocket("/ws/conversation")
async def conversation_stream(websocket: WebSocket) -> None:
    await websocket.accept()
    state = websocket.app.state

    connection_id = generate_connection_id()
    language_code = resolve_language_code(websocket.query_params.get("languageCode")) or DEFAULT_LANGUAGE_CODE
    state.registry.create(connection_id, language_code=language_code)

    coordinator = TurnCoordinator(
        connection_id,
        websocket,
        state.runtime,
        state.registry,
        state.supervisor,
        idle_timeout=state.settings.graph_idle_timeout,
    )
    processors = ConnectionProcessors.create(
        state.enrichment_model.get, state.embedder, state.memory_store, language_code
    )
    handler = ConnectionHandler(
        connection_id,
        websocket,
        coordinator,
        processors,
        state.runtime,
        state.registry,
        state.supervisor,
        is_shutting_down=lambda: state.shutting_down,
    )
    state.connections[connection_id] = (websocket, coordinator)
    logger.info("[Session] New connection: %s (language=%s)", connection_id, language_code)

    coordinator.start()
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            if message.get("text") is not None:
                await handler.handle_raw(message["text"])
            else:
                logger.debug("[WS] Binary frame ignored (connection=%s)", connection_id)
    except WebSocketDisconnect:
        pass
    except RuntimeError as exc:
        # Raised by receive() once the socket is already closed.
        logger.debug("[WS] Receive loop ended: %s", exc)
    finally:
        logger.info("[Session] Client disconnected: %s", connection_id)
        state.connections.pop(connection_id, None)
        await coordinator.destroy()
