"""Environment-backed settings for the tutor engine.

``main.py`` calls ``load_dotenv()`` before anything reads settings, so local
``.env`` values flow through ``os.environ`` exactly like deployed secrets.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from .constants import (
    DEFAULT_EMBEDDING_MODEL,
    DEFAULT_EMBEDDING_URL,
    DEFAULT_LLM_MODEL,
    DEFAULT_TTS_MODEL,
    GRAPH_IDLE_TIMEOUT,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TurnDetectionPreset:
    """AssemblyAI end-of-turn tuning (milliseconds for the silence values)."""

    end_of_turn_confidence_threshold: float
    min_end_of_turn_silence_when_confident: int
    max_turn_silence: int


TURN_DETECTION_PRESETS: dict[str, TurnDetectionPreset] = {
    "high": TurnDetectionPreset(0.4, 160, 400),
    "medium": TurnDetectionPreset(0.4, 400, 1280),
    "low": TurnDetectionPreset(0.7, 800, 3600),
}
DEFAULT_EAGERNESS = "medium"


@dataclass(frozen=True)
class Settings:
    assemblyai_api_key: str = ""
    eagerness: str = DEFAULT_EAGERNESS
    anthropic_api_key: str = ""
    llm_model: str = DEFAULT_LLM_MODEL
    enrichment_model: str = DEFAULT_LLM_MODEL
    cartesia_api_key: str = ""
    tts_model: str = DEFAULT_TTS_MODEL
    embedding_api_key: str = ""
    embedding_url: str = DEFAULT_EMBEDDING_URL
    embedding_model: str = DEFAULT_EMBEDDING_MODEL
    supabase_url: str = ""
    supabase_service_role_key: str = ""
    graph_idle_timeout: float = GRAPH_IDLE_TIMEOUT

    @property
    def turn_detection(self) -> TurnDetectionPreset:
        return TURN_DETECTION_PRESETS[self.eagerness]

    @property
    def supabase_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_service_role_key)


def load_settings() -> Settings:
    """Build ``Settings`` from the current environment."""
    eagerness = os.environ.get("ASSEMBLY_AI_EAGERNESS", DEFAULT_EAGERNESS).lower()
    if eagerness not in TURN_DETECTION_PRESETS:
        logger.warning(
            "[Config] Unknown ASSEMBLY_AI_EAGERNESS=%r — using %s.", eagerness, DEFAULT_EAGERNESS
        )
        eagerness = DEFAULT_EAGERNESS

    try:
        idle_timeout = float(os.environ.get("GRAPH_IDLE_TIMEOUT", GRAPH_IDLE_TIMEOUT))
    except ValueError:
        logger.warning("[Config] GRAPH_IDLE_TIMEOUT is not a number — using %.0fs.", GRAPH_IDLE_TIMEOUT)
        idle_timeout = GRAPH_IDLE_TIMEOUT

    llm_model = os.environ.get("LLM_MODEL", DEFAULT_LLM_MODEL)
    return Settings(
        assemblyai_api_key=os.environ.get("ASSEMBLYAI_API_KEY", ""),
        eagerness=eagerness,
        anthropic_api_key=os.environ.get("ANTHROPIC_API_KEY", ""),
        llm_model=llm_model,
        enrichment_model=os.environ.get("ENRICHMENT_MODEL", llm_model),
        cartesia_api_key=os.environ.get("CARTESIA_API_KEY", ""),
        tts_model=os.environ.get("TTS_MODEL", DEFAULT_TTS_MODEL),
        embedding_api_key=os.environ.get("EMBEDDING_API_KEY", ""),
        embedding_url=os.environ.get("EMBEDDING_URL", DEFAULT_EMBEDDING_URL),
        embedding_model=os.environ.get("EMBEDDING_MODEL", DEFAULT_EMBEDDING_MODEL),
        supabase_url=os.environ.get("SUPABASE_URL", ""),
        supabase_service_role_key=os.environ.get("SUPABASE_SERVICE_ROLE_KEY", ""),
        graph_idle_timeout=idle_timeout,
    )
