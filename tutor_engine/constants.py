"""Centralized constants for the tutor engine.

All magic numbers and timeout values should be defined here for easy maintenance.
Durations are in seconds.
"""

# Audio
INPUT_SAMPLE_RATE: int = 16_000  # Browser microphone PCM16 mono
TTS_SAMPLE_RATE: int = 22_050  # Synthesized float32 output
PCM16_MAX: float = 32768.0

# Multiplexer
MULTIPLEXER_MAX_BUFFERED: int = 2_000  # ~8 min of 256ms browser frames

# Graph auto-restart
GRAPH_MAX_RESTART_ATTEMPTS: int = 3
GRAPH_RESTART_COOLDOWN: float = 5.0
GRAPH_RESTART_RESET_AFTER: float = 30.0  # Stable period that clears the attempt counter
GRAPH_IDLE_TIMEOUT: float = 300.0

# Transcription
TURN_DEBOUNCE: float = 0.5
MAX_TRANSCRIPTION_DURATION: float = 40.0
TURN_COMPLETION_TIMEOUT: float = 2.0
SILENCE_KEEPALIVE_INTERVAL: float = 0.1
STT_INACTIVITY_TIMEOUT: float = 60.0
STT_TERMINATE_GRACE: float = 0.1

# Inbound message caps
TEXT_MESSAGE_MAX_CHARS: int = 200
PRONOUNCE_TEXT_MAX_CHARS: int = 100

# Enrichment
FLASHCARD_CONTEXT_MESSAGES: int = 6
FEEDBACK_CONTEXT_MESSAGES: int = 6
INTRODUCTION_CONTEXT_MESSAGES: int = 6
MEMORY_CONTEXT_MESSAGES: int = 10
MEMORY_TURN_INTERVAL: int = 3  # Extract a memory every Nth completed turn
MEMORY_MAX_TOPICS: int = 5
MEMORY_DEFAULT_IMPORTANCE: float = 0.5
MEMORY_MATCH_THRESHOLD: float = 0.7
MEMORY_MATCH_COUNT: int = 3
EMBEDDING_DIMENSIONS: int = 1024

# Model settings
DEFAULT_LLM_MODEL: str = "claude-haiku-4-5"
DEFAULT_TTS_MODEL: str = "sonic-2"
DEFAULT_EMBEDDING_MODEL: str = "BAAI/bge-large-en-v1.5"
DEFAULT_EMBEDDING_URL: str = "https://api.together.xyz/v1/embeddings"
LLM_MAX_TOKENS: int = 250
CONVERSATION_HISTORY_LIMIT: int = 20  # Messages rendered into the dialogue prompt

# Errors the client never needs to see
BENIGN_ERROR_MARKERS: tuple[str, ...] = (
    "recognition produced no text",
    "no speech recognized",
)
