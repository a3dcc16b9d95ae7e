"""Session: per-connection conversational state.

One instance per WebSocket connection, owned by the ``SessionRegistry``.  The
turn coordinator, the transcription adapter and the inbound handlers all
mutate it; under cooperative scheduling no locking is needed as long as no
mutation spans an ``await``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Literal

from ..languages import DEFAULT_LANGUAGE_CODE, get_language_config
from ..utils import generate_message_id, now_ms

if TYPE_CHECKING:
    from .multiplexer import MultimodalStreamMultiplexer

Role = Literal["user", "assistant"]
SpeechDetectedCallback = Callable[[str], Awaitable[None]]
PartialTranscriptCallback = Callable[[str, str], Awaitable[None]]


@dataclass
class ChatMessage:
    role: Role
    content: str
    id: str = field(default_factory=generate_message_id)
    timestamp: int = field(default_factory=now_ms)
    interrupted: bool = False

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp,
        }
        if self.interrupted:
            d["interrupted"] = True
        return d


@dataclass
class Session:
    """All per-session mutable state for a single WebSocket connection."""

    session_id: str
    language_code: str = DEFAULT_LANGUAGE_CODE
    voice_id: str = ""
    user_id: str = ""
    timezone: str = ""
    messages: list[ChatMessage] = field(default_factory=list)
    interaction_id: str = ""

    # Interruption signalling between the coordinator and the graph.
    is_processing_interrupted: bool = False
    pending_transcript: str | None = None
    frozen_response: str | None = None
    interruptions: int = 0
    resets: int = 0

    multiplexer: MultimodalStreamMultiplexer | None = None
    execution: Any = None  # output iterator of the running graph execution

    on_speech_detected: SpeechDetectedCallback | None = None
    on_partial_transcript: PartialTranscriptCallback | None = None

    def __post_init__(self) -> None:
        if not self.voice_id:
            self.voice_id = get_language_config(self.language_code).voice_id

    @property
    def target_language(self) -> str:
        return get_language_config(self.language_code).name

    def add_message(self, role: Role, content: str, *, interrupted: bool = False) -> ChatMessage:
        message = ChatMessage(role=role, content=content, interrupted=interrupted)
        self.messages.append(message)
        return message

    def recent_messages(self, limit: int) -> list[ChatMessage]:
        return list(self.messages[-limit:]) if limit > 0 else []

    def messages_as_dicts(self) -> list[dict[str, Any]]:
        return [m.to_dict() for m in self.messages]

    def clear_conversation(self) -> None:
        """Forget history and every in-flight turn marker."""
        self.messages.clear()
        self.interaction_id = ""
        self.pending_transcript = None
        self.frozen_response = None
        self.is_processing_interrupted = False
        self.resets += 1
