"""TutorError envelope: structured error reporting over WebSocket.

Every error sent to the browser follows one JSON shape so the client can
render it consistently and the backend logs remain machine-parseable.

Error codes
-----------
GRAPH_RESTART_FAILED  Auto-restart gave up; the user must reconnect.
GRAPH_FAILED          The conversation pipeline raised mid-turn.
SESSION_NOT_FOUND     No registry entry for the connection.
INVALID_MESSAGE       Inbound message failed validation.
TEXT_TOO_LONG         ``text_message`` exceeded its character cap.
BUFFER_OVERFLOW       Input backlog grew past its bound; the session closes.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Any

from fastapi import WebSocket

from .constants import BENIGN_ERROR_MARKERS
from .utils import now_ms

logger = logging.getLogger(__name__)


class ErrorCode(str, enum.Enum):
    GRAPH_RESTART_FAILED = "GRAPH_RESTART_FAILED"
    GRAPH_FAILED = "GRAPH_FAILED"
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    INVALID_MESSAGE = "INVALID_MESSAGE"
    TEXT_TOO_LONG = "TEXT_TOO_LONG"
    BUFFER_OVERFLOW = "BUFFER_OVERFLOW"


@dataclass
class TutorError:
    message: str
    code: str | None = None
    recoverable: bool = True
    session_id: str = ""
    timestamp: int = field(default_factory=now_ms)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "type": "error",
            "message": self.message,
            "recoverable": self.recoverable,
            "timestamp": self.timestamp,
        }
        if self.code:
            d["code"] = self.code.value if isinstance(self.code, ErrorCode) else self.code
        return d


def is_benign_error(message: str | None) -> bool:
    """True when *message* is an expected condition the client should not see."""
    if not message:
        return False
    lowered = message.lower()
    return any(marker in lowered for marker in BENIGN_ERROR_MARKERS)


async def send_error(websocket: WebSocket, error: TutorError) -> None:
    """Serialize *error* and send it as a JSON message on *websocket*.

    Silently catches send failures (the socket may already be closed).
    """
    try:
        await websocket.send_json(error.to_dict())
        logger.warning(
            "[TutorError] Sent %s to client: %s (session=%s)",
            error.code or "error",
            error.message,
            error.session_id,
        )
    except Exception as exc:
        logger.debug("[TutorError] Failed to send error to client: %s", exc)
