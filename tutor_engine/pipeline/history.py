"""Conversation history bookkeeping around interrupted turns.

When the learner starts speaking while a reply is still streaming, the
coordinator *freezes* what the interrupted turn produced and rolls it out of
the visible history.  When the next final transcript arrives the graph
*reconciles* the pending pieces back in.  What gets re-committed depends on
which pieces are pending:

    NONE            user(new)
    USER_ONLY       user("{pending} {new}")           continuation, stitched
    ASSISTANT_ONLY  assistant(frozen*), user(new)
    BOTH            user(pending), assistant(frozen*), user(new)

(* committed with ``interrupted=True``)
"""

from __future__ import annotations

import enum
import logging

from .session_context import ChatMessage, Session

logger = logging.getLogger(__name__)


class PendingMessages(enum.Enum):
    NONE = "none"
    USER_ONLY = "user_only"
    ASSISTANT_ONLY = "assistant_only"
    BOTH = "both"


def pending_state(session: Session) -> PendingMessages:
    has_user = bool(session.pending_transcript)
    has_assistant = bool(session.frozen_response)
    if has_user and has_assistant:
        return PendingMessages.BOTH
    if has_user:
        return PendingMessages.USER_ONLY
    if has_assistant:
        return PendingMessages.ASSISTANT_ONLY
    return PendingMessages.NONE


def freeze_and_roll_back(session: Session, transcript: str, partial_response: str) -> list[ChatMessage]:
    """Park the interrupted turn's messages and remove them from history.

    Only the trailing assistant reply and the trailing user message matching
    *transcript* are removed, so older turns are never touched.  Returns the
    removed messages, oldest first.
    """
    messages = session.messages
    removed: list[ChatMessage] = []
    frozen = partial_response.strip()

    if (
        len(messages) >= 2
        and messages[-1].role == "assistant"
        and messages[-2].role == "user"
        and messages[-2].content == transcript
    ):
        assistant = messages.pop()
        removed.insert(0, assistant)
        frozen = assistant.content

    if messages and messages[-1].role == "user" and messages[-1].content == transcript:
        removed.insert(0, messages.pop())

    session.pending_transcript = transcript or None
    session.frozen_response = frozen or None
    logger.info(
        "[History] Rolled back %d message(s); pending=%s",
        len(removed),
        pending_state(session).value,
    )
    return removed


def reconcile_turn(session: Session, transcript: str) -> str:
    """Commit a newly finalized transcript, folding in any parked messages.

    Returns the effective user text for this turn (stitched in the
    continuation case).
    """
    state = pending_state(session)
    pending_user = session.pending_transcript or ""
    frozen = session.frozen_response or ""
    session.pending_transcript = None
    session.frozen_response = None

    text = transcript.strip()
    if state is PendingMessages.USER_ONLY:
        text = f"{pending_user} {text}".strip()
        logger.info("[History] Stitched continuation: %.80s", text)
    elif state is PendingMessages.ASSISTANT_ONLY:
        session.add_message("assistant", frozen, interrupted=True)
    elif state is PendingMessages.BOTH:
        session.add_message("user", pending_user)
        session.add_message("assistant", frozen, interrupted=True)

    session.add_message("user", text)
    return text


def commit_assistant_reply(session: Session, text: str) -> ChatMessage | None:
    """Append the finished assistant reply; blank replies are skipped."""
    text = text.strip()
    if not text:
        return None
    return session.add_message("assistant", text)
