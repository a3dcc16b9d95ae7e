"""Centralized ID generation utilities for the tutor engine."""

import time
import uuid

_ITERATION_DELIMITER = "#"


def generate_connection_id() -> str:
    """Generate a WebSocket connection ID.

    Returns:
        ``conn_<epoch-ms>_<9 hex chars>``, sortable by connect time.
    """
    return f"conn_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


def generate_message_id() -> str:
    """Generate a conversation message ID (16 hex chars)."""
    return uuid.uuid4().hex[:16]


def generate_job_id() -> str:
    """Generate a unique background job ID.

    Returns:
        A short 8-character hex string.
    """
    return uuid.uuid4().hex[:8]


def parse_interaction_id(interaction_id: str) -> tuple[str, int]:
    """Split ``base#iteration`` into its parts.

    A missing or non-numeric suffix yields iteration 0 with the whole id as base.
    """
    base, sep, suffix = interaction_id.partition(_ITERATION_DELIMITER)
    if sep and suffix.isdigit():
        return base, int(suffix)
    return (base if sep else interaction_id), 0


def next_interaction_id(current: str) -> str:
    """Return the id for the turn after *current*.

    An empty *current* starts a new logical conversation at iteration 1.
    """
    if not current:
        return f"{uuid.uuid4().hex[:16]}{_ITERATION_DELIMITER}1"
    base, iteration = parse_interaction_id(current)
    return f"{base}{_ITERATION_DELIMITER}{iteration + 1}"


def now_ms() -> int:
    """Wall-clock timestamp in milliseconds, as sent to the client."""
    return int(time.time() * 1000)
