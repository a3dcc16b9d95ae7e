"""Supabase memory store: long-term learner memories with pgvector search.

Rows live in the ``user_memories`` table; similarity search goes through the
``match_memories`` Postgres function.  Memories are stored in English with a
1024-dimension embedding so retrieval works whatever language is practised.

All I/O is wrapped in ``asyncio.to_thread`` because the supabase-py SDK is
synchronous.  Every error is caught and logged, since a database failure must
never interrupt a conversation.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .constants import MEMORY_MATCH_COUNT, MEMORY_MATCH_THRESHOLD

if TYPE_CHECKING:
    from supabase import Client

logger = logging.getLogger(__name__)

_TABLE = "user_memories"


@dataclass
class MemoryRecord:
    user_id: str
    content: str
    memory_type: str
    topics: list[str] = field(default_factory=list)
    importance: float = 0.5
    embedding: list[float] | None = None


@dataclass
class MemoryMatch:
    id: str
    content: str
    memory_type: str
    topics: list[str]
    importance: float
    similarity: float


def _format_embedding(embedding: list[float]) -> str:
    """pgvector literal, e.g. ``[0.1,0.2]``."""
    return "[" + ",".join(str(v) for v in embedding) + "]"


class MemoryStore:
    """Thin async facade over the ``user_memories`` table.

    Parameters
    ----------
    url : str
        Supabase project URL (SUPABASE_URL).
    service_role_key : str
        Service-role key (SUPABASE_SERVICE_ROLE_KEY).  Writes bypass RLS
        because they happen server-side on the learner's behalf.
    client : supabase.Client, optional
        Pre-built client, mainly for tests.
    """

    def __init__(self, url: str = "", service_role_key: str = "", *, client: "Client | None" = None) -> None:
        self._url = url
        self._key = service_role_key
        self._client = client

    @property
    def configured(self) -> bool:
        return self._client is not None or bool(self._url and self._key)

    def _get_client(self) -> "Client | None":
        if self._client is not None:
            return self._client
        if not (self._url and self._key):
            logger.debug("[Memory DB] SUPABASE_URL or SUPABASE_SERVICE_ROLE_KEY not set — store disabled.")
            return None
        try:
            from supabase import create_client

            self._client = create_client(self._url, self._key)
            logger.info("[Memory DB] Supabase client initialised.")
        except Exception as exc:
            logger.warning("[Memory DB] Failed to initialise Supabase client: %s", exc)
            return None
        return self._client

    # ------------------------------------------------------------------
    # Public async helpers
    # ------------------------------------------------------------------

    async def store_memory(self, record: MemoryRecord) -> str | None:
        """Insert *record*; returns the new row id, or None on failure."""
        client = self._get_client()
        if client is None:
            return None

        row: dict[str, Any] = {
            "user_id": record.user_id,
            "content": record.content,
            "memory_type": record.memory_type,
            "topics": record.topics,
            "importance": record.importance,
            "embedding": _format_embedding(record.embedding) if record.embedding else None,
        }

        def _insert() -> str | None:
            try:
                result = client.table(_TABLE).insert(row).execute()
            except Exception as exc:
                logger.warning("[Memory DB] Failed to store memory for %s: %s", record.user_id[:8], exc)
                return None
            data = result.data or []
            return str(data[0]["id"]) if data and "id" in data[0] else None

        memory_id = await asyncio.to_thread(_insert)
        if memory_id:
            logger.info(
                "[Memory DB] Stored memory %s (type=%s, topics=%s)",
                memory_id,
                record.memory_type,
                record.topics,
            )
        return memory_id

    async def retrieve_memories(
        self,
        user_id: str,
        query_embedding: list[float],
        *,
        limit: int = MEMORY_MATCH_COUNT,
        threshold: float = MEMORY_MATCH_THRESHOLD,
    ) -> list[MemoryMatch]:
        """Return up to *limit* memories whose similarity exceeds *threshold*."""
        client = self._get_client()
        if client is None or not query_embedding:
            return []

        params = {
            "query_embedding": _format_embedding(query_embedding),
            "match_user_id": user_id,
            "match_threshold": threshold,
            "match_count": limit,
        }

        def _match() -> list[dict[str, Any]]:
            try:
                return client.rpc("match_memories", params).execute().data or []
            except Exception as exc:
                logger.warning("[Memory DB] match_memories failed for %s: %s", user_id[:8], exc)
                return []

        rows = await asyncio.to_thread(_match)
        matches = [
            MemoryMatch(
                id=str(row.get("id", "")),
                content=row.get("content", ""),
                memory_type=row.get("memory_type", ""),
                topics=row.get("topics") or [],
                importance=float(row.get("importance") or 0.0),
                similarity=float(row.get("similarity") or 0.0),
            )
            for row in rows
        ]
        logger.debug("[Memory DB] %d memories retrieved for %s", len(matches), user_id[:8])
        return matches
