"""Task supervisor for fire-and-forget side effects.

Flashcards, feedback, memory extraction and introduction-state updates run
after a turn completes without holding up the next one.  Each job runs inside
an ``asyncio.Task`` owned by the supervisor; whatever a job raises is logged
and dropped, never propagated to the caller that submitted it.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine

from .utils import generate_job_id

logger = logging.getLogger(__name__)


class TaskSupervisor:
    """Owns background jobs so they are not garbage-collected mid-flight."""

    def __init__(self) -> None:
        self._tasks: dict[str, asyncio.Task] = {}
        self._failure_count: int = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def submit(self, name: str, coro: Coroutine[Any, Any, Any]) -> str:
        """Schedule *coro* as a background task and return its job id.

        Args:
            name: Short label used as the job id prefix in log messages.
            coro: The coroutine to execute in the background.
        """
        job_id = f"{name}-{generate_job_id()}"
        task = asyncio.create_task(self._run(job_id, coro), name=job_id)
        self._tasks[job_id] = task
        task.add_done_callback(lambda t: self._tasks.pop(job_id, None))
        logger.debug(
            "[Supervisor] Job %s submitted. Active jobs: %d",
            job_id,
            len(self._tasks),
        )
        return job_id

    def active_count(self) -> int:
        """Return the number of currently running background jobs."""
        return len(self._tasks)

    @property
    def failure_count(self) -> int:
        """Return the total number of jobs that raised."""
        return self._failure_count

    def cancel_all(self) -> None:
        """Cancel every pending background job (e.g. on shutdown)."""
        for task in list(self._tasks.values()):
            task.cancel()
        logger.info("[Supervisor] All background jobs cancelled.")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _run(self, job_id: str, coro: Coroutine[Any, Any, Any]) -> None:
        """Internal runner; swallows every failure after logging it."""
        try:
            await coro
            logger.debug("[Supervisor] Job %s completed.", job_id)
        except asyncio.CancelledError:
            logger.warning("[Supervisor] Job %s was cancelled.", job_id)
        except Exception as exc:
            self._failure_count += 1
            logger.error(
                "[Supervisor] Job %s failed: %s",
                job_id,
                exc,
                exc_info=True,
            )
