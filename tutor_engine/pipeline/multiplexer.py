"""MultimodalStreamMultiplexer: push-style input, pull-style async stream.

The WebSocket receive loop pushes audio frames and typed text synchronously;
the graph runtime pulls them as one ``async for`` sequence.  A single parked
consumer is woken directly by the next push, otherwise items are buffered in
arrival order.  ``end()`` is terminal: the stream drains what is buffered and
then stops.  After a graph restart the coordinator builds a fresh instance.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import AsyncIterator

import numpy as np

from ..constants import INPUT_SAMPLE_RATE, MULTIPLEXER_MAX_BUFFERED

logger = logging.getLogger(__name__)


class StreamOverflowError(RuntimeError):
    """Raised when a push would exceed the buffered-item bound."""


class StreamClosedError(RuntimeError):
    """Raised when the single-pass stream is requested a second time."""


@dataclass
class AudioFrame:
    data: np.ndarray  # float32 mono samples in [-1, 1]
    sample_rate: int = INPUT_SAMPLE_RATE


@dataclass
class MultimodalContent:
    """One input item: exactly one of ``audio`` or ``text`` is set."""

    audio: AudioFrame | None = None
    text: str | None = None

    @property
    def is_text(self) -> bool:
        return self.text is not None


class MultimodalStreamMultiplexer:
    """Single-producer, single-consumer bridge between the socket and the graph.

    Parameters
    ----------
    max_buffered : int
        Items allowed to wait for a stalled consumer before pushes raise
        ``StreamOverflowError``.
    """

    def __init__(self, *, max_buffered: int = MULTIPLEXER_MAX_BUFFERED) -> None:
        self._buffer: deque[MultimodalContent] = deque()
        self._waiter: asyncio.Future[None] | None = None
        self._max_buffered = max_buffered
        self._ended = False
        self._stream_created = False

    # ------------------------------------------------------------------
    # Producer side (synchronous, never suspends)
    # ------------------------------------------------------------------

    def push_audio(self, frame: AudioFrame) -> None:
        self._push(MultimodalContent(audio=frame))

    def push_text(self, text: str) -> None:
        self._push(MultimodalContent(text=text))

    def end(self) -> None:
        """Terminate the stream once buffered items are drained."""
        if self._ended:
            return
        self._ended = True
        self._wake()
        logger.debug("[Multiplexer] Ended with %d buffered items.", len(self._buffer))

    @property
    def ended(self) -> bool:
        return self._ended

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    def create_stream(self) -> AsyncIterator[MultimodalContent]:
        """Return the single-pass content sequence."""
        if self._stream_created:
            raise StreamClosedError("Multiplexer stream can only be consumed once.")
        self._stream_created = True
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[MultimodalContent]:
        while True:
            if self._buffer:
                yield self._buffer.popleft()
                continue
            if self._ended:
                return
            self._waiter = asyncio.get_running_loop().create_future()
            try:
                await self._waiter
            finally:
                self._waiter = None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _push(self, item: MultimodalContent) -> None:
        if self._ended:
            logger.debug("[Multiplexer] Push after end() ignored.")
            return
        if len(self._buffer) >= self._max_buffered:
            raise StreamOverflowError(
                f"Input backlog exceeded {self._max_buffered} items with no consumer progress."
            )
        self._buffer.append(item)
        self._wake()

    def _wake(self) -> None:
        if self._waiter is not None and not self._waiter.done():
            self._waiter.set_result(None)
