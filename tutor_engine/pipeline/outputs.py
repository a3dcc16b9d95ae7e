"""Graph runtime contract: typed input stream, closed output union, protocol.

The turn coordinator only depends on what is declared here.  Every value a
runtime yields is one of the ``GraphOutput`` variants; adding a kind means
adding a dataclass to the union and a branch to the coordinator dispatch.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, AsyncIterator, Generic, Protocol, TypeVar, Union

from ..audio.codec import AudioPayload
from .multiplexer import MultimodalContent

T = TypeVar("T")

MULTIMODAL_CONTENT = "MultimodalContent"


@dataclass
class TypedStream(Generic[T]):
    """An async sequence paired with the element type it declares."""

    element_type: str
    source: AsyncIterator[T]

    def __aiter__(self) -> AsyncIterator[T]:
        return self.source.__aiter__()


@dataclass
class ExecutionOptions:
    session_id: str
    language_code: str
    user_id: str = ""
    idle_timeout: float | None = None


# ---------------------------------------------------------------------------
# Output variants
# ---------------------------------------------------------------------------


@dataclass
class TranscriptText:
    """Plain recognition text (non-final proxy output)."""

    text: str


@dataclass
class TurnComplete:
    text: str
    interaction_id: str
    interaction_complete: bool = True


@dataclass
class ContentChunk:
    text: str


@dataclass
class ContentStream:
    """Streamed LLM reply."""

    chunks: AsyncIterator[ContentChunk]

    def __aiter__(self) -> AsyncIterator[ContentChunk]:
        return self.chunks.__aiter__()


@dataclass
class TTSChunk:
    audio: AudioPayload | None
    text: str = ""
    sample_rate: int | None = None


@dataclass
class TTSOutputStream:
    """Streamed synthesized audio for the reply."""

    chunks: AsyncIterator[TTSChunk]

    def __aiter__(self) -> AsyncIterator[TTSChunk]:
        return self.chunks.__aiter__()


@dataclass
class GraphError:
    message: str
    code: str | None = None


@dataclass
class UnknownOutput:
    data: Any = None


GraphOutput = Union[
    TranscriptText,
    TurnComplete,
    ContentStream,
    TTSOutputStream,
    GraphError,
    UnknownOutput,
]


class GraphRuntime(Protocol):
    """What the coordinator needs from the conversation graph engine."""

    def start(
        self,
        stream: TypedStream[MultimodalContent],
        options: ExecutionOptions,
    ) -> AsyncIterator[GraphOutput]:
        """Begin one execution; the returned sequence ends when the execution does."""
        ...

    async def close_session(self, session_id: str) -> None:
        ...

    def pronounce(self, text: str, language_code: str) -> AsyncIterator[TTSChunk]:
        ...

    async def stop(self) -> None:
        ...
