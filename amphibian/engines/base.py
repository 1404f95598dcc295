"""Collaborator contracts for inference engines and retrieval stores."""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any, Protocol, runtime_checkable

# {"role": ..., "content": ...}
ChatMessageDict = dict[str, str]


@runtime_checkable
class InferenceEngine(Protocol):
    """Local or pooled chat model.

    ``chat_stream`` returns an async generator so callers can stop early
    with ``aclose()``. Engines raise categorized ``AmphibianError`` subclasses
    on failure.
    """

    async def chat(
        self, messages: list[ChatMessageDict], max_tokens: int | None = None
    ) -> ChatMessageDict: ...

    def chat_stream(
        self, messages: list[ChatMessageDict], max_tokens: int | None = None
    ) -> AsyncIterator[str]: ...

    async def is_available(self) -> bool: ...


@runtime_checkable
class EmbeddingEngine(Protocol):
    """Engine that can also turn text into vectors, one per input string."""

    async def embed(self, texts: list[str], model: str | None = None) -> list[list[float]]: ...


@runtime_checkable
class RagStore(Protocol):
    """On-device retrieval store fed with ``{id, text, embedding, timestamp}`` chunks."""

    async def retrieve(self, query: str) -> list[dict[str, Any]]: ...

    async def insert(self, chunk: dict[str, Any]) -> None: ...
