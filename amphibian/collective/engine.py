"""Inference engine backed by the collective pool."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator

from amphibian.collective.coordinator import PoolCoordinator
from amphibian.engines.base import ChatMessageDict

logger = logging.getLogger(__name__)


class CollectiveEngine:
    """Presents a :class:`PoolCoordinator` as an ``InferenceEngine``.

    Failures surface as the coordinator's categorized errors
    (``PoolExhaustedError``, ``TransportLostError``) so the router can fall
    back to the local engine.
    """

    def __init__(self, coordinator: PoolCoordinator, max_tokens: int = 256, model: str | None = None) -> None:
        self.coordinator = coordinator
        self.max_tokens = max_tokens
        self.model = model

    async def is_available(self) -> bool:
        return self.coordinator.health().reachable

    async def chat(self, messages: list[ChatMessageDict], max_tokens: int | None = None) -> ChatMessageDict:
        stream = self.coordinator.submit(messages, max_tokens or self.max_tokens, self.model)
        content = await stream.text()
        logger.debug(f"🧠 Collective reply for {stream.task_id}: {len(stream.tokens)} tokens")
        return {"role": "assistant", "content": content}

    async def chat_stream(
        self, messages: list[ChatMessageDict], max_tokens: int | None = None
    ) -> AsyncIterator[str]:
        stream = self.coordinator.submit(messages, max_tokens or self.max_tokens, self.model)
        try:
            async for token in stream:
                yield token
        finally:
            if not stream.done:
                stream.cancel()

    async def embed(self, texts: list[str], model: str | None = None) -> list[list[float]]:
        return await self.coordinator.embed(texts, model or self.model)
