"""Ollama-compatible local inference engine over httpx."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Any

import httpx

from amphibian.engines.base import ChatMessageDict
from amphibian.errors import OperationTimeoutError, TransportLostError

logger = logging.getLogger(__name__)


class OllamaEngine:
    """Chat client for an Ollama ``/api/chat`` endpoint.

    Streaming replies are newline-delimited JSON objects carrying
    ``message.content`` fragments and a final ``done`` flag. Each non-empty
    fragment is treated as one token.
    """

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        model: str = "gemma:2b",
        timeout: float = 120.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize engine.

        Args:
            base_url: Server root URL
            model: Model name sent with every request
            timeout: Per-request timeout in seconds
            client: Pre-built client (tests pass one with a mock transport)
        """
        self.base_url = base_url.rstrip("/")
        self.model = model
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)
        logger.info(f"🧠 Local engine at {self.base_url} using model {self.model}")

    def _payload(self, messages: list[ChatMessageDict], max_tokens: int | None, stream: bool) -> dict[str, Any]:
        payload: dict[str, Any] = {"model": self.model, "messages": messages, "stream": stream}
        if max_tokens is not None:
            payload["options"] = {"num_predict": max_tokens}
        return payload

    async def is_available(self) -> bool:
        try:
            response = await self._client.get("/api/tags")
        except httpx.HTTPError as e:
            logger.debug(f"Local engine unreachable: {e}")
            return False
        return response.is_success

    async def chat(self, messages: list[ChatMessageDict], max_tokens: int | None = None) -> ChatMessageDict:
        """Non-streaming chat completion.

        Raises:
            OperationTimeoutError: The server did not answer in time
            TransportLostError: Connection or HTTP status failure
        """
        try:
            response = await self._client.post("/api/chat", json=self._payload(messages, max_tokens, False))
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException as e:
            raise OperationTimeoutError(f"Local engine timed out: {e}") from e
        except (httpx.HTTPError, json.JSONDecodeError) as e:
            raise TransportLostError(f"Local engine request failed: {e}") from e

        message = data.get("message") or {}
        return {"role": message.get("role", "assistant"), "content": message.get("content", "")}

    async def chat_stream(
        self, messages: list[ChatMessageDict], max_tokens: int | None = None
    ) -> AsyncIterator[str]:
        """Yield reply fragments as the server produces them."""
        try:
            async with self._client.stream(
                "POST", "/api/chat", json=self._payload(messages, max_tokens, True)
            ) as response:
                response.raise_for_status()
                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        frame = json.loads(line)
                    except json.JSONDecodeError:
                        logger.debug(f"Skipping undecodable stream line: {line[:80]}")
                        continue
                    content = (frame.get("message") or {}).get("content")
                    if content:
                        yield content
                    if frame.get("done"):
                        return
        except httpx.TimeoutException as e:
            raise OperationTimeoutError(f"Local engine stream timed out: {e}") from e
        except httpx.HTTPError as e:
            raise TransportLostError(f"Local engine stream failed: {e}") from e

    async def embed(self, texts: list[str], model: str | None = None) -> list[list[float]]:
        """Embed ``texts`` with ``/api/embed``, one vector per input.

        Raises:
            OperationTimeoutError: The server did not answer in time
            TransportLostError: Connection failure, HTTP error or a reply without one vector per input
        """
        try:
            response = await self._client.post("/api/embed", json={"model": model or self.model, "input": texts})
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException as e:
            raise OperationTimeoutError(f"Local engine timed out: {e}") from e
        except (httpx.HTTPError, json.JSONDecodeError) as e:
            raise TransportLostError(f"Local engine request failed: {e}") from e

        vectors = data.get("embeddings") if isinstance(data, dict) else None
        if not isinstance(vectors, list) or len(vectors) != len(texts):
            raise TransportLostError("Local engine returned no usable embeddings")
        return [[float(x) for x in vector] for vector in vectors]

    async def aclose(self) -> None:
        await self._client.aclose()
