"""Conversion between memory nodes and flat RAG chunks.

A RAG chunk is the ``{id, text, embedding, timestamp}`` record consumed by
the on-device retrieval store.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from amphibian.errors import InputInvalidError
from amphibian.memory.models import MemoryNode


def to_rag_chunk(node: MemoryNode) -> dict[str, Any]:
    return {
        "id": node.id,
        "text": node.content,
        "embedding": list(node.embedding),
        "timestamp": node.created_at,
    }


def from_rag_chunk(chunk: dict[str, Any]) -> MemoryNode:
    """Create a detached memory node from a RAG chunk.

    Raises:
        InputInvalidError: If the chunk lacks ``id`` or ``text``
    """
    if "id" not in chunk or "text" not in chunk:
        raise InputInvalidError("RAG chunk requires 'id' and 'text'", {"keys": sorted(chunk)})

    timestamp = int(chunk.get("timestamp") or 0)
    return MemoryNode(
        id=str(chunk["id"]),
        content=str(chunk["text"]),
        embedding=[float(x) for x in chunk.get("embedding") or []],
        created_at=timestamp,
        last_accessed=timestamp,
    )


def to_rag_chunks(nodes: Iterable[MemoryNode]) -> list[dict[str, Any]]:
    return [to_rag_chunk(node) for node in nodes]
