"""Associative memory: typed memory graph and co-occurrence tracker."""

from amphibian.memory.cooccurrence import (
    CooccurrenceEdge,
    CooccurrenceTracker,
    Observation,
    calculate_belief,
    normalize_belief,
    pair_key,
)
from amphibian.memory.graph import MemoryGraph
from amphibian.memory.integration import from_rag_chunk, to_rag_chunk, to_rag_chunks
from amphibian.memory.models import LinkType, MemoryLink, MemoryNode
from amphibian.memory.storage import MemoryStorage

__all__ = [
    "CooccurrenceEdge",
    "CooccurrenceTracker",
    "LinkType",
    "MemoryGraph",
    "MemoryLink",
    "MemoryNode",
    "MemoryStorage",
    "Observation",
    "calculate_belief",
    "from_rag_chunk",
    "normalize_belief",
    "pair_key",
    "to_rag_chunk",
    "to_rag_chunks",
]
