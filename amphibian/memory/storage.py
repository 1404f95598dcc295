"""Memory graph persistence."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from amphibian.clock import SYSTEM_CLOCK, Clock
from amphibian.errors import IntegrityError
from amphibian.memory.graph import MemoryGraph
from amphibian.storage.atomic import write_text_atomic

logger = logging.getLogger(__name__)


class MemoryStorage:
    """Saves and loads a :class:`MemoryGraph` at ``memory/graph.json``."""

    def __init__(self, path: Path, clock: Clock = SYSTEM_CLOCK) -> None:
        self.path = Path(path)
        self.clock = clock

    async def save(self, graph: MemoryGraph) -> None:
        """Crash-safe write of the serialized graph."""
        text = graph.serialize()
        await asyncio.to_thread(write_text_atomic, self.path, text)
        logger.debug(f"💾 Saved {len(graph)} memories to {self.path}")

    async def load(self) -> MemoryGraph:
        """Load the graph.

        A missing file yields an empty graph. A corrupt file also yields an
        empty graph and logs a warning; the file is left in place.
        """
        graph = MemoryGraph(self.clock)
        if not self.path.exists():
            return graph

        try:
            text = await asyncio.to_thread(self.path.read_text, encoding="utf-8")
            graph.deserialize(text)
        except (OSError, UnicodeDecodeError, IntegrityError) as e:
            logger.warning(f"⚠️ Could not load memory graph from {self.path}, starting empty: {e}")
            return MemoryGraph(self.clock)

        logger.info(f"Loaded {len(graph)} memories from {self.path}")
        return graph
