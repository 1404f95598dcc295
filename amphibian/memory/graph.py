"""Typed directed memory graph."""

from __future__ import annotations

import json
import logging
from collections import deque
from collections.abc import Iterable, Mapping
from types import MappingProxyType
from typing import Any

from amphibian.clock import SYSTEM_CLOCK, Clock
from amphibian.errors import InputInvalidError, IntegrityError
from amphibian.memory.models import LinkType, MemoryLink, MemoryNode, clamp_unit
from amphibian.monitoring.metrics import memory_nodes
from amphibian.observability import add_span_attributes, record_counter, record_histogram, traced

logger = logging.getLogger(__name__)


def _coerce_link_type(value: LinkType | str) -> LinkType:
    try:
        return LinkType(value)
    except ValueError as e:
        raise InputInvalidError(f"Unknown link type: {value!r}", {"type": str(value)}) from e


class MemoryGraph:
    """Collection of memories and the typed links between them.

    Nodes live in an id-indexed map and links carry only target ids, so
    cycles never create reference loops and serialization stays flat.
    Every read through :meth:`get_memory` touches ``last_accessed``.
    """

    def __init__(self, clock: Clock = SYSTEM_CLOCK) -> None:
        """Initialize an empty graph.

        Args:
            clock: Source of millisecond timestamps
        """
        self.clock = clock
        self._nodes: dict[str, MemoryNode] = {}

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    @property
    def nodes(self) -> Mapping[str, MemoryNode]:
        """Read-only view of the node map (does not touch timestamps)."""
        return MappingProxyType(self._nodes)

    def add_memory(
        self,
        content: str,
        embedding: Iterable[float] | None = None,
        *,
        salience: float = 1.0,
        id: str | None = None,
    ) -> MemoryNode:
        """Add a new memory.

        Args:
            content: Text of the memory
            embedding: Optional vector (empty when unavailable)
            salience: Importance, clamped to [0, 1]
            id: Explicit id; a fresh UUID is assigned when omitted

        Returns:
            The stored node

        Raises:
            InputInvalidError: If ``id`` is already present
        """
        node_id = id or MemoryNode.new_id()
        if node_id in self._nodes:
            raise InputInvalidError(f"Memory already exists: {node_id}", {"id": node_id})

        now = self.clock.now()
        node = MemoryNode(
            id=node_id,
            content=content,
            embedding=[float(x) for x in embedding or []],
            salience=clamp_unit(salience),
            created_at=now,
            last_accessed=now,
        )
        self._nodes[node_id] = node

        memory_nodes.set(len(self._nodes))
        record_counter("memory.nodes.added", 1)
        return node

    def get_memory(self, node_id: str) -> MemoryNode | None:
        """Get a memory by id, touching its access time on hit."""
        node = self._nodes.get(node_id)
        if node is not None:
            node.touch(self.clock.now())
        return node

    def update_memory(
        self,
        node_id: str,
        *,
        content: str | None = None,
        embedding: Iterable[float] | None = None,
        salience: float | None = None,
    ) -> bool:
        """Partially update a memory.

        Returns:
            True if the node exists (and was touched)
        """
        node = self._nodes.get(node_id)
        if node is None:
            return False

        if content is not None:
            node.content = content
        if embedding is not None:
            node.embedding = [float(x) for x in embedding]
        if salience is not None:
            node.salience = clamp_unit(salience)

        node.touch(self.clock.now())
        return True

    def delete_memory(self, node_id: str) -> bool:
        """Delete a memory and every link pointing at it.

        Returns:
            Whether the node existed
        """
        if node_id not in self._nodes:
            return False

        del self._nodes[node_id]

        removed = 0
        for node in self._nodes.values():
            before = len(node.connections)
            node.connections = [c for c in node.connections if c.target_id != node_id]
            removed += before - len(node.connections)

        memory_nodes.set(len(self._nodes))
        record_counter("memory.nodes.deleted", 1)
        logger.debug(f"Deleted memory {node_id} and {removed} inbound links")
        return True

    def link_memories(
        self,
        source_id: str,
        target_id: str,
        link_type: LinkType | str,
        weight: float = 1.0,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        """Create or update the directed ``(target, type)`` edge from ``source_id``.

        An existing edge gets the new weight and a shallow merge of metadata.
        Self links are permitted.

        Returns:
            False when either endpoint is absent

        Raises:
            InputInvalidError: If ``link_type`` is not a known link type
        """
        link_type = _coerce_link_type(link_type)
        source = self._nodes.get(source_id)
        if source is None or target_id not in self._nodes:
            logger.debug(f"Cannot link {source_id} -> {target_id}: endpoint missing")
            return False

        source.add_connection(target_id, link_type, weight, metadata)
        record_counter("memory.links.upserted", 1, {"type": link_type.value})
        return True

    def unlink_memories(self, source_id: str, target_id: str, link_type: LinkType | str) -> bool:
        """Remove one directed edge.

        Returns:
            Whether the edge existed
        """
        link_type = _coerce_link_type(link_type)
        source = self._nodes.get(source_id)
        if source is None:
            return False

        link = source.find_link(target_id, link_type)
        if link is None:
            return False

        source.connections.remove(link)
        return True

    def get_link(self, source_id: str, target_id: str, link_type: LinkType | str) -> MemoryLink | None:
        """Look up an edge without touching either node."""
        source = self._nodes.get(source_id)
        if source is None:
            return None
        return source.find_link(target_id, _coerce_link_type(link_type))

    @traced("memory.traverse")
    def traverse(
        self,
        start_id: str,
        types: Iterable[LinkType | str] | None = None,
        max_depth: int = 1,
    ) -> list[MemoryNode]:
        """Breadth-first walk from ``start_id``.

        Args:
            start_id: Node to start from (excluded from the result)
            types: Only follow links of these types at every hop
            max_depth: Maximum number of edges from the start

        Returns:
            Reached nodes in discovery order
        """
        allowed = {_coerce_link_type(t) for t in types} if types is not None else None

        add_span_attributes({"memory.start_id": start_id, "memory.max_depth": max_depth})

        visited = {start_id}
        results: list[MemoryNode] = []
        queue: deque[tuple[str, int]] = deque([(start_id, 0)])

        while queue:
            current_id, depth = queue.popleft()
            if depth >= max_depth:
                continue

            node = self._nodes.get(current_id)
            if node is None:
                continue

            for link in node.connections:
                if allowed is not None and link.type not in allowed:
                    continue
                if link.target_id in visited:
                    continue

                visited.add(link.target_id)
                target = self._nodes.get(link.target_id)
                if target is not None:
                    results.append(target)
                    queue.append((link.target_id, depth + 1))

        record_histogram("memory.traverse.results", len(results))
        return results

    def serialize(self) -> str:
        """Canonical JSON: an array of nodes with their outgoing links."""
        return json.dumps([node.to_dict() for node in self._nodes.values()], indent=2)

    def deserialize(self, data: str | bytes) -> None:
        """Replace the graph's contents with a serialized graph.

        Links whose target is not part of the document are dropped.

        Raises:
            IntegrityError: If the document is not a valid serialized graph
                (the current contents are left untouched)
        """
        try:
            raw = json.loads(data)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise IntegrityError(f"Graph JSON could not be parsed: {e}") from e

        if not isinstance(raw, list):
            raise IntegrityError("Graph JSON must be an array of nodes")

        nodes: dict[str, MemoryNode] = {}
        for item in raw:
            if not isinstance(item, dict):
                raise IntegrityError("Graph node entries must be objects")
            node = MemoryNode.from_dict(item)
            nodes[node.id] = node

        dangling = 0
        for node in nodes.values():
            kept = [c for c in node.connections if c.target_id in nodes]
            dangling += len(node.connections) - len(kept)
            node.connections = kept
        if dangling:
            logger.warning(f"Dropped {dangling} links to memories missing from the document")

        self._nodes = nodes
        memory_nodes.set(len(nodes))

    @classmethod
    def from_json(cls, data: str | bytes, clock: Clock = SYSTEM_CLOCK) -> MemoryGraph:
        graph = cls(clock)
        graph.deserialize(data)
        return graph

    def get_statistics(self) -> dict[str, Any]:
        """Get graph statistics.

        Returns:
            Node and link counts, with links broken down by type
        """
        links_by_type: dict[str, int] = {t.value: 0 for t in LinkType}
        total_links = 0
        for node in self._nodes.values():
            for link in node.connections:
                links_by_type[link.type.value] += 1
                total_links += 1

        return {
            "total_nodes": len(self._nodes),
            "total_links": total_links,
            "links_by_type": links_by_type,
        }
