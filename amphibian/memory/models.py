"""Memory graph data model.

Nodes reference each other by id only; the graph owns every node in an
id-indexed map. JSON field names are camelCase so persisted graphs stay
readable by the mobile bridge.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from amphibian.errors import IntegrityError


class LinkType(str, Enum):
    """Kinds of directed connections between memories."""

    TEMPORAL = "temporal"  # before, after, during
    CAUSAL = "causal"  # caused, enabled
    ASSOCIATIVE = "associative"  # co-recalled or semantically similar
    ENTITY = "entity"  # people, places, things
    SPATIAL = "spatial"  # physical context


def clamp_unit(value: float) -> float:
    """Clamp a score into [0, 1]."""
    return max(0.0, min(1.0, float(value)))


@dataclass
class MemoryLink:
    """Outgoing edge from a memory node."""

    target_id: str
    type: LinkType
    weight: float = 1.0
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "targetId": self.target_id,
            "type": self.type.value,
            "weight": self.weight,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MemoryLink:
        return cls(
            target_id=str(data["targetId"]),
            type=LinkType(data["type"]),
            weight=clamp_unit(data.get("weight", 1.0)),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class MemoryNode:
    """Single unit of memory.

    Attributes:
        id: Stable identifier (UUID string unless supplied)
        content: Text of the memory
        embedding: Vector from the embedding provider, empty when unavailable
        salience: Importance in [0, 1]
        created_at: Creation time (ms)
        last_accessed: Last read or update (ms), never before ``created_at``
        connections: Outgoing links, unique per ``(target_id, type)``
    """

    id: str
    content: str
    embedding: list[float] = field(default_factory=list)
    salience: float = 1.0
    created_at: int = 0
    last_accessed: int = 0
    connections: list[MemoryLink] = field(default_factory=list)

    @staticmethod
    def new_id() -> str:
        return str(uuid.uuid4())

    def find_link(self, target_id: str, link_type: LinkType) -> MemoryLink | None:
        for link in self.connections:
            if link.target_id == target_id and link.type == link_type:
                return link
        return None

    def add_connection(
        self,
        target_id: str,
        link_type: LinkType,
        weight: float = 1.0,
        metadata: dict[str, Any] | None = None,
    ) -> MemoryLink:
        """Insert or update the ``(target_id, link_type)`` edge."""
        existing = self.find_link(target_id, link_type)
        if existing is not None:
            existing.weight = clamp_unit(weight)
            existing.metadata = {**existing.metadata, **(metadata or {})}
            return existing

        link = MemoryLink(target_id, link_type, clamp_unit(weight), dict(metadata or {}))
        self.connections.append(link)
        return link

    def touch(self, now: int) -> None:
        self.last_accessed = max(now, self.created_at)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "embedding": list(self.embedding),
            "salience": self.salience,
            "createdAt": self.created_at,
            "lastAccessed": self.last_accessed,
            "connections": [link.to_dict() for link in self.connections],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MemoryNode:
        """Build a node from its JSON form.

        Raises:
            IntegrityError: If required fields are missing or malformed
        """
        try:
            created_at = int(data["createdAt"])
            node = cls(
                id=str(data["id"]),
                content=str(data["content"]),
                embedding=[float(x) for x in data.get("embedding") or []],
                salience=clamp_unit(data.get("salience", 1.0)),
                created_at=created_at,
                last_accessed=max(int(data.get("lastAccessed", created_at)), created_at),
            )
            for raw in data.get("connections") or []:
                link = MemoryLink.from_dict(raw)
                node.add_connection(link.target_id, link.type, link.weight, link.metadata)
        except (KeyError, TypeError, ValueError) as e:
            raise IntegrityError(f"Malformed memory node: {e}", {"node": data.get("id") if isinstance(data, dict) else None}) from e
        return node
