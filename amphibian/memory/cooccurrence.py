"""Co-occurrence tracking with edge provenance.

Memories recalled together within a session accumulate evidence. Each
session end turns the per-memory recall counts into one observation per
unordered pair, recomputes the pair's belief from its full observation
history, and promotes the pair to an associative link once the belief
crosses the link threshold. Pairs that were not observed decay.

Provenance (observations and belief per pair) is kept apart from the graph
in ``memory/cooccurrence_provenance.json``. The graph is authoritative for
links, the tracker for provenance.
"""

from __future__ import annotations

import logging
import math
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from itertools import combinations
from pathlib import Path
from typing import Any

from amphibian.clock import SYSTEM_CLOCK, Clock
from amphibian.config import MemoryConfig
from amphibian.errors import InputInvalidError, IntegrityError
from amphibian.events import AssociationFormed, EventBus
from amphibian.memory.graph import MemoryGraph
from amphibian.memory.models import LinkType
from amphibian.monitoring.metrics import associations_formed_total
from amphibian.observability import add_span_attributes, record_counter, record_histogram, traced
from amphibian.storage.atomic import read_json_async, write_json_atomic

logger = logging.getLogger(__name__)

MS_PER_DAY = 86_400_000
DEFAULT_TRUST = 0.3


@dataclass
class Observation:
    """One piece of evidence that two memories belong together."""

    observed_at: int
    source: dict[str, Any]
    weight: float = 1.0
    trust_tier: str = "self"
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "observedAt": self.observed_at,
            "source": dict(self.source),
            "weight": self.weight,
            "trustTier": self.trust_tier,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Observation:
        return cls(
            id=str(data.get("id") or uuid.uuid4()),
            observed_at=int(data["observedAt"]),
            source=dict(data.get("source") or {}),
            weight=float(data.get("weight", 1.0)),
            trust_tier=str(data.get("trustTier", "unknown")),
        )


@dataclass
class CooccurrenceEdge:
    """Provenance for one unordered pair."""

    observations: list[Observation] = field(default_factory=list)
    belief: float = 0.0
    last_updated: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "observations": [obs.to_dict() for obs in self.observations],
            "belief": self.belief,
            "lastUpdated": self.last_updated,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CooccurrenceEdge:
        return cls(
            observations=[Observation.from_dict(o) for o in data.get("observations") or []],
            belief=max(0.0, float(data.get("belief", 0.0))),
            last_updated=int(data.get("lastUpdated", 0)),
        )


def pair_key(a: str, b: str) -> str:
    """Canonical ``min|max`` key for an unordered pair."""
    if a == b:
        raise InputInvalidError("A co-occurrence pair needs two distinct memories", {"id": a})
    lo, hi = sorted((a, b))
    return f"{lo}|{hi}"


def split_pair_key(key: str) -> tuple[str, str]:
    lo, _, hi = key.partition("|")
    return lo, hi


def calculate_belief(
    observations: list[Observation],
    now: int,
    trust_tiers: dict[str, float],
    max_age_days: float,
) -> float:
    """Aggregate evidence for a pair, rounded to three decimals.

    Each observation contributes ``weight * trust * time * rate`` where the
    time multiplier loses up to 10% over ``max_age_days`` (never below 0.1)
    and the fourth and later observations from the same source are damped
    by ``1/sqrt(k-2)``.
    """
    belief = 0.0
    per_source: dict[str, int] = defaultdict(int)

    for obs in sorted(observations, key=lambda o: o.observed_at):
        age_days = (now - obs.observed_at) / MS_PER_DAY
        time_mult = max(0.1, 1 - min(1.0, age_days / max_age_days) * 0.1)
        trust_mult = trust_tiers.get(obs.trust_tier, DEFAULT_TRUST)

        source_key = f"{obs.source.get('type')}:{obs.source.get('agent')}"
        per_source[source_key] += 1
        k = per_source[source_key]
        rate_mult = 1.0 if k <= 3 else 1 / math.sqrt(k - 2)

        belief += obs.weight * trust_mult * time_mult * rate_mult

    return round(belief, 3)


def normalize_belief(belief: float) -> float:
    """Map belief onto a link weight in [0, 1]."""
    return min(1.0, belief / 10.0)


class CooccurrenceTracker:
    """Turns in-session recalls into associative links.

    The tracker is the single writer for its graph's associative links and
    for the provenance file. Every graph mutation belonging to a session is
    applied before the provenance write is awaited, so readers between
    sessions never observe half a session.
    """

    def __init__(
        self,
        graph: MemoryGraph,
        provenance_path: Path | None = None,
        config: MemoryConfig | None = None,
        clock: Clock = SYSTEM_CLOCK,
        events: EventBus | None = None,
    ) -> None:
        """Initialize tracker.

        Args:
            graph: Graph receiving associative links
            provenance_path: Provenance JSON file (None keeps provenance in memory)
            config: Thresholds, decay and trust tiers
            clock: Millisecond clock used for observation timestamps
            events: Bus receiving ``AssociationFormed``
        """
        self.graph = graph
        self.provenance_path = Path(provenance_path) if provenance_path else None
        self.config = config or MemoryConfig()
        self.clock = clock
        self.events = events

        self.session_recalls: dict[str, int] = {}
        self.edges: dict[str, CooccurrenceEdge] = {}
        self._pending: dict[str, list[Observation]] = defaultdict(list)

    def track_recall(self, memory_id: str) -> None:
        """Count a recall of ``memory_id`` in the current session."""
        self.session_recalls[memory_id] = self.session_recalls.get(memory_id, 0) + 1

    def record_observation(self, a: str, b: str, observation: Observation) -> None:
        """Queue external evidence for a pair; applied at the next session end."""
        self._pending[pair_key(a, b)].append(observation)

    def get_belief(self, a: str, b: str) -> float:
        edge = self.edges.get(pair_key(a, b))
        return edge.belief if edge else 0.0

    @traced("memory.end_session")
    async def end_session(self, meta: dict[str, Any] | None = None) -> list[str]:
        """Close the current session.

        Args:
            meta: Session metadata; ``sessionId`` is recorded on observations

        Returns:
            Pair keys promoted to associative links by this session
        """
        meta = meta or {}
        now = self.clock.now()
        threshold = self.config.link_threshold

        session_obs: dict[str, list[Observation]] = defaultdict(list)
        for a, b in combinations(sorted(self.session_recalls), 2):
            weight = math.sqrt(min(self.session_recalls[a], self.session_recalls[b]))
            session_obs[pair_key(a, b)].append(
                Observation(
                    observed_at=now,
                    source={
                        "type": "session_recall",
                        "agent": self.config.agent_name,
                        "sessionId": meta.get("sessionId"),
                    },
                    weight=weight,
                    trust_tier="self",
                )
            )
        for key, pending in self._pending.items():
            session_obs[key].extend(pending)

        add_span_attributes({
            "memory.session_id": str(meta.get("sessionId")),
            "memory.recalled": len(self.session_recalls),
            "memory.pairs": len(session_obs),
        })

        newly_linked: list[str] = []
        for key, observations in session_obs.items():
            edge = self.edges.setdefault(key, CooccurrenceEdge(last_updated=now))
            edge.observations.extend(observations)
            edge.last_updated = now

            old_belief = edge.belief
            edge.belief = calculate_belief(
                edge.observations,
                now,
                self.config.trust_tiers,
                self.config.max_observation_age_days,
            )

            if edge.belief >= threshold:
                linked = self._link_pair(key, edge.belief)
                if old_belief < threshold and linked:
                    newly_linked.append(key)
                    self._announce(key, edge.belief)

        self._decay_unobserved(set(session_obs))

        self.session_recalls.clear()
        self._pending.clear()

        record_counter("memory.sessions.ended", 1)
        record_histogram("memory.session.pairs", len(session_obs))

        await self.save()
        return newly_linked

    def _link_pair(self, key: str, belief: float) -> bool:
        a, b = split_pair_key(key)
        weight = normalize_belief(belief)
        forward = self.graph.link_memories(a, b, LinkType.ASSOCIATIVE, weight)
        backward = self.graph.link_memories(b, a, LinkType.ASSOCIATIVE, weight)
        if not (forward and backward):
            logger.warning(f"Pair {key} passed the link threshold but a memory is missing from the graph")
        return forward and backward

    def _announce(self, key: str, belief: float) -> None:
        associations_formed_total.inc()
        logger.info(f"🔗 Association formed: {key} (belief {belief})")
        if self.events is not None:
            self.events.publish(AssociationFormed(key, belief, normalize_belief(belief)))

    def _decay_unobserved(self, observed: set[str]) -> None:
        threshold = self.config.link_threshold
        for key, edge in self.edges.items():
            if key in observed:
                continue

            was_above = edge.belief >= threshold
            edge.belief = max(0.0, round(edge.belief - self.config.decay_rate, 3))

            if edge.belief >= threshold:
                self._link_pair(key, edge.belief)
            elif was_above and self.config.unlink_on_decay:
                a, b = split_pair_key(key)
                self.graph.unlink_memories(a, b, LinkType.ASSOCIATIVE)
                self.graph.unlink_memories(b, a, LinkType.ASSOCIATIVE)
                logger.debug(f"Unlinked decayed pair {key}")

    def provenance(self) -> dict[str, Any]:
        """JSON form of every pair's provenance."""
        return {key: edge.to_dict() for key, edge in self.edges.items()}

    async def save(self) -> None:
        if self.provenance_path is None:
            return
        await write_json_atomic(self.provenance_path, self.provenance())

    async def load(self) -> None:
        """Load provenance; an absent or corrupt file leaves the tracker empty."""
        if self.provenance_path is None:
            return

        try:
            raw = await read_json_async(self.provenance_path)
            if raw is None:
                return
            if not isinstance(raw, dict):
                raise IntegrityError("Provenance must be an object keyed by pair")
        except IntegrityError as e:
            logger.warning(f"⚠️ Could not load co-occurrence provenance, starting empty: {e}")
            self.edges = {}
            return

        edges: dict[str, CooccurrenceEdge] = {}
        for key, value in raw.items():
            if not isinstance(value, dict):
                logger.warning(f"Skipping provenance entry {key!r}: expected an object")
                continue
            try:
                edges[key] = CooccurrenceEdge.from_dict(value)
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed provenance entry {key!r}: {e}")
        self.edges = edges

        logger.info(f"Loaded provenance for {len(self.edges)} memory pairs")

    def get_statistics(self) -> dict[str, Any]:
        threshold = self.config.link_threshold
        return {
            "tracked_pairs": len(self.edges),
            "linked_pairs": sum(1 for e in self.edges.values() if e.belief >= threshold),
            "observations": sum(len(e.observations) for e in self.edges.values()),
            "session_recalls": len(self.session_recalls),
        }
