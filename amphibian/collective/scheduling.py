"""Capability classes, device records and worker selection."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum

from amphibian.config import PoolConfig

# Per-class rank and maximum concurrent chunks
_RANK = {"low": 1, "medium": 2, "high": 3, "tpu": 4}
_PARALLELISM = {"low": 1, "medium": 2, "high": 3, "tpu": 4}

MAX_HEALTH = 100
TIMEOUT_PENALTY = 25
COMPLETION_CREDIT = 5


class Capability(str, Enum):
    """Self-declared device capability class."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    TPU = "tpu"

    @property
    def rank(self) -> int:
        return _RANK[self.value]

    @property
    def parallelism(self) -> int:
        return _PARALLELISM[self.value]

    def downgrade(self) -> Capability:
        """Next class down (``low`` stays ``low``)."""
        order = list(Capability)
        return order[max(0, order.index(self) - 1)]

    def window(self, config: PoolConfig) -> int:
        return config.window_sizes[self.value]

    def chunk_timeout_ms(self, config: PoolConfig) -> int:
        return config.chunk_timeouts_by_capability[self.value]


class TaskKind(str, Enum):
    INFERENCE = "inference"
    EMBED = "embed"
    TRAINING = "training"
    VALIDATION = "validation"


@dataclass
class DeviceRecord:
    """Coordinator-side view of one worker."""

    device_id: str
    capability: Capability
    public_key: str
    joined_at: int
    last_heartbeat: int
    name: str = ""
    join_order: int = 0
    completed_tasks: int = 0
    active_chunks: set[str] = field(default_factory=set)
    ewma_latency_s: float | None = None
    consecutive_timeouts: int = 0
    health_score: int = MAX_HEALTH
    healthy: bool = True
    unhealthy_reason: str | None = None
    load: float = 0.0

    @property
    def score(self) -> float:
        """Estimated speed: rank discounted by observed chunk latency."""
        return self.capability.rank / (1 + (self.ewma_latency_s or 0.0))

    def has_capacity(self) -> bool:
        return len(self.active_chunks) < self.capability.parallelism

    def mark_unhealthy(self, reason: str) -> None:
        self.healthy = False
        self.unhealthy_reason = reason

    def mark_healthy(self) -> None:
        self.healthy = True
        self.unhealthy_reason = None

    def record_timeout(self) -> None:
        self.consecutive_timeouts += 1
        self.health_score = max(0, self.health_score - TIMEOUT_PENALTY)

    def record_completion(self, latency_s: float, alpha: float) -> None:
        self.consecutive_timeouts = 0
        self.completed_tasks += 1
        self.health_score = min(MAX_HEALTH, self.health_score + COMPLETION_CREDIT)
        self.ewma_latency_s = ewma(self.ewma_latency_s, latency_s, alpha)


def ewma(previous: float | None, sample: float, alpha: float) -> float:
    """Exponentially weighted moving average seeded by the first sample."""
    if previous is None:
        return sample
    return alpha * sample + (1 - alpha) * previous


def select_worker(
    devices: Iterable[DeviceRecord],
    excluded: set[str] | frozenset[str] = frozenset(),
) -> DeviceRecord | None:
    """Fastest eligible idle worker.

    Eligible means healthy, not excluded and below its parallelism cap.
    Ties go to the fewest active chunks, then the earliest join.
    """
    eligible = [
        d for d in devices if d.healthy and d.device_id not in excluded and d.has_capacity()
    ]
    if not eligible:
        return None
    return min(eligible, key=lambda d: (-d.score, len(d.active_chunks), d.joined_at, d.join_order))
