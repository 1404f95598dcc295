"""Amphibian configuration management with environment variable overrides.

This module provides centralized configuration management with support for:
- Environment variable overrides (highest priority)
- YAML config file loading
- Pydantic validation
- Path resolution with StoragePathResolver (XDG-compliant)

Priority order for configuration values:
1. Environment variables (AMPHIBIAN_*, nested with ``__``)
2. YAML config file
3. StoragePathResolver for the persistence root
4. Pydantic defaults (lowest priority)

The flat camelCase keys used by the mobile bridge (``linkThreshold``,
``heartbeatIntervalMs``, ``router.cacheCapacity`` ...) are accepted in any
mapping handed to :class:`AmphibianConfig` and folded into the nested models.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from amphibian.storage.path_resolver import StoragePathResolver

logger = logging.getLogger(__name__)

CAPABILITIES = ("low", "medium", "high", "tpu")


class MemoryConfig(BaseModel):
    """Co-occurrence tracker configuration.

    Attributes:
        link_threshold: Belief at which a pair becomes an associative edge
        decay_rate: Belief removed from unobserved pairs at each session end
        max_observation_age_days: Age at which the time multiplier bottoms out
        trust_tiers: Multiplier per observation trust tier
        unlink_on_decay: Remove associative edges whose belief decays below threshold
        agent_name: Agent recorded as the source of session observations
    """

    link_threshold: float = Field(default=3.0, gt=0)
    decay_rate: float = Field(default=0.5, ge=0)
    max_observation_age_days: float = Field(default=30.0, gt=0)
    trust_tiers: dict[str, float] = Field(
        default_factory=lambda: {
            "self": 1.0,
            "verified_agent": 0.8,
            "platform": 0.6,
            "unknown": 0.3,
        }
    )
    unlink_on_decay: bool = False
    agent_name: str = "Amphibian"


class PoolConfig(BaseModel):
    """Collective pool timing and scheduling configuration (milliseconds).

    Attributes:
        chunk_timeouts_by_capability: Per-chunk deadline per capability class
        window_sizes: Output tokens per chunk per capability class
        heartbeat_interval_ms: Worker heartbeat period
        heartbeat_timeout_ms: Silence after which a worker is unhealthy
        cancel_deadline_ms: Time a worker has to stop streaming after CANCEL
        no_worker_timeout_ms: Wait for an eligible worker before POOL_EXHAUSTED
        challenge_ttl_ms: Lifetime of an authentication challenge
        auth_timeout_ms: Time a connecting worker has to answer the challenge
        max_consecutive_timeouts: Chunk timeouts before a worker is evicted
        drain_grace_ms: Default grace window for ``stop()``
        monitor_interval_ms: Period of the deadline sweep
        ewma_alpha: Smoothing factor for per-worker latency estimates
        overload_heartbeats: Consecutive saturated heartbeats before a worker downgrades
    """

    chunk_timeouts_by_capability: dict[str, int] = Field(
        default_factory=lambda: {"low": 30_000, "medium": 15_000, "high": 8_000, "tpu": 4_000}
    )
    window_sizes: dict[str, int] = Field(
        default_factory=lambda: {"low": 2, "medium": 16, "high": 32, "tpu": 64}
    )
    heartbeat_interval_ms: int = Field(default=5_000, gt=0)
    heartbeat_timeout_ms: int | None = None  # Resolved to 3 x interval
    cancel_deadline_ms: int = Field(default=2_000, gt=0)
    no_worker_timeout_ms: int = Field(default=10_000, gt=0)
    challenge_ttl_ms: int = Field(default=300_000, gt=0)
    auth_timeout_ms: int = Field(default=10_000, gt=0)
    max_consecutive_timeouts: int = Field(default=3, ge=1)
    drain_grace_ms: int = Field(default=10_000, ge=0)
    monitor_interval_ms: int = Field(default=250, gt=0)
    ewma_alpha: float = Field(default=0.3, gt=0, le=1)
    overload_heartbeats: int = Field(default=3, ge=1)

    @field_validator("chunk_timeouts_by_capability", "window_sizes")
    @classmethod
    def fill_capabilities(cls, v: dict[str, int], info: Any) -> dict[str, int]:
        """Merge partial per-capability overrides onto the defaults."""
        defaults = cls.model_fields[info.field_name].default_factory()  # type: ignore[misc]
        unknown = set(v) - set(CAPABILITIES)
        if unknown:
            raise ValueError(f"Unknown capability classes: {sorted(unknown)}")
        if any(value <= 0 for value in v.values()):
            raise ValueError("Per-capability values must be positive")
        return {**defaults, **v}

    @model_validator(mode="after")
    def resolve_heartbeat_timeout(self) -> PoolConfig:
        """Default heartbeat timeout to three missed intervals."""
        if self.heartbeat_timeout_ms is None:
            self.heartbeat_timeout_ms = 3 * self.heartbeat_interval_ms
        return self


class RouterConfig(BaseModel):
    """Session router configuration.

    Attributes:
        llm_confidence_floor: Classifier confidence below which replies are rejected
        cache_capacity: LRU capacity for routing decisions
        history_window: Conversation messages forwarded with a request
        min_pool_devices: Healthy workers needed to distribute high-complexity work
        max_reply_fragment: Largest JSON fragment accepted from the classifier
        buckets: Keyword rules per bucket, checked in order
    """

    llm_confidence_floor: float = Field(default=0.6, ge=0, le=1)
    cache_capacity: int = Field(default=50, ge=1)
    history_window: int = Field(default=10, ge=0)
    min_pool_devices: int = Field(default=2, ge=1)
    max_reply_fragment: int = Field(default=512, ge=2)
    buckets: dict[str, list[str]] = Field(
        default_factory=lambda: {
            "code": ["code", "refactor", "bug", "function", "compile"],
            "search": ["search", "context", "remember", "look up"],
            "pipeline": ["stitch", "pipeline", "workflow"],
            "collective": ["in depth", "detailed", "essay", "analyze", "long form"],
        }
    )


class TelemetryConfig(BaseModel):
    """OpenTelemetry configuration."""

    enabled: bool = True
    service_name: str = "amphibian"
    otlp_endpoint: str | None = Field(default_factory=lambda: os.getenv("AMPHIBIAN_OTLP_ENDPOINT"))
    enable_console_export: bool = False
    sample_rate: float = Field(default=1.0, ge=0, le=1)


# Flat keys recognized by the mobile bridge, mapped to nested locations
RECOGNIZED_KEYS: dict[str, tuple[str, str]] = {
    "linkThreshold": ("memory", "link_threshold"),
    "decayRate": ("memory", "decay_rate"),
    "maxObservationAgeDays": ("memory", "max_observation_age_days"),
    "chunkTimeoutsByCapability": ("pool", "chunk_timeouts_by_capability"),
    "heartbeatIntervalMs": ("pool", "heartbeat_interval_ms"),
    "heartbeatTimeoutMs": ("pool", "heartbeat_timeout_ms"),
    "cancelDeadlineMs": ("pool", "cancel_deadline_ms"),
    "noWorkerTimeoutMs": ("pool", "no_worker_timeout_ms"),
    "router.llmConfidenceFloor": ("router", "llm_confidence_floor"),
    "router.cacheCapacity": ("router", "cache_capacity"),
}


def normalize_recognized_keys(data: dict[str, Any]) -> dict[str, Any]:
    """Fold flat camelCase keys into the nested configuration layout.

    Both ``{"router.cacheCapacity": 10}`` and ``{"router": {"cacheCapacity": 10}}``
    are accepted. Keys that are already in nested snake_case form pass through.

    Args:
        data: Raw configuration mapping

    Returns:
        New mapping with recognized keys moved into their sections
    """
    result: dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(value, dict) and key in ("memory", "pool", "router", "telemetry"):
            result.setdefault(key, {}).update(value)
        else:
            result[key] = value

    router_section = result.get("router")
    if isinstance(router_section, dict):
        for camel in ("llmConfidenceFloor", "cacheCapacity"):
            if camel in router_section:
                result[f"router.{camel}"] = router_section.pop(camel)

    for flat_key, (section, field_name) in RECOGNIZED_KEYS.items():
        if flat_key in result:
            result.setdefault(section, {})[field_name] = result.pop(flat_key)

    return result


class AmphibianConfig(BaseSettings):
    """Main Amphibian configuration.

    Attributes:
        data_root: Persistence root (graph, provenance, identity)
        pool_name: Display name of a hosted collective
        host: Coordinator bind address
        port: Coordinator port
        engine_url: Base URL of the local Ollama-compatible engine
        engine_model: Model requested from the local engine
        environment: Deployment environment label
        memory: Co-occurrence settings
        pool: Collective pool settings
        router: Session router settings
        telemetry: OpenTelemetry settings
    """

    data_root: Path | None = None
    pool_name: str = "Amphibian Collective"
    host: str = "0.0.0.0"
    port: int = Field(default=8766, ge=1, le=65535)
    engine_url: str = "http://localhost:11434"
    engine_model: str = "gemma:2b"
    environment: str = "development"

    memory: MemoryConfig = Field(default_factory=MemoryConfig)
    pool: PoolConfig = Field(default_factory=PoolConfig)
    router: RouterConfig = Field(default_factory=RouterConfig)
    telemetry: TelemetryConfig = Field(default_factory=TelemetryConfig)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_nested_delimiter="__",
        env_prefix="amphibian_",
        extra="ignore",
    )

    @model_validator(mode="before")
    @classmethod
    def fold_recognized_keys(cls, data: Any) -> Any:
        """Accept the flat bridge keys alongside the nested layout."""
        if isinstance(data, dict):
            return normalize_recognized_keys(data)
        return data

    @model_validator(mode="after")
    def resolve_paths(self) -> AmphibianConfig:
        """Resolve the persistence root using StoragePathResolver."""
        if self.data_root is None:
            self.data_root = StoragePathResolver().base_path
        return self

    def resolver(self) -> StoragePathResolver:
        """Path resolver rooted at ``data_root``."""
        return StoragePathResolver(root=self.data_root)


def load_config_from_file(config_path: str | Path) -> dict[str, Any]:
    """Load configuration from YAML file.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        Configuration dictionary (empty when missing or unreadable)
    """
    path = Path(config_path).expanduser()
    if not path.exists():
        logger.warning(f"Config file not found: {config_path}")
        return {}

    try:
        with open(path) as f:
            config = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.error(f"Failed to load config from {config_path}: {e}")
        return {}

    if not isinstance(config, dict):
        logger.error(f"Config file {config_path} must contain a mapping")
        return {}

    logger.info(f"Loaded configuration from {config_path}")
    return config


def get_config(config_path: str | Path | None = None, **overrides: Any) -> AmphibianConfig:
    """Build a configuration instance.

    Args:
        config_path: Optional path to YAML config file
        **overrides: Explicit values (highest precedence after environment)

    Returns:
        AmphibianConfig instance
    """
    file_config = load_config_from_file(config_path) if config_path else {}
    return AmphibianConfig(**{**file_config, **overrides})
