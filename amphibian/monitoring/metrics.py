"""Prometheus metrics collection for Amphibian.

Provides instrumentation for the collective pool, the session router and the
associative memory.
"""

import logging

from prometheus_client import Counter, Gauge, Histogram, start_http_server

logger = logging.getLogger(__name__)

# =============================================================================
# Pool Metrics
# =============================================================================

pool_devices = Gauge(
    "amphibian_pool_devices",
    "Workers registered with the coordinator",
    ["health"],  # healthy, unhealthy
)

pool_queued_requests = Gauge(
    "amphibian_pool_queued_requests",
    "Inference requests waiting for a worker",
)

pool_requests_total = Counter(
    "amphibian_pool_requests_total",
    "Inference requests reaching a terminal state",
    ["status"],  # completed, failed, cancelled
)

chunks_dispatched_total = Counter(
    "amphibian_chunks_dispatched_total",
    "Chunks assigned to workers",
    ["capability"],
)

chunk_timeouts_total = Counter(
    "amphibian_chunk_timeouts_total",
    "Chunks that missed their deadline",
    ["capability"],
)

chunk_failures_total = Counter(
    "amphibian_chunk_failures_total",
    "Chunks reported failed by workers or lost with their transport",
    ["reason"],
)

tokens_streamed_total = Counter(
    "amphibian_tokens_streamed_total",
    "Tokens received from workers",
)

chunk_latency_seconds = Histogram(
    "amphibian_chunk_latency_seconds",
    "Time from chunk dispatch to CHUNK_DONE in seconds",
    buckets=[0.1, 0.25, 0.5, 1.0, 2.0, 4.0, 8.0, 15.0, 30.0],
)

device_evictions_total = Counter(
    "amphibian_device_evictions_total",
    "Workers evicted after repeated chunk timeouts",
)

# =============================================================================
# Router Metrics
# =============================================================================

routing_decisions_total = Counter(
    "amphibian_routing_decisions_total",
    "Routing decisions produced by the session router",
    ["target", "source"],  # source: cache, llm, keyword
)

routing_cache_hits_total = Counter(
    "amphibian_routing_cache_hits_total",
    "Routing cache lookups",
    ["result"],  # hit, miss, stale
)

fallbacks_total = Counter(
    "amphibian_fallbacks_total",
    "Fallbacks taken by the core",
    ["reason"],
)

# =============================================================================
# Memory Metrics
# =============================================================================

memory_nodes = Gauge(
    "amphibian_memory_nodes",
    "Nodes currently held in the memory graph",
)

associations_formed_total = Counter(
    "amphibian_associations_formed_total",
    "Co-occurrence pairs promoted to associative edges",
)

# =============================================================================
# Convenience functions for manual metric updates
# =============================================================================


def update_pool_metrics(healthy: int, unhealthy: int, queued: int) -> None:
    """Refresh pool gauges from a coordinator snapshot."""
    pool_devices.labels(health="healthy").set(healthy)
    pool_devices.labels(health="unhealthy").set(unhealthy)
    pool_queued_requests.set(queued)


def record_routing_decision(target: str, source: str) -> None:
    """Record a routing decision."""
    routing_decisions_total.labels(target=target, source=source).inc()


def record_cache_lookup(result: str) -> None:
    """Record a routing cache lookup result."""
    routing_cache_hits_total.labels(result=result).inc()


def record_fallback(reason: str) -> None:
    """Record a fallback."""
    fallbacks_total.labels(reason=reason).inc()


def start_metrics_server(port: int) -> None:
    """Expose ``/metrics`` for Prometheus scraping on ``port``."""
    start_http_server(port)
    logger.info(f"📈 Prometheus metrics on :{port}/metrics")
