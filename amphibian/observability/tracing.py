"""OpenTelemetry distributed tracing setup for Amphibian.

This module provides:
- Span helpers for coordinator, worker, router and memory operations
- Metrics collection through the OpenTelemetry meter API
- Export to an OTLP collector and a Prometheus reader

Until ``setup_telemetry()`` runs, every helper talks to the global no-op
providers, so library code can be traced unconditionally.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any

from opentelemetry import metrics, trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.exporter.prometheus import PrometheusMetricReader
from opentelemetry.instrumentation.asyncio import AsyncioInstrumentor
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased

logger = logging.getLogger(__name__)

# Global tracer and meter
_tracer: trace.Tracer | None = None
_meter: metrics.Meter | None = None
_tracer_provider: TracerProvider | None = None
_meter_provider: MeterProvider | None = None


def setup_telemetry(
    service_name: str = "amphibian",
    environment: str = "development",
    otlp_endpoint: str | None = None,
    enable_console_export: bool = False,
    sample_rate: float = 1.0,
) -> tuple[trace.Tracer, metrics.Meter]:
    """Setup OpenTelemetry tracing and metrics.

    Args:
        service_name: Name of the service
        environment: Environment (development, production)
        otlp_endpoint: OTLP collector endpoint (e.g., http://localhost:4317)
        enable_console_export: Export spans to console for debugging
        sample_rate: Sampling rate (0.0 to 1.0, 1.0 = all traces)

    Returns:
        Tuple of (tracer, meter)
    """
    global _tracer, _meter, _tracer_provider, _meter_provider

    if _tracer is not None and _meter is not None:
        return _tracer, _meter

    resource = Resource.create({
        "service.name": service_name,
        "service.namespace": "amphibian",
        "deployment.environment": environment,
    })

    tracer_provider = TracerProvider(resource=resource, sampler=TraceIdRatioBased(sample_rate))

    if otlp_endpoint:
        otlp_exporter = OTLPSpanExporter(endpoint=otlp_endpoint, insecure=True)
        tracer_provider.add_span_processor(BatchSpanProcessor(otlp_exporter))
        logger.info(f"✅ OTLP tracing enabled: {otlp_endpoint}")

    if enable_console_export:
        tracer_provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
        logger.info("✅ Console span export enabled")

    trace.set_tracer_provider(tracer_provider)
    _tracer_provider = tracer_provider
    _tracer = trace.get_tracer(__name__)

    meter_provider = MeterProvider(resource=resource, metric_readers=[PrometheusMetricReader()])
    metrics.set_meter_provider(meter_provider)
    _meter_provider = meter_provider
    _meter = metrics.get_meter(__name__)

    AsyncioInstrumentor().instrument()

    logger.info(f"✅ Telemetry initialized: {service_name} ({environment})")
    logger.info(f"   Sampling rate: {sample_rate:.0%}")

    return _tracer, _meter


def get_tracer() -> trace.Tracer:
    """Get the tracer (global no-op proxy before setup)."""
    if _tracer is None:
        return trace.get_tracer(__name__)
    return _tracer


def get_meter() -> metrics.Meter:
    """Get the meter (global no-op proxy before setup)."""
    if _meter is None:
        return metrics.get_meter(__name__)
    return _meter


@contextmanager
def trace_operation(
    operation_name: str,
    attributes: dict[str, Any] | None = None,
) -> Iterator[trace.Span]:
    """Context manager for tracing an operation.

    Args:
        operation_name: Name of the operation
        attributes: Additional span attributes

    Yields:
        Span object

    Example:
        with trace_operation("pool.dispatch_chunk", {"chunk_id": chunk.chunk_id}):
            await channel.send(message)
    """
    with get_tracer().start_as_current_span(operation_name, attributes=attributes or {}) as span:
        try:
            yield span
            span.set_status(trace.StatusCode.OK)
        except Exception as e:
            span.record_exception(e)
            span.set_status(trace.StatusCode.ERROR, str(e))
            raise


def add_span_attributes(attributes: dict[str, str | int | float | bool]) -> None:
    """Add attributes to the current span.

    Args:
        attributes: Dictionary of attributes to add
    """
    current_span = trace.get_current_span()
    if current_span and current_span.is_recording():
        current_span.set_attributes(attributes)


def record_counter(
    name: str,
    value: int = 1,
    attributes: dict[str, str] | None = None,
) -> None:
    """Record a counter metric.

    Args:
        name: Metric name
        value: Counter increment
        attributes: Metric attributes
    """
    counter = get_meter().create_counter(name, description=f"Counter for {name}")
    counter.add(value, attributes or {})


def record_histogram(
    name: str,
    value: float,
    attributes: dict[str, str] | None = None,
) -> None:
    """Record a histogram metric (distribution).

    Args:
        name: Metric name
        value: Histogram value
        attributes: Metric attributes
    """
    histogram = get_meter().create_histogram(name, description=f"Histogram for {name}")
    histogram.record(value, attributes or {})


def traced(
    operation_name: str | None = None,
    attributes: dict[str, str] | None = None,
) -> Callable:
    """Decorator to automatically trace a function.

    Args:
        operation_name: Name of the operation (defaults to function name)
        attributes: Additional span attributes

    Returns:
        Decorated function

    Example:
        @traced("memory.end_session")
        async def end_session(self, meta): ...
    """

    def decorator(func: Callable) -> Callable:
        name = operation_name or f"{func.__module__}.{func.__name__}"

        @functools.wraps(func)
        async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
            with trace_operation(name, attributes) as span:
                span.set_attribute("function.name", func.__name__)
                span.set_attribute("function.module", func.__module__)
                return await func(*args, **kwargs)

        @functools.wraps(func)
        def sync_wrapper(*args: Any, **kwargs: Any) -> Any:
            with trace_operation(name, attributes) as span:
                span.set_attribute("function.name", func.__name__)
                span.set_attribute("function.module", func.__module__)
                return func(*args, **kwargs)

        if asyncio.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator


def shutdown_telemetry() -> None:
    """Flush and shut down the providers installed by ``setup_telemetry``."""
    global _tracer, _meter, _tracer_provider, _meter_provider

    logger.info("Shutting down telemetry...")

    if _tracer_provider is not None:
        _tracer_provider.shutdown()
    if _meter_provider is not None:
        _meter_provider.shutdown()

    _tracer = None
    _meter = None
    _tracer_provider = None
    _meter_provider = None

    logger.info("✅ Telemetry shutdown complete")
