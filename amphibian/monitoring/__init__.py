"""Prometheus instrumentation for Amphibian."""
