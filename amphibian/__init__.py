"""Amphibian: associative memory and collective inference for on-device agents."""

__version__ = "0.1.0"
