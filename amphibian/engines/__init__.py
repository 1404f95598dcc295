"""Inference engine and retrieval store adapters."""

from amphibian.engines.base import ChatMessageDict, EmbeddingEngine, InferenceEngine, RagStore
from amphibian.engines.ollama import OllamaEngine

__all__ = ["ChatMessageDict", "EmbeddingEngine", "InferenceEngine", "OllamaEngine", "RagStore"]
