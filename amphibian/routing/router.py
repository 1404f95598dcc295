"""Session router: decides where each task runs.

Classification always runs on the local engine. The router asks it for a
``{"tool", "confidence", "complexity"}`` reply, falls back to fixed keyword
rules when the reply is unusable, marks collective-worthy work as
distributed, and caches accepted decisions in a small LRU. When the pool
cannot serve a distributed request the answer comes from the local engine
and a ``FallbackUsed`` event names the reason.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, replace
from typing import Any

from amphibian.collective.coordinator import PoolHealth
from amphibian.config import RouterConfig
from amphibian.engines.base import ChatMessageDict, InferenceEngine
from amphibian.errors import (
    AmphibianError,
    ErrorKind,
    OperationTimeoutError,
    PoolExhaustedError,
    TransportLostError,
)
from amphibian.events import EventBus, FallbackUsed
from amphibian.monitoring import metrics
from amphibian.observability import add_span_attributes, traced
from amphibian.routing.cache import LRUCache

logger = logging.getLogger(__name__)

LOCAL = "local"
COLLECTIVE = "collective"
COMPLEXITIES = ("low", "medium", "high")

# Confidence attached to keyword-rule decisions
KEYWORD_CONFIDENCE = 0.5

CLASSIFY_PROMPT = (
    "You are a request router. Choose the best tool for the user's next request.\n"
    "Available tools: {tools}.\n"
    'Reply with JSON only, for example {{"tool": "local", "confidence": 0.8, "complexity": "low"}}.\n'
    "confidence is between 0 and 1; complexity is one of low, medium, high.\n"
    "Request: {task}"
)

FALLBACK_REASONS = {
    ErrorKind.POOL_EXHAUSTED: "pool_exhausted",
    ErrorKind.TIMEOUT: "timeout",
    ErrorKind.TRANSPORT_LOST: "transport_lost",
}


@dataclass(frozen=True)
class RoutingDecision:
    target: str
    confidence: float
    complexity: str = "medium"
    optimal_model: str | None = None
    use_distributed: bool = False
    source: str = "llm"

    def to_dict(self) -> dict[str, Any]:
        return {
            "target": self.target,
            "confidence": self.confidence,
            "complexity": self.complexity,
            "optimalModel": self.optimal_model,
            "useDistributed": self.use_distributed,
            "source": self.source,
        }


@dataclass(frozen=True)
class RouterResponse:
    decision: RoutingDecision
    content: str
    engine: str
    fallback_reason: str | None = None


def reply_text(reply: Any) -> str:
    """Text content of an engine reply; anything but a string reads as empty."""
    content = reply.get("content") if isinstance(reply, dict) else None
    return content if isinstance(content, str) else ""


def extract_json_fragment(text: str, max_chars: int = 512) -> dict[str, Any] | None:
    """Parse the first balanced ``{...}`` fragment in ``text``.

    Braces inside JSON strings are ignored. Fragments longer than
    ``max_chars``, unbalanced input and non-object JSON give None.
    """
    if not isinstance(text, str):
        return None
    start = text.find("{")
    if start < 0:
        return None

    depth = 0
    in_string = False
    escaped = False
    for index in range(start, min(len(text), start + max_chars)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue

        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                try:
                    value = json.loads(text[start : index + 1])
                except json.JSONDecodeError:
                    return None
                return value if isinstance(value, dict) else None

    return None


class SessionRouter:
    """Routes tasks between the local engine, keyword buckets and the collective."""

    def __init__(
        self,
        local_engine: InferenceEngine,
        config: RouterConfig | None = None,
        events: EventBus | None = None,
        collective: InferenceEngine | None = None,
        pool_health: Callable[[], PoolHealth] | None = None,
    ) -> None:
        """Initialize router.

        Args:
            local_engine: Engine used for classification and local answers
            config: ``RouterConfig`` (defaults when omitted)
            events: Bus receiving ``FallbackUsed`` events
            collective: Pooled engine for distributed requests
            pool_health: Snapshot provider for the pool
        """
        self.local_engine = local_engine
        self.config = config or RouterConfig()
        self.events = events or EventBus()
        self.collective = collective
        self.pool_health = pool_health
        self.cache: LRUCache[RoutingDecision] = LRUCache(self.config.cache_capacity)

    @property
    def tools(self) -> list[str]:
        return [LOCAL, *self.config.buckets]

    def _health(self) -> PoolHealth | None:
        return self.pool_health() if self.pool_health is not None else None

    def _reachable(self, decision: RoutingDecision) -> bool:
        if decision.target != COLLECTIVE and not decision.use_distributed:
            return True
        health = self._health()
        return self.collective is not None and health is not None and health.reachable

    def _cap_history(self, history: list[ChatMessageDict] | None) -> list[ChatMessageDict]:
        if not history or self.config.history_window == 0:
            return []
        return list(history[-self.config.history_window :])

    def _fallback(self, reason: str, **detail: Any) -> None:
        logger.info(f"↩️ Fallback: {reason}")
        metrics.record_fallback(reason)
        self.events.publish(FallbackUsed(reason, detail))

    @traced("router.decide")
    async def decide(self, task: str, history: list[ChatMessageDict] | None = None) -> RoutingDecision:
        """Route ``task``; see the module docstring for the procedure."""
        cached = self.cache.get(task)
        if cached is not None:
            if self._reachable(cached):
                metrics.record_cache_lookup("hit")
                return replace(cached, source="cache")
            self.cache.invalidate(task)
            metrics.record_cache_lookup("stale")
        else:
            metrics.record_cache_lookup("miss")

        decision = await self._classify(task, history) or self._keyword_decision(task)
        decision = self._apply_distribution(decision)
        self.cache.put(task, decision)

        metrics.record_routing_decision(decision.target, decision.source)
        add_span_attributes({"router.target": decision.target, "router.source": decision.source})
        logger.debug(f"Routed to {decision.target} via {decision.source} (distributed={decision.use_distributed})")
        return decision

    async def _classify(self, task: str, history: list[ChatMessageDict] | None) -> RoutingDecision | None:
        prompt = CLASSIFY_PROMPT.format(tools=", ".join(self.tools), task=task)
        messages = [*self._cap_history(history), {"role": "user", "content": prompt}]

        try:
            reply = await self.local_engine.chat(messages)
        except AmphibianError as e:
            self._fallback("keyword_rules", cause="classifier_error", error=e.message)
            return None

        parsed = extract_json_fragment(reply_text(reply), self.config.max_reply_fragment)
        if parsed is None:
            self._fallback("keyword_rules", cause="unparseable_reply")
            return None

        tool = parsed.get("tool")
        try:
            confidence = float(parsed.get("confidence", 0))
        except (TypeError, ValueError):
            confidence = 0.0
        complexity = parsed.get("complexity", "medium")
        if complexity not in COMPLEXITIES:
            complexity = "medium"

        if tool not in self.tools:
            self._fallback("keyword_rules", cause="unknown_tool", tool=str(tool))
            return None
        if confidence < self.config.llm_confidence_floor:
            self._fallback("keyword_rules", cause="low_confidence", confidence=confidence)
            return None

        optimal_model = parsed.get("optimalModel") or parsed.get("model")
        return RoutingDecision(
            target=tool,
            confidence=confidence,
            complexity=complexity,
            optimal_model=optimal_model if isinstance(optimal_model, str) else None,
            source="llm",
        )

    def _keyword_decision(self, task: str) -> RoutingDecision:
        text = task.lower()
        for bucket, keywords in self.config.buckets.items():
            if any(keyword in text for keyword in keywords):
                complexity = "high" if bucket == COLLECTIVE else "medium"
                return RoutingDecision(bucket, KEYWORD_CONFIDENCE, complexity, source="keyword")
        return RoutingDecision(LOCAL, KEYWORD_CONFIDENCE, "low", source="keyword")

    def _apply_distribution(self, decision: RoutingDecision) -> RoutingDecision:
        if self.collective is None:
            return decision
        health = self._health()
        populated = health is not None and health.healthy_devices >= self.config.min_pool_devices
        distributed = decision.target == COLLECTIVE or (decision.complexity == "high" and populated)
        return replace(decision, use_distributed=distributed)

    async def respond(self, task: str, history: list[ChatMessageDict] | None = None) -> RouterResponse:
        """Decide and answer ``task``, degrading to the local engine when the pool fails."""
        decision = await self.decide(task, history)
        messages = [*self._cap_history(history), {"role": "user", "content": task}]

        fallback_reason = None
        if decision.use_distributed and self.collective is not None:
            try:
                reply = await self.collective.chat(messages)
                return RouterResponse(decision, reply_text(reply), COLLECTIVE)
            except (PoolExhaustedError, OperationTimeoutError, TransportLostError) as e:
                fallback_reason = FALLBACK_REASONS[e.kind]
                self.cache.invalidate(task)
                self._fallback(fallback_reason, task=task[:80], error=e.message)

        reply = await self.local_engine.chat(messages)
        return RouterResponse(decision, reply_text(reply), LOCAL, fallback_reason)

    def invalidate(self, task: str) -> bool:
        return self.cache.invalidate(task)

    def clear_cache(self) -> None:
        self.cache.clear()
