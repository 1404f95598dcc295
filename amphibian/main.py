"""Amphibian main entry point."""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import Any

from amphibian.clock import SYSTEM_CLOCK, Clock
from amphibian.collective.coordinator import PoolCoordinator
from amphibian.collective.engine import CollectiveEngine
from amphibian.collective.identity import CollectiveIdentity, IdentityManager
from amphibian.config import AmphibianConfig, get_config
from amphibian.engines.base import ChatMessageDict, EmbeddingEngine, InferenceEngine
from amphibian.engines.ollama import OllamaEngine
from amphibian.errors import OperationTimeoutError, PoolExhaustedError, TransportLostError
from amphibian.events import EventBus
from amphibian.memory.cooccurrence import CooccurrenceTracker
from amphibian.memory.graph import MemoryGraph
from amphibian.memory.models import MemoryNode
from amphibian.memory.storage import MemoryStorage
from amphibian.routing.router import RouterResponse, SessionRouter

logger = logging.getLogger(__name__)


class AmphibianApplication:
    """Amphibian node with lifecycle management.

    Owns one memory graph with its co-occurrence tracker, the local identity,
    the session router and, when hosting, a pool coordinator. Components are
    constructed here and threaded through explicitly.

    Attributes:
        config: Resolved configuration
        events: Event bus shared by every component
        graph: Associative memory graph (loaded by ``initialize``)
        tracker: Co-occurrence tracker bound to ``graph``
        identity: Local collective identity
        router: Session router
        coordinator: Pool coordinator while hosting
        shutdown_event: Event for graceful shutdown
    """

    def __init__(
        self,
        config: AmphibianConfig | None = None,
        clock: Clock = SYSTEM_CLOCK,
        local_engine: InferenceEngine | None = None,
    ) -> None:
        """Initialize application.

        Args:
            config: Configuration (built from environment and defaults if omitted)
            clock: Millisecond clock shared by every component
            local_engine: Local engine (an Ollama client for ``config.engine_url`` if omitted)
        """
        self.config = config or get_config()
        self.clock = clock
        self.resolver = self.config.resolver()
        self.events = EventBus()
        self.shutdown_event = asyncio.Event()

        self.memory_storage = MemoryStorage(self.resolver.get_graph_path(), clock)
        self.graph = MemoryGraph(clock)
        self.tracker = self._build_tracker(self.graph)

        self.identity_manager = IdentityManager(clock, self.config.pool.challenge_ttl_ms)
        self.identity: CollectiveIdentity | None = None

        self.local_engine = local_engine or OllamaEngine(self.config.engine_url, self.config.engine_model)
        self.router = SessionRouter(self.local_engine, self.config.router, self.events)
        self.coordinator: PoolCoordinator | None = None

        logger.info(f"Initialized Amphibian ({self.config.environment}) at {self.resolver.base_path}")

    def _build_tracker(self, graph: MemoryGraph) -> CooccurrenceTracker:
        return CooccurrenceTracker(
            graph,
            self.resolver.get_provenance_path(),
            self.config.memory,
            self.clock,
            self.events,
        )

    async def initialize(self) -> None:
        """Load persisted memory and the local identity."""
        self.resolver.ensure_directories()

        self.graph = await self.memory_storage.load()
        self.tracker = self._build_tracker(self.graph)
        await self.tracker.load()
        logger.info(f"✓ Memory graph ready ({len(self.graph)} memories)")

        self.identity = await self.identity_manager.load_or_create(self.resolver.get_identity_path())
        logger.info(f"✓ Identity {self.identity.display_name} ({self.identity.id})")

    async def start_host(self, host: str | None = None, port: int | None = None) -> PoolCoordinator:
        """Host a collective and route distributed work through it."""
        coordinator = PoolCoordinator(
            self.config.pool,
            self.identity_manager,
            self.clock,
            self.events,
            pool_name=self.config.pool_name,
        )
        await coordinator.start(host or self.config.host, self.config.port if port is None else port)

        self.coordinator = coordinator
        self.router.collective = CollectiveEngine(coordinator)
        self.router.pool_health = coordinator.health
        return coordinator

    # ------------------------------------------------------------------
    # Memory and chat
    # ------------------------------------------------------------------

    def remember(self, content: str, embedding: list[float] | None = None) -> MemoryNode:
        return self.graph.add_memory(content, embedding)

    async def remember_embedded(self, content: str) -> MemoryNode:
        """Store a memory with a vector from the pool, else from the local engine.

        The memory is stored without an embedding when no engine can embed it.
        """
        embedding = None
        for engine in (self.router.collective, self.local_engine):
            if not isinstance(engine, EmbeddingEngine):
                continue
            try:
                embedding = (await engine.embed([content]))[0]
                break
            except (PoolExhaustedError, OperationTimeoutError, TransportLostError) as e:
                logger.warning(f"Embedding failed on {type(engine).__name__}: {e.message}")
        return self.remember(content, embedding)

    def recall(self, memory_id: str) -> MemoryNode | None:
        """Fetch a memory and count the recall toward co-occurrence."""
        node = self.graph.get_memory(memory_id)
        if node is not None:
            self.tracker.track_recall(memory_id)
        return node

    async def end_session(self, meta: dict[str, Any] | None = None) -> list[str]:
        """Close the recall session and persist the graph."""
        linked = await self.tracker.end_session(meta)
        await self.memory_storage.save(self.graph)
        return linked

    async def respond(self, task: str, history: list[ChatMessageDict] | None = None) -> RouterResponse:
        return await self.router.respond(task, history)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Run until SIGINT or SIGTERM."""
        logger.info("Setting up signal handlers for graceful shutdown")
        signal.signal(signal.SIGTERM, self._handle_shutdown)
        signal.signal(signal.SIGINT, self._handle_shutdown)

        logger.info("✅ Amphibian application started successfully")
        if self.coordinator is not None:
            logger.info(f"   Pool: {self.coordinator.pool_name} on port {self.coordinator.port}")

        try:
            await self.shutdown_event.wait()
        except asyncio.CancelledError:
            logger.info("Application cancelled")

    def _handle_shutdown(self, signum: int, _frame: Any = None) -> None:
        """Handle shutdown signal.

        Args:
            signum: Signal number (SIGINT or SIGTERM)
            _frame: Current stack frame (unused)
        """
        signal_name = "SIGINT" if signum == signal.SIGINT else "SIGTERM"
        logger.info(f"Received {signal_name} signal, initiating graceful shutdown")
        self.shutdown_event.set()

    async def stop(self) -> None:
        """Drain the pool, then persist memory."""
        logger.info("Stopping Amphibian application")

        if self.coordinator is not None:
            await self.coordinator.stop()
            self.router.collective = None
            self.router.pool_health = None

        await self.tracker.save()
        await self.memory_storage.save(self.graph)

        close = getattr(self.local_engine, "aclose", None)
        if close is not None:
            await close()

        self.events.close()
        logger.info("✅ Amphibian application shutdown complete")
