"""Pool coordinator: hosts a collective and shards inference across workers.

Lifecycle is ``IDLE -> LISTENING -> RUNNING -> DRAINING -> STOPPED``. All pool
state (devices, request queue, inflight chunks) is owned here and mutated
only from synchronous handlers; network I/O happens in per-connection reader
tasks and per-device writer tasks that feed those handlers.

Each request is generated as a sequence of chunks, one inflight at a time,
each continuing the cumulative token prefix on a single worker. Timeouts,
failures and disconnects keep the tokens already streamed and re-queue the
rest of the chunk, excluding the worker that failed it.

Embedding jobs go to a single worker as one ``EMBED`` unit. They share the
workers' chunk slots and deadlines, and move to another worker on failure.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import secrets
import uuid
from collections.abc import AsyncIterator, Coroutine
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import ValidationError

from amphibian.clock import SYSTEM_CLOCK, Clock
from amphibian.collective.assembler import StreamAssembler
from amphibian.collective.identity import IdentityManager
from amphibian.collective.protocol import (
    Auth,
    AuthFail,
    AuthRequired,
    AuthSuccess,
    Cancel,
    CapabilityUpdate,
    ChatMessage,
    ChunkAssign,
    ChunkDone,
    ChunkFail,
    ChunkToken,
    EmbedAssign,
    EmbedResult,
    Heartbeat,
    PeerInfo,
    PeerJoined,
    PeerLeft,
    WireModel,
)
from amphibian.collective.scheduling import Capability, DeviceRecord, TaskKind, select_worker
from amphibian.collective.share_code import generate_secret, generate_share_code, local_ip_addresses
from amphibian.collective.transport import MessageChannel, Transport, start_stream_server
from amphibian.config import PoolConfig
from amphibian.errors import (
    AmphibianError,
    AuthFailedError,
    InputInvalidError,
    PoolExhaustedError,
    TransportLostError,
)
from amphibian.events import DeviceJoined, DeviceLeft, Event, EventBus, TaskCompleted, TaskFailed
from amphibian.monitoring import metrics
from amphibian.observability import add_span_attributes, record_counter, traced
from amphibian.observability.security_logging import get_security_logger

logger = logging.getLogger(__name__)


class PoolState(str, Enum):
    IDLE = "idle"
    LISTENING = "listening"
    RUNNING = "running"
    DRAINING = "draining"
    STOPPED = "stopped"


@dataclass(frozen=True)
class PoolHealth:
    """Snapshot consumed by the session router."""

    state: PoolState
    total_devices: int
    healthy_devices: int
    queued_requests: int
    inflight_chunks: int

    @property
    def reachable(self) -> bool:
        return self.state in (PoolState.LISTENING, PoolState.RUNNING) and self.healthy_devices > 0


_END = object()


class TokenStream:
    """Ordered token stream for one request.

    Iterating yields tokens as they are released in schedule order. A failed
    request raises its categorized error once the buffered tokens are
    consumed; a cancelled request simply ends with ``status == "cancelled"``.
    """

    def __init__(self, task_id: str, coordinator: PoolCoordinator) -> None:
        self.task_id = task_id
        self.status: str | None = None
        self.error: AmphibianError | None = None
        self._coordinator = coordinator
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._tokens: list[str] = []
        self._done = asyncio.Event()

    @property
    def done(self) -> bool:
        return self.status is not None

    @property
    def tokens(self) -> list[str]:
        return list(self._tokens)

    def __aiter__(self) -> AsyncIterator[str]:
        return self

    async def __anext__(self) -> str:
        item = await self._queue.get()
        if item is _END:
            self._queue.put_nowait(_END)
            if self.error is not None:
                raise self.error
            raise StopAsyncIteration
        return item

    async def text(self) -> str:
        """Wait for the request to end and return everything it produced.

        Raises:
            AmphibianError: The categorized failure of a failed request
        """
        await self._done.wait()
        if self.error is not None:
            raise self.error
        return "".join(self._tokens)

    def cancel(self) -> bool:
        return self._coordinator.cancel(self.task_id)

    def _push(self, token: str) -> None:
        self._tokens.append(token)
        self._queue.put_nowait(token)

    def _finish(self, status: str, error: AmphibianError | None = None) -> None:
        if self.status is not None:
            return
        self.status = status
        self.error = error
        self._queue.put_nowait(_END)
        self._done.set()


@dataclass
class _Chunk:
    chunk_id: str
    task_id: str
    seq: int
    max_tokens: int
    device_id: str
    dispatched_at: int
    deadline: int
    is_retry: bool = False
    tokens: list[str] = field(default_factory=list)


@dataclass
class _Request:
    task_id: str
    messages: list[ChatMessage]
    max_tokens: int
    model: str | None
    submitted_at: int
    stream: TokenStream
    assembler: StreamAssembler
    prefix_parts: list[str] = field(default_factory=list)
    next_seq: int = 0
    current: _Chunk | None = None
    retry_remaining: int = 0
    retry_excluded: set[str] = field(default_factory=set)
    waiting_since: int | None = None

    @property
    def generated(self) -> int:
        return len(self.prefix_parts)


@dataclass
class _Embedding:
    task_id: str
    texts: list[str]
    model: str | None
    future: asyncio.Future[list[list[float]]]
    waiting_since: int | None
    attempts: int = 0
    chunk_id: str | None = None
    device_id: str | None = None
    dispatched_at: int = 0
    deadline: int = 0
    excluded: set[str] = field(default_factory=set)


@dataclass
class _CancelWatch:
    device_id: str
    deadline: int
    slot_freed: bool = False


@dataclass
class _Peer:
    device: DeviceRecord
    channel: MessageChannel
    outbox: asyncio.Queue[WireModel] = field(default_factory=asyncio.Queue)
    writer: asyncio.Task[None] | None = None

    def info(self) -> PeerInfo:
        return PeerInfo(
            device_id=self.device.device_id,
            capability=self.device.capability.value,
            name=self.device.name,
        )


class PoolCoordinator:
    """Hosts a collective and turns requests into ordered token streams."""

    def __init__(
        self,
        config: PoolConfig | None = None,
        identity_manager: IdentityManager | None = None,
        clock: Clock = SYSTEM_CLOCK,
        events: EventBus | None = None,
        pool_name: str = "Amphibian Collective",
        secret: str | None = None,
    ) -> None:
        """Initialize coordinator.

        Args:
            config: Pool timing and scheduling settings
            identity_manager: Issues and verifies authentication challenges
            clock: Millisecond clock for every deadline
            events: Bus receiving device and task events
            pool_name: Name announced to workers
            secret: Share-code secret workers must present (generated if omitted)
        """
        self.config = config or PoolConfig()
        self.clock = clock
        self.identity_manager = identity_manager or IdentityManager(clock, self.config.challenge_ttl_ms)
        self.events = events or EventBus()
        self._owns_events = events is None
        self.pool_name = pool_name
        self.secret = secret or generate_secret()

        self.state = PoolState.IDLE
        self.host: str | None = None
        self.port: int | None = None
        self.devices: dict[str, _Peer] = {}
        self.requests: dict[str, _Request] = {}
        self._inflight: dict[str, _Chunk] = {}
        self.embeddings: dict[str, _Embedding] = {}
        # chunk_id -> job, only while dispatched
        self._embedding_units: dict[str, _Embedding] = {}
        self._cancelled: dict[str, _CancelWatch] = {}

        self._server: asyncio.Server | None = None
        self._monitor: asyncio.Task[None] | None = None
        self._connections: set[asyncio.Task[Any]] = set()
        self._background: set[asyncio.Task[Any]] = set()
        self._drained = asyncio.Event()
        self._join_counter = 0
        self.security = get_security_logger()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, host: str | None = None, port: int = 0, *, run_monitor: bool = True) -> None:
        """Begin accepting workers.

        Args:
            host: Bind address; None accepts only in-process transports via ``accept``
            port: Bind port (0 picks a free port)
            run_monitor: Run the periodic deadline sweep
        """
        if self.state != PoolState.IDLE:
            raise InputInvalidError(f"Coordinator already started ({self.state.value})")

        if host is not None:
            self._server = await start_stream_server(self.accept, host, port)
            self.host = host
            self.port = self._server.sockets[0].getsockname()[1]

        self.state = PoolState.LISTENING
        if run_monitor:
            self._monitor = asyncio.create_task(self._monitor_loop())

        logger.info(f"🐸 Collective '{self.pool_name}' listening" + (f" on {host}:{self.port}" if host else ""))

    async def stop(self, grace_ms: int | None = None) -> None:
        """Drain active requests up to ``grace_ms`` then close everything.

        After this returns no events are published and no transports remain open.
        """
        if self.state == PoolState.STOPPED:
            return

        if self.state == PoolState.IDLE:
            self.state = PoolState.STOPPED
            self._close_events()
            return

        self.state = PoolState.DRAINING
        logger.info("Initiating graceful shutdown with drain period")
        if self._server is not None:
            self._server.close()

        grace_s = (self.config.drain_grace_ms if grace_ms is None else grace_ms) / 1000
        if self.requests or self.embeddings:
            self._drained.clear()
            try:
                await asyncio.wait_for(self._drained.wait(), timeout=grace_s)
                logger.info("✅ In-flight requests completed within drain period")
            except TimeoutError:
                logger.warning(
                    f"⚠️ Drain period timeout, failing {len(self.requests) + len(self.embeddings)} request(s)"
                )
                for request in list(self.requests.values()):
                    self._fail(request, TransportLostError("Pool stopped before the request finished"))
                for job in list(self.embeddings.values()):
                    self._fail_embedding(job, TransportLostError("Pool stopped before the embedding finished"))

        if self._monitor is not None:
            self._monitor.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._monitor
            self._monitor = None

        channels = [peer.channel for peer in self.devices.values()]
        for device_id in list(self.devices):
            self._remove_device(device_id, "shutdown")
        await asyncio.gather(*(channel.close() for channel in channels), return_exceptions=True)

        for task in list(self._connections):
            task.cancel()
        await asyncio.gather(*self._connections, *self._background, return_exceptions=True)

        if self._server is not None:
            await self._server.wait_closed()
            self._server = None

        self._close_events()
        self.state = PoolState.STOPPED
        logger.info("✅ Collective shutdown complete")

    def _emit(self, event: Event) -> None:
        if self.state == PoolState.STOPPED:
            return
        self.events.publish(event)

    def _close_events(self) -> None:
        # A bus handed in by the caller is shared with other components; its owner closes it.
        if self._owns_events:
            self.events.close()

    async def _monitor_loop(self) -> None:
        interval = self.config.monitor_interval_ms / 1000
        while True:
            await asyncio.sleep(interval)
            try:
                self.check_deadlines()
            except Exception as e:
                logger.error(f"Deadline sweep failed: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Worker connections
    # ------------------------------------------------------------------

    async def accept(self, transport: Transport) -> None:
        """Serve one worker connection until it ends."""
        task = asyncio.current_task()
        if task is not None:
            self._connections.add(task)

        channel = MessageChannel(transport)
        device: DeviceRecord | None = None
        try:
            device = await self._authenticate(channel)
            if device is not None:
                await self._read_loop(self.devices[device.device_id])
        except TransportLostError as e:
            logger.debug(f"Connection {channel.label} ended: {e.message}")
        finally:
            if device is not None:
                peer = self.devices.get(device.device_id)
                if peer is not None and peer.channel is channel:
                    self._remove_device(device.device_id, "disconnected")
            await channel.close()
            if task is not None:
                self._connections.discard(task)

    @traced("pool.authenticate")
    async def _authenticate(self, channel: MessageChannel) -> DeviceRecord | None:
        if self.state not in (PoolState.LISTENING, PoolState.RUNNING):
            return await self._reject(channel, "pool not accepting workers")

        challenge = self.identity_manager.create_challenge()
        await channel.send(AuthRequired(challenge=challenge))

        try:
            message = await asyncio.wait_for(channel.receive(), timeout=self.config.auth_timeout_ms / 1000)
        except TimeoutError:
            return await self._reject(channel, "authentication timeout")

        if not isinstance(message, Auth):
            return await self._reject(channel, f"expected AUTH, got {message.type}")

        if not secrets.compare_digest(message.pool_secret.encode(), self.secret.encode()):
            return await self._reject(channel, "invalid pool secret", message.id)

        try:
            self.identity_manager.verify_auth_response(
                challenge, message.id, message.public_key, message.timestamp, message.signature
            )
        except AuthFailedError as e:
            return await self._reject(channel, e.message, message.id)

        if message.id in self.devices:
            return await self._reject(channel, "duplicate identity", message.id)

        if self.state not in (PoolState.LISTENING, PoolState.RUNNING):
            return await self._reject(channel, "pool not accepting workers", message.id)

        now = self.clock.now()
        self._join_counter += 1
        device = DeviceRecord(
            device_id=message.id,
            capability=Capability(message.capability),
            public_key=message.public_key,
            joined_at=now,
            last_heartbeat=now,
            name=message.device_name,
            join_order=self._join_counter,
        )
        peer = _Peer(device, channel)
        others = [p.info() for p in self.devices.values()]
        self.devices[device.device_id] = peer
        peer.writer = asyncio.create_task(self._write_loop(peer))

        self._post(peer, AuthSuccess(device_id=device.device_id, pool_name=self.pool_name, peers=others))
        self._broadcast(PeerJoined(device=peer.info()), exclude=device.device_id)

        if self.state == PoolState.LISTENING:
            self.state = PoolState.RUNNING

        self.security.log_auth_success(device.device_id, channel.label, device.capability.value)
        add_span_attributes({"pool.device_id": device.device_id, "pool.capability": device.capability.value})
        logger.info(f"🤝 Device joined: {device.name or device.device_id} ({device.capability.value})")
        self._emit(DeviceJoined(device.device_id, device.capability.value, device.name))

        self._schedule()
        self._update_metrics()
        return device

    async def _reject(self, channel: MessageChannel, reason: str, device_id: str | None = None) -> None:
        self.security.log_auth_failure(reason, channel.label, device_id)
        with contextlib.suppress(TransportLostError):
            await channel.send(AuthFail(reason=reason))
        return None

    async def _read_loop(self, peer: _Peer) -> None:
        device_id = peer.device.device_id
        while True:
            message = await peer.channel.receive()
            if self.devices.get(device_id) is not peer:
                return
            self._handle(peer.device, message)

    async def _write_loop(self, peer: _Peer) -> None:
        try:
            while True:
                message = await peer.outbox.get()
                await peer.channel.send(message)
        except TransportLostError as e:
            logger.info(f"Lost connection to {peer.device.device_id}: {e.message}")
            if self.devices.get(peer.device.device_id) is peer:
                self._remove_device(peer.device.device_id, "transport_lost")

    def _post(self, peer: _Peer, message: WireModel) -> None:
        peer.outbox.put_nowait(message)

    def _broadcast(self, message: WireModel, exclude: str | None = None) -> None:
        for device_id, peer in self.devices.items():
            if device_id != exclude:
                self._post(peer, message)

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _remove_device(self, device_id: str, reason: str) -> None:
        peer = self.devices.pop(device_id, None)
        if peer is None:
            return

        for chunk in [c for c in self._inflight.values() if c.device_id == device_id]:
            self._release(chunk)
            self._requeue_remainder(self.requests[chunk.task_id], chunk, device_id)
        for job in [j for j in self._embedding_units.values() if j.device_id == device_id]:
            self._requeue_embedding(job, device_id)
        for chunk_id in [cid for cid, w in self._cancelled.items() if w.device_id == device_id]:
            del self._cancelled[chunk_id]

        if peer.writer is not None and peer.writer is not asyncio.current_task():
            peer.writer.cancel()
        self._spawn(peer.channel.close())

        self._broadcast(PeerLeft(device=peer.info()))
        logger.info(f"👋 Device left: {device_id} ({reason})")
        self._emit(DeviceLeft(device_id, reason))

        self._schedule()
        self._update_metrics()

    def _evict(self, device: DeviceRecord) -> None:
        self.security.log_device_evicted(device.device_id, "chunk timeouts", device.consecutive_timeouts)
        metrics.device_evictions_total.inc()
        self._remove_device(device.device_id, "evicted")

    # ------------------------------------------------------------------
    # Worker messages
    # ------------------------------------------------------------------

    def _handle(self, device: DeviceRecord, message: Any) -> None:
        match message:
            case ChunkToken():
                self._on_token(device, message)
            case ChunkDone():
                self._on_done(device, message)
            case ChunkFail():
                self._on_fail(device, message)
            case EmbedResult():
                self._on_embedding_result(device, message)
            case Heartbeat():
                self._on_heartbeat(device, message)
            case CapabilityUpdate():
                self._on_capability(device, message)
            case _:
                logger.warning(f"Unexpected {message.type} from worker {device.device_id}")

    def _owned_chunk(self, device: DeviceRecord, chunk_id: str) -> _Chunk | None:
        chunk = self._inflight.get(chunk_id)
        if chunk is None or chunk.device_id != device.device_id:
            return None
        return chunk

    def _on_token(self, device: DeviceRecord, message: ChunkToken) -> None:
        chunk = self._owned_chunk(device, message.chunk_id)
        if chunk is None:
            self._check_cancel_violation(device, message.chunk_id)
            return

        if message.seq != len(chunk.tokens) or len(chunk.tokens) >= chunk.max_tokens:
            logger.warning(f"Dropping token {message.seq} for {chunk.chunk_id} from {device.device_id}")
            return

        request = self.requests[chunk.task_id]
        chunk.tokens.append(message.text)
        request.prefix_parts.append(message.text)
        request.assembler.push(chunk.chunk_id, message.text)
        metrics.tokens_streamed_total.inc()

    def _check_cancel_violation(self, device: DeviceRecord, chunk_id: str) -> None:
        watch = self._cancelled.get(chunk_id)
        now = self.clock.now()
        if watch is None or watch.device_id != device.device_id or now <= watch.deadline:
            logger.debug(f"Ignoring stale token for {chunk_id} from {device.device_id}")
            return

        del self._cancelled[chunk_id]
        self.security.log_cancel_violation(device.device_id, chunk_id, now - watch.deadline)
        logger.warning(f"Device {device.device_id} kept streaming after CANCEL, marking unhealthy")
        self._mark_unhealthy(device, "cancel_ignored")

    def _acknowledge_cancel(self, device: DeviceRecord, chunk_id: str) -> None:
        watch = self._cancelled.get(chunk_id)
        if watch is None or watch.device_id != device.device_id:
            return
        del self._cancelled[chunk_id]
        device.active_chunks.discard(chunk_id)
        self._schedule()

    def _on_done(self, device: DeviceRecord, message: ChunkDone) -> None:
        chunk = self._owned_chunk(device, message.chunk_id)
        if chunk is None:
            self._acknowledge_cancel(device, message.chunk_id)
            return

        now = self.clock.now()
        self._release(chunk)
        latency_s = max(0, now - chunk.dispatched_at) / 1000
        device.record_completion(latency_s, self.config.ewma_alpha)
        metrics.chunk_latency_seconds.observe(latency_s)
        if chunk.tokens:
            self.identity_manager.record_contribution(device.device_id, f"served {chunk.chunk_id}")

        request = self.requests[chunk.task_id]
        request.assembler.close(chunk.chunk_id)
        request.current = None

        exhausted = len(chunk.tokens) < chunk.max_tokens
        if chunk.is_retry:
            request.retry_remaining = max(0, request.retry_remaining - len(chunk.tokens))
            if request.retry_remaining == 0:
                request.retry_excluded.clear()

        if exhausted or request.generated >= request.max_tokens:
            self._complete(request)
        else:
            request.waiting_since = now
        self._schedule()

    def _on_fail(self, device: DeviceRecord, message: ChunkFail) -> None:
        job = self._owned_embedding(device, message.chunk_id)
        if job is not None:
            self._on_embedding_fail(device, job, message.reason)
            return

        chunk = self._owned_chunk(device, message.chunk_id)
        if chunk is None:
            self._acknowledge_cancel(device, message.chunk_id)
            return

        logger.warning(f"Chunk {chunk.chunk_id} failed on {device.device_id}: {message.reason}")
        label = message.reason if message.reason in ("cancelled", "at capacity") else "error"
        metrics.chunk_failures_total.labels(reason=label).inc()
        self._release(chunk)
        self._requeue_remainder(self.requests[chunk.task_id], chunk, device.device_id)
        self._schedule()

    def _on_heartbeat(self, device: DeviceRecord, message: Heartbeat) -> None:
        device.last_heartbeat = self.clock.now()
        device.load = message.load
        if not device.healthy and device.unhealthy_reason == "heartbeat_timeout":
            device.mark_healthy()
            logger.info(f"💚 Device {device.device_id} healthy again")
            self._schedule()
            self._update_metrics()

    def _on_capability(self, device: DeviceRecord, message: CapabilityUpdate) -> None:
        old = device.capability
        device.capability = Capability(message.capability)
        logger.info(f"Device {device.device_id} capability {old.value} -> {device.capability.value}")
        self._schedule()

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def submit(
        self,
        messages: list[dict[str, Any]],
        max_tokens: int = 256,
        model: str | None = None,
        kind: TaskKind | str = TaskKind.INFERENCE,
    ) -> TokenStream:
        """Queue an inference request.

        Args:
            messages: Conversation as ``{"role", "content"}`` dicts
            max_tokens: Upper bound on generated tokens
            model: Model name forwarded to workers
            kind: Task kind; only inference streams (embeddings go through ``embed``)

        Returns:
            Stream of the generated tokens in order

        Raises:
            InputInvalidError: Bad arguments or a non-inference task kind
            PoolExhaustedError: The pool is not accepting requests
        """
        if TaskKind(kind) != TaskKind.INFERENCE:
            raise InputInvalidError(f"Task kind '{TaskKind(kind).value}' cannot be scheduled", {"kind": str(kind)})
        if max_tokens < 1:
            raise InputInvalidError("max_tokens must be positive", {"max_tokens": max_tokens})
        if self.state not in (PoolState.LISTENING, PoolState.RUNNING):
            raise PoolExhaustedError(f"Pool is {self.state.value}, not accepting requests")

        try:
            chat = [ChatMessage.model_validate(m) for m in messages]
        except ValidationError as e:
            raise InputInvalidError(f"Malformed messages: {e.error_count()} error(s)") from e

        now = self.clock.now()
        task_id = str(uuid.uuid4())
        stream = TokenStream(task_id, self)
        request = _Request(
            task_id=task_id,
            messages=chat,
            max_tokens=max_tokens,
            model=model,
            submitted_at=now,
            stream=stream,
            assembler=StreamAssembler(stream._push),
            waiting_since=now,
        )
        self.requests[task_id] = request
        self._drained.clear()
        record_counter("pool.requests.submitted", 1)
        logger.debug(f"Submitted request {task_id} ({max_tokens} tokens)")

        self._schedule()
        self._update_metrics()
        return stream

    async def generate(
        self,
        messages: list[dict[str, Any]],
        max_tokens: int = 256,
        model: str | None = None,
    ) -> str:
        """Submit a request and wait for its full text."""
        return await self.submit(messages, max_tokens, model).text()

    def cancel(self, task_id: str) -> bool:
        """Cancel a request.

        Queued work is dropped, the inflight chunk's worker is sent ``CANCEL``,
        and the stream ends with status ``cancelled``.

        Returns:
            False if the request is unknown or already finished
        """
        request = self.requests.pop(task_id, None)
        if request is None:
            return False

        chunk = request.current
        if chunk is not None:
            self._inflight.pop(chunk.chunk_id, None)
            request.assembler.close(chunk.chunk_id)
            peer = self.devices.get(chunk.device_id)
            if peer is not None:
                self._cancelled[chunk.chunk_id] = _CancelWatch(
                    chunk.device_id, self.clock.now() + self.config.cancel_deadline_ms
                )
                self._post(peer, Cancel(chunk_id=chunk.chunk_id, task_id=task_id))

        request.stream._finish("cancelled")
        metrics.pool_requests_total.labels(status="cancelled").inc()
        logger.info(f"Request {task_id} cancelled after {request.generated} tokens")

        self._check_drained()
        self._schedule()
        self._update_metrics()
        return True

    def _complete(self, request: _Request) -> None:
        self.requests.pop(request.task_id, None)
        request.stream._finish("completed")
        metrics.pool_requests_total.labels(status="completed").inc()
        logger.debug(f"Request {request.task_id} completed with {request.generated} tokens")
        self._emit(TaskCompleted(request.task_id, request.generated))
        self._check_drained()
        self._update_metrics()

    def _fail(self, request: _Request, error: AmphibianError) -> None:
        self.requests.pop(request.task_id, None)
        if request.current is not None:
            self._release(request.current)
            request.current = None
        request.stream._finish("failed", error)
        metrics.pool_requests_total.labels(status="failed").inc()
        logger.warning(f"Request {request.task_id} failed: {error.message}")
        self._emit(TaskFailed(request.task_id, error.kind.value))
        self._check_drained()
        self._update_metrics()

    def _check_drained(self) -> None:
        if not self.requests and not self.embeddings:
            self._drained.set()

    # ------------------------------------------------------------------
    # Embeddings
    # ------------------------------------------------------------------

    async def embed(self, texts: list[str], model: str | None = None) -> list[list[float]]:
        """Embed ``texts`` on a single worker.

        A failure, timeout or disconnect moves the whole batch to another
        worker, never back to one that already failed it. Cancelling the
        caller sends ``CANCEL`` to the worker holding the batch.

        Returns:
            One vector per text, in input order

        Raises:
            InputInvalidError: ``texts`` is empty or holds a non-string
            PoolExhaustedError: The pool is not accepting requests, or no eligible
                worker became available within ``no_worker_timeout_ms``
            TransportLostError: The pool stopped before the embedding finished
        """
        if not texts or not all(isinstance(text, str) for text in texts):
            raise InputInvalidError("texts must be a non-empty list of strings")
        if self.state not in (PoolState.LISTENING, PoolState.RUNNING):
            raise PoolExhaustedError(f"Pool is {self.state.value}, not accepting requests")

        now = self.clock.now()
        job = _Embedding(
            task_id=str(uuid.uuid4()),
            texts=list(texts),
            model=model,
            future=asyncio.get_running_loop().create_future(),
            waiting_since=now,
        )
        self.embeddings[job.task_id] = job
        self._drained.clear()
        record_counter("pool.embeddings.submitted", 1)
        logger.debug(f"Submitted embedding {job.task_id} ({len(job.texts)} texts)")

        self._schedule()
        self._update_metrics()
        try:
            return await job.future
        finally:
            if job.task_id in self.embeddings:
                self._abandon_embedding(job)

    def _owned_embedding(self, device: DeviceRecord, chunk_id: str) -> _Embedding | None:
        job = self._embedding_units.get(chunk_id)
        if job is None or job.device_id != device.device_id:
            return None
        return job

    def _dispatch_embedding(self, job: _Embedding, device: DeviceRecord, now: int) -> None:
        job.attempts += 1
        job.chunk_id = f"{job.task_id}:embed-{job.attempts}"
        job.device_id = device.device_id
        job.dispatched_at = now
        job.deadline = now + device.capability.chunk_timeout_ms(self.config)
        job.waiting_since = None

        self._embedding_units[job.chunk_id] = job
        device.active_chunks.add(job.chunk_id)
        self._post(
            self.devices[device.device_id],
            EmbedAssign(task_id=job.task_id, chunk_id=job.chunk_id, texts=job.texts, model=job.model),
        )
        metrics.chunks_dispatched_total.labels(capability=device.capability.value).inc()
        logger.debug(f"Embedding {job.chunk_id} ({len(job.texts)} texts) -> {device.device_id}")

    def _release_embedding(self, job: _Embedding) -> None:
        if job.chunk_id is None:
            return
        self._embedding_units.pop(job.chunk_id, None)
        peer = self.devices.get(job.device_id) if job.device_id is not None else None
        if peer is not None:
            peer.device.active_chunks.discard(job.chunk_id)

    def _requeue_embedding(self, job: _Embedding, failed_device: str) -> None:
        self._release_embedding(job)
        job.excluded.add(failed_device)
        job.chunk_id = None
        job.device_id = None
        job.waiting_since = self.clock.now()
        logger.info(f"Re-queued embedding {job.task_id}, excluding {sorted(job.excluded)}")

    def _withdraw_embedding(self, job: _Embedding) -> None:
        """Cancel a dispatched batch on its worker and queue it for another."""
        device_id, chunk_id = job.device_id, job.chunk_id
        if device_id is None or chunk_id is None:
            return
        peer = self.devices.get(device_id)
        if peer is not None:
            self._cancelled[chunk_id] = _CancelWatch(
                device_id, self.clock.now() + self.config.cancel_deadline_ms, slot_freed=True
            )
            self._post(peer, Cancel(chunk_id=chunk_id, task_id=job.task_id))
        self._requeue_embedding(job, device_id)

    def _on_embedding_result(self, device: DeviceRecord, message: EmbedResult) -> None:
        job = self._owned_embedding(device, message.chunk_id)
        if job is None:
            self._acknowledge_cancel(device, message.chunk_id)
            return

        if len(message.vectors) != len(job.texts):
            self._on_embedding_fail(device, job, f"{len(message.vectors)} vectors for {len(job.texts)} texts")
            return

        self._release_embedding(job)
        latency_s = max(0, self.clock.now() - job.dispatched_at) / 1000
        device.record_completion(latency_s, self.config.ewma_alpha)
        metrics.chunk_latency_seconds.observe(latency_s)
        self.identity_manager.record_contribution(device.device_id, f"served {job.chunk_id}")

        self.embeddings.pop(job.task_id, None)
        if not job.future.done():
            job.future.set_result(message.vectors)
        metrics.pool_requests_total.labels(status="completed").inc()
        logger.debug(f"Embedding {job.task_id} completed on {device.device_id}")
        self._emit(TaskCompleted(job.task_id))
        self._check_drained()
        self._schedule()
        self._update_metrics()

    def _on_embedding_fail(self, device: DeviceRecord, job: _Embedding, reason: str) -> None:
        logger.warning(f"Embedding {job.chunk_id} failed on {device.device_id}: {reason}")
        label = reason if reason in ("cancelled", "at capacity") else "error"
        metrics.chunk_failures_total.labels(reason=label).inc()
        self._requeue_embedding(job, device.device_id)
        self._schedule()

    def _on_embedding_timeout(self, job: _Embedding) -> None:
        peer = self.devices.get(job.device_id) if job.device_id is not None else None
        metrics.chunk_timeouts_total.labels(
            capability=peer.device.capability.value if peer else "unknown"
        ).inc()
        logger.warning(f"⏱️ Embedding {job.chunk_id} timed out on {job.device_id}")

        if peer is not None:
            peer.device.record_timeout()
        self._withdraw_embedding(job)

        if peer is not None and peer.device.consecutive_timeouts >= self.config.max_consecutive_timeouts:
            self._evict(peer.device)

    def _fail_embedding(self, job: _Embedding, error: AmphibianError) -> None:
        self.embeddings.pop(job.task_id, None)
        self._release_embedding(job)
        if not job.future.done():
            job.future.set_exception(error)
        metrics.pool_requests_total.labels(status="failed").inc()
        logger.warning(f"Embedding {job.task_id} failed: {error.message}")
        self._emit(TaskFailed(job.task_id, error.kind.value))
        self._check_drained()
        self._update_metrics()

    def _abandon_embedding(self, job: _Embedding) -> None:
        self.embeddings.pop(job.task_id, None)
        if job.chunk_id is not None and job.device_id is not None:
            self._embedding_units.pop(job.chunk_id, None)
            peer = self.devices.get(job.device_id)
            if peer is not None:
                self._cancelled[job.chunk_id] = _CancelWatch(
                    job.device_id, self.clock.now() + self.config.cancel_deadline_ms
                )
                self._post(peer, Cancel(chunk_id=job.chunk_id, task_id=job.task_id))

        metrics.pool_requests_total.labels(status="cancelled").inc()
        logger.info(f"Embedding {job.task_id} cancelled by its caller")
        self._check_drained()
        self._schedule()
        self._update_metrics()

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _schedule(self) -> None:
        """Give every request without an inflight chunk its next chunk, FIFO."""
        if self.state in (PoolState.IDLE, PoolState.STOPPED):
            return

        now = self.clock.now()
        for request in list(self.requests.values()):
            if request.current is not None or request.stream.done:
                continue

            excluded = request.retry_excluded if request.retry_remaining > 0 else set()
            device = select_worker((p.device for p in self.devices.values()), excluded)
            if device is None:
                if request.waiting_since is None:
                    request.waiting_since = now
                continue

            self._dispatch(request, device, now)

        for job in list(self.embeddings.values()):
            if job.chunk_id is not None:
                continue

            device = select_worker((p.device for p in self.devices.values()), job.excluded)
            if device is None:
                if job.waiting_since is None:
                    job.waiting_since = now
                continue

            self._dispatch_embedding(job, device, now)

    def _dispatch(self, request: _Request, device: DeviceRecord, now: int) -> None:
        size = min(device.capability.window(self.config), request.max_tokens - request.generated)
        is_retry = request.retry_remaining > 0
        if is_retry:
            size = min(size, request.retry_remaining)

        seq = request.next_seq
        request.next_seq += 1
        chunk = _Chunk(
            chunk_id=f"{request.task_id}:{seq}",
            task_id=request.task_id,
            seq=seq,
            max_tokens=size,
            device_id=device.device_id,
            dispatched_at=now,
            deadline=now + device.capability.chunk_timeout_ms(self.config),
            is_retry=is_retry,
        )

        self._inflight[chunk.chunk_id] = chunk
        device.active_chunks.add(chunk.chunk_id)
        request.current = chunk
        request.waiting_since = None
        request.assembler.open(chunk.chunk_id)

        self._post(
            self.devices[device.device_id],
            ChunkAssign(
                task_id=request.task_id,
                chunk_id=chunk.chunk_id,
                seq=seq,
                prefix="".join(request.prefix_parts),
                max_tokens=size,
                model=request.model,
                messages=request.messages,
            ),
        )
        metrics.chunks_dispatched_total.labels(capability=device.capability.value).inc()
        logger.debug(f"Chunk {chunk.chunk_id} ({size} tokens) -> {device.device_id}")

    def _release(self, chunk: _Chunk) -> None:
        self._inflight.pop(chunk.chunk_id, None)
        peer = self.devices.get(chunk.device_id)
        if peer is not None:
            peer.device.active_chunks.discard(chunk.chunk_id)

    def _requeue_remainder(self, request: _Request, chunk: _Chunk, failed_device: str) -> None:
        """Keep streamed tokens and re-queue the rest of ``chunk`` elsewhere."""
        request.assembler.close(chunk.chunk_id)
        request.current = None

        if chunk.is_retry:
            request.retry_remaining = max(0, request.retry_remaining - len(chunk.tokens))
            request.retry_excluded.add(failed_device)
        else:
            request.retry_remaining = chunk.max_tokens - len(chunk.tokens)
            request.retry_excluded = {failed_device}

        if request.retry_remaining == 0:
            request.retry_excluded.clear()

        if request.generated >= request.max_tokens:
            self._complete(request)
            return

        request.waiting_since = self.clock.now()
        logger.info(
            f"Re-queued {request.retry_remaining} token(s) of {chunk.chunk_id}, excluding {sorted(request.retry_excluded)}"
        )

    def _mark_unhealthy(self, device: DeviceRecord, reason: str) -> None:
        """Exclude a device from scheduling and move its chunks elsewhere."""
        device.mark_unhealthy(reason)
        peer = self.devices.get(device.device_id)
        now = self.clock.now()
        for chunk in [c for c in self._inflight.values() if c.device_id == device.device_id]:
            self._release(chunk)
            if peer is not None:
                self._cancelled[chunk.chunk_id] = _CancelWatch(
                    device.device_id, now + self.config.cancel_deadline_ms, slot_freed=True
                )
                self._post(peer, Cancel(chunk_id=chunk.chunk_id, task_id=chunk.task_id))
            self._requeue_remainder(self.requests[chunk.task_id], chunk, device.device_id)
        for job in [j for j in self._embedding_units.values() if j.device_id == device.device_id]:
            self._withdraw_embedding(job)
        self._schedule()
        self._update_metrics()

    def _on_chunk_timeout(self, chunk: _Chunk) -> None:
        peer = self.devices.get(chunk.device_id)
        self._release(chunk)
        metrics.chunk_timeouts_total.labels(
            capability=peer.device.capability.value if peer else "unknown"
        ).inc()
        logger.warning(f"⏱️ Chunk {chunk.chunk_id} timed out on {chunk.device_id} after {len(chunk.tokens)} token(s)")

        if peer is not None:
            peer.device.record_timeout()
            self._cancelled[chunk.chunk_id] = _CancelWatch(
                chunk.device_id, self.clock.now() + self.config.cancel_deadline_ms, slot_freed=True
            )
            self._post(peer, Cancel(chunk_id=chunk.chunk_id, task_id=chunk.task_id))

        self._requeue_remainder(self.requests[chunk.task_id], chunk, chunk.device_id)

        if peer is not None and peer.device.consecutive_timeouts >= self.config.max_consecutive_timeouts:
            self._evict(peer.device)

    def check_deadlines(self) -> None:
        """Apply chunk, heartbeat, cancel and no-worker deadlines at ``clock.now()``."""
        now = self.clock.now()

        for chunk in list(self._inflight.values()):
            if chunk.chunk_id in self._inflight and now >= chunk.deadline:
                self._on_chunk_timeout(chunk)

        for job in list(self._embedding_units.values()):
            if job.chunk_id in self._embedding_units and now >= job.deadline:
                self._on_embedding_timeout(job)

        heartbeat_timeout = self.config.heartbeat_timeout_ms or 3 * self.config.heartbeat_interval_ms
        for peer in list(self.devices.values()):
            device = peer.device
            if device.healthy and now - device.last_heartbeat > heartbeat_timeout:
                logger.warning(f"💔 Device {device.device_id} missed heartbeats, marking unhealthy")
                self._mark_unhealthy(device, "heartbeat_timeout")

        for chunk_id, watch in list(self._cancelled.items()):
            if not watch.slot_freed and now > watch.deadline:
                watch.slot_freed = True
                peer = self.devices.get(watch.device_id)
                if peer is not None:
                    peer.device.active_chunks.discard(chunk_id)

        self._schedule()

        for request in list(self.requests.values()):
            if (
                request.current is None
                and request.waiting_since is not None
                and now - request.waiting_since > self.config.no_worker_timeout_ms
            ):
                self._fail(
                    request,
                    PoolExhaustedError(
                        "No eligible worker became available",
                        {"task_id": request.task_id, "waited_ms": now - request.waiting_since},
                    ),
                )

        for job in list(self.embeddings.values()):
            if (
                job.chunk_id is None
                and job.waiting_since is not None
                and now - job.waiting_since > self.config.no_worker_timeout_ms
            ):
                self._fail_embedding(
                    job,
                    PoolExhaustedError(
                        "No eligible worker became available",
                        {"task_id": job.task_id, "waited_ms": now - job.waiting_since},
                    ),
                )

        self._update_metrics()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def inflight(self) -> dict[str, tuple[str, int]]:
        """``chunk_id -> (device_id, deadline)`` for every chunk in flight."""
        return {cid: (c.device_id, c.deadline) for cid, c in self._inflight.items()}

    def health(self) -> PoolHealth:
        healthy = sum(1 for p in self.devices.values() if p.device.healthy)
        return PoolHealth(
            state=self.state,
            total_devices=len(self.devices),
            healthy_devices=healthy,
            queued_requests=sum(1 for r in self.requests.values() if r.current is None)
            + sum(1 for j in self.embeddings.values() if j.chunk_id is None),
            inflight_chunks=len(self._inflight) + len(self._embedding_units),
        )

    def get_status(self) -> dict[str, Any]:
        return {
            "pool_name": self.pool_name,
            "state": self.state.value,
            "host": self.host,
            "port": self.port,
            "devices": [
                {
                    "device_id": p.device.device_id,
                    "name": p.device.name,
                    "capability": p.device.capability.value,
                    "healthy": p.device.healthy,
                    "active_chunks": len(p.device.active_chunks),
                    "completed_tasks": p.device.completed_tasks,
                    "health_score": p.device.health_score,
                }
                for p in self.devices.values()
            ],
            "active_requests": len(self.requests),
            "active_embeddings": len(self.embeddings),
            "inflight_chunks": len(self._inflight),
        }

    def share_code(self, host: str | None = None) -> str:
        """Share code for this pool.

        Raises:
            InputInvalidError: If the pool is not bound to a network port
        """
        if self.port is None:
            raise InputInvalidError("Pool is not listening on a network port")
        advertised = host or next(iter(local_ip_addresses()), "127.0.0.1")
        return generate_share_code(advertised, self.port, self.secret)

    def _update_metrics(self) -> None:
        health = self.health()
        metrics.update_pool_metrics(
            health.healthy_devices,
            health.total_devices - health.healthy_devices,
            health.queued_requests,
        )
