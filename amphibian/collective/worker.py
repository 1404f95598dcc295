"""Pool worker: contributes a local inference engine to a collective.

A worker joins via share code, answers the coordinator's challenge with its
Ed25519 identity, then serves ``CHUNK`` assignments by streaming engine
output back as ``CHUNK_TOKEN`` frames, and ``EMBED`` assignments when the
engine can embed. Heartbeats report load every
``heartbeat_interval_ms``; sustained saturation downgrades the advertised
capability by one class.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import platform
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import psutil

from amphibian.clock import SYSTEM_CLOCK, Clock
from amphibian.collective.identity import CollectiveIdentity
from amphibian.collective.protocol import (
    Auth,
    AuthFail,
    AuthRequired,
    AuthSuccess,
    Cancel,
    CapabilityUpdate,
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
from amphibian.collective.scheduling import Capability
from amphibian.collective.share_code import parse_share_code
from amphibian.collective.transport import MessageChannel, Transport, open_stream_transport
from amphibian.config import PoolConfig
from amphibian.engines.base import EmbeddingEngine, InferenceEngine
from amphibian.errors import AuthFailedError, InputInvalidError, OperationTimeoutError, TransportLostError

logger = logging.getLogger(__name__)

# Edge TPU device nodes (PCIe / M.2 Coral modules)
ACCELERATOR_NODES = ("/dev/apex_0", "/dev/accel0")

GIB = 1024**3


@dataclass(frozen=True)
class DeviceProfile:
    """Hardware summary used for capability self-classification."""

    memory_gb: float
    cpu_count: int
    accelerator: str | None = None
    machine: str = ""

    @classmethod
    def detect(cls) -> DeviceProfile:
        accelerator = next((node for node in ACCELERATOR_NODES if Path(node).exists()), None)
        return cls(
            memory_gb=round(psutil.virtual_memory().total / GIB, 1),
            cpu_count=psutil.cpu_count(logical=True) or 1,
            accelerator=accelerator,
            machine=platform.machine(),
        )


def classify_capability(profile: DeviceProfile) -> Capability:
    """Map a device profile to its capability class.

    accelerator -> tpu; >= 8 GB and >= 8 cores -> high; >= 4 GB -> medium;
    anything smaller -> low.
    """
    if profile.accelerator:
        return Capability.TPU
    if profile.memory_gb >= 8 and profile.cpu_count >= 8:
        return Capability.HIGH
    if profile.memory_gb >= 4:
        return Capability.MEDIUM
    return Capability.LOW


class PoolWorker:
    """Serves chunk assignments from one coordinator."""

    def __init__(
        self,
        engine: InferenceEngine,
        identity: CollectiveIdentity,
        config: PoolConfig | None = None,
        profile: DeviceProfile | None = None,
        capability: Capability | str | None = None,
        clock: Clock = SYSTEM_CLOCK,
        device_name: str = "",
    ) -> None:
        """Initialize worker.

        Args:
            engine: Local engine that generates tokens
            identity: Signing identity (must hold a private key)
            config: Pool timing settings
            profile: Hardware profile (detected when neither it nor capability is given)
            capability: Explicit capability class, overrides the profile
            clock: Millisecond clock used for auth timestamps
            device_name: Name shown to the coordinator and peers
        """
        self.engine = engine
        self.identity = identity
        self.config = config or PoolConfig()
        self.clock = clock
        self.device_name = device_name or identity.display_name
        if capability is not None:
            self.capability = Capability(capability)
        else:
            self.capability = classify_capability(profile or DeviceProfile.detect())

        self.device_id: str | None = None
        self.pool_name: str | None = None
        self.peers: dict[str, PeerInfo] = {}
        self._channel: MessageChannel | None = None
        self._chunks: dict[str, tuple[str, asyncio.Task[None]]] = {}
        self._heartbeat_task: asyncio.Task[None] | None = None
        self._saturated_beats = 0
        self.completed_chunks = 0

    @property
    def connected(self) -> bool:
        return self._channel is not None and not self._channel.closed

    async def connect(self, share_code: str) -> dict[str, Any]:
        """Join the pool behind a share code.

        Raises:
            InputInvalidError: Malformed share code
            TransportLostError: The coordinator could not be reached
            AuthFailedError: The coordinator rejected this worker
        """
        parsed = parse_share_code(share_code)
        if parsed is None:
            raise InputInvalidError("Invalid collective share code")

        logger.info(f"🔌 Connecting to collective at {parsed.host}:{parsed.port}...")
        transport = await open_stream_transport(parsed.host, parsed.port)
        return await self.join(transport, parsed.secret)

    async def join(self, transport: Transport, secret: str) -> dict[str, Any]:
        """Authenticate over an open transport and start heartbeats."""
        channel = MessageChannel(transport)
        timeout = self.config.auth_timeout_ms / 1000
        try:
            challenge = await asyncio.wait_for(channel.receive(), timeout=timeout)
            if not isinstance(challenge, AuthRequired):
                raise AuthFailedError(f"Expected AUTH_REQUIRED, got {challenge.type}")

            response = self.identity.create_auth_response(challenge.challenge, self.clock.now())
            await channel.send(
                Auth(
                    id=response["id"],
                    public_key=response["publicKey"],
                    timestamp=response["timestamp"],
                    signature=response["signature"],
                    capability=self.capability.value,
                    device_name=self.device_name,
                    pool_secret=secret,
                )
            )

            reply = await asyncio.wait_for(channel.receive(), timeout=timeout)
        except TimeoutError as e:
            await channel.close()
            raise OperationTimeoutError("Coordinator did not complete the handshake") from e
        except (AuthFailedError, TransportLostError):
            await channel.close()
            raise

        match reply:
            case AuthSuccess():
                self.device_id = reply.device_id
                self.pool_name = reply.pool_name
                self.peers = {p.device_id: p for p in reply.peers}
            case AuthFail():
                await channel.close()
                raise AuthFailedError(f"Coordinator rejected join: {reply.reason}")
            case _:
                await channel.close()
                raise AuthFailedError(f"Unexpected handshake reply {reply.type}")

        self._channel = channel
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        logger.info(f"🎉 Joined collective '{self.pool_name}' as {self.device_name} ({self.capability.value})")
        return {"device_id": self.device_id, "pool_name": self.pool_name, "peers": len(self.peers)}

    async def run(self) -> None:
        """Serve messages until the coordinator goes away."""
        if self._channel is None:
            raise InputInvalidError("Worker has not joined a pool")

        channel = self._channel
        try:
            while True:
                message = await channel.receive()
                match message:
                    case ChunkAssign():
                        await self._start_chunk(message)
                    case EmbedAssign():
                        await self._start_embedding(message)
                    case Cancel():
                        self._cancel(message)
                    case PeerJoined():
                        self.peers[message.device.device_id] = message.device
                    case PeerLeft():
                        self.peers.pop(message.device.device_id, None)
                    case _:
                        logger.warning(f"Unexpected {message.type} from coordinator")
        except TransportLostError as e:
            logger.info(f"🔴 Disconnected from collective: {e.message}")
        finally:
            await self.disconnect()

    async def disconnect(self) -> None:
        if self._heartbeat_task is not None and self._heartbeat_task is not asyncio.current_task():
            self._heartbeat_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._heartbeat_task
        self._heartbeat_task = None

        tasks = [task for _, task in self._chunks.values()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        if self._channel is not None:
            await self._channel.close()
            self._channel = None

    # ------------------------------------------------------------------
    # Chunk execution
    # ------------------------------------------------------------------

    async def _send(self, message: WireModel) -> None:
        if self._channel is None:
            raise TransportLostError("Worker is not connected")
        await self._channel.send(message)

    async def _send_quietly(self, message: WireModel) -> None:
        with contextlib.suppress(TransportLostError):
            await self._send(message)

    async def _start_chunk(self, assignment: ChunkAssign) -> None:
        if len(self._chunks) >= self.capability.parallelism:
            logger.warning(f"Refusing chunk {assignment.chunk_id}: at capacity")
            await self._send_quietly(ChunkFail(chunk_id=assignment.chunk_id, reason="at capacity"))
            return

        logger.debug(f"📥 Chunk {assignment.chunk_id} ({assignment.max_tokens} tokens)")
        task = asyncio.create_task(self._run_chunk(assignment))
        self._chunks[assignment.chunk_id] = (assignment.task_id, task)

    async def _run_chunk(self, assignment: ChunkAssign) -> None:
        messages = [{"role": m.role, "content": m.content} for m in assignment.messages]
        if assignment.prefix:
            messages.append({"role": "assistant", "content": assignment.prefix})

        seq = 0
        try:
            async with contextlib.aclosing(
                self.engine.chat_stream(messages, max_tokens=assignment.max_tokens)
            ) as tokens:
                async for text in tokens:
                    if not text:
                        continue
                    await self._send(ChunkToken(chunk_id=assignment.chunk_id, seq=seq, text=text))
                    seq += 1
                    if seq >= assignment.max_tokens:
                        break
        except asyncio.CancelledError:
            await self._send_quietly(ChunkFail(chunk_id=assignment.chunk_id, reason="cancelled"))
            raise
        except Exception as e:
            logger.warning(f"❌ Chunk {assignment.chunk_id} failed: {e}")
            await self._send_quietly(ChunkFail(chunk_id=assignment.chunk_id, reason=str(e) or type(e).__name__))
        else:
            self.completed_chunks += 1
            await self._send_quietly(ChunkDone(chunk_id=assignment.chunk_id))
        finally:
            self._chunks.pop(assignment.chunk_id, None)

    async def _start_embedding(self, assignment: EmbedAssign) -> None:
        if not isinstance(self.engine, EmbeddingEngine):
            await self._send_quietly(ChunkFail(chunk_id=assignment.chunk_id, reason="embedding not supported"))
            return
        if len(self._chunks) >= self.capability.parallelism:
            logger.warning(f"Refusing embedding {assignment.chunk_id}: at capacity")
            await self._send_quietly(ChunkFail(chunk_id=assignment.chunk_id, reason="at capacity"))
            return

        logger.debug(f"📥 Embedding {assignment.chunk_id} ({len(assignment.texts)} texts)")
        task = asyncio.create_task(self._run_embedding(assignment))
        self._chunks[assignment.chunk_id] = (assignment.task_id, task)

    async def _run_embedding(self, assignment: EmbedAssign) -> None:
        try:
            vectors = await self.engine.embed(assignment.texts, model=assignment.model)
        except asyncio.CancelledError:
            await self._send_quietly(ChunkFail(chunk_id=assignment.chunk_id, reason="cancelled"))
            raise
        except Exception as e:
            logger.warning(f"❌ Embedding {assignment.chunk_id} failed: {e}")
            await self._send_quietly(ChunkFail(chunk_id=assignment.chunk_id, reason=str(e) or type(e).__name__))
        else:
            self.completed_chunks += 1
            await self._send_quietly(EmbedResult(chunk_id=assignment.chunk_id, vectors=vectors))
        finally:
            self._chunks.pop(assignment.chunk_id, None)

    def _cancel(self, message: Cancel) -> None:
        for chunk_id, (task_id, task) in list(self._chunks.items()):
            if chunk_id == message.chunk_id or (message.task_id is not None and task_id == message.task_id):
                logger.debug(f"Cancelling chunk {chunk_id}")
                task.cancel()

    # ------------------------------------------------------------------
    # Heartbeats
    # ------------------------------------------------------------------

    @property
    def load(self) -> float:
        return len(self._chunks) / self.capability.parallelism

    async def heartbeat(self) -> None:
        """Report load once, downgrading capability after sustained saturation."""
        load = self.load
        await self._send(Heartbeat(load=load, active_chunks=len(self._chunks)))

        self._saturated_beats = self._saturated_beats + 1 if load >= 1 else 0
        if self._saturated_beats >= self.config.overload_heartbeats and self.capability != Capability.LOW:
            self._saturated_beats = 0
            await self.update_capability(self.capability.downgrade())

    async def update_capability(self, capability: Capability | str) -> None:
        self.capability = Capability(capability)
        logger.info(f"⚖️ Advertising capability {self.capability.value}")
        await self._send(CapabilityUpdate(capability=self.capability.value))

    async def _heartbeat_loop(self) -> None:
        interval = self.config.heartbeat_interval_ms / 1000
        try:
            while True:
                await asyncio.sleep(interval)
                await self.heartbeat()
        except TransportLostError:
            logger.debug("Heartbeat stopped: coordinator connection lost")

    def get_status(self) -> dict[str, Any]:
        return {
            "device_id": self.device_id,
            "device_name": self.device_name,
            "connected": self.connected,
            "capability": self.capability.value,
            "active_chunks": len(self._chunks),
            "completed_chunks": self.completed_chunks,
            "pool_name": self.pool_name,
            "peers": len(self.peers),
        }
