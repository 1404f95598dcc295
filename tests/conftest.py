"""Pytest configuration and fixtures for Amphibian tests."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from amphibian.clock import VirtualClock
from amphibian.collective.coordinator import PoolCoordinator
from amphibian.collective.identity import CollectiveIdentity
from amphibian.collective.protocol import Auth, WireModel
from amphibian.collective.transport import MessageChannel, memory_pipe
from amphibian.collective.worker import PoolWorker
from amphibian.config import PoolConfig

T0 = 1_700_000_000_000


@pytest.fixture(scope="session", autouse=True)
def setup_telemetry():
    """Setup OpenTelemetry for all tests.

    Runs once per session with no external collector so spans and metrics
    go to in-process providers only.
    """
    from amphibian.observability.tracing import setup_telemetry

    setup_telemetry(
        service_name="amphibian-test",
        enable_console_export=False,
        otlp_endpoint=None,
    )

    yield


@pytest.fixture(autouse=True)
def isolated_data_root(tmp_path, monkeypatch):
    """Point every persistence path at a per-test directory."""
    monkeypatch.setenv("AMPHIBIAN_DATA_PATH", str(tmp_path / "data"))
    return tmp_path / "data"


@pytest.fixture
def clock() -> VirtualClock:
    return VirtualClock(T0)


async def settle(rounds: int = 50) -> None:
    """Let queued callbacks and pipe deliveries run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def settled():
    return settle


def scripted_token(index: int) -> str:
    return f"t{index} "


def scripted_text(count: int, start: int = 0) -> str:
    return "".join(scripted_token(i) for i in range(start, start + count))


def scripted_vectors(texts: list[str]) -> list[list[float]]:
    return [[float(len(text)), float(index)] for index, text in enumerate(texts)]


class ScriptedEngine:
    """Deterministic inference engine.

    Streaming continues the numbered sequence ``t0 t1 t2 ...`` from whatever
    assistant prefix it is given, so any chunking of a request reproduces
    the same text. ``chat`` pops canned replies and ``embed`` returns
    ``[len(text), index]`` per input.
    """

    def __init__(
        self,
        replies: list[str] | None = None,
        delay: float = 0.0,
        total_tokens: int | None = None,
        error: Exception | None = None,
    ) -> None:
        self.replies = list(replies or [])
        self.delay = delay
        self.total_tokens = total_tokens
        self.error = error
        self.chat_calls: list[list[dict[str, str]]] = []
        self.stream_calls: list[tuple[list[dict[str, str]], int | None]] = []
        self.embed_calls: list[list[str]] = []

    async def is_available(self) -> bool:
        return True

    async def chat(self, messages: list[dict[str, str]], max_tokens: int | None = None) -> dict[str, str]:
        self.chat_calls.append(messages)
        if self.error is not None:
            raise self.error
        content = self.replies.pop(0) if self.replies else "ok"
        return {"role": "assistant", "content": content}

    async def chat_stream(self, messages: list[dict[str, str]], max_tokens: int | None = None):
        self.stream_calls.append((messages, max_tokens))
        if self.error is not None:
            raise self.error

        prefix = messages[-1]["content"] if messages and messages[-1]["role"] == "assistant" else ""
        start = prefix.count(" ")
        for index in range(start, start + (max_tokens or 8)):
            if self.total_tokens is not None and index >= self.total_tokens:
                return
            if self.delay:
                await asyncio.sleep(self.delay)
            yield scripted_token(index)

    async def embed(self, texts: list[str], model: str | None = None) -> list[list[float]]:
        self.embed_calls.append(list(texts))
        if self.error is not None:
            raise self.error
        if self.delay:
            await asyncio.sleep(self.delay)
        return scripted_vectors(texts)


@pytest.fixture
def engine() -> ScriptedEngine:
    return ScriptedEngine()


class ChatOnlyEngine:
    """Engine without an ``embed`` method."""

    async def is_available(self) -> bool:
        return True

    async def chat(self, messages: list[dict[str, str]], max_tokens: int | None = None) -> dict[str, str]:
        return {"role": "assistant", "content": "ok"}

    async def chat_stream(self, messages: list[dict[str, str]], max_tokens: int | None = None):
        yield "ok"


@pytest.fixture
def chat_only_engine() -> ChatOnlyEngine:
    return ChatOnlyEngine()


@pytest.fixture
def make_engine():
    """Factory for ScriptedEngine with custom replies, delay or limits."""
    return ScriptedEngine


@pytest.fixture
def expected_text():
    """``expected_text(n)`` is the text of the first ``n`` scripted tokens."""
    return scripted_text


@pytest.fixture
def pool_config() -> PoolConfig:
    return PoolConfig()


@pytest.fixture
async def coordinator(clock, pool_config):
    """Coordinator accepting in-process workers, deadlines driven by the test."""
    pool = PoolCoordinator(pool_config, clock=clock)
    await pool.start(run_monitor=False)
    yield pool
    await pool.stop(grace_ms=0)


class RawWorker:
    """Hand-driven worker endpoint for exercising the coordinator directly."""

    def __init__(self, channel: MessageChannel, identity: CollectiveIdentity, reply: Any) -> None:
        self.channel = channel
        self.identity = identity
        self.reply = reply

    @property
    def device_id(self) -> str:
        return self.identity.id

    async def send(self, message: WireModel) -> None:
        await self.channel.send(message)

    async def receive(self, timeout: float = 2.0) -> Any:
        return await asyncio.wait_for(self.channel.receive(), timeout)

    async def next_of(self, message_type: type, timeout: float = 2.0) -> Any:
        while True:
            message = await self.receive(timeout)
            if isinstance(message, message_type):
                return message

    async def close(self) -> None:
        await self.channel.close()


@pytest.fixture
def connect_raw():
    """Factory performing the handshake by hand and returning a RawWorker."""

    async def connect(
        pool: PoolCoordinator,
        capability: str = "medium",
        identity: CollectiveIdentity | None = None,
        secret: str | None = None,
        signature: str | None = None,
    ) -> RawWorker:
        server_end, client_end = memory_pipe("raw")
        asyncio.create_task(pool.accept(server_end))
        channel = MessageChannel(client_end)

        identity = identity or CollectiveIdentity.generate(pool.clock.now())
        challenge = await asyncio.wait_for(channel.receive(), 2.0)
        response = identity.create_auth_response(challenge.challenge, pool.clock.now())
        await channel.send(
            Auth(
                id=response["id"],
                public_key=response["publicKey"],
                timestamp=response["timestamp"],
                signature=signature or response["signature"],
                capability=capability,
                pool_secret=pool.secret if secret is None else secret,
            )
        )
        reply = await asyncio.wait_for(channel.receive(), 2.0)
        return RawWorker(channel, identity, reply)

    return connect


@pytest.fixture
async def attach_worker():
    """Factory joining real PoolWorkers over in-process pipes."""
    run_tasks: list[asyncio.Task] = []

    async def attach(
        pool: PoolCoordinator,
        engine: Any,
        capability: str = "medium",
        worker_cls: type[PoolWorker] = PoolWorker,
    ) -> PoolWorker:
        identity = CollectiveIdentity.generate(pool.clock.now())
        worker = worker_cls(engine, identity, pool.config, capability=capability, clock=pool.clock)
        server_end, client_end = memory_pipe("worker")
        asyncio.create_task(pool.accept(server_end))
        await worker.join(client_end, pool.secret)
        run_tasks.append(asyncio.create_task(worker.run()))
        return worker

    yield attach

    for task in run_tasks:
        task.cancel()
    await asyncio.gather(*run_tasks, return_exceptions=True)
