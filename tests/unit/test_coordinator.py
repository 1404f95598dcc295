"""Tests for the pool coordinator driven by hand-written workers.

Deadlines are exercised with a virtual clock and explicit
``check_deadlines()`` sweeps; the background monitor is disabled.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import pytest

from amphibian.collective.coordinator import PoolCoordinator, PoolState
from amphibian.collective.identity import CollectiveIdentity
from amphibian.collective.protocol import (
    AuthFail,
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
)
from amphibian.collective.scheduling import Capability
from amphibian.config import PoolConfig
from amphibian.errors import InputInvalidError, PoolExhaustedError, TransportLostError
from amphibian.events import DeviceJoined, DeviceLeft, EventBus, FallbackUsed, TaskCompleted, TaskFailed

MESSAGES = [{"role": "user", "content": "count for me"}]


async def until(predicate: Callable[[], bool], rounds: int = 500) -> None:
    for _ in range(rounds):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


async def stream_tokens(worker, assign: ChunkAssign, tokens: list[str], done: bool = True) -> None:
    for seq, text in enumerate(tokens):
        await worker.send(ChunkToken(chunk_id=assign.chunk_id, seq=seq, text=text))
    if done:
        await worker.send(ChunkDone(chunk_id=assign.chunk_id))


def record(pool: PoolCoordinator, event_type: type) -> list:
    seen: list = []
    pool.events.subscribe(event_type, seen.append)
    return seen


class TestHandshake:
    """Test suite for worker admission."""

    @pytest.mark.asyncio
    async def test_join(self, coordinator: PoolCoordinator, connect_raw) -> None:
        """A valid worker is registered and the pool starts running."""
        joined = record(coordinator, DeviceJoined)

        worker = await connect_raw(coordinator, "high")

        assert worker.reply == AuthSuccess(device_id=worker.device_id, pool_name="Amphibian Collective")
        assert coordinator.state is PoolState.RUNNING
        assert joined == [DeviceJoined(worker.device_id, "high", "")]
        assert coordinator.health().healthy_devices == 1

    @pytest.mark.asyncio
    async def test_peers_are_announced(self, coordinator: PoolCoordinator, connect_raw) -> None:
        """Newcomers learn the roster; existing workers hear about newcomers."""
        first = await connect_raw(coordinator, "medium")
        second = await connect_raw(coordinator, "low")

        assert second.reply.peers == [PeerInfo(device_id=first.device_id, capability="medium")]
        notice = await first.next_of(PeerJoined)
        assert notice.device.device_id == second.device_id

    @pytest.mark.asyncio
    async def test_wrong_secret(self, coordinator: PoolCoordinator, connect_raw) -> None:
        """Workers without the share-code secret are refused."""
        worker = await connect_raw(coordinator, secret="000000000000")

        assert worker.reply == AuthFail(reason="invalid pool secret")
        assert coordinator.devices == {}

    @pytest.mark.asyncio
    async def test_bad_signature(self, coordinator: PoolCoordinator, connect_raw, clock) -> None:
        """A signature over the wrong challenge is refused."""
        identity = CollectiveIdentity.generate(clock.now())
        forged = identity.create_auth_response("f" * 64, clock.now())["signature"]

        worker = await connect_raw(coordinator, identity=identity, signature=forged)

        assert worker.reply == AuthFail(reason="Invalid signature")

    @pytest.mark.asyncio
    async def test_duplicate_identity(self, coordinator: PoolCoordinator, connect_raw, clock) -> None:
        """An identity can only be connected once."""
        identity = CollectiveIdentity.generate(clock.now())
        await connect_raw(coordinator, identity=identity)

        again = await connect_raw(coordinator, identity=identity)

        assert again.reply == AuthFail(reason="duplicate identity")
        assert len(coordinator.devices) == 1

    @pytest.mark.asyncio
    async def test_share_code_requires_port(self, coordinator: PoolCoordinator) -> None:
        """In-process pools have no share code."""
        with pytest.raises(InputInvalidError):
            coordinator.share_code()


class TestSubmit:
    """Test suite for request validation and chunking."""

    @pytest.mark.asyncio
    async def test_argument_errors(self, coordinator: PoolCoordinator) -> None:
        """Bad token counts, task kinds and messages are input errors."""
        with pytest.raises(InputInvalidError):
            coordinator.submit(MESSAGES, max_tokens=0)
        with pytest.raises(InputInvalidError):
            coordinator.submit(MESSAGES, kind="training")
        with pytest.raises(InputInvalidError):
            coordinator.submit([{"role": "user"}])

    @pytest.mark.asyncio
    async def test_not_started(self) -> None:
        """An idle pool accepts no requests."""
        with pytest.raises(PoolExhaustedError):
            PoolCoordinator().submit(MESSAGES)

    @pytest.mark.asyncio
    async def test_chunks_follow_the_window(self, coordinator: PoolCoordinator, connect_raw) -> None:
        """A low worker gets two-token chunks, each continuing the prefix."""
        completed = record(coordinator, TaskCompleted)
        worker = await connect_raw(coordinator, "low")
        stream = coordinator.submit(MESSAGES, max_tokens=5)

        first = await worker.next_of(ChunkAssign)
        assert (first.chunk_id, first.seq, first.prefix, first.max_tokens) == (f"{stream.task_id}:0", 0, "", 2)
        assert first.messages[0].content == "count for me"
        await stream_tokens(worker, first, ["a", "b"])

        second = await worker.next_of(ChunkAssign)
        assert (second.seq, second.prefix, second.max_tokens) == (1, "ab", 2)
        await stream_tokens(worker, second, ["c", "d"])

        third = await worker.next_of(ChunkAssign)
        assert (third.prefix, third.max_tokens) == ("abcd", 1)
        await stream_tokens(worker, third, ["e"])

        assert await stream.text() == "abcde"
        assert completed == [TaskCompleted(stream.task_id, 5)]
        assert coordinator.devices[worker.device_id].device.completed_tasks == 3
        profile = coordinator.identity_manager.get_public_profile(worker.device_id)
        assert (profile["reputation"], profile["contributions"]) == (30, {"task_completed": 3})
        assert profile["badges"] == ["first_contribution"]

    @pytest.mark.asyncio
    async def test_short_chunk_ends_request(self, coordinator: PoolCoordinator, connect_raw) -> None:
        """A chunk finishing under its token window means the model stopped."""
        worker = await connect_raw(coordinator, "medium")
        stream = coordinator.submit(MESSAGES, max_tokens=100)

        assign = await worker.next_of(ChunkAssign)
        assert assign.max_tokens == 16
        await stream_tokens(worker, assign, ["only ", "this"])

        assert await stream.text() == "only this"
        assert [token async for token in stream] == ["only ", "this"]

    @pytest.mark.asyncio
    async def test_out_of_order_tokens_dropped(self, coordinator: PoolCoordinator, connect_raw) -> None:
        """Tokens must arrive with consecutive sequence numbers."""
        worker = await connect_raw(coordinator, "low")
        stream = coordinator.submit(MESSAGES, max_tokens=2)
        assign = await worker.next_of(ChunkAssign)

        for seq, text in [(1, "x"), (0, "a"), (0, "dup"), (1, "b"), (2, "overflow")]:
            await worker.send(ChunkToken(chunk_id=assign.chunk_id, seq=seq, text=text))
        await worker.send(ChunkDone(chunk_id=assign.chunk_id))

        assert await stream.text() == "ab"

    @pytest.mark.asyncio
    async def test_capability_update(self, coordinator: PoolCoordinator, connect_raw) -> None:
        """Workers can re-advertise a smaller class."""
        worker = await connect_raw(coordinator, "high")
        device = coordinator.devices[worker.device_id].device

        await worker.send(CapabilityUpdate(capability="low"))
        await until(lambda: device.capability is Capability.LOW)
        coordinator.submit(MESSAGES, max_tokens=10)

        assert (await worker.next_of(ChunkAssign)).max_tokens == 2

    @pytest.mark.asyncio
    async def test_queued_request_takes_freed_slot(self, coordinator: PoolCoordinator, connect_raw) -> None:
        """A request waiting on a full worker starts as soon as the slot frees."""
        worker = await connect_raw(coordinator, "low")
        first = coordinator.submit(MESSAGES, max_tokens=2)
        second = coordinator.submit(MESSAGES, max_tokens=1)
        assign = await worker.next_of(ChunkAssign)

        await stream_tokens(worker, assign, ["a", "b"])

        follow_up = await worker.next_of(ChunkAssign)
        assert follow_up.task_id == second.task_id
        assert await first.text() == "ab"


class TestFailures:
    """Test suite for re-queueing and health tracking."""

    @pytest.mark.asyncio
    async def test_no_worker_timeout(self, coordinator: PoolCoordinator, clock) -> None:
        """Requests nobody can serve fail after the no-worker timeout."""
        failed = record(coordinator, TaskFailed)
        stream = coordinator.submit(MESSAGES)

        clock.advance(10_000)
        coordinator.check_deadlines()
        assert not stream.done

        clock.advance(1)
        coordinator.check_deadlines()

        with pytest.raises(PoolExhaustedError):
            await stream.text()
        assert failed == [TaskFailed(stream.task_id, "pool_exhausted")]

    @pytest.mark.asyncio
    async def test_chunk_fail_requeues_elsewhere(self, coordinator: PoolCoordinator, connect_raw) -> None:
        """Streamed tokens are kept and the remainder goes to another worker."""
        first = await connect_raw(coordinator, "medium")
        second = await connect_raw(coordinator, "medium")
        stream = coordinator.submit(MESSAGES, max_tokens=4)

        assign = await first.next_of(ChunkAssign)
        await stream_tokens(first, assign, ["a"], done=False)
        await first.send(ChunkFail(chunk_id=assign.chunk_id, reason="out of memory"))

        retry = await second.next_of(ChunkAssign)
        assert (retry.seq, retry.prefix, retry.max_tokens) == (1, "a", 3)
        await stream_tokens(second, retry, ["b", "c", "d"])

        assert await stream.text() == "abcd"

    @pytest.mark.asyncio
    async def test_disconnect_requeues(self, coordinator: PoolCoordinator, connect_raw) -> None:
        """A vanished worker's chunk is finished by another one."""
        left = record(coordinator, DeviceLeft)
        first = await connect_raw(coordinator, "medium")
        second = await connect_raw(coordinator, "medium")
        stream = coordinator.submit(MESSAGES, max_tokens=3)

        assign = await first.next_of(ChunkAssign)
        await stream_tokens(first, assign, ["a", "b"], done=False)
        await until(lambda: stream.tokens == ["a", "b"])
        await first.close()

        retry = await second.next_of(ChunkAssign)
        assert (retry.prefix, retry.max_tokens) == ("ab", 1)
        await stream_tokens(second, retry, ["c"])

        assert await stream.text() == "abc"
        assert left == [DeviceLeft(first.device_id, "disconnected")]

    @pytest.mark.asyncio
    async def test_chunk_timeout(self, coordinator: PoolCoordinator, connect_raw, clock) -> None:
        """A timed-out chunk costs health, is cancelled and re-queued."""
        slow = await connect_raw(coordinator, "medium")
        stream = coordinator.submit(MESSAGES, max_tokens=16)
        assign = await slow.next_of(ChunkAssign)
        await stream_tokens(slow, assign, ["a", "b"], done=False)
        await until(lambda: len(stream.tokens) == 2)
        backup = await connect_raw(coordinator, "low")

        clock.advance(14_999)
        coordinator.check_deadlines()
        assert assign.chunk_id in coordinator.inflight

        clock.advance(1)
        coordinator.check_deadlines()

        assert coordinator.devices[slow.device_id].device.health_score == 75
        assert await slow.next_of(Cancel) == Cancel(chunk_id=assign.chunk_id, task_id=stream.task_id)
        retry = await backup.next_of(ChunkAssign)
        assert (retry.prefix, retry.max_tokens) == ("ab", 2)

    @pytest.mark.asyncio
    async def test_eviction_after_consecutive_timeouts(self, coordinator: PoolCoordinator, connect_raw, clock) -> None:
        """Three timeouts in a row evict a worker."""
        left = record(coordinator, DeviceLeft)
        worker = await connect_raw(coordinator, "tpu")
        device = coordinator.devices[worker.device_id].device
        for _ in range(3):
            coordinator.submit(MESSAGES, max_tokens=100)
        for _ in range(3):
            await worker.next_of(ChunkAssign)

        clock.advance(4_000)
        coordinator.check_deadlines()

        assert device.consecutive_timeouts == 3
        assert device.health_score == 25
        assert worker.device_id not in coordinator.devices
        assert left == [DeviceLeft(worker.device_id, "evicted")]

    @pytest.mark.asyncio
    async def test_heartbeat_timeout_and_recovery(self, coordinator: PoolCoordinator, connect_raw, clock) -> None:
        """Silent workers turn unhealthy and recover on the next heartbeat."""
        worker = await connect_raw(coordinator, "medium")
        device = coordinator.devices[worker.device_id].device

        clock.advance(15_000)
        coordinator.check_deadlines()
        assert device.healthy

        clock.advance(1)
        coordinator.check_deadlines()
        assert (device.healthy, device.unhealthy_reason) == (False, "heartbeat_timeout")
        assert coordinator.health().healthy_devices == 0

        await worker.send(Heartbeat(load=0.5, active_chunks=1))
        await until(lambda: device.healthy)
        assert device.load == 0.5


class TestCancel:
    """Test suite for request cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_unknown(self, coordinator: PoolCoordinator) -> None:
        """Unknown requests cannot be cancelled."""
        assert coordinator.cancel("missing") is False

    @pytest.mark.asyncio
    async def test_acknowledged_cancel_frees_slot(self, coordinator: PoolCoordinator, connect_raw) -> None:
        """The slot is released once the worker confirms the cancel."""
        worker = await connect_raw(coordinator, "medium")
        device = coordinator.devices[worker.device_id].device
        stream = coordinator.submit(MESSAGES, max_tokens=50)
        assign = await worker.next_of(ChunkAssign)

        assert stream.cancel()

        assert await worker.next_of(Cancel) == Cancel(chunk_id=assign.chunk_id, task_id=stream.task_id)
        assert stream.status == "cancelled"
        assert assign.chunk_id in device.active_chunks
        await worker.send(ChunkFail(chunk_id=assign.chunk_id, reason="cancelled"))
        await until(lambda: not device.active_chunks)
        assert device.healthy

    @pytest.mark.asyncio
    async def test_tokens_after_cancel_deadline(self, coordinator: PoolCoordinator, connect_raw, clock) -> None:
        """A worker still streaming past the cancel deadline is marked unhealthy."""
        worker = await connect_raw(coordinator, "medium")
        device = coordinator.devices[worker.device_id].device
        stream = coordinator.submit(MESSAGES, max_tokens=50)
        assign = await worker.next_of(ChunkAssign)
        await stream_tokens(worker, assign, ["a"], done=False)
        await until(lambda: stream.tokens == ["a"])
        stream.cancel()

        await worker.send(ChunkToken(chunk_id=assign.chunk_id, seq=1, text="b"))
        await worker.send(Heartbeat(load=0.25))
        await until(lambda: device.load == 0.25)
        assert device.healthy

        clock.advance(2_001)
        await worker.send(ChunkToken(chunk_id=assign.chunk_id, seq=2, text="c"))
        await until(lambda: not device.healthy)

        assert device.unhealthy_reason == "cancel_ignored"
        assert stream.tokens == ["a"]
        assert [token async for token in stream] == ["a"]

    @pytest.mark.asyncio
    async def test_unacknowledged_cancel_frees_slot_at_deadline(
        self, coordinator: PoolCoordinator, connect_raw, clock
    ) -> None:
        """Without an acknowledgement the slot frees after the cancel deadline."""
        worker = await connect_raw(coordinator, "low")
        device = coordinator.devices[worker.device_id].device
        stream = coordinator.submit(MESSAGES, max_tokens=50)
        await worker.next_of(ChunkAssign)
        stream.cancel()

        clock.advance(2_000)
        coordinator.check_deadlines()
        assert device.active_chunks

        clock.advance(1)
        coordinator.check_deadlines()
        assert not device.active_chunks


class TestStop:
    """Test suite for shutdown."""

    @pytest.mark.asyncio
    async def test_stop_fails_leftovers(self, coordinator: PoolCoordinator, connect_raw) -> None:
        """Requests still running at the end of the grace window fail."""
        worker = await connect_raw(coordinator, "medium")
        stream = coordinator.submit(MESSAGES, max_tokens=10)
        await worker.next_of(ChunkAssign)

        await coordinator.stop(grace_ms=0)

        with pytest.raises(TransportLostError):
            await stream.text()
        assert coordinator.state is PoolState.STOPPED
        assert coordinator.devices == {}
        with pytest.raises(PoolExhaustedError):
            coordinator.submit(MESSAGES)

    @pytest.mark.asyncio
    async def test_stop_waits_for_drain(self, coordinator: PoolCoordinator, connect_raw) -> None:
        """Requests finishing inside the grace window complete normally."""
        worker = await connect_raw(coordinator, "low")
        stream = coordinator.submit(MESSAGES, max_tokens=2)
        assign = await worker.next_of(ChunkAssign)

        stopping = asyncio.create_task(coordinator.stop(grace_ms=2_000))
        await until(lambda: coordinator.state is PoolState.DRAINING)
        await stream_tokens(worker, assign, ["a", "b"])
        await stopping

        assert await stream.text() == "ab"
        assert coordinator.state is PoolState.STOPPED

    @pytest.mark.asyncio
    async def test_status(self, coordinator: PoolCoordinator, connect_raw) -> None:
        """Status lists connected devices."""
        worker = await connect_raw(coordinator, "tpu")

        status = coordinator.get_status()

        assert status["state"] == "running"
        assert status["devices"][0]["device_id"] == worker.device_id
        assert status["devices"][0]["health_score"] == 100

    @pytest.mark.asyncio
    async def test_owned_bus_closed_on_stop(self, coordinator: PoolCoordinator) -> None:
        """A coordinator closes the event bus it created."""
        await coordinator.stop(grace_ms=0)

        assert coordinator.events.closed

    @pytest.mark.asyncio
    async def test_shared_bus_stays_open(self, connect_raw, clock) -> None:
        """A bus passed in by the caller outlives the pool, which goes quiet."""
        bus = EventBus()
        pool = PoolCoordinator(PoolConfig(), clock=clock, events=bus)
        await pool.start(run_monitor=False)
        left: list[DeviceLeft] = []
        fallbacks: list[FallbackUsed] = []
        bus.subscribe(DeviceLeft, left.append)
        bus.subscribe(FallbackUsed, fallbacks.append)
        await connect_raw(pool, "low")

        await pool.stop(grace_ms=0)
        pool.check_deadlines()
        bus.publish(FallbackUsed("pool_exhausted"))

        assert not bus.closed
        assert [event.reason for event in left] == ["shutdown"]
        assert fallbacks == [FallbackUsed("pool_exhausted")]


class TestEmbeddings:
    """Test suite for embedding jobs."""

    @pytest.mark.asyncio
    async def test_embed(self, coordinator: PoolCoordinator, connect_raw) -> None:
        """The batch goes to one worker and its vectors come back in order."""
        completed = record(coordinator, TaskCompleted)
        worker = await connect_raw(coordinator, "medium")
        device = coordinator.devices[worker.device_id].device
        job = asyncio.create_task(coordinator.embed(["pond", "frog"], model="nomic"))

        assign = await worker.next_of(EmbedAssign)
        assert (assign.texts, assign.model) == (["pond", "frog"], "nomic")
        assert assign.chunk_id in device.active_chunks
        assert coordinator.health().inflight_chunks == 1
        await worker.send(EmbedResult(chunk_id=assign.chunk_id, vectors=[[1.0, 0.0], [0.0, 1.0]]))

        assert await job == [[1.0, 0.0], [0.0, 1.0]]
        assert not device.active_chunks
        assert device.completed_tasks == 1
        assert completed == [TaskCompleted(assign.task_id)]
        profile = coordinator.identity_manager.get_public_profile(worker.device_id)
        assert (profile["reputation"], profile["badges"]) == (10, ["first_contribution"])

    @pytest.mark.asyncio
    async def test_argument_errors(self, coordinator: PoolCoordinator) -> None:
        """Empty or non-text batches are input errors; an idle pool embeds nothing."""
        with pytest.raises(InputInvalidError):
            await coordinator.embed([])
        with pytest.raises(InputInvalidError):
            await coordinator.embed(["pond", 3])
        with pytest.raises(InputInvalidError):
            coordinator.submit(MESSAGES, kind="embed")
        with pytest.raises(PoolExhaustedError):
            await PoolCoordinator().embed(["pond"])

    @pytest.mark.asyncio
    async def test_fail_moves_to_another_worker(self, coordinator: PoolCoordinator, connect_raw) -> None:
        """A refused batch is retried on a worker that has not failed it."""
        first = await connect_raw(coordinator, "medium")
        second = await connect_raw(coordinator, "medium")
        job = asyncio.create_task(coordinator.embed(["pond"]))

        assign = await first.next_of(EmbedAssign)
        await first.send(ChunkFail(chunk_id=assign.chunk_id, reason="embedding not supported"))

        retry = await second.next_of(EmbedAssign)
        assert retry.task_id == assign.task_id
        assert retry.chunk_id != assign.chunk_id
        await second.send(EmbedResult(chunk_id=retry.chunk_id, vectors=[[0.5]]))

        assert await job == [[0.5]]
        assert not coordinator.devices[first.device_id].device.active_chunks

    @pytest.mark.asyncio
    async def test_wrong_vector_count_is_a_failure(self, coordinator: PoolCoordinator, connect_raw) -> None:
        """A result without one vector per text is retried elsewhere."""
        first = await connect_raw(coordinator, "medium")
        job = asyncio.create_task(coordinator.embed(["pond", "frog"]))
        assign = await first.next_of(EmbedAssign)

        await first.send(EmbedResult(chunk_id=assign.chunk_id, vectors=[[0.5]]))
        await until(lambda: coordinator.health().queued_requests == 1)
        assert not job.done()

        second = await connect_raw(coordinator, "low")
        retry = await second.next_of(EmbedAssign)
        await second.send(EmbedResult(chunk_id=retry.chunk_id, vectors=[[0.5], [0.25]]))

        assert await job == [[0.5], [0.25]]

    @pytest.mark.asyncio
    async def test_disconnect_requeues(self, coordinator: PoolCoordinator, connect_raw) -> None:
        """A vanished worker's batch is finished by another one."""
        first = await connect_raw(coordinator, "medium")
        second = await connect_raw(coordinator, "medium")
        job = asyncio.create_task(coordinator.embed(["pond"]))
        await first.next_of(EmbedAssign)

        await first.close()

        retry = await second.next_of(EmbedAssign)
        await second.send(EmbedResult(chunk_id=retry.chunk_id, vectors=[[0.5]]))
        assert await job == [[0.5]]

    @pytest.mark.asyncio
    async def test_timeout_cancels_and_requeues(self, coordinator: PoolCoordinator, connect_raw, clock) -> None:
        """A slow batch costs health, is cancelled and goes to another worker."""
        slow = await connect_raw(coordinator, "medium")
        job = asyncio.create_task(coordinator.embed(["pond"]))
        assign = await slow.next_of(EmbedAssign)
        backup = await connect_raw(coordinator, "low")

        clock.advance(14_999)
        coordinator.check_deadlines()
        assert assign.chunk_id in coordinator.devices[slow.device_id].device.active_chunks

        clock.advance(1)
        coordinator.check_deadlines()

        assert coordinator.devices[slow.device_id].device.health_score == 75
        assert await slow.next_of(Cancel) == Cancel(chunk_id=assign.chunk_id, task_id=assign.task_id)
        retry = await backup.next_of(EmbedAssign)
        await slow.send(EmbedResult(chunk_id=assign.chunk_id, vectors=[[9.0]]))
        await backup.send(EmbedResult(chunk_id=retry.chunk_id, vectors=[[0.5]]))

        assert await job == [[0.5]]

    @pytest.mark.asyncio
    async def test_no_worker_timeout(self, coordinator: PoolCoordinator, clock) -> None:
        """Batches nobody can serve fail after the no-worker timeout."""
        failed = record(coordinator, TaskFailed)
        job = asyncio.create_task(coordinator.embed(["pond"]))
        await until(lambda: bool(coordinator.embeddings))
        (task_id,) = coordinator.embeddings

        clock.advance(10_001)
        coordinator.check_deadlines()

        with pytest.raises(PoolExhaustedError):
            await job
        assert failed == [TaskFailed(task_id, "pool_exhausted")]

    @pytest.mark.asyncio
    async def test_waits_for_a_free_slot(self, coordinator: PoolCoordinator, connect_raw) -> None:
        """Embeddings share worker slots with inference chunks."""
        worker = await connect_raw(coordinator, "low")
        stream = coordinator.submit(MESSAGES, max_tokens=2)
        chunk = await worker.next_of(ChunkAssign)
        job = asyncio.create_task(coordinator.embed(["pond"]))
        await until(lambda: bool(coordinator.embeddings))
        assert coordinator.health().queued_requests == 1

        await stream_tokens(worker, chunk, ["a", "b"])

        assign = await worker.next_of(EmbedAssign)
        await worker.send(EmbedResult(chunk_id=assign.chunk_id, vectors=[[0.5]]))
        assert await stream.text() == "ab"
        assert await job == [[0.5]]

    @pytest.mark.asyncio
    async def test_caller_cancel(self, coordinator: PoolCoordinator, connect_raw) -> None:
        """Cancelling the caller cancels the batch; the slot frees on acknowledgement."""
        worker = await connect_raw(coordinator, "medium")
        device = coordinator.devices[worker.device_id].device
        job = asyncio.create_task(coordinator.embed(["pond"]))
        assign = await worker.next_of(EmbedAssign)

        job.cancel()
        with pytest.raises(asyncio.CancelledError):
            await job

        assert await worker.next_of(Cancel) == Cancel(chunk_id=assign.chunk_id, task_id=assign.task_id)
        assert coordinator.embeddings == {}
        assert assign.chunk_id in device.active_chunks
        await worker.send(ChunkFail(chunk_id=assign.chunk_id, reason="cancelled"))
        await until(lambda: not device.active_chunks)
        assert device.healthy

    @pytest.mark.asyncio
    async def test_stop_fails_pending_batch(self, coordinator: PoolCoordinator, connect_raw) -> None:
        """Batches still running at the end of the grace window fail."""
        worker = await connect_raw(coordinator, "medium")
        job = asyncio.create_task(coordinator.embed(["pond"]))
        await worker.next_of(EmbedAssign)

        await coordinator.stop(grace_ms=0)

        with pytest.raises(TransportLostError):
            await job
        assert coordinator.embeddings == {}
