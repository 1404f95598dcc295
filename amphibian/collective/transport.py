"""Message-framed transports between pool peers.

``Transport`` is the byte-level contract: ordered, message-framed
``send``/``receive``/``close``. :class:`StreamTransport` frames with newlines
over asyncio streams; :func:`memory_pipe` connects two in-process endpoints
for tests and single-process pools. :class:`MessageChannel` layers the
protocol codec on top.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Protocol, runtime_checkable

from amphibian.collective.protocol import Message, WireModel, decode_message, encode_message
from amphibian.errors import InputInvalidError, TransportLostError, UnknownMessageError

logger = logging.getLogger(__name__)

# Largest frame accepted from a stream peer
STREAM_LIMIT = 4 * 1024 * 1024


@runtime_checkable
class Transport(Protocol):
    """Authenticated, ordered, message-framed byte channel."""

    async def send(self, data: bytes) -> None: ...

    async def receive(self) -> bytes: ...

    async def close(self) -> None: ...


class StreamTransport:
    """Newline-delimited frames over an asyncio stream pair."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._reader = reader
        self._writer = writer
        self._closed = False
        peer = writer.get_extra_info("peername")
        self.label = f"{peer[0]}:{peer[1]}" if isinstance(peer, tuple) else str(peer)

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, data: bytes) -> None:
        if self._closed:
            raise TransportLostError("Send on closed transport", {"peer": self.label})
        if b"\n" in data:
            raise InputInvalidError("Frames may not contain newlines")
        try:
            self._writer.write(data + b"\n")
            await self._writer.drain()
        except (ConnectionError, OSError) as e:
            self._closed = True
            raise TransportLostError(f"Peer {self.label} disconnected: {e}") from e

    async def receive(self) -> bytes:
        if self._closed:
            raise TransportLostError("Receive on closed transport", {"peer": self.label})
        try:
            line = await self._reader.readline()
        except (ConnectionError, OSError, asyncio.LimitOverrunError, ValueError) as e:
            self._closed = True
            raise TransportLostError(f"Peer {self.label} read failed: {e}") from e
        if not line:
            self._closed = True
            raise TransportLostError(f"Peer {self.label} closed the connection")
        return line.rstrip(b"\r\n")

    async def close(self) -> None:
        if self._closed and self._writer.is_closing():
            return
        self._closed = True
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except (ConnectionError, OSError):
            pass


async def open_stream_transport(host: str, port: int) -> StreamTransport:
    """Connect to a coordinator."""
    try:
        reader, writer = await asyncio.open_connection(host, port, limit=STREAM_LIMIT)
    except OSError as e:
        raise TransportLostError(f"Could not connect to {host}:{port}: {e}") from e
    return StreamTransport(reader, writer)


async def start_stream_server(
    handler: Callable[[StreamTransport], Awaitable[None]],
    host: str,
    port: int,
) -> asyncio.Server:
    """Listen for peers, handing each connection to ``handler`` as a transport."""

    async def on_connect(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        await handler(StreamTransport(reader, writer))

    return await asyncio.start_server(on_connect, host, port, limit=STREAM_LIMIT)


_EOF = object()


class MemoryTransport:
    """One end of an in-process pipe."""

    def __init__(self, inbox: asyncio.Queue, outbox: asyncio.Queue, label: str) -> None:
        self._inbox = inbox
        self._outbox = outbox
        self._closed = False
        self.label = label

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, data: bytes) -> None:
        if self._closed:
            raise TransportLostError("Send on closed transport", {"peer": self.label})
        await self._outbox.put(bytes(data))

    async def receive(self) -> bytes:
        if self._closed:
            raise TransportLostError("Receive on closed transport", {"peer": self.label})
        item = await self._inbox.get()
        if item is _EOF:
            self._closed = True
            raise TransportLostError(f"Peer {self.label} closed the pipe")
        return item

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        # Wake our own pending receive and tell the peer
        self._inbox.put_nowait(_EOF)
        self._outbox.put_nowait(_EOF)


def memory_pipe(label: str = "memory") -> tuple[MemoryTransport, MemoryTransport]:
    """Two connected in-process transports."""
    a_to_b: asyncio.Queue = asyncio.Queue()
    b_to_a: asyncio.Queue = asyncio.Queue()
    return (
        MemoryTransport(b_to_a, a_to_b, f"{label}:a"),
        MemoryTransport(a_to_b, b_to_a, f"{label}:b"),
    )


class MessageChannel:
    """Protocol messages over a transport."""

    def __init__(self, transport: Transport) -> None:
        self.transport = transport
        self.label = getattr(transport, "label", "peer")
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, message: WireModel) -> None:
        await self.transport.send(encode_message(message))

    async def receive(self) -> Message:
        """Next valid message; unknown or invalid frames are logged and skipped.

        Raises:
            TransportLostError: The peer is gone or sent an undecodable frame
        """
        while True:
            data = await self.transport.receive()
            try:
                return decode_message(data)
            except UnknownMessageError as e:
                logger.warning(f"Ignoring unknown message type {e.tag!r} from {self.label}")
            except InputInvalidError as e:
                logger.warning(f"Ignoring invalid frame from {self.label}: {e.message}")

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.transport.close()
