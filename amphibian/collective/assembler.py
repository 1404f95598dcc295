"""Ordered reassembly of per-chunk token streams."""

from __future__ import annotations

import logging
from collections.abc import Callable

logger = logging.getLogger(__name__)


class StreamAssembler:
    """Merges chunk streams into one stream in schedule order.

    Chunks are opened in schedule order. Tokens of the chunk at the head of
    the schedule are emitted immediately; tokens of later chunks are
    buffered until every predecessor has been closed, whatever order the
    chunks complete in.
    """

    def __init__(self, emit: Callable[[str], None]) -> None:
        self._emit = emit
        self._order: list[str] = []
        self._head = 0
        self._buffers: dict[str, list[str]] = {}
        self._closed: set[str] = set()

    @property
    def finished(self) -> bool:
        """All opened chunks have been closed and flushed."""
        return self._head >= len(self._order)

    def open(self, chunk_id: str) -> None:
        if chunk_id in self._buffers:
            raise ValueError(f"Chunk already opened: {chunk_id}")
        self._order.append(chunk_id)
        self._buffers[chunk_id] = []

    def push(self, chunk_id: str, token: str) -> None:
        if chunk_id not in self._buffers or chunk_id in self._closed:
            logger.debug(f"Dropping token for unknown or closed chunk {chunk_id}")
            return
        if self._is_head(chunk_id):
            self._emit(token)
        else:
            self._buffers[chunk_id].append(token)

    def close(self, chunk_id: str) -> None:
        if chunk_id not in self._buffers or chunk_id in self._closed:
            return
        self._closed.add(chunk_id)
        self._advance()

    def _is_head(self, chunk_id: str) -> bool:
        return self._head < len(self._order) and self._order[self._head] == chunk_id

    def _advance(self) -> None:
        while self._head < len(self._order):
            head = self._order[self._head]
            for token in self._buffers[head]:
                self._emit(token)
            self._buffers[head] = []
            if head not in self._closed:
                return
            self._head += 1
