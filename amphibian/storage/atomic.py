"""Crash-safe JSON persistence helpers.

Writes go to a sibling temp file which is fsynced and renamed over the
target, so a reader sees either the old or the new document, never a torn one.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from amphibian.errors import IntegrityError

logger = logging.getLogger(__name__)


def write_text_atomic(path: Path, text: str) -> None:
    """Atomically replace ``path`` with ``text``.

    Args:
        path: Destination file
        text: UTF-8 content to write
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise

    # Persist the rename itself where the platform allows opening directories
    if hasattr(os, "O_DIRECTORY"):
        dir_fd = os.open(path.parent, os.O_RDONLY | os.O_DIRECTORY)
        try:
            os.fsync(dir_fd)
        finally:
            os.close(dir_fd)


def read_json(path: Path) -> Any | None:
    """Read a JSON document.

    Args:
        path: File to read

    Returns:
        Parsed document, or None when the file does not exist

    Raises:
        IntegrityError: If the file exists but is not valid JSON
    """
    path = Path(path)
    if not path.exists():
        return None

    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise IntegrityError(f"Corrupt JSON in {path}: {e}", {"path": str(path)}) from e


async def write_json_atomic(path: Path, data: Any) -> None:
    """Serialize ``data`` and atomically write it off the event loop."""
    text = json.dumps(data, indent=2)
    await asyncio.to_thread(write_text_atomic, Path(path), text)
    logger.debug(f"Wrote {len(text)} bytes to {path}")


async def read_json_async(path: Path) -> Any | None:
    """Async wrapper around :func:`read_json`."""
    return await asyncio.to_thread(read_json, Path(path))
