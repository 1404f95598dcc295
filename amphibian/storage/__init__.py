"""Persistence root resolution and crash-safe JSON files."""

from amphibian.storage.atomic import read_json, read_json_async, write_json_atomic, write_text_atomic
from amphibian.storage.path_resolver import StoragePathResolver

__all__ = [
    "StoragePathResolver",
    "read_json",
    "read_json_async",
    "write_json_atomic",
    "write_text_atomic",
]
