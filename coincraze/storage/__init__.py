"""Key-value store implementations.

``build_store`` maps a store URL to an implementation:

- ``memory://``          -> InMemoryStore
- ``file://<path>``      -> JsonFileStore
- anything else          -> SqlKeyValueStore (SQLAlchemy URL)
"""

from __future__ import annotations

from coincraze.persistence.interfaces import KeyValueStore

from .json_file import JsonFileStore
from .memory import InMemoryStore
from .sql import SqlKeyValueStore


def build_store(url: str) -> KeyValueStore:
    url = url.strip()
    if not url or url == "memory://":
        return InMemoryStore()
    if url.startswith("file://"):
        path = url[len("file://"):]
        if not path:
            raise ValueError("file:// store URL requires a path")
        return JsonFileStore(path)
    return SqlKeyValueStore(url)


__all__ = ["InMemoryStore", "JsonFileStore", "SqlKeyValueStore", "build_store"]
