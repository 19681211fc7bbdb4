"""
Storage backends for ephemeralpay.

Configuration via environment:
    EPHEMERALPAY_STORAGE_BACKEND=memory  # or 'redis'
    EPHEMERALPAY_REDIS_URL=redis://localhost:6379/0
"""

from __future__ import annotations

import os
from typing import Any

from ephemeralpay.storage.base import StorageBackend
from ephemeralpay.storage.memory import InMemoryStorage
from ephemeralpay.storage.redis import RedisStorage

_BACKENDS: dict[str, type[StorageBackend]] = {
    "memory": InMemoryStorage,
    "redis": RedisStorage,
}


def get_storage(backend_name: str | None = None, **kwargs: Any) -> StorageBackend:
    """
    Build a storage backend by name, or from EPHEMERALPAY_STORAGE_BACKEND.

    Raises:
        ValueError: If backend name is unknown
    """
    if backend_name is None:
        backend_name = os.environ.get("EPHEMERALPAY_STORAGE_BACKEND", "memory")

    backend_class = _BACKENDS.get(backend_name)
    if backend_class is None:
        raise ValueError(
            f"Unknown storage backend: '{backend_name}'. Available: {', '.join(_BACKENDS)}"
        )
    return backend_class(**kwargs)


__all__ = [
    "StorageBackend",
    "InMemoryStorage",
    "RedisStorage",
    "get_storage",
]
