"""
In-Memory Storage Backend.

Default storage backend that keeps all data in memory. Dedup only holds
within one process; use RedisStorage when several workers share traffic.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from copy import deepcopy
from typing import Any

from ephemeralpay.storage.base import StorageBackend


class InMemoryStorage(StorageBackend):
    """
    In-memory storage backend.

    All lock-table reads and writes happen under one asyncio.Lock.
    """

    def __init__(self) -> None:
        self._data: dict[str, dict[str, dict[str, Any]]] = {}
        self._locks: dict[str, tuple[str, float]] = {}
        self._mutex = asyncio.Lock()

    def _ensure_collection(self, collection: str) -> dict[str, dict[str, Any]]:
        """Ensure collection exists and return it."""
        if collection not in self._data:
            self._data[collection] = {}
        return self._data[collection]

    async def save(
        self,
        collection: str,
        key: str,
        data: dict[str, Any],
    ) -> None:
        coll = self._ensure_collection(collection)
        coll[key] = deepcopy(data)

    async def get(
        self,
        collection: str,
        key: str,
    ) -> dict[str, Any] | None:
        coll = self._ensure_collection(collection)
        data = coll.get(key)
        return deepcopy(data) if data else None

    async def delete(
        self,
        collection: str,
        key: str,
    ) -> bool:
        coll = self._ensure_collection(collection)
        if key in coll:
            del coll[key]
            return True
        return False

    async def query(
        self,
        collection: str,
        filters: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        coll = self._ensure_collection(collection)

        results = []
        for key, data in coll.items():
            if filters and any(data.get(k) != v for k, v in filters.items()):
                continue
            result = deepcopy(data)
            result["_key"] = key
            results.append(result)

        if limit is not None:
            results = results[:limit]
        return results

    async def acquire_lock(
        self,
        key: str,
        ttl: int = 30,
    ) -> str | None:
        async with self._mutex:
            now = time.monotonic()
            held = self._locks.get(key)
            if held is not None and now < held[1]:
                return None

            token = str(uuid.uuid4())
            self._locks[key] = (token, now + ttl)
            return token

    async def release_lock(
        self,
        key: str,
        token: str,
    ) -> bool:
        async with self._mutex:
            held = self._locks.get(key)
            if held is None or held[0] != token:
                return False
            del self._locks[key]
            return True
