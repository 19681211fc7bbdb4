"""
In-flight invocation registry.

Guarantees at most one running payment per invocation id. Claims are
owner-token locks in the storage backend, so the same guarantee holds
across processes when the backend is Redis.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ephemeralpay.storage.base import StorageBackend

logger = logging.getLogger(__name__)


class InFlightRegistry:
    """Claims and releases invocation ids."""

    def __init__(self, storage: StorageBackend, ttl: int = 300) -> None:
        """
        Initialize registry.

        Args:
            storage: Storage backend (Redis/Memory)
            ttl: Claim time-to-live in seconds; bounds how long a crashed
                worker can block an id
        """
        self._storage = storage
        self._ttl = ttl

    @staticmethod
    def _key(invocation_id: str) -> str:
        return f"inflight:{invocation_id}"

    async def claim(self, invocation_id: str) -> str | None:
        """
        Claim ``invocation_id`` without waiting.

        Returns:
            claim token if this caller now owns the id, None if a run is in flight
        """
        token = await self._storage.acquire_lock(self._key(invocation_id), self._ttl)
        if token:
            logger.debug(f"Claimed invocation {invocation_id} (token: {token[:8]}...)")
        else:
            logger.info(f"Invocation {invocation_id} already in flight")
        return token

    async def release(self, invocation_id: str, token: str) -> bool:
        """Release a claim. Returns False if the token no longer owns it."""
        released = await self._storage.release_lock(self._key(invocation_id), token)
        if released:
            logger.debug(f"Released invocation {invocation_id}")
        else:
            logger.warning(f"Claim for invocation {invocation_id} was already gone on release")
        return released
