"""
Abstract storage backend.

Holds the only process-wide state of the payment core: in-flight
invocation locks and reconciliation records for stranded residuals.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any


class StorageBackend(ABC):
    """Keyed JSON records plus owner-token locks with a TTL."""

    @abstractmethod
    async def save(self, collection: str, key: str, data: dict[str, Any]) -> None:
        """Insert or replace the record at ``collection``/``key``."""
        ...

    @abstractmethod
    async def get(self, collection: str, key: str) -> dict[str, Any] | None:
        ...

    @abstractmethod
    async def delete(self, collection: str, key: str) -> bool:
        """Returns False if there was nothing to delete."""
        ...

    @abstractmethod
    async def query(
        self,
        collection: str,
        filters: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Exact-match filter; each returned record carries its key as ``_key``."""
        ...

    @abstractmethod
    async def acquire_lock(self, key: str, ttl: int = 30) -> str | None:
        """Take ``key`` without waiting. Returns the owner token, or None if held."""
        ...

    @abstractmethod
    async def release_lock(self, key: str, token: str) -> bool:
        """Release ``key`` only if ``token`` still owns it."""
        ...

    async def health_check(self) -> bool:
        return True

    async def close(self) -> None:
        return None
