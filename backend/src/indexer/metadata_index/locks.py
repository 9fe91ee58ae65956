"""Distributed lock guarding the refresh-by-slug run for one method.

The lock is a plain Redis key with an expiry. Whoever creates it (``SET NX``)
is responsible for enqueueing the first run; the running scheduler keeps it
alive with ``SET XX`` each time it finds more work and deletes it when the
backlog is drained. An absent key therefore means "no run is active".
"""

from __future__ import annotations

from typing import TYPE_CHECKING
from uuid import uuid4

from indexer.main.config import get_settings
from indexer.main.logging import get_logger

if TYPE_CHECKING:
    import redis.asyncio as aioredis

logger = get_logger(__name__)


class RefreshLock:
    """Named, time-bounded lock keyed by refresh method.

    Args:
        redis_client: Async Redis connection.
        prefix: Key prefix; the full key is ``{prefix}:{method}``. Defaults to
            the refresh-by-slug queue name.
    """

    def __init__(
        self,
        redis_client: aioredis.Redis,
        prefix: str | None = None,
    ) -> None:
        self._redis = redis_client
        self._prefix = prefix or get_settings().process_queue_by_slug_queue_name

    def key(self, method: str) -> str:
        return f"{self._prefix}:{method}"

    async def acquire(self, method: str, ttl_seconds: int) -> bool:
        """Create the lock if nobody holds it.

        Returns:
            True if this caller created the lock, False if it already exists.
        """
        try:
            acquired = await self._redis.set(
                self.key(method), uuid4().hex, nx=True, ex=ttl_seconds
            )
            return bool(acquired)
        except Exception as exc:
            logger.warning(
                "Failed to acquire refresh lock",
                extra={"error": str(exc), "lock_key": self.key(method)},
            )
            return False

    async def extend(self, method: str, ttl_seconds: int) -> bool:
        """Refresh the lock's expiry, but only while the lock still exists.

        Returns:
            True if the lock was extended, False if it has expired, was
            released, or Redis failed.
        """
        try:
            extended = await self._redis.set(
                self.key(method), uuid4().hex, xx=True, ex=ttl_seconds
            )
            return bool(extended)
        except Exception as exc:
            logger.warning(
                "Failed to extend refresh lock",
                extra={"error": str(exc), "lock_key": self.key(method)},
            )
            return False

    async def release(self, method: str) -> None:
        """Delete the lock. Idempotent."""
        try:
            await self._redis.delete(self.key(method))
        except Exception as exc:
            # The TTL frees the key eventually
            logger.warning(
                "Failed to release refresh lock",
                extra={"error": str(exc), "lock_key": self.key(method)},
            )
