"""Backlog of collection slugs waiting for a metadata refresh.

The backlog is a single Redis list shared by every process. Producers append
new requests to the tail; the scheduler pushes continuations and rate-limited
retries to the head so in-flight page sequences finish before unrelated work
starts. Draining uses ``LPOP key count``, which is atomic, so two consumers
can never receive the same entry.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Iterable

from pydantic import ValidationError

from indexer.main.logging import get_logger
from indexer.metadata_index.models import RefreshTokenBySlug

if TYPE_CHECKING:
    import redis.asyncio as aioredis

logger = get_logger(__name__)


class PendingRefreshTokensBySlug:
    """Redis-backed backlog of :class:`RefreshTokenBySlug` requests.

    Args:
        redis_client: Async Redis connection.
        key: Redis list holding the serialized requests.
    """

    def __init__(
        self,
        redis_client: aioredis.Redis,
        key: str = "pending-refresh-tokens-by-slug",
    ) -> None:
        self._redis = redis_client
        self._key = key

    @staticmethod
    def _serialize(request: RefreshTokenBySlug) -> str:
        return request.model_dump_json(exclude_none=True)

    async def add(self, request: RefreshTokenBySlug, prioritized: bool = False) -> None:
        """Push one request.

        Redis errors propagate: a request that cannot be stored must not be
        silently dropped.
        """
        await self.add_many([request], prioritized=prioritized)

    async def add_many(
        self, requests: Iterable[RefreshTokenBySlug], prioritized: bool = False
    ) -> int:
        payloads = [self._serialize(request) for request in requests]
        if not payloads:
            return 0

        if prioritized:
            await self._redis.lpush(self._key, *payloads)
        else:
            await self._redis.rpush(self._key, *payloads)

        logger.debug(
            "Added slug refresh requests to backlog",
            extra={"count": len(payloads), "prioritized": prioritized},
        )
        return len(payloads)

    async def get(self, count: int) -> list[RefreshTokenBySlug]:
        """Remove and return up to ``count`` requests from the head of the backlog."""
        if count <= 0:
            return []

        raw_items = await self._redis.lpop(self._key, count)
        if not raw_items:
            return []

        requests = []
        for raw in raw_items:
            try:
                requests.append(RefreshTokenBySlug.model_validate_json(raw))
            except ValidationError as exc:
                # Already popped, so a bad entry cannot loop forever
                logger.warning(
                    "Dropping invalid entry from slug refresh backlog (poison message)",
                    extra={"raw": raw, "error": str(exc)},
                )
        return requests

    async def count(self) -> int:
        return int(await self._redis.llen(self._key))
