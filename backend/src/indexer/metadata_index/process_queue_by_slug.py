"""Refresh token metadata collection by collection, using provider slugs.

One invocation of :class:`ProcessQueueBySlug` drains a batch from the
pending-refresh backlog, fetches every popped slug concurrently, forwards the
collected metadata to the write queue and decides whether another invocation
is needed.

Only one invocation may run per method at a time. Inside a process the arq
worker for this queue runs with ``max_jobs=1``; across processes the
:class:`RefreshLock` is the guard. The lock is created by whoever enqueues the
first run, extended every time an invocation finds more work, and released
once the backlog is drained.

Per-slug handling:

- denylisted contract: skipped, nothing else happens
- page with metadata and/or a continuation: metadata collected; a
  continuation is pushed back to the head of the backlog
- empty page and no continuation: the slug is probably wrong, so a
  full-collection refresh and a collection metadata update are requested;
  the update carries no token id when the token lookup fails or finds none
- rate limited: the request goes back to the head of the backlog unchanged
  and the next invocation waits out the longest cooldown seen
- any other error: a full-collection refresh is requested for the contract
  and the request is dropped

A request that cannot be pushed back to the backlog fails the whole
invocation once the batch metadata has been dispatched, so arq retries it.
"""

from __future__ import annotations

import asyncio
from typing import Protocol

from indexer.main.config import Settings, get_settings
from indexer.main.exceptions import (
    BacklogWriteError,
    MetadataApiError,
    MetadataApiRateLimitedError,
)
from indexer.main.logging import get_logger
from indexer.metadata_index.locks import RefreshLock
from indexer.metadata_index.models import (
    BatchResult,
    Failed,
    Fetched,
    MetadataPage,
    NextRun,
    RateLimited,
    RefreshTokenBySlug,
    Skipped,
    SlugOutcome,
    TokenMetadata,
    Unresolvable,
)
from indexer.metadata_index.pending_refresh import PendingRefreshTokensBySlug

logger = get_logger(__name__)


class MetadataFetcher(Protocol):
    async def get_tokens_metadata_by_slug(
        self,
        contract: str,
        slug: str,
        method: str,
        continuation: str | None = None,
    ) -> MetadataPage: ...


class Dispatcher(Protocol):
    async def request_full_collection_refresh(self, collection: str, method: str) -> None: ...

    async def request_collection_metadata_update(
        self, contract: str, token_id: str | None, method: str, priority: int = 0
    ) -> None: ...

    async def submit_fetched_metadata(self, items: list[TokenMetadata]) -> None: ...


class TokenLookup(Protocol):
    async def get_single_token(self, collection: str) -> str | None: ...


class ProcessQueueBySlug:
    def __init__(
        self,
        backlog: PendingRefreshTokensBySlug,
        lock: RefreshLock,
        metadata_api: MetadataFetcher,
        dispatcher: Dispatcher,
        tokens: TokenLookup,
        method: str | None = None,
        settings: Settings | None = None,
    ):
        self.settings = settings or get_settings()
        self.backlog = backlog
        self.lock = lock
        self.metadata_api = metadata_api
        self.dispatcher = dispatcher
        self.tokens = tokens
        self.method = method or self.settings.metadata_index_method

    @property
    def batch_size(self) -> int:
        return self.settings.slug_refresh_batch_size

    def _is_denylisted(self, contract: str) -> bool:
        return contract.lower() in self.settings.metadata_slug_refresh_denylist

    async def run(self) -> NextRun:
        batch_size = self.batch_size
        requests = await self.backlog.get(batch_size)

        if not requests:
            await self.lock.release(self.method)
            logger.debug(
                "Slug refresh backlog drained, lock released",
                extra={"method": self.method},
            )
            return NextRun.released()

        settled = await asyncio.gather(
            *(self._process_slug(request) for request in requests),
            return_exceptions=True,
        )
        requeue_errors = [outcome for outcome in settled if isinstance(outcome, BacklogWriteError)]
        outcomes = [
            self._absorb_unexpected(request, outcome)
            for request, outcome in zip(requests, settled)
            if not isinstance(outcome, BacklogWriteError)
        ]
        result = BatchResult.from_outcomes(popped=len(requests), outcomes=outcomes)

        logger.info(
            f"Processed slug refresh batch. method={self.method}, "
            f"metadata={len(result.metadata)}, rate_limit_expires_in={result.rate_limit_expires_in}",
            extra={
                "method": self.method,
                "popped": result.popped,
                "batch_size": batch_size,
                "retry": result.retry,
                "slugs": [request.slug for request in requests],
            },
        )

        await self.dispatcher.submit_fetched_metadata(result.metadata)

        if requeue_errors:
            # Lock stays held so the arq retry resumes this run
            logger.error(
                "Could not requeue slug refresh requests",
                extra={"method": self.method, "failed": len(requeue_errors)},
            )
            raise requeue_errors[0]

        return await self._decide_next_run(result, batch_size)

    async def _decide_next_run(self, result: BatchResult, batch_size: int) -> NextRun:
        if not result.should_reschedule(batch_size):
            await self.lock.release(self.method)
            return NextRun.released()

        ttl = self.settings.metadata_slug_refresh_lock_ttl_seconds + result.rate_limit_expires_in
        if await self.lock.extend(self.method, ttl):
            return NextRun.reschedule(result.rate_limit_expires_in)

        # Someone else owns the slot now; releasing would clobber their lock
        logger.warning(
            "Could not extend slug refresh lock, not scheduling another run",
            extra={"method": self.method, "lock_key": self.lock.key(self.method)},
        )
        return NextRun.lock_lost()

    def _absorb_unexpected(
        self, request: RefreshTokenBySlug, outcome: SlugOutcome | BaseException
    ) -> SlugOutcome:
        if not isinstance(outcome, BaseException):
            return outcome
        if not isinstance(outcome, Exception):
            raise outcome

        logger.error(
            f"Unexpected error while refreshing slug {request.slug}",
            exc_info=outcome,
            extra={"method": self.method, "slug": request.slug, "contract": request.contract},
        )
        return Failed(request=request, error=outcome)

    async def _process_slug(self, request: RefreshTokenBySlug) -> SlugOutcome:
        if self._is_denylisted(request.contract):
            return Skipped(request=request)

        try:
            page = await self.metadata_api.get_tokens_metadata_by_slug(
                request.contract,
                request.slug,
                self.method,
                request.continuation,
            )
        except MetadataApiRateLimitedError as exc:
            return await self._handle_rate_limited(request, exc)
        except Exception as exc:
            return await self._handle_failure(request, exc)

        if not page.metadata and not page.continuation:
            await self._handle_unresolvable(request)
            return Unresolvable(request=request)

        if page.continuation:
            await self._requeue(request.with_continuation(page.continuation))

        return Fetched(request=request, metadata=page.metadata, continuation=page.continuation)

    async def _requeue(self, request: RefreshTokenBySlug) -> None:
        try:
            await self.backlog.add(request, prioritized=True)
        except Exception as exc:
            raise BacklogWriteError(
                f"Failed to requeue slug {request.slug}"
            ) from exc

    async def _handle_rate_limited(
        self, request: RefreshTokenBySlug, exc: MetadataApiRateLimitedError
    ) -> RateLimited:
        logger.warning(
            f"Too Many Requests. method={self.method}, error={exc.body}",
            extra={"method": self.method, "slug": request.slug, "expires_in": exc.expires_in},
        )
        cooldown = max(exc.expires_in, self.settings.metadata_rate_limit_min_cooldown_seconds)

        # Unchanged so any continuation is kept
        await self._requeue(request)
        return RateLimited(request=request, expires_in=cooldown)

    async def _handle_failure(self, request: RefreshTokenBySlug, exc: Exception) -> Failed:
        body = exc.body if isinstance(exc, MetadataApiError) else None
        logger.error(
            f"Error. method={self.method}, error={body if body is not None else exc!r}",
            extra={
                "method": self.method,
                "slug": request.slug,
                "contract": request.contract,
                "status": getattr(exc, "status", None),
            },
        )
        await self.dispatcher.request_full_collection_refresh(request.contract, self.method)
        return Failed(request=request, error=exc)

    async def _handle_unresolvable(self, request: RefreshTokenBySlug) -> None:
        logger.warning(
            f"Method={self.method}. Metadata list is empty on collection slug {request.slug}. "
            "Slug might be missing or might be wrong, requesting a full collection refresh "
            "and a collection metadata update",
            extra={"method": self.method, "slug": request.slug, "contract": request.contract},
        )
        await self.dispatcher.request_full_collection_refresh(request.collection, self.method)

        try:
            token_id = await self.tokens.get_single_token(request.collection)
        except Exception as exc:
            # The update consumer picks a representative token when none is given
            logger.warning(
                "Token lookup failed, requesting collection metadata update without a token",
                extra={"method": self.method, "collection": request.collection, "error": repr(exc)},
            )
            token_id = None

        await self.dispatcher.request_collection_metadata_update(
            request.contract, token_id, self.method, 0
        )
