from __future__ import annotations

import redis.asyncio as aioredis

from indexer.main.config import get_settings
from indexer.main.log_context import set_log_context
from indexer.main.logging import get_logger
from indexer.metadata_index.dispatch import MetadataIndexDispatcher
from indexer.metadata_index.locks import RefreshLock
from indexer.metadata_index.metadata_api import MetadataApi
from indexer.metadata_index.models import NextRunAction
from indexer.metadata_index.pending_refresh import PendingRefreshTokensBySlug
from indexer.metadata_index.process_queue_by_slug import ProcessQueueBySlug
from indexer.metadata_index.refresh_service import enqueue_process_queue_by_slug
from indexer.tokens.tokens_repo import TokensRepository
from indexer.worker.worker import Worker

logger = get_logger(__name__)

worker = Worker()


def build_process_queue_by_slug(redis_client: aioredis.Redis) -> ProcessQueueBySlug:
    settings = get_settings()
    return ProcessQueueBySlug(
        backlog=PendingRefreshTokensBySlug(redis_client),
        lock=RefreshLock(redis_client),
        metadata_api=MetadataApi(settings=settings),
        dispatcher=MetadataIndexDispatcher(settings=settings),
        tokens=TokensRepository(),
        settings=settings,
    )


@worker.function()
async def process_queue_by_slug(ctx: dict) -> str:
    """Run one refresh-by-slug batch and schedule the next one if needed."""
    scheduler = build_process_queue_by_slug(ctx["backlog_redis"])
    set_log_context(method=scheduler.method)

    next_run = await scheduler.run()

    if next_run.action is NextRunAction.RESCHEDULE:
        await enqueue_process_queue_by_slug(next_run.delay_seconds)
        logger.debug(
            "Scheduled next slug refresh run",
            extra={"delay_seconds": next_run.delay_seconds},
        )

    return next_run.action.value
