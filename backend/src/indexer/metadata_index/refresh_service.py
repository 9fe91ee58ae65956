from __future__ import annotations

from typing import Iterable

from indexer.jobs.job_manager import JobManager, job_manager
from indexer.jobs.task_models import Task
from indexer.main.config import Settings, get_settings
from indexer.main.logging import get_logger
from indexer.metadata_index.locks import RefreshLock
from indexer.metadata_index.models import RefreshTokenBySlug
from indexer.metadata_index.pending_refresh import PendingRefreshTokensBySlug

logger = get_logger(__name__)


async def enqueue_process_queue_by_slug(
    delay_seconds: float = 0,
    manager: JobManager | None = None,
    settings: Settings | None = None,
) -> None:
    """Schedule one refresh-by-slug invocation after ``delay_seconds``."""
    settings = settings or get_settings()
    await (manager or job_manager).enqueue(
        Task.PROCESS_QUEUE_BY_SLUG,
        queue_name=settings.process_queue_by_slug_queue_name,
        defer_by=delay_seconds,
    )


class SlugRefreshService:
    """Entry point for anything that wants collection metadata refreshed by slug.

    Requests go to the backlog. A run is only enqueued when no run currently
    holds the lock; a running scheduler picks up new backlog entries on its
    own.
    """

    def __init__(
        self,
        backlog: PendingRefreshTokensBySlug,
        lock: RefreshLock,
        manager: JobManager | None = None,
        method: str | None = None,
        settings: Settings | None = None,
    ):
        self.settings = settings or get_settings()
        self.backlog = backlog
        self.lock = lock
        self.jobs = manager or job_manager
        self.method = method or self.settings.metadata_index_method

    async def submit(
        self, requests: Iterable[RefreshTokenBySlug], prioritized: bool = False
    ) -> bool:
        """Queue ``requests`` for refresh.

        Returns:
            True if this call started a new run, False if one was already active
            (or nothing was submitted).
        """
        added = await self.backlog.add_many(requests, prioritized=prioritized)
        if not added:
            return False

        if not await self.lock.acquire(
            self.method, self.settings.metadata_slug_refresh_lock_ttl_seconds
        ):
            logger.debug(
                "Slug refresh run already active, requests left in backlog",
                extra={"method": self.method, "count": added},
            )
            return False

        try:
            await enqueue_process_queue_by_slug(manager=self.jobs, settings=self.settings)
        except Exception:
            # Nobody will drain the backlog under this lock, free it for the next producer
            await self.lock.release(self.method)
            raise

        logger.info(
            "Started slug refresh run",
            extra={"method": self.method, "count": added},
        )
        return True
