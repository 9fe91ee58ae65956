from __future__ import annotations

import asyncio
from functools import wraps

from arq import Retry

from indexer.database.database import sessionmanager
from indexer.jobs.job_manager import job_manager
from indexer.main.aiohttp_client import aiohttp_client
from indexer.main.config import get_settings
from indexer.main.log_context import clear_log_context, set_log_context
from indexer.main.logging import get_logger
from indexer.main.redis import build_arq_redis_settings, close_redis, get_redis

logger = get_logger(__name__)


class Worker:
    """
    Collects job functions and the arq settings they run under.

    The refresh-by-slug queue must never run two invocations at once in the
    same process, so ``max_jobs`` is 1. Failed invocations are retried by
    arq with a fixed delay until ``max_tries`` is reached.

    Attributes:
        functions (list): Registered job functions.
        redis_settings (RedisSettings): Redis settings for the worker.
        on_startup (callable): Opens the HTTP session, arq pool, Redis client and DB engine.
        on_shutdown (callable): Closes everything opened on startup.
        queue_name (str): arq queue this worker consumes.
        job_timeout (int): Hard arq timeout, slightly above the in-job budget.
        max_jobs (int): Concurrent jobs per process.
        max_tries (int): Attempts per job, including the first.
        retry_delay (int): Seconds between attempts.
    """

    def __init__(self):
        settings = get_settings()
        self.functions = []
        self.redis_settings = build_arq_redis_settings(settings)
        self.on_startup = self.startup
        self.on_shutdown = self.shutdown
        self.queue_name = settings.process_queue_by_slug_queue_name
        self.job_budget = settings.metadata_slug_refresh_job_timeout_seconds
        # The in-job budget fires first so the failure goes through our retry path
        self.job_timeout = self.job_budget + 30
        self.max_jobs = 1
        self.max_tries = settings.metadata_slug_refresh_max_tries
        self.retry_delay = settings.metadata_slug_refresh_retry_delay_seconds
        self.retry_jobs = True
        self.keep_result = 100
        self.health_check_interval = 60

    async def startup(self, ctx):
        settings = get_settings()

        await job_manager.init()
        aiohttp_client.start()
        sessionmanager.init(settings.database_url)
        ctx["backlog_redis"] = get_redis()

        logger.info(
            "Slug refresh worker started",
            extra={"queue_name": self.queue_name, "max_jobs": self.max_jobs},
        )

    async def shutdown(self, ctx):
        await aiohttp_client.stop()
        await sessionmanager.close()
        await close_redis()
        await job_manager.close()

    def function(self):
        def decorator(func):
            @wraps(func)
            async def wrapper(ctx: dict, *args, **kwargs):
                job_try = ctx.get("job_try", 1)
                set_log_context(job_id=ctx.get("job_id"), job_try=job_try)
                logger.debug(f"Executing {func.__name__}")

                try:
                    return await asyncio.wait_for(
                        func(ctx, *args, **kwargs), timeout=self.job_budget
                    )
                except Exception as exc:
                    if job_try >= self.max_tries:
                        logger.error(
                            f"{func.__name__} failed, giving up after {job_try} attempts",
                            exc_info=exc,
                        )
                        raise

                    logger.warning(
                        f"{func.__name__} failed, retrying in {self.retry_delay}s",
                        extra={"error": repr(exc), "max_tries": self.max_tries},
                    )
                    raise Retry(defer=self.retry_delay) from exc
                finally:
                    clear_log_context()

            self.functions.append(wrapper)
            return wrapper

        return decorator
