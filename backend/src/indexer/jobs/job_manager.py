from typing import Any

from arq import create_pool
from arq.connections import ArqRedis
from arq.jobs import Job

from indexer.jobs.task_models import Task
from indexer.main.config import get_settings
from indexer.main.exceptions import NotReadyException
from indexer.main.logging import get_logger
from indexer.main.redis import build_arq_redis_settings

logger = get_logger(__name__)


class JobManager:
    def __init__(self):
        self._redis: ArqRedis | None = None

    async def init(self):
        if self._redis is not None:
            return

        settings = get_settings()
        self._redis = await create_pool(build_arq_redis_settings(settings))

        logger.debug(
            f"Job manager connected to redis on host {settings.redis_host}"
            f" and port {settings.redis_port}"
        )

    async def close(self):
        if self._redis is None:
            return
        await self._redis.aclose()
        self._redis = None

    async def enqueue(
        self,
        task: Task,
        *args: Any,
        queue_name: str,
        defer_by: float | None = None,
    ) -> Job | None:
        """Enqueue ``task`` on ``queue_name``.

        arq returns None when a job with the same id already exists; ids are
        random here so every call produces a new job.
        """
        if self._redis is None:
            raise NotReadyException("Job manager is not initialized!")

        return await self._redis.enqueue_job(
            task.value,
            *args,
            _queue_name=queue_name,
            _defer_by=defer_by or None,
        )


job_manager = JobManager()
