"""Fire-and-forget hand-off to the downstream metadata queues.

Each method enqueues one arq job on a queue owned by another worker. Payloads
are plain JSON-compatible dicts so consumers do not need our models.
"""

from __future__ import annotations

from indexer.jobs.job_manager import JobManager, job_manager
from indexer.jobs.task_models import (
    CollectionMetadataUpdateTask,
    FullCollectionData,
    FullCollectionFetchTask,
    MetadataWriteTask,
    Task,
)
from indexer.main.config import Settings, get_settings
from indexer.main.logging import get_logger
from indexer.metadata_index.models import TokenMetadata

logger = get_logger(__name__)


class MetadataIndexDispatcher:
    def __init__(
        self,
        manager: JobManager | None = None,
        settings: Settings | None = None,
    ):
        self._jobs = manager or job_manager
        self._settings = settings or get_settings()

    async def request_full_collection_refresh(self, collection: str, method: str) -> None:
        params = FullCollectionFetchTask(
            data=FullCollectionData(method=method, collection=collection)
        )
        # Second argument marks the request as prioritized for the fetch worker
        await self._jobs.enqueue(
            Task.METADATA_INDEX_FETCH,
            [params.model_dump(mode="json")],
            True,
            queue_name=self._settings.metadata_index_fetch_queue_name,
        )

    async def request_collection_metadata_update(
        self, contract: str, token_id: str | None, method: str, priority: int = 0
    ) -> None:
        params = CollectionMetadataUpdateTask(
            contract=contract, token_id=token_id, method=method, priority=priority
        )
        await self._jobs.enqueue(
            Task.COLLECTION_UPDATES_METADATA,
            params.model_dump(mode="json"),
            queue_name=self._settings.collection_updates_metadata_queue_name,
        )

    async def submit_fetched_metadata(self, items: list[TokenMetadata]) -> None:
        if not items:
            return

        params = MetadataWriteTask(
            items=[item.model_dump(mode="json", by_alias=True) for item in items]
        )
        await self._jobs.enqueue(
            Task.METADATA_INDEX_WRITE,
            params.model_dump(mode="json"),
            queue_name=self._settings.metadata_index_write_queue_name,
        )
        logger.debug(
            "Submitted fetched metadata to write queue",
            extra={"count": len(items)},
        )
