from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel


class Task(str, Enum):
    PROCESS_QUEUE_BY_SLUG = "process_queue_by_slug"

    # Consumed by other workers
    METADATA_INDEX_WRITE = "metadata_index_write"
    METADATA_INDEX_FETCH = "metadata_index_fetch"
    COLLECTION_UPDATES_METADATA = "collection_updates_metadata"


class FullCollectionData(BaseModel):
    method: str
    collection: str


class FullCollectionFetchTask(BaseModel):
    kind: Literal["full-collection"] = "full-collection"
    data: FullCollectionData


class CollectionMetadataUpdateTask(BaseModel):
    contract: str
    # None lets the consumer pick a representative token itself
    token_id: Optional[str] = None
    method: str
    priority: int = 0


class MetadataWriteTask(BaseModel):
    items: list[dict[str, Any]]
