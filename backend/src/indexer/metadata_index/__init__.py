"""Refresh collection token metadata by provider slug.

This package provides:
- PendingRefreshTokensBySlug: Redis backlog of slugs waiting for a refresh
- RefreshLock: Redis lock guarding the single active run per method
- MetadataApi: HTTP client for the metadata provider's per-slug endpoint
- MetadataIndexDispatcher: hand-off to the downstream metadata queues
- ProcessQueueBySlug: one batch of the refresh loop
- SlugRefreshService: producer entry point that starts a run when none is active
"""

from indexer.metadata_index.dispatch import MetadataIndexDispatcher
from indexer.metadata_index.locks import RefreshLock
from indexer.metadata_index.metadata_api import MetadataApi
from indexer.metadata_index.pending_refresh import PendingRefreshTokensBySlug
from indexer.metadata_index.process_queue_by_slug import ProcessQueueBySlug
from indexer.metadata_index.refresh_service import (
    SlugRefreshService,
    enqueue_process_queue_by_slug,
)

__all__ = [
    "MetadataApi",
    "MetadataIndexDispatcher",
    "PendingRefreshTokensBySlug",
    "ProcessQueueBySlug",
    "RefreshLock",
    "SlugRefreshService",
    "enqueue_process_queue_by_slug",
]
