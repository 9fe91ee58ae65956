from __future__ import annotations

import asyncio
from typing import Any, Callable

import aiohttp
from pydantic import ValidationError

from indexer.main.aiohttp_client import aiohttp_client
from indexer.main.config import Settings, get_settings
from indexer.main.exceptions import MetadataApiError, MetadataApiRateLimitedError
from indexer.main.logging import get_logger
from indexer.metadata_index.models import MetadataPage

logger = get_logger(__name__)


def _parse_expires_in(body: Any) -> int:
    if not isinstance(body, dict):
        return 0
    try:
        return max(0, int(body.get("expires_in") or 0))
    except (TypeError, ValueError):
        return 0


class MetadataApi:
    """Client for the metadata service's per-slug token endpoint.

    One call fetches one page. No retries happen here; the scheduler decides
    what to do with each classified error.

    Args:
        session_factory: Returns the shared ``aiohttp.ClientSession``.
        settings: Overrides the global settings (tests).
    """

    def __init__(
        self,
        session_factory: Callable[[], aiohttp.ClientSession] = aiohttp_client,
        settings: Settings | None = None,
    ):
        self._session_factory = session_factory
        self._settings = settings or get_settings()

    @property
    def tokens_url(self) -> str:
        base_url = self._settings.metadata_api_base_url.rstrip("/")
        return f"{base_url}/v4/{self._settings.chain_network}/metadata/token"

    def _headers(self) -> dict[str, str]:
        if self._settings.metadata_api_key:
            return {"X-Api-Key": self._settings.metadata_api_key}
        return {}

    async def get_tokens_metadata_by_slug(
        self,
        contract: str,
        slug: str,
        method: str,
        continuation: str | None = None,
    ) -> MetadataPage:
        """Fetch one page of token metadata for ``slug``.

        Raises:
            MetadataApiRateLimitedError: The provider answered 429.
            MetadataApiError: Any other failure.
        """
        params = {"method": method, "collectionSlug": slug, "contract": contract}
        if continuation:
            params["continuation"] = continuation

        session = self._session_factory()
        try:
            async with session.get(
                self.tokens_url, params=params, headers=self._headers()
            ) as response:
                try:
                    body = await response.json(content_type=None)
                except ValueError:
                    body = await response.text()

                if response.status == 429:
                    raise MetadataApiRateLimitedError(
                        expires_in=_parse_expires_in(body), body=body
                    )
                if response.status >= 400:
                    raise MetadataApiError(
                        f"Metadata API returned HTTP {response.status}",
                        status=response.status,
                        body=body,
                    )
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise MetadataApiError(
                f"Metadata API request failed: {exc!r}"
            ) from exc

        try:
            page = MetadataPage.model_validate(body)
        except ValidationError as exc:
            raise MetadataApiError(
                "Metadata API returned a malformed page",
                status=response.status,
                body=body,
            ) from exc

        logger.debug(
            f"Slug: {slug}, metadata length: {len(page.metadata)}, continuation: {page.continuation}",
            extra={"slug": slug, "contract": contract, "method": method},
        )
        return page
