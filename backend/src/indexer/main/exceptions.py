from typing import Any


class IndexerException(Exception):
    pass


class NotReadyException(IndexerException):
    pass


class MetadataApiError(IndexerException):
    """The metadata provider failed to return a usable page.

    Covers transport errors, timeouts, non-2xx responses and bodies that do
    not parse into a metadata page.
    """

    def __init__(self, message: str, status: int | None = None, body: Any = None):
        super().__init__(message)
        self.status = status
        self.body = body


class MetadataApiRateLimitedError(MetadataApiError):
    """The provider answered 429 and asked us to back off for ``expires_in`` seconds."""

    def __init__(self, expires_in: int, body: Any = None):
        super().__init__(
            f"Metadata API rate limited, expires in {expires_in}s",
            status=429,
            body=body,
        )
        self.expires_in = expires_in


class BacklogWriteError(IndexerException):
    """A request could not be pushed back to the slug refresh backlog."""
