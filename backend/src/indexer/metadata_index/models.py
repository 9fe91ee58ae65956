from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class RefreshTokenBySlug(BaseModel):
    """A pending request to (re)fetch token metadata for one collection slug."""

    slug: str = Field(min_length=1)
    contract: str
    collection: str
    continuation: Optional[str] = None

    @field_validator("contract")
    @classmethod
    def lowercase_contract(cls, value: str) -> str:
        return value.lower()

    def with_continuation(self, continuation: str) -> RefreshTokenBySlug:
        return self.model_copy(update={"continuation": continuation})


class TokenMetadata(BaseModel):
    """One token's metadata as returned by the provider.

    Unknown provider fields are preserved so the write pipeline receives
    everything the provider sent.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    contract: str
    token_id: str
    collection: Optional[str] = None
    slug: Optional[str] = None
    flagged: Optional[bool] = None
    name: Optional[str] = None
    description: Optional[str] = None
    image_url: Optional[str] = None
    media_url: Optional[str] = None
    attributes: list[dict[str, Any]] = []

    @field_validator("token_id", mode="before")
    @classmethod
    def token_id_as_string(cls, value: Any) -> Any:
        if isinstance(value, int):
            return str(value)
        return value


class MetadataPage(BaseModel):
    metadata: list[TokenMetadata] = []
    continuation: Optional[str] = None


# Per-slug outcomes. Each fan-out task returns exactly one of these and the
# batch is reduced from them once every task has settled.


@dataclass(frozen=True)
class Fetched:
    request: RefreshTokenBySlug
    metadata: list[TokenMetadata]
    continuation: str | None = None


@dataclass(frozen=True)
class Unresolvable:
    request: RefreshTokenBySlug


@dataclass(frozen=True)
class RateLimited:
    request: RefreshTokenBySlug
    expires_in: int


@dataclass(frozen=True)
class Failed:
    request: RefreshTokenBySlug
    error: BaseException


@dataclass(frozen=True)
class Skipped:
    request: RefreshTokenBySlug


SlugOutcome = Union[Fetched, Unresolvable, RateLimited, Failed, Skipped]


@dataclass
class BatchResult:
    popped: int
    metadata: list[TokenMetadata] = field(default_factory=list)
    rate_limit_expires_in: int = 0
    retry: bool = False

    @classmethod
    def from_outcomes(cls, popped: int, outcomes: list[SlugOutcome]) -> BatchResult:
        result = cls(popped=popped)
        for outcome in outcomes:
            if isinstance(outcome, Fetched):
                result.metadata.extend(outcome.metadata)
                if outcome.continuation:
                    result.retry = True
            elif isinstance(outcome, RateLimited):
                result.rate_limit_expires_in = max(
                    result.rate_limit_expires_in, outcome.expires_in
                )
        return result

    def should_reschedule(self, batch_size: int) -> bool:
        # A full batch means the backlog probably has more behind it
        return bool(
            self.rate_limit_expires_in > 0 or self.popped == batch_size or self.retry
        )


class NextRunAction(str, Enum):
    RESCHEDULE = "reschedule"
    RELEASED = "released"
    LOCK_LOST = "lock_lost"


@dataclass(frozen=True)
class NextRun:
    action: NextRunAction
    delay_seconds: int = 0

    @classmethod
    def reschedule(cls, delay_seconds: int) -> NextRun:
        return cls(action=NextRunAction.RESCHEDULE, delay_seconds=delay_seconds)

    @classmethod
    def released(cls) -> NextRun:
        return cls(action=NextRunAction.RELEASED)

    @classmethod
    def lock_lost(cls) -> NextRun:
        return cls(action=NextRunAction.LOCK_LOST)
