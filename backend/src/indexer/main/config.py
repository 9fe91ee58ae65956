import logging
import os
import sys
from typing import Optional

from pydantic import computed_field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Provider rate limits reset no faster than this
RATE_LIMIT_COOLDOWN_FLOOR_SECONDS = 5


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="allow")

    # Infrastructure dependencies
    postgres_user: str = "postgres"
    postgres_host: str = "localhost"
    postgres_password: str = "postgres"
    postgres_port: int = 5432
    postgres_db: str = "indexer"
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: Optional[int] = None

    # Redis connection resilience
    redis_conn_timeout: int = 5
    redis_conn_retries: int = 5
    redis_conn_retry_delay: int = 1
    redis_retry_on_timeout: bool = True
    redis_max_connections: Optional[int] = None
    redis_socket_keepalive: bool = True
    redis_health_check_interval: int = 30

    # Metadata provider
    metadata_api_base_url: str = "http://localhost:8080"
    metadata_api_key: Optional[str] = None
    metadata_api_timeout_seconds: int = 60
    chain_network: str = "mainnet"
    metadata_index_method: str = "opensea"

    # Refresh-by-slug scheduler
    max_parallel_token_collection_slug_refresh_jobs: int = 1
    metadata_slug_refresh_page_count: int = 1
    metadata_slug_refresh_denylist: set[str] = set()
    metadata_slug_refresh_lock_ttl_seconds: int = 60 * 5
    metadata_rate_limit_min_cooldown_seconds: int = RATE_LIMIT_COOLDOWN_FLOOR_SECONDS
    metadata_slug_refresh_job_timeout_seconds: int = 60
    metadata_slug_refresh_max_tries: int = 10
    metadata_slug_refresh_retry_delay_seconds: int = 5

    # Queue names (downstream queues are consumed by other workers)
    process_queue_by_slug_queue_name: str = "metadata-index-process-queue-by-slug"
    metadata_index_write_queue_name: str = "metadata-index-write-queue"
    metadata_index_fetch_queue_name: str = "metadata-index-fetch-queue"
    collection_updates_metadata_queue_name: str = "collection-updates-metadata-queue"

    @field_validator("metadata_slug_refresh_denylist", mode="after")
    @classmethod
    def normalize_denylist(cls, value: set[str]) -> set[str]:
        return {address.strip().lower() for address in value if address.strip()}

    @model_validator(mode="after")
    def validate_worker_settings(self):
        """Ensure scheduler-related configuration values are sane."""
        if self.max_parallel_token_collection_slug_refresh_jobs < 1:
            logging.error(
                "MAX_PARALLEL_TOKEN_COLLECTION_SLUG_REFRESH_JOBS must be at least 1. Current value: %s",
                self.max_parallel_token_collection_slug_refresh_jobs,
            )
            sys.exit(1)

        if self.metadata_slug_refresh_page_count < 1:
            logging.error(
                "METADATA_SLUG_REFRESH_PAGE_COUNT must be at least 1. Current value: %s",
                self.metadata_slug_refresh_page_count,
            )
            sys.exit(1)

        if self.metadata_slug_refresh_lock_ttl_seconds <= 0:
            logging.error(
                "METADATA_SLUG_REFRESH_LOCK_TTL_SECONDS must be greater than zero. Current value: %s",
                self.metadata_slug_refresh_lock_ttl_seconds,
            )
            sys.exit(1)

        if self.metadata_slug_refresh_job_timeout_seconds <= 0:
            logging.error(
                "METADATA_SLUG_REFRESH_JOB_TIMEOUT_SECONDS must be greater than zero. Current value: %s",
                self.metadata_slug_refresh_job_timeout_seconds,
            )
            sys.exit(1)

        if self.metadata_slug_refresh_max_tries < 1:
            logging.error(
                "METADATA_SLUG_REFRESH_MAX_TRIES must be at least 1. Current value: %s",
                self.metadata_slug_refresh_max_tries,
            )
            sys.exit(1)

        if self.metadata_rate_limit_min_cooldown_seconds < RATE_LIMIT_COOLDOWN_FLOOR_SECONDS:
            logging.error(
                "METADATA_RATE_LIMIT_MIN_COOLDOWN_SECONDS must be at least %s. Current value: %s",
                RATE_LIMIT_COOLDOWN_FLOOR_SECONDS,
                self.metadata_rate_limit_min_cooldown_seconds,
            )
            sys.exit(1)

        if self.metadata_slug_refresh_job_timeout_seconds > self.metadata_slug_refresh_lock_ttl_seconds:
            logging.warning(
                "METADATA_SLUG_REFRESH_JOB_TIMEOUT_SECONDS (%s) exceeds the lock TTL (%s)."
                " A slow run may outlive its lock and overlap with a fresh one.",
                self.metadata_slug_refresh_job_timeout_seconds,
                self.metadata_slug_refresh_lock_ttl_seconds,
            )

        return self

    @computed_field
    @property
    def database_url(self) -> str:
        return (
            f"postgresql+asyncpg://{self.postgres_user}:"
            f"{self.postgres_password}@{self.postgres_host}:"
            f"{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def slug_refresh_batch_size(self) -> int:
        return (
            self.max_parallel_token_collection_slug_refresh_jobs
            * self.metadata_slug_refresh_page_count
        )


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get settings singleton, creating it if needed.

    Returns:
        Settings: The application settings instance.
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def set_settings(settings: Settings) -> None:
    """Override settings (primarily for testing).

    Args:
        settings: The Settings instance to use.
    """
    global _settings
    _settings = settings


def reset_settings() -> None:
    """Reset settings to None (for test cleanup)."""
    global _settings
    _settings = None


def get_loglevel():
    loglevel = os.getenv("LOGLEVEL", "INFO")

    match loglevel:
        case "INFO":
            return logging.INFO
        case "WARNING":
            return logging.WARNING
        case "ERROR":
            return logging.ERROR
        case "CRITICAL":
            return logging.CRITICAL
        case "DEBUG":
            return logging.DEBUG
        case _:
            return logging.INFO
