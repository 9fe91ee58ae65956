import pytest

from indexer.main.config import Settings, reset_settings, set_settings


class FakeRedis:
    """Minimal async Redis stub covering the list and string commands we use."""

    def __init__(self):
        self.lists: dict[str, list[str]] = {}
        self.strings: dict[str, str] = {}
        self.ttl: dict[str, int] = {}

    async def lpush(self, key: str, *values: str) -> int:
        items = self.lists.setdefault(key, [])
        for value in values:
            items.insert(0, value)
        return len(items)

    async def rpush(self, key: str, *values: str) -> int:
        items = self.lists.setdefault(key, [])
        items.extend(values)
        return len(items)

    async def lpop(self, key: str, count: int | None = None):
        items = self.lists.get(key)
        if not items:
            return None
        if count is None:
            return items.pop(0)
        popped, self.lists[key] = items[:count], items[count:]
        return popped

    async def llen(self, key: str) -> int:
        return len(self.lists.get(key, []))

    async def set(self, key: str, value: str, nx: bool = False, xx: bool = False, ex: int | None = None):
        exists = key in self.strings
        if nx and exists:
            return None
        if xx and not exists:
            return None
        self.strings[key] = value
        if ex is not None:
            self.ttl[key] = ex
        return True

    async def get(self, key: str):
        return self.strings.get(key)

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self.strings.pop(key, None) is not None:
                removed += 1
            self.ttl.pop(key, None)
        return removed


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def test_settings() -> Settings:
    """Explicit settings so unit tests never depend on a .env file."""
    return Settings(
        redis_host="localhost",
        redis_port=6379,
        metadata_api_base_url="http://metadata.test",
        metadata_index_method="opensea",
        max_parallel_token_collection_slug_refresh_jobs=5,
        metadata_slug_refresh_page_count=1,
        metadata_slug_refresh_denylist=set(),
        metadata_slug_refresh_lock_ttl_seconds=300,
        metadata_rate_limit_min_cooldown_seconds=5,
        metadata_slug_refresh_job_timeout_seconds=60,
        metadata_slug_refresh_max_tries=10,
        metadata_slug_refresh_retry_delay_seconds=5,
    )


@pytest.fixture(autouse=True)
def _use_test_settings(test_settings):
    set_settings(test_settings)
    yield
    reset_settings()
