"""Unit tests for the refresh-by-slug batch scheduler.

The backlog and lock run against the in-memory FakeRedis; the provider,
downstream queues and token lookup are recording fakes.
"""

import asyncio

import pytest

from indexer.main.exceptions import (
    BacklogWriteError,
    MetadataApiError,
    MetadataApiRateLimitedError,
)
from indexer.metadata_index.locks import RefreshLock
from indexer.metadata_index.models import (
    MetadataPage,
    NextRunAction,
    RefreshTokenBySlug,
    TokenMetadata,
)
from indexer.metadata_index.pending_refresh import PendingRefreshTokensBySlug
from indexer.metadata_index.process_queue_by_slug import ProcessQueueBySlug

METHOD = "opensea"
LOCK_KEY = "metadata-index-process-queue-by-slug:opensea"
BACKLOG_KEY = "pending-refresh-tokens-by-slug"


def make_request(slug: str, contract: str = "0xabc", continuation: str | None = None):
    return RefreshTokenBySlug(
        slug=slug,
        contract=contract,
        collection=f"collection-{slug}",
        continuation=continuation,
    )


def make_items(contract: str, *token_ids: int) -> list[TokenMetadata]:
    return [
        TokenMetadata(contract=contract, token_id=str(token_id), name=f"#{token_id}")
        for token_id in token_ids
    ]


class FakeMetadataApi:
    """Returns a canned page or raises a canned error per slug."""

    def __init__(self, responses: dict):
        self.responses = responses
        self.calls: list[tuple] = []

    async def get_tokens_metadata_by_slug(self, contract, slug, method, continuation=None):
        self.calls.append((contract, slug, method, continuation))
        await asyncio.sleep(0)
        response = self.responses[slug]
        if isinstance(response, BaseException):
            raise response
        return response


class RecordingDispatcher:
    def __init__(self):
        self.full_collection: list[tuple[str, str]] = []
        self.metadata_updates: list[tuple[str, str | None, str, int]] = []
        self.submitted: list[list[TokenMetadata]] = []

    async def request_full_collection_refresh(self, collection, method):
        self.full_collection.append((collection, method))

    async def request_collection_metadata_update(self, contract, token_id, method, priority=0):
        self.metadata_updates.append((contract, token_id, method, priority))

    async def submit_fetched_metadata(self, items):
        self.submitted.append(list(items))


class FakeTokens:
    def __init__(self, token_id: str | None = "1"):
        self.token_id = token_id
        self.calls: list[str] = []

    async def get_single_token(self, collection):
        self.calls.append(collection)
        return self.token_id


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def tokens():
    return FakeTokens()


@pytest.fixture
def backlog(fake_redis):
    return PendingRefreshTokensBySlug(fake_redis)


@pytest.fixture
def lock(fake_redis):
    return RefreshLock(fake_redis)


@pytest.fixture
async def held_lock(lock):
    # A run only starts after a producer acquired the lock
    await lock.acquire(METHOD, 300)
    return lock


def build_scheduler(backlog, lock, api, dispatcher, tokens, settings):
    return ProcessQueueBySlug(
        backlog=backlog,
        lock=lock,
        metadata_api=api,
        dispatcher=dispatcher,
        tokens=tokens,
        method=METHOD,
        settings=settings,
    )


async def backlog_contents(backlog) -> list[RefreshTokenBySlug]:
    return await backlog.get(1000)


class TestDrainTermination:
    """An empty backlog ends the run."""

    @pytest.mark.asyncio
    async def test_empty_backlog_releases_lock(
        self, backlog, held_lock, dispatcher, tokens, test_settings, fake_redis
    ):
        """Should release the lock and schedule nothing when nothing is pending."""
        api = FakeMetadataApi({})
        scheduler = build_scheduler(backlog, held_lock, api, dispatcher, tokens, test_settings)

        next_run = await scheduler.run()

        assert next_run.action is NextRunAction.RELEASED
        assert LOCK_KEY not in fake_redis.strings
        assert api.calls == []
        assert dispatcher.submitted == []


class TestScenarios:
    """End-to-end behaviour of single invocations."""

    @pytest.mark.asyncio
    async def test_partial_batch_of_successes_releases_lock(
        self, backlog, held_lock, dispatcher, tokens, test_settings, fake_redis
    ):
        """Three successful slugs with fan-out five: one write, lock released."""
        for slug in ("a", "b", "c"):
            await backlog.add(make_request(slug, contract=f"0x{slug}"))

        api = FakeMetadataApi(
            {
                "a": MetadataPage(metadata=make_items("0xa", 1, 2)),
                "b": MetadataPage(metadata=make_items("0xb", 3)),
                "c": MetadataPage(metadata=make_items("0xc", 4, 5, 6)),
            }
        )
        scheduler = build_scheduler(backlog, held_lock, api, dispatcher, tokens, test_settings)

        next_run = await scheduler.run()

        assert next_run.action is NextRunAction.RELEASED
        assert len(dispatcher.submitted) == 1
        assert sorted(item.token_id for item in dispatcher.submitted[0]) == [
            "1", "2", "3", "4", "5", "6"
        ]
        assert LOCK_KEY not in fake_redis.strings
        assert await backlog_contents(backlog) == []

    @pytest.mark.asyncio
    async def test_continuation_is_requeued_and_run_rescheduled(
        self, backlog, held_lock, dispatcher, tokens, test_settings
    ):
        """A continuation goes back to the backlog and the next run starts immediately."""
        await backlog.add(make_request("a"))
        api = FakeMetadataApi({"a": MetadataPage(metadata=[], continuation="abc")})
        scheduler = build_scheduler(backlog, held_lock, api, dispatcher, tokens, test_settings)

        next_run = await scheduler.run()

        assert next_run.action is NextRunAction.RESCHEDULE
        assert next_run.delay_seconds == 0
        assert dispatcher.submitted == [[]]
        assert dispatcher.full_collection == []
        assert await backlog_contents(backlog) == [make_request("a", continuation="abc")]

    @pytest.mark.asyncio
    async def test_rate_limit_requeues_original_and_delays_next_run(
        self, backlog, held_lock, dispatcher, tokens, test_settings, fake_redis
    ):
        """Rate limiting puts the request back unchanged and waits out the cooldown."""
        original = make_request("a", continuation="page-3")
        await backlog.add(original)
        api = FakeMetadataApi({"a": MetadataApiRateLimitedError(expires_in=20)})
        scheduler = build_scheduler(backlog, held_lock, api, dispatcher, tokens, test_settings)

        next_run = await scheduler.run()

        assert next_run.action is NextRunAction.RESCHEDULE
        assert next_run.delay_seconds == 20
        assert fake_redis.ttl[LOCK_KEY] == 320
        assert await backlog_contents(backlog) == [original]

    @pytest.mark.asyncio
    async def test_empty_page_without_continuation_requests_full_refresh(
        self, backlog, held_lock, dispatcher, tokens, test_settings
    ):
        """An unresolvable slug falls back to a full collection refresh."""
        request = make_request("a", contract="0xdead")
        await backlog.add(request)
        api = FakeMetadataApi({"a": MetadataPage(metadata=[], continuation=None)})
        tokens.token_id = "77"
        scheduler = build_scheduler(backlog, held_lock, api, dispatcher, tokens, test_settings)

        next_run = await scheduler.run()

        assert dispatcher.full_collection == [("collection-a", METHOD)]
        assert dispatcher.metadata_updates == [("0xdead", "77", METHOD, 0)]
        assert tokens.calls == ["collection-a"]
        assert await backlog_contents(backlog) == []
        assert next_run.action is NextRunAction.RELEASED

    @pytest.mark.asyncio
    async def test_unresolvable_slug_without_known_token_still_requests_update(
        self, backlog, held_lock, dispatcher, test_settings
    ):
        """Without a representative token the update goes out with no token id."""
        await backlog.add(make_request("a"))
        api = FakeMetadataApi({"a": MetadataPage()})
        scheduler = build_scheduler(
            backlog, held_lock, api, dispatcher, FakeTokens(token_id=None), test_settings
        )

        await scheduler.run()

        assert dispatcher.full_collection == [("collection-a", METHOD)]
        assert dispatcher.metadata_updates == [("0xabc", None, METHOD, 0)]

    @pytest.mark.asyncio
    async def test_token_lookup_failure_does_not_block_full_refresh(
        self, backlog, held_lock, dispatcher, test_settings
    ):
        """A broken token database only costs the token id, never the fallback."""

        class BrokenTokens:
            async def get_single_token(self, collection):
                raise ConnectionError("database down")

        await backlog.add(make_request("a"))
        api = FakeMetadataApi({"a": MetadataPage()})
        scheduler = build_scheduler(
            backlog, held_lock, api, dispatcher, BrokenTokens(), test_settings
        )

        next_run = await scheduler.run()

        assert dispatcher.full_collection == [("collection-a", METHOD)]
        assert dispatcher.metadata_updates == [("0xabc", None, METHOD, 0)]
        assert next_run.action is NextRunAction.RELEASED


class TestContinuationPreservation:
    """Requeued continuations keep the request identity."""

    @pytest.mark.asyncio
    async def test_requeued_request_keeps_slug_contract_and_collection(
        self, backlog, held_lock, dispatcher, tokens, test_settings
    ):
        """Should carry the new cursor and nothing else changes."""
        request = make_request("a", contract="0xAbC", continuation="old")
        await backlog.add(request)
        api = FakeMetadataApi(
            {"a": MetadataPage(metadata=make_items("0xabc", 1), continuation="new")}
        )
        scheduler = build_scheduler(backlog, held_lock, api, dispatcher, tokens, test_settings)

        await scheduler.run()

        (requeued,) = await backlog_contents(backlog)
        assert requeued.slug == request.slug
        assert requeued.contract == request.contract == "0xabc"
        assert requeued.collection == request.collection
        assert requeued.continuation == "new"
        assert [item.token_id for item in dispatcher.submitted[0]] == ["1"]
        assert api.calls == [("0xabc", "a", METHOD, "old")]

    @pytest.mark.asyncio
    async def test_continuations_jump_ahead_of_fresh_requests(
        self, backlog, held_lock, dispatcher, tokens, test_settings
    ):
        """Prioritized requeues are popped before older non-prioritized entries."""
        await backlog.add(make_request("a"))
        api = FakeMetadataApi({"a": MetadataPage(metadata=[], continuation="next")})
        scheduler = build_scheduler(backlog, held_lock, api, dispatcher, tokens, test_settings)

        await scheduler.run()
        await backlog.add(make_request("z"))

        (first,) = await backlog.get(1)
        assert first.slug == "a"
        assert first.continuation == "next"


class TestRateLimitFloor:
    """The cooldown never drops below the configured floor."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("expires_in", "expected_delay"),
        [(0, 5), (2, 5), (30, 30)],
    )
    async def test_cooldown_floor(
        self, backlog, held_lock, dispatcher, tokens, test_settings, fake_redis,
        expires_in, expected_delay,
    ):
        await backlog.add(make_request("a"))
        api = FakeMetadataApi({"a": MetadataApiRateLimitedError(expires_in=expires_in)})
        scheduler = build_scheduler(backlog, held_lock, api, dispatcher, tokens, test_settings)

        next_run = await scheduler.run()

        assert next_run.delay_seconds == expected_delay
        assert fake_redis.ttl[LOCK_KEY] == 300 + expected_delay

    @pytest.mark.asyncio
    async def test_longest_cooldown_wins(
        self, backlog, held_lock, dispatcher, tokens, test_settings
    ):
        """Several rate-limited slugs: the batch waits for the longest one."""
        for slug in ("a", "b", "c"):
            await backlog.add(make_request(slug))
        api = FakeMetadataApi(
            {
                "a": MetadataApiRateLimitedError(expires_in=7),
                "b": MetadataApiRateLimitedError(expires_in=42),
                "c": MetadataPage(metadata=make_items("0xabc", 1)),
            }
        )
        scheduler = build_scheduler(backlog, held_lock, api, dispatcher, tokens, test_settings)

        next_run = await scheduler.run()

        assert next_run.delay_seconds == 42
        assert sorted(r.slug for r in await backlog_contents(backlog)) == ["a", "b"]


class TestIsolation:
    """One bad slug never spoils its siblings."""

    @pytest.mark.asyncio
    async def test_failing_fetch_does_not_block_others(
        self, backlog, held_lock, dispatcher, tokens, test_settings
    ):
        """Should collect metadata from the healthy slugs and fall back for the failed one."""
        for slug, contract in (("a", "0xa"), ("b", "0xb"), ("c", "0xc")):
            await backlog.add(make_request(slug, contract=contract))
        api = FakeMetadataApi(
            {
                "a": MetadataPage(metadata=make_items("0xa", 1)),
                "b": MetadataApiError("boom", status=500, body={"error": "boom"}),
                "c": MetadataPage(metadata=make_items("0xc", 2)),
            }
        )
        scheduler = build_scheduler(backlog, held_lock, api, dispatcher, tokens, test_settings)

        next_run = await scheduler.run()

        assert sorted(item.token_id for item in dispatcher.submitted[0]) == ["1", "2"]
        # Failures fall back on the contract, not the collection id
        assert dispatcher.full_collection == [("0xb", METHOD)]
        assert await backlog_contents(backlog) == []
        assert next_run.action is NextRunAction.RELEASED

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_treated_as_failure(
        self, backlog, held_lock, dispatcher, tokens, test_settings
    ):
        """Non-provider errors still trigger the fallback and are not requeued."""
        await backlog.add(make_request("a"))
        await backlog.add(make_request("b", contract="0xb"))
        api = FakeMetadataApi(
            {
                "a": RuntimeError("unexpected"),
                "b": MetadataPage(metadata=make_items("0xb", 9)),
            }
        )
        scheduler = build_scheduler(backlog, held_lock, api, dispatcher, tokens, test_settings)

        await scheduler.run()

        assert dispatcher.full_collection == [("0xabc", METHOD)]
        assert [item.token_id for item in dispatcher.submitted[0]] == ["9"]

    @pytest.mark.asyncio
    async def test_error_in_fallback_dispatch_is_absorbed(
        self, backlog, held_lock, tokens, test_settings
    ):
        """A broken downstream queue for one slug does not fail the batch."""

        class BrokenFallbackDispatcher(RecordingDispatcher):
            async def request_full_collection_refresh(self, collection, method):
                raise ConnectionError("queue down")

        await backlog.add(make_request("a"))
        await backlog.add(make_request("b", contract="0xb"))
        api = FakeMetadataApi(
            {
                "a": MetadataApiError("boom", status=502),
                "b": MetadataPage(metadata=make_items("0xb", 3)),
            }
        )
        dispatcher = BrokenFallbackDispatcher()
        scheduler = build_scheduler(backlog, held_lock, api, dispatcher, tokens, test_settings)

        next_run = await scheduler.run()

        assert [item.token_id for item in dispatcher.submitted[0]] == ["3"]
        assert next_run.action is NextRunAction.RELEASED


class TestDenylist:
    """Denylisted contracts are ignored completely."""

    @pytest.mark.asyncio
    async def test_denylisted_contract_is_skipped(
        self, backlog, held_lock, dispatcher, tokens, test_settings
    ):
        """No fetch, no requeue, no downstream dispatch."""
        settings = test_settings.model_copy(
            update={"metadata_slug_refresh_denylist": {"0x0e3a2a1f2146d86a604adc220b4967a898d7fe07"}}
        )
        await backlog.add(
            make_request("bad", contract="0x0E3A2A1F2146D86A604ADC220B4967A898D7FE07")
        )
        api = FakeMetadataApi({})
        scheduler = build_scheduler(backlog, held_lock, api, dispatcher, tokens, settings)

        next_run = await scheduler.run()

        assert api.calls == []
        assert dispatcher.full_collection == []
        assert dispatcher.metadata_updates == []
        assert dispatcher.submitted == [[]]
        assert await backlog_contents(backlog) == []
        assert next_run.action is NextRunAction.RELEASED


class TestRescheduleDecision:
    """Lock handling when deciding on the next run."""

    @pytest.mark.asyncio
    async def test_full_batch_reschedules_even_if_backlog_is_now_empty(
        self, backlog, held_lock, dispatcher, tokens, test_settings, fake_redis
    ):
        """Exactly batch_size items looks like more work; the next run drains and stops."""
        slugs = [f"s{i}" for i in range(test_settings.slug_refresh_batch_size)]
        for slug in slugs:
            await backlog.add(make_request(slug))
        api = FakeMetadataApi({slug: MetadataPage(metadata=make_items("0xabc", 1)) for slug in slugs})
        scheduler = build_scheduler(backlog, held_lock, api, dispatcher, tokens, test_settings)

        first = await scheduler.run()
        second = await scheduler.run()

        assert first.action is NextRunAction.RESCHEDULE
        assert first.delay_seconds == 0
        assert second.action is NextRunAction.RELEASED
        assert LOCK_KEY not in fake_redis.strings

    @pytest.mark.asyncio
    async def test_lost_lock_stops_without_release(
        self, backlog, dispatcher, tokens, test_settings, fake_redis
    ):
        """If the lock vanished, do not schedule and do not touch the key."""

        class LostLock(RefreshLock):
            released = False

            async def extend(self, method, ttl_seconds):
                return False

            async def release(self, method):
                self.released = True

        lock = LostLock(fake_redis)
        await backlog.add(make_request("a"))
        api = FakeMetadataApi({"a": MetadataPage(metadata=[], continuation="more")})
        scheduler = build_scheduler(backlog, lock, api, dispatcher, tokens, test_settings)

        next_run = await scheduler.run()

        assert next_run.action is NextRunAction.LOCK_LOST
        assert lock.released is False

    @pytest.mark.asyncio
    async def test_extend_fails_when_lock_expired(
        self, backlog, lock, dispatcher, tokens, test_settings, fake_redis
    ):
        """With no lock key present, SET XX fails and the run stops."""
        await backlog.add(make_request("a"))
        api = FakeMetadataApi({"a": MetadataPage(metadata=[], continuation="more")})
        scheduler = build_scheduler(backlog, lock, api, dispatcher, tokens, test_settings)

        next_run = await scheduler.run()

        assert next_run.action is NextRunAction.LOCK_LOST
        assert LOCK_KEY not in fake_redis.strings

    @pytest.mark.asyncio
    async def test_batch_size_is_fanout_times_page_count(
        self, backlog, held_lock, dispatcher, tokens, test_settings
    ):
        """Pops at most fan-out × page count requests per invocation."""
        settings = test_settings.model_copy(
            update={
                "max_parallel_token_collection_slug_refresh_jobs": 2,
                "metadata_slug_refresh_page_count": 2,
            }
        )
        slugs = [f"s{i}" for i in range(6)]
        for slug in slugs:
            await backlog.add(make_request(slug))
        api = FakeMetadataApi({slug: MetadataPage(metadata=make_items("0xabc", 1)) for slug in slugs})
        scheduler = build_scheduler(backlog, held_lock, api, dispatcher, tokens, settings)

        next_run = await scheduler.run()

        assert len(api.calls) == 4
        assert next_run.action is NextRunAction.RESCHEDULE
        assert len(await backlog_contents(backlog)) == 2


class TestRequeueFailure:
    """Requests that cannot go back to the backlog fail the invocation."""

    @pytest.fixture
    def flaky_backlog(self, fake_redis):
        class FlakyBacklog(PendingRefreshTokensBySlug):
            async def add(self, request, prioritized=False):
                if prioritized:
                    raise ConnectionError("redis down")
                await super().add(request, prioritized)

        return FlakyBacklog(fake_redis)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "response",
        [
            MetadataPage(metadata=[], continuation="next"),
            MetadataApiRateLimitedError(expires_in=20),
        ],
    )
    async def test_failed_requeue_raises_after_dispatching_batch(
        self, flaky_backlog, held_lock, dispatcher, tokens, test_settings, fake_redis, response
    ):
        """Healthy slugs are still written and the lock is kept for the retry."""
        await flaky_backlog.add(make_request("a"))
        await flaky_backlog.add(make_request("b", contract="0xb"))
        api = FakeMetadataApi(
            {"a": response, "b": MetadataPage(metadata=make_items("0xb", 5))}
        )
        scheduler = build_scheduler(
            flaky_backlog, held_lock, api, dispatcher, tokens, test_settings
        )

        with pytest.raises(BacklogWriteError) as exc_info:
            await scheduler.run()

        assert isinstance(exc_info.value.__cause__, ConnectionError)
        assert [item.token_id for item in dispatcher.submitted[0]] == ["5"]
        assert dispatcher.full_collection == []
        assert LOCK_KEY in fake_redis.strings
