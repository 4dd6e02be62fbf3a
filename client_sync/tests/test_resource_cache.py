"""
Unit tests for RemoteResourceCache.
"""

import asyncio

import pytest
from unittest.mock import AsyncMock
from prometheus_client import CollectorRegistry

from shared.errors import ClassifiedError, ErrorClassification
from shared.metrics import MetricsCollector
from shared.retry import RetryConfig, build_read_policy, build_write_policy
from shared.test_helpers import ManualScheduler, wait_until_idle

from client_sync.app.caching import EntryStatus, RemoteResourceCache, ResourceOptions
from client_sync.app.caching.keys import QueryKeys

KEY = QueryKeys.PROFILE
NO_BACKOFF = RetryConfig(base_delay=0, jitter=False)


def make_cache(scheduler, **kwargs):
    kwargs.setdefault("read_policy", build_read_policy(backoff=NO_BACKOFF))
    kwargs.setdefault("write_policy", build_write_policy(backoff=NO_BACKOFF))
    return RemoteResourceCache(scheduler=scheduler, **kwargs)


class CountingFetcher:
    """Fetcher returning successive values, optionally held at a gate."""

    def __init__(self, *values, gate=None):
        self.values = list(values)
        self.calls = 0
        self.gate = gate

    async def __call__(self):
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        index = min(self.calls, len(self.values)) - 1
        return self.values[index]


class TestRemoteResourceCache:
    """Test cases for RemoteResourceCache."""

    @pytest.fixture
    def scheduler(self):
        """Manual clock."""
        return ManualScheduler()

    @pytest.fixture
    def cache(self, scheduler):
        """Cache with 300s stale and 600s garbage-collect windows."""
        return make_cache(scheduler, stale_time=300, gc_time=600)

    def test_get_absent_key_is_idle(self, cache):
        """Test synchronous read of an unknown key."""
        entry = cache.get(KEY)
        assert entry.status == EntryStatus.IDLE
        assert entry.has_value is False
        assert KEY not in cache

    @pytest.mark.asyncio
    async def test_ensure_fetches_absent_value(self, cache):
        """Test that ensure loads a missing value."""
        fetcher = CountingFetcher({"name": "Ana"})

        entry = await cache.ensure(KEY, fetcher)

        assert entry.value == {"name": "Ana"}
        assert entry.status == EntryStatus.SUCCESS
        assert entry.is_fetching is False
        assert fetcher.calls == 1

    @pytest.mark.asyncio
    async def test_concurrent_ensure_issues_one_fetch(self, cache):
        """Test the at-most-one-fetch-per-key invariant."""
        gate = asyncio.Event()
        fetcher = CountingFetcher("value", gate=gate)

        callers = [asyncio.create_task(cache.ensure(KEY, fetcher)) for _ in range(5)]
        await asyncio.sleep(0)
        assert cache.is_fetching(KEY)

        gate.set()
        entries = await asyncio.gather(*callers)

        assert fetcher.calls == 1
        assert all(entry.value == "value" for entry in entries)

    @pytest.mark.asyncio
    async def test_fresh_value_is_served_without_fetch(self, cache, scheduler):
        """Test that reads inside the stale window hit the cache."""
        fetcher = CountingFetcher("v1", "v2")
        await cache.ensure(KEY, fetcher)

        scheduler.advance(299)
        entry = await cache.ensure(KEY, fetcher)

        assert entry.value == "v1"
        assert fetcher.calls == 1
        assert not cache.is_fetching(KEY)

    @pytest.mark.asyncio
    async def test_stale_value_is_served_while_revalidating(self, cache, scheduler):
        """Test stale-while-revalidate."""
        fetcher = CountingFetcher("v1", "v2")
        await cache.ensure(KEY, fetcher)

        scheduler.advance(300)
        entry = await cache.ensure(KEY, fetcher)

        assert entry.value == "v1"
        assert entry.is_fetching is True

        await wait_until_idle(cache)
        assert cache.get(KEY).value == "v2"
        assert fetcher.calls == 2

    @pytest.mark.asyncio
    async def test_last_issued_fetch_wins(self, cache):
        """Test that a late response from an older fetch is discarded."""
        gate_a, gate_b = asyncio.Event(), asyncio.Event()
        fetch_a = CountingFetcher("A", gate=gate_a)
        fetch_b = CountingFetcher("B", gate=gate_b)

        task_a = cache.refetch(KEY, fetch_a)
        task_b = cache.refetch(KEY, fetch_b)

        gate_b.set()
        await task_b
        assert cache.get(KEY).value == "B"

        gate_a.set()
        await task_a
        assert cache.get(KEY).value == "B"
        assert cache.get(KEY).status == EntryStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_late_error_from_older_fetch_is_discarded(self, cache):
        """Test that an older failing fetch does not overwrite a newer value."""
        gate_a = asyncio.Event()

        async def fetch_a():
            await gate_a.wait()
            raise ClassifiedError(ErrorClassification.NOT_FOUND, "gone", status_code=404)

        task_a = cache.refetch(KEY, fetch_a)
        task_b = cache.refetch(KEY, CountingFetcher("B"))
        await task_b

        gate_a.set()
        await task_a

        entry = cache.get(KEY)
        assert entry.value == "B"
        assert entry.error is None

    @pytest.mark.asyncio
    async def test_entry_evicted_after_gc_window(self, cache, scheduler):
        """Test garbage collection of unsubscribed entries."""
        await cache.ensure(KEY, CountingFetcher("v1"))

        scheduler.advance(599)
        assert KEY in cache

        scheduler.advance(1)
        assert KEY not in cache

    @pytest.mark.asyncio
    async def test_resubscribe_cancels_eviction(self, cache, scheduler):
        """Test that a new subscriber before GC keeps the entry."""
        unsubscribe = cache.mount(KEY, CountingFetcher("v1"), lambda entry: None)
        await wait_until_idle(cache)

        unsubscribe()
        scheduler.advance(300)
        unsubscribe_again = cache.subscribe(KEY, lambda entry: None)

        scheduler.advance(600)
        assert KEY in cache

        unsubscribe_again()
        scheduler.advance(600)
        assert KEY not in cache

    @pytest.mark.asyncio
    async def test_unsubscribe_is_idempotent(self, cache, scheduler):
        """Test that a second unsubscribe does nothing."""
        unsubscribe = cache.subscribe(KEY, lambda entry: None)
        unsubscribe()
        unsubscribe()
        assert len(scheduler.pending) == 1

    def test_gc_window_never_shorter_than_stale_window(self, scheduler):
        """Test expire_after >= stale_after."""
        cache = make_cache(scheduler, stale_time=900, gc_time=600)
        entry = cache.get(KEY)
        assert entry.stale_after == 900
        assert entry.expire_after == 900

    def test_near_static_resources_use_longer_stale_window(self, scheduler):
        """Test per-resource options for city lists."""
        cache = make_cache(scheduler)
        entry = cache.get(QueryKeys.CITIES)
        assert entry.stale_after == 1800
        assert entry.expire_after >= entry.stale_after

    @pytest.mark.asyncio
    async def test_entry_is_stale_before_eviction(self, scheduler):
        """Test that an entry is never evicted before it turns stale."""
        cache = make_cache(scheduler, stale_time=900, gc_time=600)
        await cache.ensure(KEY, CountingFetcher("v1"))

        scheduler.advance(899)
        assert KEY in cache
        assert cache.get(KEY).is_stale(scheduler.now()) is False

        scheduler.advance(1)
        assert KEY not in cache

    @pytest.mark.asyncio
    async def test_terminal_read_error_becomes_entry_error(self, cache):
        """Test that a 404 is not retried and lands in the entry."""
        fetcher = AsyncMock(side_effect=ClassifiedError(ErrorClassification.NOT_FOUND, "missing", status_code=404))

        entry = await cache.ensure(KEY, fetcher)

        assert entry.status == EntryStatus.ERROR
        assert entry.error.classification == ErrorClassification.NOT_FOUND
        assert entry.error.status_code == 404
        assert fetcher.await_count == 1

    @pytest.mark.asyncio
    async def test_transient_read_error_is_retried(self, cache):
        """Test that a failing read is attempted four times."""
        fetcher = AsyncMock(side_effect=ClassifiedError(ErrorClassification.TRANSIENT, "down", status_code=503))

        entry = await cache.ensure(KEY, fetcher)

        assert entry.status == EntryStatus.ERROR
        assert entry.error.classification == ErrorClassification.TRANSIENT
        assert fetcher.await_count == 4
        assert entry.failure_count == 4

    @pytest.mark.asyncio
    async def test_transient_read_error_recovers(self, cache):
        """Test that a read succeeding on retry clears the failure state."""
        fetcher = AsyncMock(side_effect=[
            ClassifiedError(ErrorClassification.TRANSIENT, "down"),
            {"name": "Ana"},
        ])

        entry = await cache.ensure(KEY, fetcher)

        assert entry.value == {"name": "Ana"}
        assert entry.error is None
        assert entry.failure_count == 0

    @pytest.mark.asyncio
    async def test_request_timeout_is_transient(self, scheduler):
        """Test that a hanging fetcher times out as a transient failure."""
        cache = make_cache(scheduler, request_timeout=0.01, read_policy=build_read_policy(0, NO_BACKOFF))

        async def hang():
            await asyncio.sleep(10)

        entry = await cache.ensure(KEY, hang)

        assert entry.status == EntryStatus.ERROR
        assert entry.error.classification == ErrorClassification.TRANSIENT

    @pytest.mark.asyncio
    async def test_subscribers_see_loading_then_success(self, cache):
        """Test subscriber notifications for a fetch."""
        seen = []
        cache.subscribe(KEY, lambda entry: seen.append(entry.status))

        await cache.ensure(KEY, CountingFetcher("v1"))

        assert seen == [EntryStatus.LOADING, EntryStatus.SUCCESS]

    @pytest.mark.asyncio
    async def test_subscriber_refetch_reuses_inflight_fetch(self, cache):
        """Test that a notified subscriber cannot stack a second fetch."""
        fetcher = CountingFetcher("v1")
        returned = []

        def on_change(entry):
            if entry.is_fetching:
                returned.append(cache.refetch(KEY))

        cache.subscribe(KEY, on_change)
        await cache.ensure(KEY, fetcher)

        assert fetcher.calls == 1
        assert len(returned) == 1

    @pytest.mark.asyncio
    async def test_failing_subscriber_does_not_break_others(self, cache):
        """Test that subscriber errors are contained."""
        seen = []

        def broken(entry):
            raise RuntimeError("boom")

        cache.subscribe(KEY, broken)
        cache.subscribe(KEY, lambda entry: seen.append(entry.status))

        entry = await cache.ensure(KEY, CountingFetcher("v1"))

        assert entry.value == "v1"
        assert EntryStatus.SUCCESS in seen

    @pytest.mark.asyncio
    async def test_unmount_does_not_cancel_shared_fetch(self, cache):
        """Test that unsubscribing keeps the in-flight fetch alive."""
        gate = asyncio.Event()
        seen = []
        unsubscribe_a = cache.mount(KEY, CountingFetcher("v1", gate=gate), lambda entry: None)
        cache.subscribe(KEY, lambda entry: seen.append(entry.value))

        unsubscribe_a()
        gate.set()
        await wait_until_idle(cache)

        assert cache.get(KEY).value == "v1"
        assert seen[-1] == "v1"

    @pytest.mark.asyncio
    async def test_mount_refetches_stale_entry(self, cache, scheduler):
        """Test mount-time refetch of stale data."""
        fetcher = CountingFetcher("v1", "v2")
        await cache.ensure(KEY, fetcher)
        scheduler.advance(300)

        cache.mount(KEY, fetcher, lambda entry: None)
        await wait_until_idle(cache)

        assert fetcher.calls == 2
        assert cache.get(KEY).value == "v2"

    @pytest.mark.asyncio
    async def test_mount_refetch_can_be_disabled(self, scheduler):
        """Test refetch_on_mount=False."""
        cache = make_cache(scheduler, refetch_on_mount=False)
        fetcher = CountingFetcher("v1", "v2")
        await cache.ensure(KEY, fetcher)
        scheduler.advance(300)

        cache.mount(KEY, fetcher, lambda entry: None)

        assert not cache.is_fetching(KEY)
        assert fetcher.calls == 1

    @pytest.mark.asyncio
    async def test_disabled_resource_is_not_fetched(self, cache):
        """Test ResourceOptions(enabled=False)."""
        fetcher = CountingFetcher("v1")

        entry = await cache.ensure(KEY, fetcher, ResourceOptions(enabled=False))

        assert entry.has_value is False
        assert fetcher.calls == 0

    @pytest.mark.asyncio
    async def test_disabled_keys_leave_no_entries(self, cache, scheduler):
        """Test that short-circuited searches do not accumulate in the cache."""
        fetcher = CountingFetcher([])
        for term in ("a", "ab", "x", "xy", "z"):
            await cache.ensure(QueryKeys.search(term), fetcher, ResourceOptions(enabled=False))

        scheduler.advance(10_000)

        assert len(cache) == 0
        assert scheduler.pending == []
        assert fetcher.calls == 0

    @pytest.mark.asyncio
    async def test_focus_refetch_disabled_by_default(self, cache, scheduler):
        """Test that window focus does nothing unless enabled."""
        fetcher = CountingFetcher("v1", "v2")
        cache.mount(KEY, fetcher, lambda entry: None)
        await wait_until_idle(cache)
        scheduler.advance(300)

        assert cache.on_window_focus() == []
        assert fetcher.calls == 1

    @pytest.mark.asyncio
    async def test_focus_refetch_when_enabled(self, scheduler):
        """Test that window focus refetches stale mounted entries."""
        cache = make_cache(scheduler, refetch_on_window_focus=True)
        fetcher = CountingFetcher("v1", "v2")
        cache.mount(KEY, fetcher, lambda entry: None)
        await wait_until_idle(cache)
        scheduler.advance(300)

        tasks = cache.on_window_focus()
        await asyncio.gather(*tasks)

        assert len(tasks) == 1
        assert cache.get(KEY).value == "v2"

    @pytest.mark.asyncio
    async def test_reconnect_refetches_only_stale_mounted_entries(self, cache, scheduler):
        """Test reconnect refetch skips fresh and unmounted entries."""
        mounted = CountingFetcher("v1", "v2")
        unmounted = CountingFetcher("u1", "u2")
        cache.mount(KEY, mounted, lambda entry: None)
        await cache.ensure(QueryKeys.SERVICES, unmounted)
        await wait_until_idle(cache)

        assert cache.on_reconnect() == []

        scheduler.advance(300)
        tasks = cache.on_reconnect()
        await asyncio.gather(*tasks)

        assert len(tasks) == 1
        assert mounted.calls == 2
        assert unmounted.calls == 1

    @pytest.mark.asyncio
    async def test_invalidate_refetches_mounted_entry(self, cache):
        """Test invalidation of a subscribed key."""
        fetcher = CountingFetcher("v1", "v2")
        cache.mount(KEY, fetcher, lambda entry: None)
        await wait_until_idle(cache)

        task = cache.invalidate(KEY)
        await task

        assert cache.get(KEY).value == "v2"
        assert cache.get(KEY).is_invalidated is False

    @pytest.mark.asyncio
    async def test_invalidate_marks_unmounted_entry_stale(self, cache):
        """Test invalidation of a key nobody is watching."""
        fetcher = CountingFetcher("v1", "v2")
        await cache.ensure(KEY, fetcher)

        assert cache.invalidate(KEY) is None
        entry = cache.get(KEY)
        assert entry.is_invalidated is True
        assert fetcher.calls == 1

        entry = await cache.ensure(KEY, fetcher)
        assert entry.value == "v1"
        await wait_until_idle(cache)
        assert cache.get(KEY).value == "v2"

    @pytest.mark.asyncio
    async def test_invalidate_prefix(self, cache):
        """Test prefix invalidation across a resource family."""
        await cache.ensure(QueryKeys.PLAN_CURRENT, CountingFetcher("plan"))
        await cache.ensure(QueryKeys.PLAN_USAGE, CountingFetcher("usage"))
        await cache.ensure(KEY, CountingFetcher("profile"))

        assert cache.invalidate_prefix(QueryKeys.PLANS) == 2
        assert cache.get(QueryKeys.PLAN_CURRENT).is_invalidated is True
        assert cache.get(KEY).is_invalidated is False

    @pytest.mark.asyncio
    async def test_mutate_invalidates_on_success(self, cache):
        """Test that a successful write invalidates the given prefixes."""
        await cache.ensure(QueryKeys.PLAN_CURRENT, CountingFetcher("plan"))
        mutation = AsyncMock(return_value={"success": True})

        result = await cache.mutate(mutation, "pro", invalidates=[QueryKeys.PLANS])

        assert result == {"success": True}
        mutation.assert_awaited_once_with("pro")
        assert cache.get(QueryKeys.PLAN_CURRENT).is_invalidated is True

    @pytest.mark.asyncio
    async def test_mutate_bad_request_is_not_retried(self, cache):
        """Test that a 400 write raises after one attempt."""
        await cache.ensure(QueryKeys.PLAN_CURRENT, CountingFetcher("plan"))
        mutation = AsyncMock(side_effect=ClassifiedError(ErrorClassification.BAD_REQUEST, "invalid", status_code=400))

        with pytest.raises(ClassifiedError) as exc_info:
            await cache.mutate(mutation, invalidates=[QueryKeys.PLANS])

        assert exc_info.value.classification == ErrorClassification.BAD_REQUEST
        assert mutation.await_count == 1
        assert cache.get(QueryKeys.PLAN_CURRENT).is_invalidated is False

    @pytest.mark.asyncio
    async def test_mutate_transient_is_retried_twice(self, cache):
        """Test that a failing write is attempted three times."""
        mutation = AsyncMock(side_effect=ClassifiedError(ErrorClassification.TRANSIENT, "down"))

        with pytest.raises(ClassifiedError):
            await cache.mutate(mutation)

        assert mutation.await_count == 3

    @pytest.mark.asyncio
    async def test_dispose_cancels_inflight_fetches(self, cache):
        """Test teardown."""
        gate = asyncio.Event()
        cache.mount(KEY, CountingFetcher("v1", gate=gate), lambda entry: None)
        assert cache.is_fetching(KEY)

        cache.dispose()
        await asyncio.sleep(0)

        assert len(cache) == 0
        assert not cache.is_fetching(KEY)

    @pytest.mark.asyncio
    async def test_remove_ignores_inflight_result(self, cache):
        """Test that a removed key is not recreated by its pending fetch."""
        gate = asyncio.Event()
        task = cache.refetch(KEY, CountingFetcher("v1", gate=gate))

        assert cache.remove(KEY) is True
        gate.set()
        await task

        assert KEY not in cache

    @pytest.mark.asyncio
    async def test_hit_and_miss_metrics(self, scheduler):
        """Test cache read metrics."""
        registry = CollectorRegistry()
        cache = make_cache(scheduler, metrics=MetricsCollector("test", registry=registry))

        await cache.ensure(KEY, CountingFetcher("v1"))
        await cache.ensure(KEY, CountingFetcher("v1"))

        assert registry.get_sample_value("cache_misses_total", {"resource": "profile"}) == 1.0
        assert registry.get_sample_value("cache_hits_total", {"resource": "profile"}) == 1.0
        assert registry.get_sample_value(
            "cache_fetches_total", {"resource": "profile", "outcome": "success"}
        ) == 1.0

    @pytest.mark.asyncio
    async def test_stale_read_is_not_counted_as_hit(self, scheduler):
        """Test that a revalidating read is recorded separately from hits."""
        registry = CollectorRegistry()
        cache = make_cache(scheduler, stale_time=300, gc_time=600, metrics=MetricsCollector("test", registry=registry))
        fetcher = CountingFetcher("v1", "v2")

        await cache.ensure(KEY, fetcher)
        scheduler.advance(300)
        await cache.ensure(KEY, fetcher)
        await wait_until_idle(cache)

        assert registry.get_sample_value("cache_misses_total", {"resource": "profile"}) == 1.0
        assert registry.get_sample_value("cache_stale_reads_total", {"resource": "profile"}) == 1.0
        assert registry.get_sample_value("cache_hits_total", {"resource": "profile"}) is None
