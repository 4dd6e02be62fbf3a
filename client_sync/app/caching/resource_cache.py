"""
Key-indexed cache for asynchronous remote reads and writes.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional

from shared.config import SyncSettings
from shared.errors import ClassifiedError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.retry import RetryConfig, RetryPolicy, build_read_policy, build_write_policy, run_with_retry
from shared.scheduling import AsyncioScheduler, Scheduler

from .keys import RESOURCE_OPTIONS, key_matches, options_for
from .models import CacheEntry, EntryStatus, ErrorInfo, QueryKey, ResourceOptions, _EntryState

Fetcher = Callable[[], Awaitable[Any]]
Subscriber = Callable[[CacheEntry], None]


class _Subscription:
    __slots__ = ("callback",)

    def __init__(self, callback: Subscriber):
        self.callback = callback


class RemoteResourceCache:
    """
    Stale-while-revalidate cache for remote resources.

    Each key has at most one fetch per issue: concurrent ``ensure`` calls
    share the in-flight fetch, and results are applied in issue order
    (last-issued-wins) via a per-key sequence number. Entries with no
    subscribers are evicted once their garbage-collect window elapses.
    """

    def __init__(
        self,
        *,
        stale_time: float = 300.0,
        gc_time: float = 600.0,
        read_policy: Optional[RetryPolicy] = None,
        write_policy: Optional[RetryPolicy] = None,
        request_timeout: Optional[float] = 30.0,
        refetch_on_window_focus: bool = False,
        refetch_on_reconnect: bool = True,
        refetch_on_mount: bool = True,
        resource_options: Optional[Mapping[QueryKey, ResourceOptions]] = None,
        scheduler: Optional[Scheduler] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.stale_time = stale_time
        self.gc_time = gc_time
        self.read_policy = read_policy or build_read_policy()
        self.write_policy = write_policy or build_write_policy()
        self.request_timeout = request_timeout
        self.refetch_on_window_focus = refetch_on_window_focus
        self.refetch_on_reconnect = refetch_on_reconnect
        self.refetch_on_mount = refetch_on_mount
        self.resource_options = RESOURCE_OPTIONS if resource_options is None else resource_options
        self.scheduler = scheduler or AsyncioScheduler()
        self.metrics = metrics
        self.logger = get_logger("cache.resource")

        self._entries: Dict[QueryKey, _EntryState] = {}
        self._inflight: Dict[QueryKey, Dict[int, asyncio.Task]] = {}
        self._notify_depth: Dict[QueryKey, int] = {}

    @classmethod
    def from_settings(
        cls,
        settings: SyncSettings,
        *,
        scheduler: Optional[Scheduler] = None,
        metrics: Optional[MetricsCollector] = None,
    ) -> "RemoteResourceCache":
        backoff = RetryConfig(
            base_delay=settings.retry_base_delay_seconds,
            max_delay=settings.retry_max_delay_seconds,
            jitter=settings.retry_jitter,
        )
        return cls(
            stale_time=settings.stale_time_seconds,
            gc_time=settings.gc_time_seconds,
            read_policy=build_read_policy(settings.read_max_retries, backoff),
            write_policy=build_write_policy(settings.write_max_retries, backoff),
            request_timeout=settings.request_timeout_seconds,
            refetch_on_window_focus=settings.refetch_on_window_focus,
            refetch_on_reconnect=settings.refetch_on_reconnect,
            refetch_on_mount=settings.refetch_on_mount,
            scheduler=scheduler,
            metrics=metrics,
        )

    # Reads

    def get(self, key: QueryKey) -> CacheEntry:
        """Synchronous snapshot of the current state of ``key``."""
        key = tuple(key)
        state = self._entries.get(key)
        if state is None:
            stale_after, expire_after = self._windows(options_for(key, self.resource_options))
            return CacheEntry(key=key, stale_after=stale_after, expire_after=expire_after)
        return state.snapshot(self.is_fetching(key))

    def is_fetching(self, key: QueryKey) -> bool:
        return bool(self._inflight.get(tuple(key)))

    def keys(self) -> List[QueryKey]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key) -> bool:
        return tuple(key) in self._entries

    async def ensure(
        self,
        key: QueryKey,
        fetcher: Fetcher,
        options: Optional[ResourceOptions] = None,
    ) -> CacheEntry:
        """
        Return the entry for ``key``, fetching it if absent or stale.

        A stale value is returned immediately while a background refetch runs.
        An absent value is awaited; if a fetch is already in flight the caller
        shares it. Fetch failures never raise here, they land in the entry's
        ``error`` state.
        """
        key = tuple(key)
        if options is not None and not options.enabled:
            # Disabled keys never create state
            if key in self._entries:
                self._prepare(key, fetcher, options)
            return self.get(key)

        state = self._prepare(key, fetcher, options)
        resource = key[0] if key else "unknown"

        if state.has_value:
            if self.get(key).is_stale(self.scheduler.now()):
                self._record_read(resource, "stale")
                if not self.is_fetching(key):
                    self.logger.debug("Serving stale value, revalidating", key=key)
                    self._start_fetch(key)
            else:
                self._record_read(resource, "hit")
            return self.get(key)

        self._record_read(resource, "miss")
        task = self._latest_task(key) or self._start_fetch(key)
        # Shield so a cancelled caller never cancels the shared fetch
        await asyncio.shield(task)
        return self.get(key)

    def refetch(self, key: QueryKey, fetcher: Optional[Fetcher] = None) -> Optional[asyncio.Task]:
        """
        Issue a new fetch for ``key`` even if one is in flight.

        While subscribers of ``key`` are being notified, an in-flight fetch is
        reused instead, so a subscriber cannot stack overlapping fetches.
        """
        key = tuple(key)
        state = self._entries.get(key)
        if fetcher is not None:
            state = self._prepare(key, fetcher, None)
        if state is None or state.fetcher is None:
            self.logger.warning("Refetch requested without a fetcher", key=key)
            return None
        if self._notify_depth.get(key):
            existing = self._latest_task(key)
            if existing is not None:
                return existing
        return self._start_fetch(key)

    # Invalidation

    def invalidate(self, key: QueryKey) -> Optional[asyncio.Task]:
        """Mark ``key`` stale; refetch it if it is mounted."""
        key = tuple(key)
        state = self._entries.get(key)
        if state is None:
            return None

        state.is_invalidated = True
        self.logger.debug("Invalidated cache entry", key=key)
        if state.subscribers and state.fetcher is not None:
            return self.refetch(key)
        self._notify(key)
        return None

    def invalidate_prefix(self, prefix: QueryKey) -> int:
        """Invalidate every key that starts with ``prefix``."""
        matched = [key for key in list(self._entries) if key_matches(key, prefix)]
        for key in matched:
            self.invalidate(key)
        return len(matched)

    def remove(self, key: QueryKey) -> bool:
        """Drop ``key`` immediately. Results of its in-flight fetches are ignored."""
        key = tuple(key)
        state = self._entries.pop(key, None)
        if state is None:
            return False
        self._cancel_gc(state)
        self._update_size()
        return True

    def clear(self) -> None:
        for state in self._entries.values():
            self._cancel_gc(state)
        self._entries.clear()
        self._update_size()

    # Subscriptions

    def subscribe(self, key: QueryKey, callback: Subscriber) -> Callable[[], None]:
        """
        Register ``callback`` for state changes of ``key``.

        Returns an idempotent unsubscribe function. Unsubscribing never
        cancels an in-flight fetch; removing the last subscriber starts the
        garbage-collect countdown.
        """
        key = tuple(key)
        state = self._get_or_create(key, None)
        self._cancel_gc(state)
        subscription = _Subscription(callback)
        state.subscribers.append(subscription)

        def unsubscribe() -> None:
            current = self._entries.get(key)
            if current is not state or subscription not in current.subscribers:
                return
            current.subscribers.remove(subscription)
            if not current.subscribers:
                self._schedule_gc(key)

        return unsubscribe

    def mount(
        self,
        key: QueryKey,
        fetcher: Fetcher,
        callback: Subscriber,
        options: Optional[ResourceOptions] = None,
    ) -> Callable[[], None]:
        """Subscribe to ``key`` and fetch it as a newly mounted screen would."""
        key = tuple(key)
        state = self._prepare(key, fetcher, options)
        unsubscribe = self.subscribe(key, callback)

        if options is not None and not options.enabled:
            return unsubscribe

        if not self.is_fetching(key):
            if not state.has_value:
                self._start_fetch(key)
            elif self.refetch_on_mount and self.get(key).is_stale(self.scheduler.now()):
                self._start_fetch(key)
        return unsubscribe

    def on_window_focus(self) -> List[asyncio.Task]:
        """Refetch stale mounted entries when focus refetch is enabled."""
        if not self.refetch_on_window_focus:
            return []
        return self._refetch_mounted("window_focus")

    def on_reconnect(self) -> List[asyncio.Task]:
        """Refetch stale mounted entries when reconnect refetch is enabled."""
        if not self.refetch_on_reconnect:
            return []
        return self._refetch_mounted("reconnect")

    # Writes

    async def mutate(
        self,
        mutation_fn: Callable[..., Awaitable[Any]],
        *args,
        invalidates: Iterable[QueryKey] = (),
        policy: Optional[RetryPolicy] = None,
        **kwargs,
    ) -> Any:
        """
        Run a write under the write retry policy.

        On success every prefix in ``invalidates`` is invalidated. When retries
        stop, the last ClassifiedError is raised to the caller.
        """
        name = getattr(mutation_fn, "__name__", "mutation")

        def on_retry(attempt: int, error: ClassifiedError) -> None:
            if self.metrics:
                self.metrics.increment_counter("cache_retries_total", classification=error.classification.value)

        result = await run_with_retry(
            lambda: self._attempt(lambda: mutation_fn(*args, **kwargs)),
            policy or self.write_policy,
            name=name,
            on_retry=on_retry,
        )

        for prefix in invalidates:
            self.invalidate_prefix(tuple(prefix))
        return result

    # Lifecycle

    def dispose(self) -> None:
        """Cancel timers and in-flight fetches and drop every entry."""
        for tasks in self._inflight.values():
            for task in tasks.values():
                task.cancel()
        self._inflight.clear()
        self.clear()
        self.logger.info("Resource cache disposed")

    # Internals

    def _windows(self, options: ResourceOptions) -> tuple:
        stale_after = self.stale_time if options.stale_time is None else options.stale_time
        expire_after = self.gc_time if options.gc_time is None else options.gc_time
        # An entry is never evicted before it turns stale
        return stale_after, max(expire_after, stale_after)

    def _get_or_create(self, key: QueryKey, options: Optional[ResourceOptions]) -> _EntryState:
        state = self._entries.get(key)
        if state is None:
            resolved = options or options_for(key, self.resource_options)
            stale_after, expire_after = self._windows(resolved)
            state = _EntryState(
                key=key,
                stale_after=stale_after,
                expire_after=expire_after,
                retry_policy=resolved.retry_policy,
            )
            self._entries[key] = state
            self._update_size()
        elif options is not None:
            state.stale_after, state.expire_after = self._windows(options)
            if options.retry_policy is not None:
                state.retry_policy = options.retry_policy
        return state

    def _prepare(self, key: QueryKey, fetcher: Optional[Fetcher], options: Optional[ResourceOptions]) -> _EntryState:
        state = self._get_or_create(key, options)
        if fetcher is not None:
            state.fetcher = fetcher
        return state

    def _latest_task(self, key: QueryKey) -> Optional[asyncio.Task]:
        tasks = self._inflight.get(key)
        if not tasks:
            return None
        return tasks[max(tasks)]

    def _start_fetch(self, key: QueryKey) -> asyncio.Task:
        state = self._entries[key]
        self._cancel_gc(state)
        state.issued_seq += 1
        seq = state.issued_seq
        state.failure_count = 0
        if not state.has_value:
            state.status = EntryStatus.LOADING

        policy = state.retry_policy or self.read_policy
        loop = asyncio.get_running_loop()
        task = loop.create_task(self._run_fetch(key, seq, state.fetcher, policy))
        self._inflight.setdefault(key, {})[seq] = task

        self.logger.debug("Fetch issued", key=key, seq=seq)
        self._notify(key)
        return task

    async def _attempt(self, fetcher: Fetcher) -> Any:
        if self.request_timeout:
            return await asyncio.wait_for(fetcher(), timeout=self.request_timeout)
        return await fetcher()

    async def _run_fetch(self, key: QueryKey, seq: int, fetcher: Fetcher, policy: RetryPolicy) -> None:
        def on_retry(attempt: int, error: ClassifiedError) -> None:
            if self.metrics:
                self.metrics.increment_counter("cache_retries_total", classification=error.classification.value)
            state = self._entries.get(key)
            if state is not None and seq == state.issued_seq:
                state.failure_count = attempt
                self._notify(key)

        try:
            value = await run_with_retry(
                lambda: self._attempt(fetcher),
                policy,
                name=":".join(key),
                on_retry=on_retry,
            )
        except asyncio.CancelledError:
            self._finish(key, seq)
            raise
        except ClassifiedError as error:
            self._finish(key, seq)
            self._apply_error(key, seq, error)
        else:
            self._finish(key, seq)
            self._apply_value(key, seq, value)

    def _finish(self, key: QueryKey, seq: int) -> None:
        tasks = self._inflight.get(key)
        if tasks is None:
            return
        tasks.pop(seq, None)
        if not tasks:
            del self._inflight[key]

    def _apply_value(self, key: QueryKey, seq: int, value: Any) -> None:
        state = self._entries.get(key)
        resource = key[0] if key else "unknown"
        if state is None:
            return

        if seq < state.applied_seq:
            self.logger.debug("Discarding out-of-order response", key=key, seq=seq, applied_seq=state.applied_seq)
            self._record_fetch(resource, "discarded")
            self._after_fetch(key)
            return

        state.applied_seq = seq
        state.value = value
        state.has_value = True
        state.fetched_at = self.scheduler.now()
        state.status = EntryStatus.SUCCESS
        state.error = None
        state.failure_count = 0
        state.is_invalidated = False
        self._record_fetch(resource, "success")
        self._after_fetch(key)

    def _apply_error(self, key: QueryKey, seq: int, error: ClassifiedError) -> None:
        state = self._entries.get(key)
        resource = key[0] if key else "unknown"
        if state is None:
            return

        if seq < state.applied_seq or seq < state.issued_seq:
            # A later-issued fetch owns the outcome
            self._record_fetch(resource, "discarded")
            self._after_fetch(key)
            return

        state.applied_seq = seq
        state.status = EntryStatus.ERROR
        state.error = ErrorInfo.from_error(error)
        state.failure_count += 1
        self.logger.warning(
            "Fetch failed",
            key=key,
            classification=error.classification.value,
            status_code=error.status_code,
            failures=state.failure_count,
            error=error.message
        )
        self._record_fetch(resource, "error")
        self._after_fetch(key)

    def _after_fetch(self, key: QueryKey) -> None:
        state = self._entries.get(key)
        if state is None:
            return
        self._notify(key)
        if not state.subscribers and not self.is_fetching(key):
            self._schedule_gc(key)

    def _refetch_mounted(self, reason: str) -> List[asyncio.Task]:
        now = self.scheduler.now()
        tasks = []
        for key, state in list(self._entries.items()):
            if not state.subscribers or state.fetcher is None or self.is_fetching(key):
                continue
            if not self.get(key).is_stale(now):
                continue
            tasks.append(self._start_fetch(key))
        if tasks:
            self.logger.info("Refetching mounted entries", reason=reason, count=len(tasks))
        return tasks

    def _notify(self, key: QueryKey) -> None:
        state = self._entries.get(key)
        if state is None or not state.subscribers:
            return

        snapshot = state.snapshot(self.is_fetching(key))
        self._notify_depth[key] = self._notify_depth.get(key, 0) + 1
        try:
            for subscription in list(state.subscribers):
                try:
                    subscription.callback(snapshot)
                except Exception as e:
                    self.logger.error("Subscriber callback failed", key=key, error=str(e), exc_info=True)
        finally:
            depth = self._notify_depth[key] - 1
            if depth:
                self._notify_depth[key] = depth
            else:
                del self._notify_depth[key]

    def _schedule_gc(self, key: QueryKey) -> None:
        state = self._entries.get(key)
        if state is None:
            return
        self._cancel_gc(state)
        state.gc_handle = self.scheduler.call_later(state.expire_after, lambda: self._evict(key, state))

    def _cancel_gc(self, state: _EntryState) -> None:
        if state.gc_handle is not None:
            state.gc_handle.cancel()
            state.gc_handle = None

    def _evict(self, key: QueryKey, state: _EntryState) -> None:
        current = self._entries.get(key)
        if current is not state:
            return
        state.gc_handle = None
        if state.subscribers or self.is_fetching(key):
            return
        del self._entries[key]
        self._update_size()
        if self.metrics:
            self.metrics.increment_counter("cache_evictions_total")
        self.logger.debug("Evicted cache entry", key=key)

    def _record_read(self, resource: str, outcome: str) -> None:
        if self.metrics:
            self.metrics.record_cache_read(resource, outcome)

    def _record_fetch(self, resource: str, outcome: str) -> None:
        if self.metrics:
            self.metrics.record_fetch(resource, outcome)

    def _update_size(self) -> None:
        if self.metrics:
            self.metrics.set_gauge("cache_entries", len(self._entries))
