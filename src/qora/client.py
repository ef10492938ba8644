"""QoraClient - fetch orchestration over a QueryCache.

| Cache state        | fetch_query()                                       |
|--------------------|-----------------------------------------------------|
| Fresh Success      | cached data, no fetch                               |
| Stale Success      | cached data now, revalidation in the background     |
| Anything else      | Loading, then the fetched data (or the fetch error) |

Concurrent requests for one key share a single asyncio.Task.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from enum import Enum
from typing import Any, TypeVar

from qora.channel import Subscription
from qora.duration import parse_duration
from qora.entry import CacheEntry
from qora.errors import DisposedError, QueryDisabledError
from qora.key import QueryKey, normalize_key
from qora.mutation import MutationEvent, MutationState, mutation_event
from qora.options import QoraClientConfig, QoraOptions
from qora.query_awaitable import QueryAwaitable
from qora.query_cache import QueryCache
from qora.retry import execute_with_retry
from qora.state import Failure, Initial, Loading, QoraState, Success
from qora.tracking import NoOpTracker, QoraTracker
from qora.types import Fetcher, RawKey

T = TypeVar("T")

logger = logging.getLogger(__name__)


class NetworkStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    UNKNOWN = "unknown"


async def _await_shared(task: asyncio.Task[T]) -> T:
    # A cancelled waiter must not cancel the fetch other callers share.
    return await asyncio.shield(task)


class QoraClient:
    """Async query cache with stale-while-revalidate, dedup and retry.

    Usage:
        client = QoraClient(QoraClientConfig(
            default_options=QoraOptions(stale_time="30s"),
        ))
        user = await client.fetch_query(["users", 1], lambda: api.get_user(1))

        with client.watch_query(["users", 1], fetch_user, on_next=render):
            ...

    Also a MutationTracker: pass the client to a MutationController to see its
    transitions in active_mutations and subscribe_mutations().
    """

    def __init__(
        self,
        config: QoraClientConfig | None = None,
        *,
        tracker: QoraTracker | None = None,
    ) -> None:
        self.config = config or QoraClientConfig()
        self.tracker: QoraTracker = tracker or NoOpTracker()
        self._cache = QueryCache(
            max_size=self.config.max_cache_size,
            on_evict=self.config.on_cache_evict,
        )
        self._background_tasks: set[asyncio.Task[Any]] = set()
        self._sweep_handle: asyncio.TimerHandle | None = None
        self._active_mutations: dict[str, MutationEvent] = {}
        self._mutation_listeners: list[Callable[[MutationEvent], None]] = []
        self._network_status = NetworkStatus.UNKNOWN
        self._focused = True
        self._disposed = False

    # =========================================================================
    # Fetching
    # =========================================================================

    def fetch_query(
        self,
        key: RawKey,
        fetcher: Fetcher[T],
        options: QoraOptions | None = None,
    ) -> QueryAwaitable[T]:
        """Fetch data for key, serving the cache where possible.

        Everything up to the network call happens before this returns, so two
        calls in a row for one key never start two fetches.

        A stale hit returns the cached data right away; the background
        revalidation it started is available as `.revalidation`:

            result = client.fetch_query(key, fetcher)
            data = await result             # stale data, never blocks
            fresh = await result.revalidation

        A disabled query writes Failure(QueryDisabledError) and resolves to
        the last known data (or None) without fetching.

        Raises:
            DisposedError: immediately, if the client has been disposed.
            TypeError: if key is not a list, tuple or QueryKey.
        Awaiting raises the (mapped) fetch error once retries are exhausted.
        """
        self._assert_not_disposed()
        self._ensure_sweep()
        normalized = normalize_key(key)
        opts = self._resolve(options)
        entry = self._get_or_create(normalized)
        if options is not None:
            entry.cache_time = parse_duration(opts.cache_time)
        state = entry.state

        if not opts.enabled:
            last_known = state.data_or_none
            logger.debug("Query disabled: %s", normalized)
            entry.update_state(
                Failure(QueryDisabledError(normalized), previous_data=last_known)
            )
            return QueryAwaitable.resolved(last_known)

        in_flight = self._cache.get_in_flight(normalized)
        if in_flight is not None:
            logger.debug("Dedup: %s", normalized)
            return QueryAwaitable(lambda: _await_shared(in_flight))

        if isinstance(state, Success):
            if not entry.is_stale(parse_duration(opts.stale_time)):
                logger.debug("Cache HIT (fresh): %s", normalized)
                return QueryAwaitable.resolved(state.data)
            logger.debug("Cache HIT (stale): %s, revalidating", normalized)
            task = self._start_fetch(entry, fetcher, opts)
            return QueryAwaitable.resolved(
                state.data,
                revalidation=QueryAwaitable(lambda: _await_shared(task)),
            )

        task = self._start_fetch(entry, fetcher, opts)
        return QueryAwaitable(lambda: _await_shared(task))

    async def prefetch(
        self,
        key: RawKey,
        fetcher: Fetcher[Any],
        options: QoraOptions | None = None,
    ) -> None:
        """Warm the cache for key. No-op if the cached data is fresh.

        Fetch errors end up in the entry's Failure state and are not raised.
        """
        result = self.fetch_query(key, fetcher, options)
        try:
            await result
            if result.revalidation is not None:
                await result.revalidation
        except Exception as e:
            logger.debug("Prefetch failed for %s: %r", key, e)

    def refetch(self, key: RawKey) -> QueryAwaitable[Any] | None:
        """Re-run the fetcher remembered by the last watch_query() for key.

        Freshness is ignored. Returns None when key has never been watched
        or its query is disabled.
        """
        self._assert_not_disposed()
        entry = self._cache.peek(normalize_key(key))
        if entry is None or entry.fetcher is None or not entry.options.enabled:
            return None
        task = self._start_fetch(entry, entry.fetcher, entry.options)
        return QueryAwaitable(lambda: _await_shared(task))

    # =========================================================================
    # Subscriptions
    # =========================================================================

    def watch_query(
        self,
        key: RawKey,
        fetcher: Fetcher[T],
        options: QoraOptions | None = None,
        *,
        on_next: Callable[[QoraState[T]], None] | None = None,
        on_close: Callable[[], None] | None = None,
    ) -> Subscription[QoraState[T]]:
        """Subscribe to key, fetching when the data is missing or stale.

        The subscription receives the current state first, then every
        transition from any source. While subscribed, refetch_interval polls
        the fetcher. When the last subscriber leaves, the entry is removed
        after cache_time unless someone subscribes again.
        """
        self._assert_not_disposed()
        self._ensure_sweep()
        normalized = normalize_key(key)
        opts = self._resolve(options)
        entry = self._get_or_create(normalized)
        entry.fetcher = fetcher
        entry.options = opts
        if options is not None:
            entry.cache_time = parse_duration(opts.cache_time)

        subscription = entry.subscribe(on_next, on_close)
        subscription.add_unsubscribe_hook(
            lambda: self._on_watcher_left(entry, parse_duration(opts.cache_time))
        )

        if opts.enabled:
            refetch_on_mount = (
                opts.refetch_on_mount
                if opts.refetch_on_mount is not None
                else self.config.refetch_on_mount
            )
            stale = entry.is_stale(parse_duration(opts.stale_time))
            if isinstance(entry.state, Initial) or (refetch_on_mount and stale):
                self._start_fetch(entry, fetcher, opts)

            if opts.refetch_interval is not None:
                entry.start_refetch_interval(
                    parse_duration(opts.refetch_interval),
                    lambda: self._poll(entry, fetcher, opts),
                )
        return subscription

    def watch_state(
        self,
        key: RawKey,
        *,
        on_next: Callable[[QoraState[Any]], None] | None = None,
        on_close: Callable[[], None] | None = None,
    ) -> Subscription[QoraState[Any]]:
        """Observe key without ever triggering a fetch."""
        self._assert_not_disposed()
        self._ensure_sweep()
        entry = self._get_or_create(normalize_key(key))
        subscription = entry.subscribe(on_next, on_close)
        cache_time = parse_duration(self.config.default_options.cache_time)
        subscription.add_unsubscribe_hook(lambda: self._on_watcher_left(entry, cache_time))
        return subscription

    # =========================================================================
    # Manual writes
    # =========================================================================

    def set_query_data(self, key: RawKey, data: Any) -> None:
        """Write Success(data, now) for key. In-flight tracking is untouched."""
        self._assert_not_disposed()
        normalized = normalize_key(key)
        entry = self._get_or_create(normalized)
        entry.update_state(Success.now(data))
        self._safe_hook("on_optimistic_update", str(normalized), data)
        logger.debug("set_query_data: %s", normalized)

    def restore_query_data(self, key: RawKey, snapshot: Any) -> None:
        """Undo an optimistic write: write snapshot back, or remove key if None."""
        self._assert_not_disposed()
        if snapshot is None:
            self.remove_query(key)
        else:
            self.set_query_data(key, snapshot)

    # =========================================================================
    # Invalidation and removal
    # =========================================================================

    def invalidate(self, key: RawKey) -> None:
        """Mark key stale and forget its in-flight request.

        The state is left as is; the next fetch_query() or watch_query()
        revalidates. A fetch that was in flight still settles the entry
        unless a newer fetch has started for the key, and the entry stays
        stale afterwards.
        """
        self._assert_not_disposed()
        normalized = normalize_key(key)
        entry = self._cache.peek(normalized)
        if entry is None:
            return
        logger.debug("Invalidating: %s", normalized)
        entry.invalidated = True
        self._cache.cancel_in_flight(normalized)
        self._safe_hook("on_query_invalidated", str(normalized))

    def invalidate_where(self, predicate: Callable[[QueryKey], bool]) -> list[QueryKey]:
        """Invalidate every cached key matching predicate.

        Usage:
            client.invalidate_where(lambda key: key.starts_with(["posts"]))
        """
        self._assert_not_disposed()
        matched = self._cache.find_keys(predicate)
        for key in matched:
            self.invalidate(key)
        return matched

    def remove_query(self, key: RawKey) -> None:
        """Dispose the entry for key; its subscriptions complete."""
        self._assert_not_disposed()
        normalized = normalize_key(key)
        if self._cache.remove(normalized):
            logger.debug("Removed: %s", normalized)

    def clear(self) -> None:
        """Dispose every entry and forget all in-flight requests."""
        self._assert_not_disposed()
        self._cache.clear()
        self._safe_hook("on_cache_cleared")
        logger.debug("Cache cleared")

    def sweep(self) -> list[QueryKey]:
        """Evict every entry idle for longer than its cache_time.

        The cache_time of the last fetch_query() or watch_query() that passed
        options for a key applies to it; other keys use the default.
        """
        if self._disposed:
            return []
        return self._cache.sweep(parse_duration(self.config.default_options.cache_time))

    # =========================================================================
    # Reads
    # =========================================================================

    def get_query_data(self, key: RawKey) -> Any:
        """Success data or previous_data for key, else None."""
        self._assert_not_disposed()
        entry = self._cache.get(normalize_key(key))
        return entry.state.data_or_none if entry is not None else None

    def get_query_state(self, key: RawKey) -> QoraState[Any]:
        """Current state for key; Initial if nothing is cached."""
        self._assert_not_disposed()
        entry = self._cache.get(normalize_key(key))
        return entry.state if entry is not None else Initial()

    @property
    def cached_keys(self) -> list[QueryKey]:
        return self._cache.keys

    def debug_info(self) -> dict[str, Any]:
        return {
            **self._cache.debug_info(),
            "pending_requests": self._cache.in_flight_count,
            "active_mutations": len(self._active_mutations),
        }

    # =========================================================================
    # Environment signals
    # =========================================================================

    @property
    def network_status(self) -> NetworkStatus:
        return self._network_status

    def on_network_status(self, status: NetworkStatus) -> list[QueryKey]:
        """Record connectivity; coming back online refetches stale watched queries.

        Returns the keys that were refetched.
        """
        self._assert_not_disposed()
        previous, self._network_status = self._network_status, NetworkStatus(status)
        if self._network_status is NetworkStatus.ONLINE and previous is NetworkStatus.OFFLINE:
            logger.debug("Reconnected, refetching watched queries")
            return self._refetch_watched("refetch_on_reconnect")
        return []

    def on_focus_change(self, focused: bool) -> list[QueryKey]:
        """Record focus; regaining it refetches stale watched queries.

        Returns the keys that were refetched.
        """
        self._assert_not_disposed()
        regained = focused and not self._focused
        self._focused = focused
        if regained:
            logger.debug("Focus regained, refetching watched queries")
            return self._refetch_watched("refetch_on_window_focus")
        return []

    # =========================================================================
    # Mutation tracking
    # =========================================================================

    @property
    def active_mutations(self) -> Mapping[str, MutationEvent]:
        """Pending mutations by controller id. Finished ones are dropped."""
        return dict(self._active_mutations)

    def subscribe_mutations(
        self, listener: Callable[[MutationEvent], None]
    ) -> Callable[[], None]:
        """Call listener on every tracked mutation transition.

        Read active_mutations first for a snapshot. Returns an unsubscribe
        function.
        """
        self._assert_not_disposed()
        self._mutation_listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._mutation_listeners:
                self._mutation_listeners.remove(listener)

        return unsubscribe

    def track_mutation(
        self,
        id: str,
        state: MutationState[Any, Any],
        metadata: Mapping[str, Any] | None = None,
    ) -> None:
        if self._disposed:
            return
        event = mutation_event(id, state, metadata)

        if state.is_pending:
            query_key = (metadata or {}).get("query_key", "")
            self._safe_hook("on_mutation_started", id, str(query_key), event.variables)
            self._active_mutations[id] = event
        else:
            if state.is_finished:
                result = event.data if state.is_success else event.error
                self._safe_hook("on_mutation_settled", id, state.is_success, result)
            self._active_mutations.pop(id, None)

        for listener in tuple(self._mutation_listeners):
            try:
                listener(event)
            except Exception:
                logger.warning("Mutation listener raised", exc_info=True)
        logger.debug("Mutation [%s]: %s", id, event.status.value)

    def untrack_mutation(self, id: str) -> None:
        self._active_mutations.pop(id, None)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    def dispose(self) -> None:
        """Release every resource. The client must not be used afterwards."""
        if self._disposed:
            return
        self._disposed = True
        if self._sweep_handle is not None:
            self._sweep_handle.cancel()
            self._sweep_handle = None
        self._cache.clear()
        self._active_mutations.clear()
        self._mutation_listeners.clear()
        for task in list(self._background_tasks):
            task.cancel()
        self._safe_hook("dispose")
        logger.debug("QoraClient disposed")

    # =========================================================================
    # Internal
    # =========================================================================

    def _start_fetch(
        self, entry: CacheEntry[Any], fetcher: Fetcher[Any], opts: QoraOptions
    ) -> asyncio.Task[Any]:
        """Return the in-flight task for the entry's key, starting one if needed."""
        key = entry.key
        existing = self._cache.get_in_flight(key)
        if existing is not None:
            logger.debug("Dedup: %s", key)
            return existing

        loop = asyncio.get_running_loop()
        state = entry.state
        last_known = state.data_or_none
        entry.update_state(
            Loading(previous_data=state.data if isinstance(state, Success) else None)
        )
        task = loop.create_task(self._run_fetch(entry, fetcher, opts, last_known))
        self._cache.register_in_flight(key, task)
        self._background_tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    async def _run_fetch(
        self,
        entry: CacheEntry[Any],
        fetcher: Fetcher[Any],
        opts: QoraOptions,
        last_known: Any,
    ) -> Any:
        key = entry.key
        task = asyncio.current_task()
        try:
            data = await execute_with_retry(
                fetcher,
                retry_count=opts.retry_count,
                delay_for=opts.retry_delay_for,
                label=key,
            )
        except Exception as e:
            mapped = self._map_error(e)
            failure = Failure(mapped, stack_trace=e.__traceback__, previous_data=last_known)
            if self._commit(entry, task, failure):
                self._safe_hook("on_query_fetched", str(key), mapped, "error")
            logger.warning(
                "Query %s failed after %d attempt(s): %r", key, opts.retry_count + 1, mapped
            )
            if mapped is e:
                raise
            raise mapped from e

        if self._commit(entry, task, Success.now(data)):
            self._safe_hook("on_query_fetched", str(key), data, "success")
        else:
            logger.debug("Discarding result for %s: superseded or removed", key)
        return data

    def _commit(
        self, entry: CacheEntry[Any], task: asyncio.Task[Any] | None, state: QoraState[Any]
    ) -> bool:
        """Write a fetch result unless the entry was removed or a newer fetch owns it."""
        key = entry.key
        current = self._cache.get_in_flight(key)
        if current is task:
            self._cache.settle_in_flight(key, task)
            entry.update_state(state)
            return True
        if current is None and not entry.is_disposed and self._cache.peek(key) is entry:
            # Invalidated mid-flight: settle the state but keep the entry stale.
            entry.update_state(state)
            entry.invalidated = True
            return True
        return False

    def _on_task_done(self, task: asyncio.Task[Any]) -> None:
        self._background_tasks.discard(task)
        if not task.cancelled():
            # Failures are already in the entry's state; mark the error retrieved.
            task.exception()

    def _poll(self, entry: CacheEntry[Any], fetcher: Fetcher[Any], opts: QoraOptions) -> None:
        if self._disposed or not entry.is_active or entry.is_disposed:
            return
        logger.debug("Refetch interval: %s", entry.key)
        self._start_fetch(entry, fetcher, opts)

    def _refetch_watched(self, flag: str) -> list[QueryKey]:
        refetched = []
        for key, entry in self._cache.entries:
            opts = entry.options
            if (
                entry.is_active
                and entry.fetcher is not None
                and opts is not None
                and opts.enabled
                and getattr(opts, flag)
                and entry.is_stale(parse_duration(opts.stale_time))
            ):
                self._start_fetch(entry, entry.fetcher, opts)
                refetched.append(key)
        return refetched

    def _on_watcher_left(self, entry: CacheEntry[Any], cache_time: int) -> None:
        if entry.is_active or entry.is_disposed:
            return
        entry.cancel_refetch_interval()

        def collect() -> None:
            if not entry.is_active and self._cache.peek(entry.key) is entry:
                self._cache.remove(entry.key)
                logger.debug("GC removed: %s", entry.key)

        try:
            entry.schedule_gc(cache_time, collect)
        except RuntimeError:
            logger.debug("No running event loop; GC for %s left to lazy eviction", entry.key)

    def _get_or_create(self, key: QueryKey) -> CacheEntry[Any]:
        return self._cache.get_or_create(
            key, cache_time=parse_duration(self.config.default_options.cache_time)
        )

    def _resolve(self, options: QoraOptions | None) -> QoraOptions:
        return self.config.default_options.merge(options)

    def _map_error(self, error: Exception) -> BaseException:
        if self.config.error_mapper is None:
            return error
        return self.config.error_mapper(error, error.__traceback__)

    def _ensure_sweep(self) -> None:
        if self._sweep_handle is not None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        interval = parse_duration(self.config.eviction_interval) / 1000

        def tick() -> None:
            if self._disposed:
                return
            self._sweep_handle = loop.call_later(interval, tick)
            evicted = self.sweep()
            if evicted:
                logger.debug("Sweep evicted %d entries", len(evicted))

        self._sweep_handle = loop.call_later(interval, tick)

    def _safe_hook(self, name: str, *args: Any) -> None:
        try:
            getattr(self.tracker, name)(*args)
        except Exception:
            logger.warning("Tracker hook %s raised", name, exc_info=True)

    def _assert_not_disposed(self) -> None:
        if self._disposed:
            raise DisposedError("QoraClient")


__all__ = ["NetworkStatus", "QoraClient"]
