"""Tests for QoraClient."""

import asyncio
import logging
from typing import Any

import pytest

from qora import (
    DisposedError,
    Failure,
    Initial,
    Loading,
    NetworkStatus,
    QoraClient,
    QoraClientConfig,
    QoraError,
    QoraOptions,
    QueryDisabledError,
    QueryKey,
    Success,
)

KEY = ["users", 1]


def opts(**kwargs: Any) -> QoraOptions:
    """Per-query options with instant retries."""
    return QoraOptions(retry_delay=0, **kwargs)


async def settle() -> None:
    """Give background fetches a chance to finish."""
    await asyncio.sleep(0.01)


class TestFetchQuery:
    """Tests for fetch_query basics."""

    async def test_fetch_stores_success(self, client, make_fetcher) -> None:
        fetcher = make_fetcher("alice")
        assert await client.fetch_query(KEY, fetcher) == "alice"
        state = client.get_query_state(KEY)
        assert isinstance(state, Success)
        assert state.data == "alice"
        assert fetcher.calls == 1

    async def test_state_is_loading_before_await(self, client, make_fetcher) -> None:
        """Bookkeeping happens synchronously inside fetch_query."""
        result = client.fetch_query(KEY, make_fetcher("alice"))
        assert client.get_query_state(KEY) == Loading()
        assert client.debug_info()["pending_requests"] == 1
        assert await result == "alice"
        assert client.debug_info()["pending_requests"] == 0

    async def test_equal_keys_share_an_entry(self, client, make_fetcher) -> None:
        fetcher = make_fetcher("x")
        await client.fetch_query(["q", {"a": 1, "b": 2}], fetcher, opts(stale_time="1m"))
        await client.fetch_query(("q", {"b": 2, "a": 1}), fetcher, opts(stale_time="1m"))
        assert fetcher.calls == 1
        assert len(client.cached_keys) == 1

    async def test_invalid_key(self, client, make_fetcher) -> None:
        with pytest.raises(TypeError):
            client.fetch_query("users", make_fetcher())


class TestDeduplication:
    async def test_concurrent_calls_fetch_once(self, client, make_fetcher) -> None:
        fetcher = make_fetcher("shared", delay=0.01)
        results = await asyncio.gather(
            *(client.fetch_query(KEY, fetcher) for _ in range(10))
        )
        assert results == ["shared"] * 10
        assert fetcher.calls == 1

    async def test_concurrent_failures_fetch_once(self, client, make_fetcher) -> None:
        fetcher = make_fetcher(failures=100, delay=0.001)
        first = client.fetch_query(KEY, fetcher, opts(retry_count=0))
        second = client.fetch_query(KEY, fetcher, opts(retry_count=0))
        results = await asyncio.gather(first, second, return_exceptions=True)
        assert all(isinstance(r, RuntimeError) for r in results)
        assert fetcher.calls == 1

    async def test_cancelled_waiter_does_not_cancel_fetch(self, client, make_fetcher) -> None:
        fetcher = make_fetcher("v", delay=0.02)

        async def wait() -> Any:
            return await client.fetch_query(KEY, fetcher)

        first = asyncio.create_task(wait())
        second = asyncio.create_task(wait())
        await asyncio.sleep(0)
        first.cancel()
        with pytest.raises(asyncio.CancelledError):
            await first
        assert await second == "v"
        assert fetcher.calls == 1
        assert client.get_query_data(KEY) == "v"


class TestFreshness:
    """Fresh hits and stale-while-revalidate."""

    async def test_fresh_hit_skips_fetcher(self, client, make_fetcher) -> None:
        fetcher = make_fetcher("A")
        options = opts(stale_time="10s")
        assert await client.fetch_query(["u", 1], fetcher, options) == "A"
        result = client.fetch_query(["u", 1], fetcher, options)
        assert result.from_cache
        assert result.revalidation is None
        assert await result == "A"
        assert fetcher.calls == 1

    async def test_stale_returns_cached_then_revalidates(self, client, make_fetcher) -> None:
        await client.fetch_query(KEY, make_fetcher("old"))
        await asyncio.sleep(0.005)

        fetcher = make_fetcher("new", delay=0.01)
        result = client.fetch_query(KEY, fetcher)
        assert result.from_cache
        assert client.get_query_state(KEY) == Loading(previous_data="old")

        # The stale value comes back without waiting on the fetch.
        assert await result == "old"
        assert client.get_query_data(KEY) == "old"

        assert result.revalidation is not None
        assert await result.revalidation == "new"
        assert client.get_query_data(KEY) == "new"
        assert fetcher.calls == 1

    async def test_unawaited_revalidation_still_updates(self, client, make_fetcher) -> None:
        await client.fetch_query(KEY, make_fetcher("old"))
        await asyncio.sleep(0.005)
        assert await client.fetch_query(KEY, make_fetcher("new")) == "old"
        await settle()
        assert client.get_query_data(KEY) == "new"


class TestRetry:
    async def test_recovers_after_failures(self, client, make_fetcher) -> None:
        fetcher = make_fetcher("ok", failures=2)
        assert await client.fetch_query(KEY, fetcher, opts(retry_count=3)) == "ok"
        assert fetcher.calls == 3
        assert isinstance(client.get_query_state(KEY), Success)

    async def test_gives_up_after_retry_count(self, client, make_fetcher) -> None:
        fetcher = make_fetcher(failures=100)
        with pytest.raises(RuntimeError, match="boom"):
            await client.fetch_query(KEY, fetcher, opts(retry_count=2))
        assert fetcher.calls == 3
        state = client.get_query_state(KEY)
        assert isinstance(state, Failure)
        assert state.previous_data is None
        assert state.stack_trace is not None

    async def test_failure_keeps_previous_data(self, client, make_fetcher) -> None:
        await client.fetch_query(KEY, make_fetcher("good"))
        await asyncio.sleep(0.005)

        fetcher = make_fetcher(failures=100)
        result = client.fetch_query(KEY, fetcher, opts(retry_count=1))
        assert await result == "good"
        with pytest.raises(RuntimeError):
            await result.revalidation
        assert fetcher.calls == 2
        state = client.get_query_state(KEY)
        assert isinstance(state, Failure)
        assert state.previous_data == "good"
        assert client.get_query_data(KEY) == "good"

    async def test_backoff_delays(self, client, make_fetcher) -> None:
        fetcher = make_fetcher("ok", failures=2)
        loop = asyncio.get_running_loop()
        started = loop.time()
        await client.fetch_query(KEY, fetcher, QoraOptions(retry_count=2, retry_delay="10ms"))
        # 10ms + 20ms of backoff
        assert loop.time() - started >= 0.029

    async def test_error_mapper(self, tracker, make_fetcher) -> None:
        config = QoraClientConfig(
            default_options=opts(retry_count=0),
            error_mapper=lambda err, tb: QoraError("mapped", original_error=err),
        )
        client = QoraClient(config, tracker=tracker)
        with pytest.raises(QoraError, match="mapped") as exc_info:
            await client.fetch_query(KEY, make_fetcher(failures=1))
        assert isinstance(exc_info.value.original_error, RuntimeError)
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        state = client.get_query_state(KEY)
        assert state.error_or_none is exc_info.value
        client.dispose()


class TestDisabled:
    async def test_disabled_writes_failure_without_fetching(self, client, make_fetcher) -> None:
        fetcher = make_fetcher()
        assert await client.fetch_query(KEY, fetcher, opts(enabled=False)) is None
        assert fetcher.calls == 0
        state = client.get_query_state(KEY)
        assert isinstance(state, Failure)
        assert state.error == QueryDisabledError(QueryKey.of("users", 1))

    async def test_disabled_keeps_last_data(self, client, make_fetcher) -> None:
        await client.fetch_query(KEY, make_fetcher("cached"))
        assert await client.fetch_query(KEY, make_fetcher(), opts(enabled=False)) == "cached"
        assert client.get_query_state(KEY).previous_data == "cached"


class TestManualWrites:
    async def test_set_query_data(self, client, tracker) -> None:
        client.set_query_data(KEY, {"name": "x"})
        assert client.get_query_data(KEY) == {"name": "x"}
        assert ("on_optimistic_update", ('["users", 1]', {"name": "x"})) in tracker.calls

    async def test_set_query_data_leaves_in_flight_alone(self, client, make_fetcher) -> None:
        result = client.fetch_query(KEY, make_fetcher("server", delay=0.01))
        client.set_query_data(KEY, "optimistic")
        assert client.debug_info()["pending_requests"] == 1
        assert await result == "server"
        assert client.get_query_data(KEY) == "server"

    async def test_restore_rolls_back(self, client) -> None:
        client.set_query_data(KEY, ["a", "b"])
        snapshot = client.get_query_data(KEY)
        client.set_query_data(KEY, ["a", "b", "c"])
        client.restore_query_data(KEY, snapshot)
        state = client.get_query_state(KEY)
        assert isinstance(state, Success)
        assert state.data == ["a", "b"]

    async def test_restore_none_evicts(self, client) -> None:
        client.set_query_data(KEY, "x")
        client.restore_query_data(KEY, None)
        assert client.get_query_state(KEY) == Initial()
        assert QueryKey.of("users", 1) not in client.cached_keys


class TestInvalidation:
    async def test_invalidate_triggers_revalidation_on_next_access(
        self, client, make_fetcher, tracker
    ) -> None:
        fetcher = make_fetcher(lambda n: f"v{n}")
        options = opts(stale_time="1h")
        await client.fetch_query(KEY, fetcher, options)

        client.invalidate(KEY)
        # Marked stale, not refetched.
        assert fetcher.calls == 1
        assert client.get_query_data(KEY) == "v1"
        assert ("on_query_invalidated", ('["users", 1]',)) in tracker.calls

        result = client.fetch_query(KEY, fetcher, options)
        assert await result == "v1"
        assert await result.revalidation == "v2"
        assert fetcher.calls == 2

    async def test_invalidate_unknown_key_is_noop(self, client, tracker) -> None:
        client.invalidate(["missing"])
        assert "on_query_invalidated" not in tracker.names()

    async def test_invalidate_forgets_in_flight_request(self, client) -> None:
        delays = {1: 0.03, 2: 0.005}
        calls = 0

        async def fetcher() -> int:
            nonlocal calls
            calls += 1
            n = calls
            await asyncio.sleep(delays[n])
            return n

        first = client.fetch_query(KEY, fetcher)
        client.invalidate(KEY)
        second = client.fetch_query(KEY, fetcher)
        assert await second == 2
        # The cancelled request still answers its caller but is not cached.
        assert await first == 1
        assert client.get_query_data(KEY) == 2
        assert calls == 2

    async def test_invalidate_mid_flight_settles_watchers(self, client, make_fetcher) -> None:
        seen = []
        fetcher = make_fetcher("alice", delay=0.01)
        options = opts(stale_time="1h")
        sub = client.watch_query(KEY, fetcher, options, on_next=seen.append)
        client.invalidate(KEY)
        await asyncio.sleep(0.03)

        assert isinstance(seen[-1], Success)
        assert seen[-1].data == "alice"
        assert client.debug_info()["pending_requests"] == 0

        # Still stale: the next access revalidates.
        result = client.fetch_query(KEY, fetcher, options)
        assert await result == "alice"
        assert result.revalidation is not None
        await result.revalidation
        assert fetcher.calls == 2
        sub.unsubscribe()

    async def test_invalidate_mid_flight_settles_failure(self, client, make_fetcher) -> None:
        fetcher = make_fetcher(failures=1, delay=0.01)
        sub = client.watch_query(KEY, fetcher, opts(retry_count=0))
        client.invalidate(KEY)
        await asyncio.sleep(0.03)
        assert isinstance(sub.state, Failure)
        sub.unsubscribe()

    async def test_invalidate_where(self, client) -> None:
        client.set_query_data(["posts", 1], "p1")
        client.set_query_data(["posts", 2], "p2")
        client.set_query_data(["users", 1], "u1")
        matched = client.invalidate_where(lambda key: key.starts_with(["posts"]))
        assert matched == [QueryKey.of("posts", 1), QueryKey.of("posts", 2)]


class TestRemoval:
    async def test_remove_query_completes_watchers(self, client, make_fetcher) -> None:
        closed = []
        client.watch_query(KEY, make_fetcher(), on_close=lambda: closed.append(True))
        client.remove_query(KEY)
        assert closed == [True]
        assert client.cached_keys == []

    async def test_remove_discards_in_flight_result(self, client, make_fetcher) -> None:
        result = client.fetch_query(KEY, make_fetcher("late", delay=0.01))
        client.remove_query(KEY)
        assert client.debug_info()["pending_requests"] == 0
        assert await result == "late"
        assert client.get_query_state(KEY) == Initial()

    async def test_clear(self, client, tracker) -> None:
        client.set_query_data(["a"], 1)
        client.set_query_data(["b"], 2)
        client.clear()
        assert client.cached_keys == []
        assert "on_cache_cleared" in tracker.names()


class TestWatchQuery:
    async def test_fetches_on_first_subscribe(self, client, make_fetcher) -> None:
        seen = []
        fetcher = make_fetcher("alice")
        sub = client.watch_query(KEY, fetcher, on_next=seen.append)
        await settle()
        assert seen[0] == Initial()
        assert seen[1] == Loading()
        assert isinstance(seen[2], Success)
        assert sub.state.data_or_none == "alice"
        assert fetcher.calls == 1
        sub.unsubscribe()

    async def test_async_iteration(self, client, make_fetcher) -> None:
        sub = client.watch_query(KEY, make_fetcher("alice"))
        async with sub:
            async for state in sub:
                if state.is_success:
                    break
        assert state.data_or_none == "alice"

    async def test_fresh_data_not_refetched_on_mount(self, client, make_fetcher) -> None:
        fetcher = make_fetcher("x")
        options = opts(stale_time="1h")
        await client.fetch_query(KEY, fetcher, options)
        seen = []
        client.watch_query(KEY, fetcher, options, on_next=seen.append)
        await settle()
        assert fetcher.calls == 1
        assert len(seen) == 1

    async def test_stale_data_refetched_on_mount(self, client, make_fetcher) -> None:
        fetcher = make_fetcher("x")
        await client.fetch_query(KEY, fetcher)
        await asyncio.sleep(0.005)
        client.watch_query(KEY, fetcher)
        await settle()
        assert fetcher.calls == 2

    async def test_refetch_on_mount_disabled(self, client, make_fetcher) -> None:
        fetcher = make_fetcher("x")
        await client.fetch_query(KEY, fetcher)
        await asyncio.sleep(0.005)
        client.watch_query(KEY, fetcher, opts(refetch_on_mount=False))
        await settle()
        assert fetcher.calls == 1

    async def test_disabled_watch_does_not_fetch(self, client, make_fetcher) -> None:
        fetcher = make_fetcher()
        sub = client.watch_query(KEY, fetcher, opts(enabled=False))
        await settle()
        assert fetcher.calls == 0
        assert sub.state == Initial()

    async def test_refetch_interval_polls_while_subscribed(self, client, make_fetcher) -> None:
        fetcher = make_fetcher("tick")
        sub = client.watch_query(KEY, fetcher, opts(refetch_interval="15ms"))
        await asyncio.sleep(0.08)
        assert fetcher.calls >= 3
        sub.unsubscribe()
        calls = fetcher.calls
        await asyncio.sleep(0.05)
        assert fetcher.calls == calls

    async def test_gc_after_last_unsubscribe(self, client, make_fetcher) -> None:
        options = opts(cache_time="20ms")
        first = client.watch_query(KEY, make_fetcher(), options)
        second = client.watch_query(KEY, make_fetcher(), options)
        first.unsubscribe()
        await asyncio.sleep(0.05)
        assert QueryKey.of("users", 1) in client.cached_keys
        second.unsubscribe()
        await asyncio.sleep(0.05)
        assert client.cached_keys == []

    async def test_resubscribe_cancels_gc(self, client, make_fetcher) -> None:
        options = opts(cache_time="20ms")
        client.watch_query(KEY, make_fetcher(), options).unsubscribe()
        client.watch_state(KEY)
        await asyncio.sleep(0.05)
        assert QueryKey.of("users", 1) in client.cached_keys


class TestWatchState:
    async def test_never_fetches(self, client, make_fetcher) -> None:
        seen = []
        client.watch_state(KEY, on_next=seen.append)
        await settle()
        assert seen == [Initial()]
        client.set_query_data(KEY, "pushed")
        assert seen[-1].data_or_none == "pushed"

    async def test_observes_other_fetches(self, client, make_fetcher) -> None:
        seen = []
        client.watch_state(KEY, on_next=seen.append)
        await client.fetch_query(KEY, make_fetcher("x"))
        assert [s.status.value for s in seen] == ["initial", "loading", "success"]


class TestPrefetch:
    async def test_prefetch_populates_cache(self, client, make_fetcher) -> None:
        await client.prefetch(KEY, make_fetcher("warm"))
        assert client.get_query_data(KEY) == "warm"

    async def test_prefetch_skips_fresh(self, client, make_fetcher) -> None:
        fetcher = make_fetcher("warm")
        options = opts(stale_time="1h")
        await client.prefetch(KEY, fetcher, options)
        await client.prefetch(KEY, fetcher, options)
        assert fetcher.calls == 1

    async def test_prefetch_waits_for_stale_revalidation(self, client, make_fetcher) -> None:
        await client.prefetch(KEY, make_fetcher("old"))
        await asyncio.sleep(0.005)
        await client.prefetch(KEY, make_fetcher("new"))
        assert client.get_query_data(KEY) == "new"

    async def test_prefetch_contains_errors(self, client, make_fetcher) -> None:
        await client.prefetch(KEY, make_fetcher(failures=100), opts(retry_count=0))
        assert isinstance(client.get_query_state(KEY), Failure)


class TestRefetchSignals:
    async def test_refetch_reruns_watched_fetcher(self, client, make_fetcher) -> None:
        fetcher = make_fetcher(lambda n: n)
        client.watch_query(KEY, fetcher, opts(stale_time="1h"))
        await settle()
        result = client.refetch(KEY)
        assert result is not None
        assert await result == 2
        assert client.get_query_data(KEY) == 2

    async def test_refetch_unknown_key(self, client) -> None:
        assert client.refetch(["nothing"]) is None

    async def test_reconnect_refetches_stale_watched_queries(self, client, make_fetcher) -> None:
        fetcher = make_fetcher("x")
        client.watch_query(KEY, fetcher)
        await settle()
        assert client.on_network_status(NetworkStatus.OFFLINE) == []
        assert client.on_network_status(NetworkStatus.ONLINE) == [QueryKey.of("users", 1)]
        await settle()
        assert fetcher.calls == 2
        assert client.network_status is NetworkStatus.ONLINE

    async def test_reconnect_respects_option(self, client, make_fetcher) -> None:
        client.watch_query(KEY, make_fetcher(), opts(refetch_on_reconnect=False))
        await settle()
        client.on_network_status(NetworkStatus.OFFLINE)
        assert client.on_network_status(NetworkStatus.ONLINE) == []

    async def test_focus_regained(self, client, make_fetcher) -> None:
        fetcher = make_fetcher("x")
        client.watch_query(KEY, fetcher)
        await settle()
        assert client.on_focus_change(True) == []
        assert client.on_focus_change(False) == []
        assert client.on_focus_change(True) == [QueryKey.of("users", 1)]

    async def test_unwatched_queries_are_not_refetched(self, client, make_fetcher) -> None:
        await client.fetch_query(KEY, make_fetcher())
        client.on_focus_change(False)
        assert client.on_focus_change(True) == []


class TestEviction:
    async def test_periodic_sweep(self, tracker, make_fetcher) -> None:
        evicted = []
        config = QoraClientConfig(
            default_options=opts(cache_time="10ms"),
            eviction_interval="20ms",
            on_cache_evict=evicted.append,
        )
        client = QoraClient(config, tracker=tracker)
        await client.fetch_query(KEY, make_fetcher())
        await asyncio.sleep(0.1)
        assert client.cached_keys == []
        assert evicted == [QueryKey.of("users", 1)]
        client.dispose()

    async def test_manual_sweep(self, tracker) -> None:
        client = QoraClient(QoraClientConfig(default_options=opts(cache_time="5ms")))
        client.set_query_data(["a"], 1)
        await asyncio.sleep(0.02)
        client.set_query_data(["b"], 2)
        assert client.sweep() == [QueryKey.of("a")]
        client.dispose()

    async def test_sweep_honours_query_cache_time(self, make_fetcher) -> None:
        client = QoraClient(QoraClientConfig(default_options=opts(cache_time="5ms")))
        client.set_query_data(["short"], 1)
        await client.fetch_query(["long"], make_fetcher(), opts(cache_time="1h"))
        await asyncio.sleep(0.02)
        assert client.sweep() == [QueryKey.of("short")]
        assert client.cached_keys == [QueryKey.of("long")]
        client.dispose()

    async def test_max_cache_size(self) -> None:
        evicted = []
        client = QoraClient(
            QoraClientConfig(max_cache_size=2, on_cache_evict=evicted.append)
        )
        for name in ("a", "b", "c"):
            client.set_query_data([name], name)
        assert evicted == [QueryKey.of("a")]
        assert client.debug_info()["total_queries"] == 2
        client.dispose()


class TestObservability:
    async def test_fetch_hooks(self, client, tracker, make_fetcher) -> None:
        await client.fetch_query(KEY, make_fetcher("x"))
        with pytest.raises(RuntimeError):
            await client.fetch_query(["bad"], make_fetcher(failures=100), opts(retry_count=0))
        fetched = [args for name, args in tracker.calls if name == "on_query_fetched"]
        assert fetched[0] == ('["users", 1]', "x", "success")
        assert fetched[1][0] == '["bad"]'
        assert fetched[1][2] == "error"

    async def test_hook_errors_are_logged_and_ignored(self, make_fetcher, caplog) -> None:
        class Broken:
            def __getattr__(self, name: str) -> Any:
                def hook(*args: Any) -> None:
                    raise RuntimeError(f"{name} failed")

                return hook

        client = QoraClient(tracker=Broken())  # type: ignore[arg-type]
        with caplog.at_level(logging.WARNING, logger="qora"):
            assert await client.fetch_query(KEY, make_fetcher("x")) == "x"
            client.clear()
        assert "Tracker hook on_query_fetched raised" in caplog.text
        assert "Tracker hook on_cache_cleared raised" in caplog.text
        client.dispose()

    async def test_debug_logging(self, client, make_fetcher, caplog) -> None:
        with caplog.at_level(logging.DEBUG, logger="qora"):
            fetcher = make_fetcher("x")
            await client.fetch_query(KEY, fetcher, opts(stale_time="1m"))
            await client.fetch_query(KEY, fetcher, opts(stale_time="1m"))
        assert "Cache MISS" in caplog.text
        assert "Cache HIT (fresh)" in caplog.text

    async def test_exhausted_retries_logged_as_warning(self, client, make_fetcher, caplog) -> None:
        with caplog.at_level(logging.WARNING, logger="qora"):
            with pytest.raises(RuntimeError):
                await client.fetch_query(KEY, make_fetcher(failures=100), opts(retry_count=1))
        assert "failed after 2 attempt(s)" in caplog.text

    async def test_debug_info(self, client, make_fetcher) -> None:
        client.watch_query(["a"], make_fetcher(delay=0.01))
        client.set_query_data(["b"], 1)
        info = client.debug_info()
        assert info["total_queries"] == 2
        assert info["active_queries"] == 1
        assert info["pending_requests"] == 1
        assert info["active_mutations"] == 0


class TestDispose:
    async def test_commands_raise_after_dispose(self, make_fetcher) -> None:
        client = QoraClient()
        client.dispose()
        client.dispose()  # idempotent
        assert client.is_disposed
        with pytest.raises(DisposedError):
            client.fetch_query(KEY, make_fetcher())
        with pytest.raises(DisposedError):
            client.set_query_data(KEY, 1)
        with pytest.raises(DisposedError):
            client.watch_query(KEY, make_fetcher())
        with pytest.raises(DisposedError):
            await client.prefetch(KEY, make_fetcher())

    async def test_dispose_releases_resources(self, tracker, make_fetcher) -> None:
        client = QoraClient(tracker=tracker)
        closed = []
        client.watch_query(KEY, make_fetcher(delay=0.05), on_close=lambda: closed.append(True))
        client.dispose()
        await asyncio.sleep(0)
        assert closed == [True]
        assert tracker.names()[-1] == "dispose"
        assert client.debug_info()["total_queries"] == 0
