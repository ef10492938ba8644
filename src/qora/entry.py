"""CacheEntry - one per normalized key."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any, Generic, TypeVar

from qora.channel import Channel, Subscription
from qora.duration import now_ms
from qora.key import QueryKey
from qora.state import Initial, QoraState, Success
from qora.types import Timestamp

T = TypeVar("T")


class CacheEntry(Generic[T]):
    """Holds the state of one query plus its subscribers and timers.

    The entry is mutated in place by the client on every transition and
    must not be used after dispose().
    """

    def __init__(
        self,
        key: QueryKey,
        state: QoraState[T] | None = None,
        *,
        created_at: Timestamp | None = None,
    ) -> None:
        self.key = key
        self.created_at = created_at if created_at is not None else now_ms()
        self.last_accessed_at = self.created_at
        self.invalidated = False
        # Idle limit in ms set by the query's own options; overrides the cache-wide one.
        self.cache_time: int | None = None
        # Remembered by watch_query so refetch() can re-run the query.
        self.fetcher: Callable[[], Any] | None = None
        self.options: Any = None
        self._channel: Channel[QoraState[T]] = Channel(state or Initial())
        self._subscriber_count = 0
        self._gc_handle: asyncio.TimerHandle | None = None
        self._refetch_handle: asyncio.TimerHandle | None = None
        self._disposed = False

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def state(self) -> QoraState[T]:
        return self._channel.value

    def update_state(self, state: QoraState[T]) -> None:
        """Commit a transition and push it to subscribers. No-op once disposed."""
        if self._disposed:
            return
        if isinstance(state, Success):
            self.invalidated = False
        self.touch()
        self._channel.emit(state)

    def touch(self) -> None:
        self.last_accessed_at = now_ms()

    def is_stale(self, stale_time: int) -> bool:
        """True unless the entry holds a Success younger than stale_time ms."""
        state = self.state
        if self.invalidated or not isinstance(state, Success):
            return True
        return now_ms() - state.updated_at > stale_time

    def should_evict(self, cache_time: int) -> bool:
        """True when the entry has been idle longer than its own cache_time,
        or cache_time ms when it has none.
        """
        limit = self.cache_time if self.cache_time is not None else cache_time
        return now_ms() - self.last_accessed_at > limit

    # -------------------------------------------------------------------------
    # Subscribers
    # -------------------------------------------------------------------------

    @property
    def subscriber_count(self) -> int:
        return self._subscriber_count

    @property
    def is_active(self) -> bool:
        return self._subscriber_count > 0

    def subscribe(
        self,
        on_next: Callable[[QoraState[T]], None] | None = None,
        on_close: Callable[[], None] | None = None,
    ) -> Subscription[QoraState[T]]:
        """Subscribe to transitions, replaying the current state first."""
        subscription = self._channel.subscribe(on_next, on_close)
        if subscription.active:
            self._subscriber_count += 1
            self.cancel_gc()
            self.touch()
            subscription.add_unsubscribe_hook(self._release)
        return subscription

    def _release(self) -> None:
        if self._subscriber_count > 0:
            self._subscriber_count -= 1
        self.touch()

    # -------------------------------------------------------------------------
    # Timers
    # -------------------------------------------------------------------------

    def schedule_gc(self, delay_ms: int, callback: Callable[[], None]) -> None:
        """Arm (or re-arm) the GC timer. Needs a running event loop."""
        self.cancel_gc()
        if self._disposed:
            return
        loop = asyncio.get_running_loop()
        self._gc_handle = loop.call_later(delay_ms / 1000, callback)

    def cancel_gc(self) -> None:
        if self._gc_handle is not None:
            self._gc_handle.cancel()
            self._gc_handle = None

    def start_refetch_interval(self, interval_ms: int, callback: Callable[[], None]) -> None:
        """Call callback every interval_ms until cancelled or disposed."""
        self.cancel_refetch_interval()
        loop = asyncio.get_running_loop()

        def tick() -> None:
            if self._disposed:
                return
            self._refetch_handle = loop.call_later(interval_ms / 1000, tick)
            callback()

        self._refetch_handle = loop.call_later(interval_ms / 1000, tick)

    def cancel_refetch_interval(self) -> None:
        if self._refetch_handle is not None:
            self._refetch_handle.cancel()
            self._refetch_handle = None

    @property
    def has_gc_timer(self) -> bool:
        return self._gc_handle is not None

    @property
    def has_refetch_timer(self) -> bool:
        return self._refetch_handle is not None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    def dispose(self) -> None:
        """Cancel timers and complete all subscriptions."""
        if self._disposed:
            return
        self._disposed = True
        self.cancel_gc()
        self.cancel_refetch_interval()
        self._subscriber_count = 0
        self._channel.close()

    def __repr__(self) -> str:
        return (
            f"CacheEntry(key={self.key!r}, state={self.state!r}, "
            f"subscribers={self._subscriber_count})"
        )


__all__ = ["CacheEntry"]
