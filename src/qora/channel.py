"""Replay-then-forward notification channel.

Every cache entry and mutation controller owns one Channel. A new
Subscription immediately receives the channel's current value, then every
subsequent emission in order. Subscriptions can be consumed with a callback,
with `async for`, or both.

Subscribing or unsubscribing from inside a listener is safe: emission walks a
snapshot of the subscriber list and skips subscriptions that were closed
mid-walk.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import suppress
from types import TracebackType
from typing import Generic, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)

_DONE = object()


class Subscription(Generic[T]):
    """A live view on a Channel."""

    __slots__ = (
        "_active",
        "_channel",
        "_latest",
        "_on_close",
        "_on_next",
        "_on_unsubscribe",
        "_queue",
    )

    def __init__(
        self,
        channel: Channel[T],
        on_next: Callable[[T], None] | None = None,
        on_close: Callable[[], None] | None = None,
    ) -> None:
        self._channel = channel
        self._on_next = on_next
        self._on_close = on_close
        self._on_unsubscribe: list[Callable[[], None]] = []
        self._latest: T = channel.value
        self._active = True
        self._queue: asyncio.Queue[object] | None = None

    @property
    def state(self) -> T:
        """The most recent value delivered to this subscription."""
        return self._latest

    @property
    def active(self) -> bool:
        return self._active

    def add_unsubscribe_hook(self, hook: Callable[[], None]) -> None:
        """Register a callback run once when unsubscribe() is called."""
        self._on_unsubscribe.append(hook)

    def unsubscribe(self) -> None:
        """Stop receiving values. Idempotent."""
        if not self._active:
            return
        self._finish()
        self._channel._detach(self)
        hooks, self._on_unsubscribe = self._on_unsubscribe, []
        for hook in hooks:
            hook()

    close = unsubscribe

    # -- channel side ---------------------------------------------------------

    def _deliver(self, value: T) -> None:
        if not self._active:
            return
        self._latest = value
        if self._queue is not None:
            self._queue.put_nowait(value)
        if self._on_next is not None:
            try:
                self._on_next(value)
            except Exception:
                logger.warning("Subscriber callback raised", exc_info=True)

    def _channel_closed(self) -> None:
        if not self._active:
            return
        self._finish()
        self._on_unsubscribe = []
        if self._on_close is not None:
            self._on_close()

    def _finish(self) -> None:
        self._active = False
        if self._queue is not None:
            self._queue.put_nowait(_DONE)

    # -- async iteration -----------------------------------------------------

    def __aiter__(self) -> AsyncIterator[T]:
        if self._queue is None:
            self._queue = asyncio.Queue()
            self._queue.put_nowait(self._latest)
            if not self._active:
                self._queue.put_nowait(_DONE)
        return self

    async def __anext__(self) -> T:
        if self._queue is None:
            self.__aiter__()
        assert self._queue is not None
        item = await self._queue.get()
        if item is _DONE:
            # Leave the sentinel for any other waiter.
            self._queue.put_nowait(_DONE)
            raise StopAsyncIteration
        return item  # type: ignore[return-value]

    # -- context managers ----------------------------------------------------

    def __enter__(self) -> Subscription[T]:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.unsubscribe()

    async def __aenter__(self) -> Subscription[T]:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.unsubscribe()


class Channel(Generic[T]):
    """Multicast channel holding a current value."""

    __slots__ = ("_closed", "_subscriptions", "_value")

    def __init__(self, initial: T) -> None:
        self._value = initial
        self._subscriptions: list[Subscription[T]] = []
        self._closed = False

    @property
    def value(self) -> T:
        return self._value

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(
        self,
        on_next: Callable[[T], None] | None = None,
        on_close: Callable[[], None] | None = None,
    ) -> Subscription[T]:
        """Subscribe; on_next is called with the current value right away.

        Subscribing to a closed channel returns an already-finished
        subscription that still reports the last value.
        """
        subscription = Subscription(self, on_next, on_close)
        if self._closed:
            subscription._channel_closed()
            return subscription
        self._subscriptions.append(subscription)
        if on_next is not None:
            try:
                on_next(self._value)
            except Exception:
                logger.warning("Subscriber callback raised", exc_info=True)
        return subscription

    def emit(self, value: T) -> None:
        """Set the current value and forward it to every subscriber."""
        if self._closed:
            return
        self._value = value
        for subscription in tuple(self._subscriptions):
            subscription._deliver(value)

    def close(self) -> None:
        """Complete every subscription. No further values are emitted."""
        if self._closed:
            return
        self._closed = True
        subscriptions, self._subscriptions = self._subscriptions, []
        for subscription in subscriptions:
            subscription._channel_closed()

    def _detach(self, subscription: Subscription[T]) -> None:
        with suppress(ValueError):
            self._subscriptions.remove(subscription)


__all__ = ["Channel", "Subscription"]
