"""QueryAwaitable - the value returned by QoraClient.fetch_query().

fetch_query() does all of its bookkeeping synchronously (dedup check,
state transition, in-flight registration) and hands back this awaitable.

Usage:
    result = client.fetch_query(["users", 1], fetch_user)
    user = await result                 # T
    if result.revalidation is not None: # stale data was served
        fresh = await result.revalidation
"""

from __future__ import annotations

from collections.abc import Callable, Coroutine, Generator
from typing import Any, Generic, TypeVar

T = TypeVar("T")


class QueryAwaitable(Generic[T]):
    """An awaitable that returns T, with cache-hit metadata.

    Nothing runs until it is awaited, so dropping it is harmless.
    """

    __slots__ = ("_from_cache", "_revalidation", "_value_fn")

    def __init__(
        self,
        value_fn: Callable[[], Coroutine[Any, Any, T]],
        *,
        from_cache: bool = False,
        revalidation: QueryAwaitable[T] | None = None,
    ) -> None:
        self._value_fn = value_fn
        self._from_cache = from_cache
        self._revalidation = revalidation

    def __await__(self) -> Generator[Any, None, T]:
        return self._value_fn().__await__()

    @property
    def from_cache(self) -> bool:
        """True if the value was served from cache without waiting on a fetch."""
        return self._from_cache

    @property
    def revalidation(self) -> QueryAwaitable[T] | None:
        """The background revalidation started by a stale hit, if any."""
        return self._revalidation

    @classmethod
    def resolved(
        cls, value: T, *, revalidation: QueryAwaitable[T] | None = None
    ) -> QueryAwaitable[T]:
        """An awaitable that immediately returns a cached value."""

        async def _value() -> T:
            return value

        return cls(_value, from_cache=True, revalidation=revalidation)


__all__ = ["QueryAwaitable"]
