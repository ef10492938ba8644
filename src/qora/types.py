"""Shared type aliases for the qora cache library."""

from collections.abc import Awaitable, Callable
from datetime import timedelta
from types import TracebackType
from typing import Any, TypeVar

T = TypeVar("T")

# "30s", "5m", "2h", "1d", milliseconds, or a timedelta
Duration = str | int | timedelta

# Async function producing the data for a query
Fetcher = Callable[[], Awaitable[T]]

# Raw key input: a QueryKey, or a list/tuple of JSON-like parts
RawKey = Any

# Transforms a raw fetch error before it is stored in a Failure state
ErrorMapper = Callable[[BaseException, TracebackType | None], BaseException]

# Millisecond wall-clock timestamp
Timestamp = int
