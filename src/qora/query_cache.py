"""QueryCache - keyed store of cache entries plus the in-flight registry.

Provides:
- get_or_create(): lazily create an Initial entry (with lazy idle eviction)
- remove(), clear(): dispose entries and drop their in-flight registrations
- sweep(): idle-time eviction used by the client's periodic timer
- optional LRU bound on the number of entries
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from collections.abc import Callable
from typing import Any

from qora.entry import CacheEntry
from qora.key import QueryKey
from qora.state import Success

logger = logging.getLogger(__name__)


class QueryCache:
    """Normalized key -> CacheEntry, with at most one in-flight task per key."""

    def __init__(
        self,
        *,
        max_size: int | None = None,
        on_evict: Callable[[QueryKey], None] | None = None,
    ) -> None:
        if max_size is not None and max_size < 1:
            raise ValueError("max_size must be at least 1")
        self._entries: OrderedDict[QueryKey, CacheEntry[Any]] = OrderedDict()
        self._in_flight: dict[QueryKey, asyncio.Task[Any]] = {}
        self._max_size = max_size
        self._on_evict = on_evict

    # -------------------------------------------------------------------------
    # Entries
    # -------------------------------------------------------------------------

    def get(self, key: QueryKey) -> CacheEntry[Any] | None:
        """Get an entry and mark it as recently used."""
        entry = self._entries.get(key)
        if entry is not None:
            self._entries.move_to_end(key)  # LRU touch
            entry.touch()
        return entry

    def peek(self, key: QueryKey) -> CacheEntry[Any] | None:
        """Get an entry without refreshing its access time."""
        return self._entries.get(key)

    def get_or_create(
        self, key: QueryKey, *, cache_time: int | None = None
    ) -> CacheEntry[Any]:
        """Return the entry for key, creating an Initial one if absent.

        When cache_time is given, an entry idle for longer than that is
        evicted first and replaced with a fresh one.
        """
        existing = self._entries.get(key)
        if existing is not None:
            if cache_time is not None and existing.should_evict(cache_time):
                logger.debug("Lazy evict: %s", key)
                self.remove(key)
            else:
                self._entries.move_to_end(key)
                existing.touch()
                return existing

        logger.debug("Cache MISS: %s", key)
        entry: CacheEntry[Any] = CacheEntry(key)
        self._set(key, entry)
        return entry

    def _set(self, key: QueryKey, entry: CacheEntry[Any]) -> None:
        if (
            self._max_size is not None
            and key not in self._entries
            and len(self._entries) >= self._max_size
        ):
            self._evict_lru()
        self._entries[key] = entry
        self._entries.move_to_end(key)

    def remove(self, key: QueryKey) -> bool:
        """Dispose and remove the entry for key. Returns True if one existed."""
        self._in_flight.pop(key, None)
        entry = self._entries.pop(key, None)
        if entry is None:
            return False
        entry.dispose()
        if self._on_evict is not None:
            self._on_evict(key)
        return True

    def clear(self) -> None:
        """Dispose and remove every entry; forget all in-flight requests."""
        self._in_flight.clear()
        entries, self._entries = self._entries, OrderedDict()
        for key, entry in entries.items():
            entry.dispose()
            if self._on_evict is not None:
                self._on_evict(key)

    def sweep(self, cache_time: int) -> list[QueryKey]:
        """Remove every entry idle for longer than cache_time ms.

        An entry with its own cache_time is judged by that instead.

        Eviction is by idle time only; subscriber count is not consulted.
        Entries removed concurrently by other calls are skipped.
        """
        expired = [
            key for key, entry in list(self._entries.items()) if entry.should_evict(cache_time)
        ]
        removed = [key for key in expired if self.remove(key)]
        for key in removed:
            logger.debug("Evicted: %s", key)
        return removed

    def _evict_lru(self) -> None:
        """Evict the least recently used entry that has no subscribers."""
        for key, entry in self._entries.items():
            if not entry.is_active:
                logger.debug("LRU evict: %s", key)
                self.remove(key)
                return

    # -------------------------------------------------------------------------
    # In-flight registry
    # -------------------------------------------------------------------------

    def get_in_flight(self, key: QueryKey) -> asyncio.Task[Any] | None:
        return self._in_flight.get(key)

    def register_in_flight(self, key: QueryKey, task: asyncio.Task[Any]) -> None:
        if key in self._in_flight:
            raise RuntimeError(f"A request for {key} is already in flight")
        self._in_flight[key] = task

    def settle_in_flight(self, key: QueryKey, task: asyncio.Task[Any]) -> None:
        """Drop the registration, but only if it still points at task."""
        if self._in_flight.get(key) is task:
            del self._in_flight[key]

    def cancel_in_flight(self, key: QueryKey) -> None:
        """Forget the registration; the task itself runs to completion."""
        self._in_flight.pop(key, None)

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    # -------------------------------------------------------------------------
    # Iteration
    # -------------------------------------------------------------------------

    @property
    def keys(self) -> list[QueryKey]:
        return list(self._entries)

    @property
    def entries(self) -> list[tuple[QueryKey, CacheEntry[Any]]]:
        """Snapshot of (key, entry) pairs; does not touch access times."""
        return list(self._entries.items())

    def find_keys(self, predicate: Callable[[QueryKey], bool]) -> list[QueryKey]:
        """Eagerly collect matching keys so callers may mutate the cache."""
        return [key for key in list(self._entries) if predicate(key)]

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def debug_info(self) -> dict[str, Any]:
        entries = list(self._entries.values())
        active = sum(1 for e in entries if e.is_active)
        return {
            "total_queries": len(entries),
            "active_queries": active,
            "inactive_queries": len(entries) - active,
            "non_success_queries": sum(
                1 for e in entries if not isinstance(e.state, Success)
            ),
            "max_size": self._max_size,
            "keys": [key.to_list() for key in self._entries],
        }


__all__ = ["QueryCache"]
