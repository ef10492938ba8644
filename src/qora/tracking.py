"""Observability hooks injected into QoraClient.

Hooks are called synchronously and must be side-effect-only. The client
logs and discards any exception a hook raises.
"""

import logging
from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class QoraTracker(Protocol):
    """Receives cache and mutation lifecycle events."""

    def on_query_fetched(self, key: str, data: Any, status: str) -> None:
        """A fetch settled and its state was committed to the cache.

        status is "success" or "error"; for errors, data is the mapped error.
        """
        ...

    def on_query_invalidated(self, key: str) -> None:
        """An entry was marked stale by invalidate()."""
        ...

    def on_mutation_started(self, id: str, key: str, variables: Any) -> None:
        """A mutation controller entered the pending state."""
        ...

    def on_mutation_settled(self, id: str, success: bool, result: Any) -> None:
        """A mutation finished; result is the data or the error."""
        ...

    def on_optimistic_update(self, key: str, data: Any) -> None:
        """Data was written directly with set_query_data()."""
        ...

    def on_cache_cleared(self) -> None:
        """clear() removed every entry."""
        ...

    def dispose(self) -> None:
        """The owning client was disposed."""
        ...


class NoOpTracker:
    """Default tracker: every hook does nothing."""

    __slots__ = ()

    def on_query_fetched(self, key: str, data: Any, status: str) -> None:
        pass

    def on_query_invalidated(self, key: str) -> None:
        pass

    def on_mutation_started(self, id: str, key: str, variables: Any) -> None:
        pass

    def on_mutation_settled(self, id: str, success: bool, result: Any) -> None:
        pass

    def on_optimistic_update(self, key: str, data: Any) -> None:
        pass

    def on_cache_cleared(self) -> None:
        pass

    def dispose(self) -> None:
        pass


class LoggingTracker:
    """Tracker that writes every hook call to a logger."""

    def __init__(
        self, logger: logging.Logger | None = None, *, level: int = logging.INFO
    ) -> None:
        self._logger = logger or logging.getLogger("qora.tracker")
        self._level = level

    def on_query_fetched(self, key: str, data: Any, status: str) -> None:
        self._logger.log(self._level, "query fetched key=%s status=%s", key, status)

    def on_query_invalidated(self, key: str) -> None:
        self._logger.log(self._level, "query invalidated key=%s", key)

    def on_mutation_started(self, id: str, key: str, variables: Any) -> None:
        self._logger.log(
            self._level, "mutation started id=%s key=%s variables=%r", id, key, variables
        )

    def on_mutation_settled(self, id: str, success: bool, result: Any) -> None:
        self._logger.log(
            self._level, "mutation settled id=%s success=%s result=%r", id, success, result
        )

    def on_optimistic_update(self, key: str, data: Any) -> None:
        self._logger.log(self._level, "optimistic update key=%s", key)

    def on_cache_cleared(self) -> None:
        self._logger.log(self._level, "cache cleared")

    def dispose(self) -> None:
        self._logger.log(self._level, "tracker disposed")


__all__ = ["LoggingTracker", "NoOpTracker", "QoraTracker"]
