"""Shared pytest fixtures."""

import asyncio
from collections.abc import AsyncIterator, Callable
from typing import Any

import pytest

from qora import QoraClient, QoraClientConfig, QoraOptions


class RecordingTracker:
    """Tracker that records every hook call as (name, args)."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, tuple[Any, ...]]] = []

    def names(self) -> list[str]:
        return [name for name, _ in self.calls]

    def on_query_fetched(self, key: str, data: Any, status: str) -> None:
        self.calls.append(("on_query_fetched", (key, data, status)))

    def on_query_invalidated(self, key: str) -> None:
        self.calls.append(("on_query_invalidated", (key,)))

    def on_mutation_started(self, id: str, key: str, variables: Any) -> None:
        self.calls.append(("on_mutation_started", (id, key, variables)))

    def on_mutation_settled(self, id: str, success: bool, result: Any) -> None:
        self.calls.append(("on_mutation_settled", (id, success, result)))

    def on_optimistic_update(self, key: str, data: Any) -> None:
        self.calls.append(("on_optimistic_update", (key, data)))

    def on_cache_cleared(self) -> None:
        self.calls.append(("on_cache_cleared", ()))

    def dispose(self) -> None:
        self.calls.append(("dispose", ()))


class CountingFetcher:
    """Async fetcher that counts calls and can fail a number of times first."""

    def __init__(
        self,
        value: Any = "data",
        *,
        failures: int = 0,
        error: Exception | None = None,
        delay: float = 0,
    ) -> None:
        self.value = value
        self.failures = failures
        self.error = error or RuntimeError("boom")
        self.delay = delay
        self.calls = 0

    async def __call__(self) -> Any:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.calls <= self.failures:
            raise self.error
        return self.value(self.calls) if callable(self.value) else self.value


@pytest.fixture
def tracker() -> RecordingTracker:
    """Create a fresh RecordingTracker for each test."""
    return RecordingTracker()


@pytest.fixture
def config() -> QoraClientConfig:
    """Client config with instant retries so failure tests stay fast."""
    return QoraClientConfig(default_options=QoraOptions(retry_delay=0))


@pytest.fixture
async def client(
    config: QoraClientConfig, tracker: RecordingTracker
) -> AsyncIterator[QoraClient]:
    """Create a QoraClient and dispose it after the test."""
    client = QoraClient(config, tracker=tracker)
    yield client
    client.dispose()
    # Let cancelled background fetches finish unwinding.
    await asyncio.sleep(0)


@pytest.fixture
def make_fetcher() -> Callable[..., CountingFetcher]:
    return CountingFetcher
