"""Per-query options and client-wide configuration."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field

from qora.duration import parse_duration, parse_optional_duration
from qora.key import QueryKey
from qora.types import Duration, ErrorMapper


@dataclass(frozen=True, slots=True)
class QoraOptions:
    """Per-query configuration. Durations are normalized to milliseconds.

    Usage:
        QoraOptions(stale_time="30s", retry_count=1)
        QoraOptions(refetch_interval="5s", cache_time=timedelta(minutes=1))
    """

    stale_time: Duration = 0
    cache_time: Duration = "5m"
    enabled: bool = True
    retry_count: int = 3
    retry_delay: Duration = "1s"
    retry_delay_fn: Callable[[int], int] | None = None  # attempt -> ms
    refetch_interval: Duration | None = None
    refetch_on_mount: bool | None = None
    refetch_on_reconnect: bool = True
    refetch_on_window_focus: bool = True

    def __post_init__(self) -> None:
        if self.retry_count < 0:
            raise ValueError("retry_count must be non-negative")
        # Normalize in place; frozen dataclasses need object.__setattr__.
        object.__setattr__(self, "stale_time", parse_duration(self.stale_time))
        object.__setattr__(self, "cache_time", parse_duration(self.cache_time))
        object.__setattr__(self, "retry_delay", parse_duration(self.retry_delay))
        object.__setattr__(
            self, "refetch_interval", parse_optional_duration(self.refetch_interval)
        )
        if self.refetch_interval == 0:
            raise ValueError("refetch_interval must be positive")

    def retry_delay_for(self, attempt: int) -> int:
        """Delay in ms before retry number attempt (0-indexed)."""
        if self.retry_delay_fn is not None:
            return self.retry_delay_fn(attempt)
        return parse_duration(self.retry_delay) * (2**attempt)

    def merge(self, other: QoraOptions | None) -> QoraOptions:
        """Return self overridden field-by-field by other.

        Optional fields left as None in other fall back to self.
        """
        if other is None:
            return self
        return QoraOptions(
            stale_time=other.stale_time,
            cache_time=other.cache_time,
            enabled=other.enabled,
            retry_count=other.retry_count,
            retry_delay=other.retry_delay,
            retry_delay_fn=other.retry_delay_fn or self.retry_delay_fn,
            refetch_interval=(
                other.refetch_interval
                if other.refetch_interval is not None
                else self.refetch_interval
            ),
            refetch_on_mount=(
                other.refetch_on_mount
                if other.refetch_on_mount is not None
                else self.refetch_on_mount
            ),
            refetch_on_reconnect=other.refetch_on_reconnect,
            refetch_on_window_focus=other.refetch_on_window_focus,
        )


@dataclass(frozen=True, slots=True)
class QoraClientConfig:
    """Client-wide configuration.

    Usage:
        QoraClientConfig(
            default_options=QoraOptions(stale_time="5m", retry_count=2),
            max_cache_size=200,
            error_mapper=lambda err, tb: ApiError(str(err)),
        )
    """

    default_options: QoraOptions = field(default_factory=QoraOptions)
    error_mapper: ErrorMapper | None = None
    max_cache_size: int | None = None
    on_cache_evict: Callable[[QueryKey], None] | None = None
    refetch_on_mount: bool = True
    eviction_interval: Duration = "1m"

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "eviction_interval", parse_duration(self.eviction_interval)
        )
        if self.eviction_interval == 0:
            raise ValueError("eviction_interval must be positive")
        if self.max_cache_size is not None and self.max_cache_size < 1:
            raise ValueError("max_cache_size must be at least 1")


__all__ = ["QoraClientConfig", "QoraOptions"]
