"""Duration parsing utilities."""

import re
import time
from datetime import timedelta

from qora.types import Duration, Timestamp

_DURATION_PATTERN = re.compile(r"^(\d+)(ms|s|m|h|d)$")
_UNITS: dict[str, int] = {
    "ms": 1,
    "s": 1000,
    "m": 60_000,
    "h": 3_600_000,
    "d": 86_400_000,
}


def parse_duration(duration: Duration) -> int:
    """Parse duration string or timedelta to milliseconds. Passthrough if int."""
    if isinstance(duration, bool):
        raise ValueError(f"Invalid duration: {duration!r}")
    if isinstance(duration, int):
        if duration < 0:
            raise ValueError(f"Invalid duration: {duration!r}")
        return duration
    if isinstance(duration, timedelta):
        if duration < timedelta(0):
            raise ValueError(f"Invalid duration: {duration!r}")
        return int(duration.total_seconds() * 1000)

    match = _DURATION_PATTERN.match(duration)
    if not match:
        raise ValueError(f"Invalid duration: {duration!r}")

    value, unit = match.groups()
    return int(value) * _UNITS[unit]


def parse_optional_duration(duration: Duration | None) -> int | None:
    """Like parse_duration, but None passes through."""
    if duration is None:
        return None
    return parse_duration(duration)


def now_ms() -> Timestamp:
    """Current wall-clock time in milliseconds."""
    return int(time.time() * 1000)
