"""Query state union and its pure transformations.

A query is always in exactly one of four states:

- Initial: no fetch has completed or been attempted
- Loading: a fetch is in flight, optionally carrying the last good data
- Success: the last fetch succeeded
- Failure: the last fetch failed, optionally carrying the last good data

previous_data on Loading/Failure only ever comes from an earlier Success
for the same key.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from types import TracebackType
from typing import Any, Generic, TypeVar

from qora.duration import now_ms
from qora.errors import NoDataError
from qora.types import Timestamp

T = TypeVar("T")
U = TypeVar("U")
R = TypeVar("R")


class QueryStatus(str, Enum):
    """Coarse status of a query state."""

    INITIAL = "initial"
    LOADING = "loading"
    SUCCESS = "success"
    ERROR = "error"


class QoraState(Generic[T]):
    """Base of the four query state variants. Never instantiated directly."""

    __slots__ = ()

    @property
    def status(self) -> QueryStatus:
        return fold(
            self,
            on_initial=lambda: QueryStatus.INITIAL,
            on_loading=lambda _prev: QueryStatus.LOADING,
            on_success=lambda _data, _at: QueryStatus.SUCCESS,
            on_failure=lambda _err, _tb, _prev: QueryStatus.ERROR,
        )

    @property
    def is_initial(self) -> bool:
        return isinstance(self, Initial)

    @property
    def is_loading(self) -> bool:
        return isinstance(self, Loading)

    @property
    def is_success(self) -> bool:
        return isinstance(self, Success)

    @property
    def is_error(self) -> bool:
        return isinstance(self, Failure)

    @property
    def data_or_none(self) -> T | None:
        """Success.data, else Loading/Failure previous_data, else None."""
        if isinstance(self, Success):
            return self.data
        if isinstance(self, (Loading, Failure)):
            return self.previous_data
        return None

    @property
    def success_data_or_none(self) -> T | None:
        """Success.data only; ignores previous_data."""
        if isinstance(self, Success):
            return self.data
        return None

    @property
    def has_data(self) -> bool:
        if isinstance(self, Success):
            return True
        if isinstance(self, (Loading, Failure)):
            return self.previous_data is not None
        return False

    @property
    def error_or_none(self) -> BaseException | None:
        if isinstance(self, Failure):
            return self.error
        return None

    @property
    def is_first_load(self) -> bool:
        return isinstance(self, Loading) and self.previous_data is None

    @property
    def is_refreshing(self) -> bool:
        return isinstance(self, Loading) and self.previous_data is not None

    def require_data(self) -> T:
        """Return the data, or raise NoDataError if this state has none."""
        if not self.has_data:
            raise NoDataError(f"No data available in state: {self!r}")
        return self.data_or_none  # type: ignore[return-value]

    def map(self, transform: Callable[[T], U]) -> QoraState[U]:
        return map_state(self, transform)

    def when(
        self,
        *,
        on_initial: Callable[[], None] | None = None,
        on_loading: Callable[[T | None], None] | None = None,
        on_success: Callable[[T, Timestamp], None] | None = None,
        on_failure: Callable[[BaseException, TracebackType | None, T | None], None]
        | None = None,
    ) -> None:
        """Run the callback for the current variant, if one was given."""
        if isinstance(self, Initial):
            if on_initial:
                on_initial()
        elif isinstance(self, Loading):
            if on_loading:
                on_loading(self.previous_data)
        elif isinstance(self, Success):
            if on_success:
                on_success(self.data, self.updated_at)
        elif isinstance(self, Failure):
            if on_failure:
                on_failure(self.error, self.stack_trace, self.previous_data)

    def maybe_when(
        self,
        *,
        or_else: Callable[[], R],
        on_initial: Callable[[], R] | None = None,
        on_loading: Callable[[T | None], R] | None = None,
        on_success: Callable[[T, Timestamp], R] | None = None,
        on_failure: Callable[[BaseException, TracebackType | None, T | None], R]
        | None = None,
    ) -> R:
        """Like fold, but missing branches fall back to or_else."""
        return fold(
            self,
            on_initial=on_initial or or_else,
            on_loading=on_loading or (lambda _prev: or_else()),
            on_success=on_success or (lambda _data, _at: or_else()),
            on_failure=on_failure or (lambda _err, _tb, _prev: or_else()),
        )


@dataclass(frozen=True, slots=True)
class Initial(QoraState[T]):
    """No fetch has ever completed or been attempted."""


@dataclass(frozen=True, slots=True)
class Loading(QoraState[T]):
    """A fetch is in flight."""

    previous_data: T | None = None


@dataclass(frozen=True, slots=True)
class Success(QoraState[T]):
    """The last fetch succeeded."""

    data: T
    updated_at: Timestamp  # Unix timestamp ms

    @classmethod
    def now(cls, data: T) -> Success[T]:
        return cls(data=data, updated_at=now_ms())

    @property
    def age_ms(self) -> int:
        return now_ms() - self.updated_at

    def is_stale(self, threshold_ms: int) -> bool:
        return self.age_ms > threshold_ms


@dataclass(frozen=True, slots=True)
class Failure(QoraState[T]):
    """The last fetch failed."""

    error: BaseException
    stack_trace: TracebackType | None = None
    previous_data: T | None = None


def fold(
    state: QoraState[T],
    *,
    on_initial: Callable[[], R],
    on_loading: Callable[[T | None], R],
    on_success: Callable[[T, Timestamp], R],
    on_failure: Callable[[BaseException, TracebackType | None, T | None], R],
) -> R:
    """Exhaustive reduction of a state to a single value."""
    if isinstance(state, Initial):
        return on_initial()
    if isinstance(state, Loading):
        return on_loading(state.previous_data)
    if isinstance(state, Success):
        return on_success(state.data, state.updated_at)
    if isinstance(state, Failure):
        return on_failure(state.error, state.stack_trace, state.previous_data)
    raise TypeError(f"Unknown query state: {state!r}")


def map_state(state: QoraState[T], transform: Callable[[T], U]) -> QoraState[U]:
    """Apply transform to data/previous_data, keeping variant and metadata."""

    def _maybe(value: T | None) -> U | None:
        return transform(value) if value is not None else None

    return fold(
        state,
        on_initial=lambda: Initial(),
        on_loading=lambda prev: Loading(previous_data=_maybe(prev)),
        on_success=lambda data, at: Success(data=transform(data), updated_at=at),
        on_failure=lambda err, tb, prev: Failure(
            error=err, stack_trace=tb, previous_data=_maybe(prev)
        ),
    )


def combine_all(states: Sequence[QoraState[Any]]) -> QoraState[list[Any]]:
    """Combine N states into one state holding a list of their data.

    Success only if every input is Success. Otherwise the first Failure wins,
    then Loading, then Initial, so an error is never masked by a sibling
    that is still loading.
    """
    if not states:
        return Success.now([])

    for state in states:
        if isinstance(state, Failure):
            return Failure(error=state.error, stack_trace=state.stack_trace)

    if any(isinstance(state, Loading) for state in states):
        return Loading()

    if all(isinstance(state, Success) for state in states):
        successes = [s for s in states if isinstance(s, Success)]
        return Success(
            data=[s.data for s in successes],
            updated_at=min(s.updated_at for s in successes),
        )

    return Initial()


def combine(
    first: QoraState[T],
    second: QoraState[U],
    combiner: Callable[[T, U], R],
) -> QoraState[R]:
    """Combine two states with combiner; same priority rules as combine_all."""
    merged = combine_all([first, second])
    return map_state(merged, lambda pair: combiner(pair[0], pair[1]))


__all__ = [
    "Failure",
    "Initial",
    "Loading",
    "QoraState",
    "QueryStatus",
    "Success",
    "combine",
    "combine_all",
    "fold",
    "map_state",
]
