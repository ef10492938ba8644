"""Mutation lifecycle controller with optimistic-update hooks.

State machine per invocation:

    MutationIdle -> MutationPending -> MutationSuccess
                                    -> MutationFailure
    reset() returns any state to MutationIdle.

Usage:
    controller = MutationController(
        add_todo,
        options=MutationOptions(
            on_mutate=snapshot_and_write_optimistic,
            on_error=lambda err, variables, previous: client.restore_query_data(
                ["todos"], previous
            ),
        ),
        tracker=client,
    )
    todo = await controller.mutate("buy milk")
"""

from __future__ import annotations

import inspect
import itertools
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from types import TracebackType
from typing import Any, Generic, Protocol, TypeVar, runtime_checkable

from qora.channel import Channel, Subscription
from qora.duration import parse_duration
from qora.errors import DisposedError
from qora.retry import execute_with_retry, exponential_backoff
from qora.types import Duration

TData = TypeVar("TData")
TVariables = TypeVar("TVariables")
TContext = TypeVar("TContext")
R = TypeVar("R")

logger = logging.getLogger(__name__)

_ids = itertools.count(1)


class MutationStatus(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"


# =============================================================================
# State
# =============================================================================


class MutationState(Generic[TData, TVariables]):
    """Base of the four mutation state variants."""

    __slots__ = ()

    @property
    def status(self) -> MutationStatus:
        if isinstance(self, MutationPending):
            return MutationStatus.PENDING
        if isinstance(self, MutationSuccess):
            return MutationStatus.SUCCESS
        if isinstance(self, MutationFailure):
            return MutationStatus.ERROR
        return MutationStatus.IDLE

    @property
    def is_idle(self) -> bool:
        return isinstance(self, MutationIdle)

    @property
    def is_pending(self) -> bool:
        return isinstance(self, MutationPending)

    @property
    def is_success(self) -> bool:
        return isinstance(self, MutationSuccess)

    @property
    def is_error(self) -> bool:
        return isinstance(self, MutationFailure)

    @property
    def is_finished(self) -> bool:
        return self.is_success or self.is_error

    @property
    def data_or_none(self) -> TData | None:
        if isinstance(self, MutationSuccess):
            return self.data
        return None

    @property
    def error_or_none(self) -> BaseException | None:
        if isinstance(self, MutationFailure):
            return self.error
        return None

    @property
    def variables_or_none(self) -> TVariables | None:
        if isinstance(self, (MutationPending, MutationSuccess, MutationFailure)):
            return self.variables
        return None

    def fold(
        self,
        *,
        on_idle: Callable[[], R],
        on_pending: Callable[[TVariables], R],
        on_success: Callable[[TData, TVariables], R],
        on_failure: Callable[[BaseException, TracebackType | None, TVariables], R],
    ) -> R:
        """Exhaustive reduction to a single value."""
        if isinstance(self, MutationIdle):
            return on_idle()
        if isinstance(self, MutationPending):
            return on_pending(self.variables)
        if isinstance(self, MutationSuccess):
            return on_success(self.data, self.variables)
        if isinstance(self, MutationFailure):
            return on_failure(self.error, self.stack_trace, self.variables)
        raise TypeError(f"Unknown mutation state: {self!r}")

    def maybe_when(
        self,
        *,
        or_else: Callable[[], R],
        on_idle: Callable[[], R] | None = None,
        on_pending: Callable[[TVariables], R] | None = None,
        on_success: Callable[[TData, TVariables], R] | None = None,
        on_failure: Callable[[BaseException, TracebackType | None, TVariables], R]
        | None = None,
    ) -> R:
        return self.fold(
            on_idle=on_idle or or_else,
            on_pending=on_pending or (lambda _v: or_else()),
            on_success=on_success or (lambda _d, _v: or_else()),
            on_failure=on_failure or (lambda _e, _tb, _v: or_else()),
        )


@dataclass(frozen=True, slots=True)
class MutationIdle(MutationState[TData, TVariables]):
    """No mutation has run yet, or the controller was reset."""


@dataclass(frozen=True, slots=True)
class MutationPending(MutationState[TData, TVariables]):
    variables: TVariables


@dataclass(frozen=True, slots=True)
class MutationSuccess(MutationState[TData, TVariables]):
    data: TData
    variables: TVariables


@dataclass(frozen=True, slots=True)
class MutationFailure(MutationState[TData, TVariables]):
    error: BaseException
    variables: TVariables
    stack_trace: TracebackType | None = None


# =============================================================================
# Options, events, tracker
# =============================================================================

# Hooks may be plain functions or coroutine functions.
OnMutate = Callable[[Any], Awaitable[Any] | Any]
OnSuccess = Callable[[Any, Any, Any], Awaitable[None] | None]
OnError = Callable[[BaseException, Any, Any], Awaitable[None] | None]
OnSettled = Callable[[Any, BaseException | None, Any, Any], Awaitable[None] | None]


@dataclass(frozen=True, slots=True)
class MutationOptions:
    """Lifecycle hooks and retry policy for a MutationController.

    on_mutate(variables) -> context
        Runs before the mutator; its return value is handed to the other
        hooks, typically a snapshot of cache data for rollback.
    on_success(data, variables, context)
    on_error(error, variables, context)
        Use context to undo an optimistic write.
    on_settled(data, error, variables, context)
        Runs after either outcome.

    Mutations do not retry by default: re-sending a write can have side
    effects.
    """

    on_mutate: OnMutate | None = None
    on_success: OnSuccess | None = None
    on_error: OnError | None = None
    on_settled: OnSettled | None = None
    retry_count: int = 0
    retry_delay: Duration = "1s"

    def __post_init__(self) -> None:
        if self.retry_count < 0:
            raise ValueError("retry_count must be non-negative")
        object.__setattr__(self, "retry_delay", parse_duration(self.retry_delay))


@dataclass(frozen=True, slots=True)
class MutationEvent:
    """A state transition of a tracked MutationController, type-erased."""

    mutator_id: str
    status: MutationStatus
    timestamp: int  # Unix timestamp ms
    data: Any = None
    error: BaseException | None = None
    variables: Any = None
    metadata: Mapping[str, Any] | None = None

    @property
    def is_finished(self) -> bool:
        return self.status in (MutationStatus.SUCCESS, MutationStatus.ERROR)


@runtime_checkable
class MutationTracker(Protocol):
    """Receives state transitions from MutationControllers (QoraClient)."""

    def track_mutation(
        self,
        id: str,
        state: MutationState[Any, Any],
        metadata: Mapping[str, Any] | None = None,
    ) -> None:
        """Called on every state transition."""
        ...

    def untrack_mutation(self, id: str) -> None:
        """Called when a controller is disposed; no event is emitted."""
        ...


# =============================================================================
# Controller
# =============================================================================


async def _call_hook(hook: Callable[..., Any] | None, *args: Any) -> Any:
    if hook is None:
        return None
    result = hook(*args)
    if inspect.isawaitable(result):
        return await result
    return result


class MutationController(Generic[TData, TVariables]):
    """Runs a mutator and tracks the resulting MutationState.

    A controller can be invoked repeatedly; each mutate() call starts again
    from MutationPending.
    """

    def __init__(
        self,
        mutator: Callable[[TVariables], Awaitable[TData]],
        *,
        options: MutationOptions | None = None,
        tracker: MutationTracker | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> None:
        self.id = f"mutation_{next(_ids)}"
        self.mutator = mutator
        self.options = options or MutationOptions()
        self.tracker = tracker
        self.metadata = dict(metadata) if metadata is not None else None
        self._channel: Channel[MutationState[TData, TVariables]] = Channel(MutationIdle())
        self._disposed = False

    @property
    def state(self) -> MutationState[TData, TVariables]:
        return self._channel.value

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    def subscribe(
        self,
        on_next: Callable[[MutationState[TData, TVariables]], None] | None = None,
        on_close: Callable[[], None] | None = None,
    ) -> Subscription[MutationState[TData, TVariables]]:
        """Current state first, then every transition."""
        return self._channel.subscribe(on_next, on_close)

    async def mutate(self, variables: TVariables) -> TData:
        """Run the full lifecycle for variables and return the mutator's data.

        The error of a failed run is stored in MutationFailure, passed to
        on_error/on_settled, and then re-raised to this caller. An on_error
        hook that raises is logged; on_settled still runs.

        Raises:
            DisposedError: if the controller has been disposed.
        """
        self._assert_not_disposed()
        self._set_state(MutationPending(variables=variables))

        try:
            context = await _call_hook(self.options.on_mutate, variables)
        except Exception as e:
            # Nothing was written yet, so there is nothing to roll back.
            logger.debug("on_mutate failed for %s: %r", self.id, e)
            self._set_state(
                MutationFailure(error=e, variables=variables, stack_trace=e.__traceback__)
            )
            raise

        try:
            data = await execute_with_retry(
                lambda: self.mutator(variables),
                retry_count=self.options.retry_count,
                delay_for=self._retry_delay,
                label=self.id,
            )
            await _call_hook(self.options.on_success, data, variables, context)
        except Exception as e:
            try:
                await _call_hook(self.options.on_error, e, variables, context)
            except Exception:
                # The mutation error is the one the caller sees.
                logger.warning("on_error hook raised for %s", self.id, exc_info=True)
            self._set_state(
                MutationFailure(error=e, variables=variables, stack_trace=e.__traceback__)
            )
            await _call_hook(self.options.on_settled, None, e, variables, context)
            raise

        self._set_state(MutationSuccess(data=data, variables=variables))
        await _call_hook(self.options.on_settled, data, None, variables, context)
        return data

    def reset(self) -> None:
        """Return to MutationIdle."""
        self._assert_not_disposed()
        self._set_state(MutationIdle())

    def dispose(self) -> None:
        """Close the state channel and untrack silently. Idempotent."""
        if self._disposed:
            return
        self._disposed = True
        if self.tracker is not None:
            self.tracker.untrack_mutation(self.id)
        self._channel.close()

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _retry_delay(self, attempt: int) -> int:
        return exponential_backoff(parse_duration(self.options.retry_delay), attempt)

    def _set_state(self, state: MutationState[TData, TVariables]) -> None:
        if self._disposed:
            return
        self._channel.emit(state)
        if self.tracker is not None:
            self.tracker.track_mutation(self.id, state, self.metadata)

    def _assert_not_disposed(self) -> None:
        if self._disposed:
            raise DisposedError("MutationController")


def mutation_event(
    id: str,
    state: MutationState[Any, Any],
    metadata: Mapping[str, Any] | None = None,
) -> MutationEvent:
    """Build the type-erased event for a controller transition."""
    return MutationEvent(
        mutator_id=id,
        status=state.status,
        timestamp=int(time.time() * 1000),
        data=state.data_or_none,
        error=state.error_or_none,
        variables=state.variables_or_none,
        metadata=metadata,
    )


__all__ = [
    "MutationController",
    "MutationEvent",
    "MutationFailure",
    "MutationIdle",
    "MutationOptions",
    "MutationPending",
    "MutationState",
    "MutationStatus",
    "MutationSuccess",
    "MutationTracker",
    "mutation_event",
]
