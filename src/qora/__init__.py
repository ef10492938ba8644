"""qora - Async query cache with stale-while-revalidate for Python."""

# Client
from qora.client import NetworkStatus, QoraClient

# Duration parsing
from qora.duration import parse_duration

# Errors
from qora.errors import DisposedError, NoDataError, QoraError, QueryDisabledError

# Keys
from qora.key import QueryKey, equals_key, hash_key, normalize_key

# Mutations
from qora.mutation import (
    MutationController,
    MutationEvent,
    MutationFailure,
    MutationIdle,
    MutationOptions,
    MutationPending,
    MutationState,
    MutationStatus,
    MutationSuccess,
    MutationTracker,
)
from qora.options import QoraClientConfig, QoraOptions
from qora.query_awaitable import QueryAwaitable
from qora.serialization import (
    StateCodec,
    state_from_dict,
    state_from_json,
    state_to_dict,
    state_to_json,
)

# State algebra
from qora.state import (
    Failure,
    Initial,
    Loading,
    QoraState,
    QueryStatus,
    Success,
    combine,
    combine_all,
    fold,
    map_state,
)

# Observability
from qora.tracking import LoggingTracker, NoOpTracker, QoraTracker

# Core types
from qora.types import Duration, Fetcher

__version__ = "0.1.0"

__all__ = [
    "DisposedError",
    "Duration",
    "Failure",
    "Fetcher",
    "Initial",
    "Loading",
    "LoggingTracker",
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
    "NetworkStatus",
    "NoDataError",
    "NoOpTracker",
    "QoraClient",
    "QoraClientConfig",
    "QoraError",
    "QoraOptions",
    "QoraState",
    "QoraTracker",
    "QueryAwaitable",
    "QueryDisabledError",
    "QueryKey",
    "QueryStatus",
    "StateCodec",
    "Success",
    "combine",
    "combine_all",
    "equals_key",
    "fold",
    "hash_key",
    "map_state",
    "normalize_key",
    "parse_duration",
    "state_from_dict",
    "state_from_json",
    "state_to_dict",
    "state_to_json",
]
