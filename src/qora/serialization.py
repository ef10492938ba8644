"""JSON (de)serialization of query states.

Payload layout:

    {"type": "initial"}
    {"type": "loading", "previous_data": ...}
    {"type": "success", "data": ..., "updated_at": 1704110400000}
    {"type": "error", "error": "Network error", "previous_data": ...}

Optional fields are omitted when None. Errors are stored as their message
and come back as QoraError. Payloads that cannot be read deserialize to
Initial.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from qora.errors import QoraError
from qora.state import Failure, Initial, Loading, QoraState, Success

T = TypeVar("T")

logger = logging.getLogger(__name__)


def _identity(value: Any) -> Any:
    return value


def state_to_dict(
    state: QoraState[T], encode: Callable[[T], Any] = _identity
) -> dict[str, Any]:
    """Serialize state to a JSON-compatible dict, encoding data with encode."""
    if isinstance(state, Initial):
        return {"type": "initial"}
    if isinstance(state, Loading):
        payload: dict[str, Any] = {"type": "loading"}
        if state.previous_data is not None:
            payload["previous_data"] = encode(state.previous_data)
        return payload
    if isinstance(state, Success):
        return {
            "type": "success",
            "data": encode(state.data),
            "updated_at": state.updated_at,
        }
    if isinstance(state, Failure):
        payload = {"type": "error", "error": str(state.error)}
        if state.previous_data is not None:
            payload["previous_data"] = encode(state.previous_data)
        return payload
    raise TypeError(f"Unknown query state: {state!r}")


def state_from_dict(
    payload: Any, decode: Callable[[Any], T] = _identity
) -> QoraState[T]:
    """Deserialize a dict produced by state_to_dict()."""
    if not isinstance(payload, dict):
        logger.debug("Not a state payload: %r", payload)
        return Initial()

    def maybe(value: Any) -> T | None:
        return decode(value) if value is not None else None

    kind = payload.get("type")
    try:
        if kind == "loading":
            return Loading(previous_data=maybe(payload.get("previous_data")))
        if kind == "success":
            return Success(
                data=decode(payload["data"]), updated_at=int(payload["updated_at"])
            )
        if kind == "error":
            return Failure(
                error=QoraError(str(payload.get("error", "Unknown error"))),
                previous_data=maybe(payload.get("previous_data")),
            )
    except (KeyError, TypeError, ValueError) as e:
        logger.debug("Malformed %s state payload: %r", kind, e)
        return Initial()
    return Initial()


def state_to_json(state: QoraState[T], encode: Callable[[T], Any] = _identity) -> str:
    return json.dumps(state_to_dict(state, encode))


def state_from_json(data: bytes | str, decode: Callable[[Any], T] = _identity) -> QoraState[T]:
    if isinstance(data, bytes):
        data = data.decode("utf-8")
    try:
        payload = json.loads(data)
    except json.JSONDecodeError:
        logger.debug("Invalid state JSON")
        return Initial()
    return state_from_dict(payload, decode)


@dataclass(frozen=True, slots=True)
class StateCodec(Generic[T]):
    """Pairs a data encoder and decoder for one data type.

    Usage:
        codec = StateCodec(encode=asdict, decode=lambda d: User(**d))
        raw = codec.dumps(client.get_query_state(["users", 1]))
        state = codec.loads(raw)
    """

    encode: Callable[[T], Any] = _identity
    decode: Callable[[Any], T] = _identity

    def to_dict(self, state: QoraState[T]) -> dict[str, Any]:
        return state_to_dict(state, self.encode)

    def from_dict(self, payload: Any) -> QoraState[T]:
        return state_from_dict(payload, self.decode)

    def dumps(self, state: QoraState[T]) -> str:
        return state_to_json(state, self.encode)

    def loads(self, data: bytes | str) -> QoraState[T]:
        return state_from_json(data, self.decode)


__all__ = [
    "StateCodec",
    "state_from_dict",
    "state_from_json",
    "state_to_dict",
    "state_to_json",
]
