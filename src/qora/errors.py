"""Exception types raised or stored by qora."""

from __future__ import annotations

from typing import Any


class QoraError(Exception):
    """Base exception for all qora errors."""

    def __init__(self, message: str, *, original_error: BaseException | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.original_error = original_error

    def __str__(self) -> str:
        return self.message


class DisposedError(QoraError):
    """A command was issued to a client or controller after dispose()."""

    def __init__(self, owner: str) -> None:
        super().__init__(f"{owner} has been disposed")
        self.owner = owner


class QueryDisabledError(QoraError):
    """Stored in a Failure state when a disabled query is fetched."""

    def __init__(self, key: Any) -> None:
        super().__init__(f"query disabled: {key}")
        self.key = key

    def __eq__(self, other: object) -> bool:
        return isinstance(other, QueryDisabledError) and other.key == self.key

    def __hash__(self) -> int:
        return hash(("QueryDisabledError", self.key))


class NoDataError(QoraError):
    """require_data() was called on a state without data."""


__all__ = ["DisposedError", "NoDataError", "QoraError", "QueryDisabledError"]
