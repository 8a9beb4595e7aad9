"""Error taxonomy for the query execution layer.

Transport failures carry an RPC status code. Aborts and stream resets are
recovered inside the library; everything else propagates unchanged.
"""

from __future__ import annotations

import re
from enum import IntEnum
from typing import Any


class StatusCode(IntEnum):
    """RPC status codes reported by the backend."""

    OK = 0
    CANCELLED = 1
    UNKNOWN = 2
    INVALID_ARGUMENT = 3
    DEADLINE_EXCEEDED = 4
    NOT_FOUND = 5
    ALREADY_EXISTS = 6
    PERMISSION_DENIED = 7
    RESOURCE_EXHAUSTED = 8
    FAILED_PRECONDITION = 9
    ABORTED = 10
    OUT_OF_RANGE = 11
    UNIMPLEMENTED = 12
    INTERNAL = 13
    UNAVAILABLE = 14
    DATA_LOSS = 15
    UNAUTHENTICATED = 16

    @classmethod
    def parse(cls, value: Any) -> StatusCode:
        """Parse a status from its name ("ABORTED") or number (10)."""
        if isinstance(value, cls):
            return value
        if isinstance(value, int):
            try:
                return cls(value)
            except ValueError:
                return cls.UNKNOWN
        if isinstance(value, str):
            return cls.__members__.get(value.upper(), cls.UNKNOWN)
        return cls.UNKNOWN


_RETRY_DELAY_RE = re.compile(r"^(\d+(?:\.\d+)?)s$")

# Stream resets surfaced as INTERNAL are safe to resume
_RESUMABLE_INTERNAL_MESSAGES = (
    "received unexpected eos on data frame from server",
    "rst_stream",
)


class ManagedDBError(Exception):
    """Base class for all errors raised by managed_db."""


class TransportError(ManagedDBError):
    """An RPC failed. Carries the backend status code and details."""

    def __init__(
        self,
        message: str,
        code: StatusCode = StatusCode.UNKNOWN,
        details: list[dict[str, Any]] | None = None,
    ) -> None:
        """Initialize with a message, status code and optional error details."""
        super().__init__(message)
        self.message = message
        self.code = StatusCode.parse(code)
        self.details = details or []

    @property
    def retry_delay(self) -> float | None:
        """Server-suggested retry delay in seconds from a RetryInfo detail."""
        for detail in self.details:
            if not str(detail.get("@type", "")).endswith("RetryInfo"):
                continue
            delay = detail.get("retryDelay")
            if isinstance(delay, (int, float)):
                return float(delay)
            if isinstance(delay, str):
                match = _RETRY_DELAY_RE.match(delay)
                if match:
                    return float(match.group(1))
            if isinstance(delay, dict):
                return float(delay.get("seconds", 0)) + float(delay.get("nanos", 0)) / 1e9
        return None

    @classmethod
    def from_status(
        cls,
        code: StatusCode | int | str,
        message: str,
        details: list[dict[str, Any]] | None = None,
    ) -> TransportError:
        """Build the most specific error class for a status code."""
        status = StatusCode.parse(code)
        if status is StatusCode.ABORTED:
            return AbortedError(message, status, details)
        if status is StatusCode.NOT_FOUND and "session not found" in message.lower():
            return SessionNotFoundError(message, status, details)
        return TransportError(message, status, details)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.code.name}: {self.message!r})"


class AbortedError(TransportError):
    """The backend aborted a transaction because of a concurrency conflict."""


class SessionNotFoundError(TransportError):
    """The backend no longer knows the session (expired or deleted)."""


class BeginFailedError(TransportError):
    """A beginTransaction call failed."""


class DeadlineExceededError(ManagedDBError):
    """A transaction kept aborting until its timeout window ran out."""

    def __init__(self, message: str, attempts: int = 0) -> None:
        """Initialize with a message and the number of attempts made."""
        super().__init__(message)
        self.attempts = attempts


class PoolExhaustedError(ManagedDBError):
    """No session became available within the acquire timeout."""


class PoolClosedError(ManagedDBError):
    """The session pool was closed."""


class ReleaseError(ManagedDBError):
    """A session was released that the pool did not lend out."""


class TransactionNotBegunError(ManagedDBError):
    """A mutating statement was issued before the transaction began."""


class StreamFatalError(ManagedDBError):
    """A result stream could not be resumed any further."""


class SessionLeakError(ManagedDBError):
    """Sessions were still borrowed when the database was closed."""

    def __init__(self, messages: list[str]) -> None:
        """Initialize with one identifying string per leaked session."""
        super().__init__(f"{len(messages)} session leak(s) found.")
        self.messages = messages


def is_resumable(err: BaseException) -> bool:
    """Return True if a streaming call can be restarted from a resume token."""
    if not isinstance(err, TransportError):
        return False
    if err.code is StatusCode.UNAVAILABLE:
        return True
    if err.code is StatusCode.INTERNAL:
        message = err.message.lower()
        return any(m in message for m in _RESUMABLE_INTERNAL_MESSAGES)
    return False


def is_retryable(err: BaseException) -> bool:
    """Return True if a read/write transaction should be restarted."""
    return isinstance(err, AbortedError)
