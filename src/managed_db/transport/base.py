"""Transport protocol: thin abstraction over RPC dispatch to the backend.

The query layer programs against this protocol. Each transport (HTTP
gateway, SQLite emulator, test fakes) provides a concrete implementation.
Request bodies use the backend's JSON field names (``session``,
``transactionId``, ``resumeToken``, ...).
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

DEFAULT_CLIENT = "DatabaseClient"


@dataclass
class RequestConfig:
    """One RPC: which client and method, the request body, and call options.

    ``gax_opts`` carries per-call settings such as ``timeout`` (seconds).
    """

    method: str
    req_opts: dict[str, Any] = field(default_factory=dict)
    gax_opts: dict[str, Any] = field(default_factory=dict)
    client: str = DEFAULT_CLIENT


@runtime_checkable
class Transport(Protocol):
    """Async RPC transport.

    Failures are raised as ``managed_db.errors.TransportError`` carrying the
    backend status code.
    """

    async def request(self, config: RequestConfig) -> dict[str, Any]:
        """Issue a unary call and return the decoded response."""
        ...

    def request_stream(self, config: RequestConfig) -> AsyncIterator[dict[str, Any]]:
        """Issue a server-streaming call and yield each response message."""
        ...

    async def close(self) -> None:
        """Release connections held by the transport."""
        ...


async def close_stream(stream: AsyncIterator[dict[str, Any]]) -> None:
    """Close a response stream if it supports ``aclose``."""
    aclose = getattr(stream, "aclose", None)
    if aclose is not None:
        await aclose()
