"""A leased backend execution context."""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING, Any

from managed_db.errors import SessionNotFoundError
from managed_db.models.options import TransactionOptions
from managed_db.models.session import SessionMetadata
from managed_db.transaction import Transaction
from managed_db.transport.base import RequestConfig, close_stream

if TYPE_CHECKING:
    from managed_db.database import Database

logger = logging.getLogger(__name__)

TxnOptions = TransactionOptions | dict[str, Any] | None


class Session:
    """One backend session.

    Every request issued through a session carries its name. A session
    that the backend reports as gone is marked unhealthy so the pool
    discards it instead of reusing it.
    """

    def __init__(self, database: Database, name: str | None = None) -> None:
        """Initialize with the owning database and an optional existing name."""
        self.database = database
        self.name = name
        self.metadata: SessionMetadata | None = None
        self.txn: Transaction | None = None
        self.healthy = True
        self.last_used = time.monotonic()

    async def create(
        self, labels: dict[str, str] | None = None, gax_opts: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        """Create the session on the backend and adopt its name."""
        req_opts: dict[str, Any] = {"database": self.database.formatted_name}
        if labels:
            req_opts["session"] = {"labels": labels}
        response = await self.database.request(
            RequestConfig("createSession", req_opts, gax_opts or {})
        )
        self.name = response["name"]
        self.metadata = SessionMetadata.from_response(response)
        self.last_used = time.monotonic()
        logger.debug("Created session %s", self.name)
        return response

    async def delete(self) -> None:
        """Delete the session on the backend."""
        await self.database.request(RequestConfig("deleteSession", {"name": self.name}))
        logger.debug("Deleted session %s", self.name)

    async def get_metadata(self) -> SessionMetadata:
        """Fetch and cache the session's backend metadata."""
        response = await self.database.request(RequestConfig("getSession", {"name": self.name}))
        self.metadata = SessionMetadata.from_response(response)
        return self.metadata

    async def keep_alive(self) -> None:
        """Run a trivial query so the backend does not expire the session."""
        await self.request(RequestConfig("executeSql", {"sql": "SELECT 1"}))

    def transaction(self, options: TxnOptions = None) -> Transaction:
        """Create a Transaction bound to this session without beginning it."""
        return Transaction(self, options, backoff=self.database.backoff)

    async def begin_transaction(self, options: TxnOptions = None) -> Transaction:
        """Create and begin a Transaction on this session."""
        txn = self.transaction(options)
        await txn.begin()
        return txn

    async def request(self, config: RequestConfig) -> dict[str, Any]:
        """Issue a unary call scoped to this session."""
        try:
            return await self.database.request(self._scoped(config))
        except SessionNotFoundError:
            self.healthy = False
            raise
        finally:
            self.last_used = time.monotonic()

    async def request_stream(self, config: RequestConfig) -> AsyncIterator[dict[str, Any]]:
        """Issue a streaming call scoped to this session."""
        stream = self.database.request_stream(self._scoped(config))
        try:
            async for message in stream:
                yield message
        except SessionNotFoundError:
            self.healthy = False
            raise
        finally:
            self.last_used = time.monotonic()
            await close_stream(stream)

    def _scoped(self, config: RequestConfig) -> RequestConfig:
        req_opts = dict(config.req_opts)
        req_opts["session"] = self.name
        return RequestConfig(config.method, req_opts, config.gax_opts, config.client)

    def __repr__(self) -> str:
        return f"Session({self.name!r})"
