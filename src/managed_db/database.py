"""Database: the entry point for queries and transactions."""

from __future__ import annotations

import logging
import time
from typing import Any, Self

from managed_db.codec import Query, encode_query
from managed_db.errors import SessionLeakError
from managed_db.models.options import PoolOptions, TransactionOptions
from managed_db.models.session import SessionMetadata
from managed_db.partial_result_stream import PartialResultStream
from managed_db.retry import BackoffPolicy
from managed_db.row import Row
from managed_db.session import Session
from managed_db.session_pool import ErrorListener, SessionPool
from managed_db.transaction import RunFn, T, Transaction
from managed_db.transaction_request import TransactionRequest
from managed_db.transport.base import RequestConfig, Transport

logger = logging.getLogger(__name__)


class Database:
    """One database reached through a transport, with its own session pool.

    Use as an async context manager, or call ``open()`` from a running loop
    and ``close()`` when done.

    Example::

        async with Database(transport, "orders", instance_name=INSTANCE) as db:
            rows = await db.run("SELECT id FROM orders")
    """

    def __init__(
        self,
        transport: Transport,
        name: str,
        pool_options: PoolOptions | None = None,
        *,
        instance_name: str | None = None,
        backoff: BackoffPolicy | None = None,
        owns_transport: bool = False,
    ) -> None:
        """Initialize with a transport, a database name and pool options.

        ``name`` may be fully qualified; otherwise ``instance_name`` is
        prepended. With ``owns_transport`` the transport is closed with the
        database.
        """
        self.transport = transport
        self.formatted_name = self.format_name(instance_name, name)
        self.backoff = backoff or BackoffPolicy()
        self._owns_transport = owns_transport
        self.pool = SessionPool(self, pool_options)

    @staticmethod
    def format_name(instance_name: str | None, name: str) -> str:
        """Qualify a database name with its instance path."""
        if "/" in name or not instance_name:
            return name
        return f"{instance_name}/databases/{name}"

    @property
    def name(self) -> str:
        return self.formatted_name.rsplit("/", 1)[-1]

    def open(self) -> None:
        """Start the session pool."""
        self.pool.open()

    async def __aenter__(self) -> Self:
        self.open()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def on_error(self, listener: ErrorListener) -> None:
        """Register a callable that receives session pool background errors."""
        self.pool.on_error(listener)

    async def request(self, config: RequestConfig) -> dict[str, Any]:
        return await self.transport.request(config)

    def request_stream(self, config: RequestConfig):
        return self.transport.request_stream(config)

    def session(self, name: str | None = None) -> Session:
        """Create a Session object for this database without contacting the backend."""
        return Session(self, name)

    async def create_session(
        self, options: dict[str, Any] | None = None
    ) -> tuple[Session, dict[str, Any]]:
        """Create a session outside the pool. The caller must delete it."""
        response = await self.request(
            RequestConfig("createSession", {"database": self.formatted_name}, options or {})
        )
        session = self.session(response["name"])
        session.metadata = SessionMetadata.from_response(response)
        return session, response

    def run_stream(
        self,
        query: Query,
        options: TransactionOptions | dict[str, Any] | None = None,
    ) -> PartialResultStream:
        """Stream the rows of a single-use read.

        Each (re)request leases its own session from the pool. Whenever
        ``options`` are given the request carries a single-use read-only
        selector built from their timestamp settings; with no settings that
        selector is an empty ``readOnly`` clause, which the backend treats
        as a strong read. Without ``options`` no selector is sent.
        """
        body = encode_query(query)
        if options is not None:
            body["transaction"] = TransactionRequest.single_use(TransactionOptions.coerce(options))

        def make_request(resume_token: str | None):
            req_opts = dict(body)
            if resume_token:
                req_opts["resumeToken"] = resume_token
            return self.pool.request_stream(RequestConfig("executeStreamingSql", req_opts))

        return PartialResultStream(make_request, backoff=self.backoff)

    async def run(
        self,
        query: Query,
        options: TransactionOptions | dict[str, Any] | None = None,
    ) -> list[Row]:
        """Run a single-use read and return all rows in order."""
        stream = self.run_stream(query, options)
        try:
            return [row async for row in stream]
        finally:
            await stream.aclose()

    async def get_transaction(
        self, options: TransactionOptions | dict[str, Any] | None = None
    ) -> Transaction:
        """Lease a session and return a begun transaction on it.

        The session goes back to the pool when the transaction ends.
        """
        if options is not None and TransactionOptions.coerce(options).read_only:
            session = await self.pool.get_session()
            try:
                return await self.pool.create_transaction(session, options)
            except BaseException:
                self.pool.release(session)
                raise
        session = await self.pool.get_write_session()
        return session.txn  # type: ignore[return-value]

    async def run_transaction(
        self,
        run_fn: RunFn[T],
        options: TransactionOptions | dict[str, Any] | None = None,
    ) -> T:
        """Run ``run_fn(txn)`` in a transaction, retrying it while the backend aborts.

        ``run_fn`` must commit (or roll back) the transaction. Errors other
        than aborts roll it back and propagate.
        """
        begin_time = time.monotonic()
        txn = await self.get_transaction(options)
        txn.begin_time = begin_time
        if options is not None:
            timeout = TransactionOptions.coerce(options).timeout
            if timeout is not None:
                txn.timeout = timeout
        return await txn.run_function(run_fn)

    async def close(self) -> None:
        """Close the session pool, then report any leaked sessions."""
        try:
            await self.pool.close()
            leaks = self.pool.get_leaks()
            if leaks:
                raise SessionLeakError(leaks)
        finally:
            if self._owns_transport:
                await self.transport.close()

    def __repr__(self) -> str:
        return f"Database({self.formatted_name!r})"
