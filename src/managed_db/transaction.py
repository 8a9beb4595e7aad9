"""Transaction lifecycle: begin, reads and DML, commit with retry on abort."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any, TypeVar

from managed_db.codec import Query
from managed_db.errors import (
    AbortedError,
    BeginFailedError,
    DeadlineExceededError,
    TransactionNotBegunError,
    TransportError,
)
from managed_db.models.options import DEFAULT_TRANSACTION_TIMEOUT, TransactionOptions
from managed_db.partial_result_stream import PartialResultStream
from managed_db.retry import BackoffPolicy
from managed_db.row import Row
from managed_db.transaction_request import TransactionRequest
from managed_db.transport.base import RequestConfig

if TYPE_CHECKING:
    from managed_db.session import Session

logger = logging.getLogger(__name__)

T = TypeVar("T")
RunFn = Callable[["Transaction"], Awaitable[T]]
EndListener = Callable[["Transaction"], None]


class Transaction:
    """A read-only snapshot or read/write transaction on one session.

    Ending the transaction (commit, rollback, or giving up) notifies the
    end listeners; the pool uses this to take the session back.
    """

    def __init__(
        self,
        session: Session,
        options: TransactionOptions | dict[str, Any] | None = None,
        *,
        backoff: BackoffPolicy | None = None,
    ) -> None:
        """Initialize on a session with the given mode and timestamp bound."""
        self.session = session
        self.options = TransactionOptions.coerce(options)
        self.read_only = self.options.read_only
        self.id: str | None = None
        self.read_timestamp: str | None = None
        self.commit_timestamp: str | None = None
        self.begin_time: float | None = None
        self.timeout = self.options.timeout or DEFAULT_TRANSACTION_TIMEOUT
        self.run_fn: RunFn[Any] | None = None
        self.attempts = 0
        self.ended = False
        self.backoff = backoff or BackoffPolicy()
        self._seqno = 1
        self._streams = 0
        self._request = TransactionRequest(self.options)
        self._end_listeners: list[EndListener] = []

    @property
    def used(self) -> bool:
        """True once a statement has run in the current attempt."""
        return self._seqno > 1 or self._streams > 0

    def on_end(self, listener: EndListener) -> None:
        """Register a callable invoked once when the transaction ends."""
        self._end_listeners.append(listener)

    async def begin(self) -> None:
        """Begin the transaction on the backend and store its id."""
        try:
            response = await self.session.request(
                RequestConfig("beginTransaction", self._request.begin_request())
            )
        except TransportError as err:
            raise BeginFailedError(err.message, err.code, err.details) from err
        self.id = response["id"]
        self.read_timestamp = response.get("readTimestamp")
        self.ended = False
        self._seqno = 1
        self._streams = 0
        self.session.txn = self
        logger.debug("Began transaction %s on %s", self.id, self.session.name)

    def run_stream(self, query: Query) -> PartialResultStream:
        """Stream the rows of a query inside this transaction."""
        if self.id is None:
            raise TransactionNotBegunError("Transaction has not begun")
        transaction_id = self.id
        self._streams += 1

        def make_request(resume_token: str | None):
            body = self._request.execute_request(
                query, transaction_id=transaction_id, resume_token=resume_token
            )
            return self.session.request_stream(RequestConfig("executeStreamingSql", body))

        return PartialResultStream(make_request, backoff=self.backoff)

    async def run(self, query: Query) -> list[Row]:
        """Run a query inside this transaction and return all rows."""
        stream = self.run_stream(query)
        try:
            return [row async for row in stream]
        finally:
            await stream.aclose()

    async def run_update(self, query: Query) -> int:
        """Execute a DML statement and return the exact number of rows changed."""
        if self.read_only:
            raise TransactionNotBegunError("DML requires a read/write transaction")
        if self.id is None:
            raise TransactionNotBegunError("Transaction has not begun")
        seqno = self._seqno
        self._seqno += 1
        body = self._request.execute_request(query, transaction_id=self.id, seqno=seqno)
        response = await self.session.request(RequestConfig("executeSql", body))
        stats = response.get("stats") or {}
        return int(stats.get("rowCountExact", 0))

    async def commit(self) -> dict[str, Any]:
        """Commit the transaction and end it.

        An abort is raised as ``AbortedError``. Inside ``run_function`` the
        transaction stays open so the retry loop can begin it again.
        """
        if self.read_only:
            self.end()
            return {}
        if self.id is None:
            raise TransactionNotBegunError("Transaction has not begun")
        try:
            response = await self.session.request(
                RequestConfig("commit", self._request.commit_request(self.id))
            )
        except AbortedError:
            if self.run_fn is None:
                self.end()
            raise
        except Exception:
            self.end()
            raise
        self.commit_timestamp = response.get("commitTimestamp")
        self.end()
        return response

    async def rollback(self) -> None:
        """Roll back a read/write transaction and end it."""
        try:
            if not self.read_only and self.id is not None:
                await self.session.request(
                    RequestConfig("rollback", self._request.rollback_request(self.id))
                )
        finally:
            self.end()

    def end(self) -> None:
        """Mark the transaction finished and notify listeners once."""
        if self.ended:
            return
        self.ended = True
        if self.session.txn is self:
            self.session.txn = None
        listeners, self._end_listeners = self._end_listeners, []
        for listener in listeners:
            listener(self)

    async def run_function(self, run_fn: RunFn[T]) -> T:
        """Run ``run_fn`` against this transaction, restarting it on aborts.

        Each abort begins a fresh transaction id on the same session and
        calls ``run_fn`` again until ``timeout`` seconds have passed since
        ``begin_time``.
        """
        self.run_fn = run_fn
        if self.begin_time is None:
            self.begin_time = time.monotonic()

        while True:
            try:
                result = await run_fn(self)
            except AbortedError as err:
                elapsed = time.monotonic() - self.begin_time
                if elapsed >= self.timeout:
                    self.end()
                    raise DeadlineExceededError(
                        f"Transaction did not commit within {self.timeout}s "
                        f"({self.attempts + 1} attempts): {err.message}",
                        self.attempts + 1,
                    ) from err
                self.attempts += 1
                delay = err.retry_delay
                if delay is None:
                    delay = self.backoff.delay(self.attempts)
                delay = min(delay, self.timeout - elapsed)
                logger.warning(
                    "Transaction %s aborted, retrying in %.3fs (attempt %d)",
                    self.id,
                    delay,
                    self.attempts,
                )
                await asyncio.sleep(delay)
                try:
                    await self.begin()
                except BaseException:
                    self.end()
                    raise
                continue
            except Exception:
                await self._rollback_quietly()
                raise
            except BaseException:
                self.end()
                raise

            if not self.ended:
                logger.warning("Transaction %s was neither committed nor rolled back", self.id)
            return result

    async def _rollback_quietly(self) -> None:
        if self.ended:
            return
        try:
            await self.rollback()
        except Exception:
            logger.warning("Rollback of transaction %s failed", self.id, exc_info=True)

    def __repr__(self) -> str:
        mode = "read-only" if self.read_only else "read/write"
        return f"Transaction({self.id!r}, {mode}, session={self.session.name!r})"
