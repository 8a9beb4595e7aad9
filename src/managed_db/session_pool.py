"""Bounded pool of backend sessions with FIFO waiting and leak tracking."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
import traceback
from collections import deque
from collections.abc import AsyncIterator, Callable, Coroutine
from typing import TYPE_CHECKING, Any

from managed_db.errors import (
    PoolClosedError,
    PoolExhaustedError,
    ReleaseError,
)
from managed_db.models.options import PoolOptions, TransactionOptions
from managed_db.session import Session
from managed_db.transaction import Transaction
from managed_db.transport.base import RequestConfig, close_stream

if TYPE_CHECKING:
    from managed_db.database import Database

logger = logging.getLogger(__name__)

ErrorListener = Callable[[BaseException], None]


class SessionPool:
    """Leases sessions of one database to callers.

    Idle sessions are kept in two queues: plain read sessions and sessions
    holding a pre-begun read/write transaction. The pool never holds more
    than ``max_sessions`` sessions, counting idle, borrowed, busy (being
    pinged or prepared) and still being created. Callers that find the pool
    full wait in FIFO order for a release.
    """

    def __init__(self, database: Database, options: PoolOptions | None = None) -> None:
        """Initialize for a database with the given sizing options."""
        self.database = database
        self.options = options or PoolOptions()
        self.is_open = False
        self._closed = False
        self._reads: deque[Session] = deque()
        self._writes: deque[Session] = deque()
        self._borrowed: dict[Session, str] = {}
        self._busy: set[Session] = set()
        self._pending = 0
        self._preparing = 0
        self._waiters: deque[asyncio.Future[Session | None]] = deque()
        self._leaks: list[str] = []
        self._error_listeners: list[ErrorListener] = []
        self._tasks: set[asyncio.Task[Any]] = set()
        self._maintenance: asyncio.Task[None] | None = None
        self._maintaining = False
        self._create_limit = asyncio.Semaphore(self.options.concurrency)

    @property
    def size(self) -> int:
        """Sessions owned by the pool, including those being created."""
        return self.available + len(self._borrowed) + len(self._busy) + self._pending

    @property
    def available(self) -> int:
        """Idle sessions ready to lend."""
        return len(self._reads) + len(self._writes)

    @property
    def borrowed(self) -> int:
        return len(self._borrowed)

    @property
    def waiting(self) -> int:
        return sum(1 for waiter in self._waiters if not waiter.done())

    def on_error(self, listener: ErrorListener) -> None:
        """Register a callable that receives errors from background work."""
        self._error_listeners.append(listener)

    def open(self) -> None:
        """Start warming up to ``min_sessions`` and the maintenance loop.

        Must be called from a running event loop. Warm-up failures are
        reported to error listeners and do not fail the call.
        """
        if self.is_open:
            return
        self.is_open = True
        self._closed = False
        self._spawn(self._fill())
        self._maintenance = asyncio.get_running_loop().create_task(self._maintain())
        logger.info(
            "Session pool opened for %s (min=%d, max=%d)",
            self.database.formatted_name,
            self.options.min_sessions,
            self.options.max_sessions,
        )

    async def get_session(self) -> Session:
        """Borrow a session for reads."""
        return await self._acquire(write=False)

    async def get_write_session(self) -> Session:
        """Borrow a session whose ``txn`` is a begun read/write transaction."""
        session = await self._acquire(write=True)
        txn = session.txn
        if txn is not None and not (txn.ended or txn.used or txn.read_only):
            return session
        try:
            await self.create_transaction(session)
        except BaseException:
            self.release(session)
            raise
        return session

    async def create_transaction(
        self, session: Session, options: TransactionOptions | dict[str, Any] | None = None
    ) -> Transaction:
        """Begin a transaction on a session and release the session when it ends."""
        txn = session.transaction(options)
        await txn.begin()
        txn.on_end(self._on_transaction_end)
        return txn

    def release(self, session: Session) -> None:
        """Return a borrowed session to the pool."""
        if session not in self._borrowed:
            if self._closed:
                return
            raise ReleaseError(f"Session {session.name} was not borrowed from this pool")
        del self._borrowed[session]

        if not session.healthy:
            logger.debug("Discarding unhealthy session %s", session.name)
            self._spawn(self._destroy(session))
            self._wake_waiter()
            return

        txn = session.txn
        if txn is not None and (txn.ended or txn.used or txn.read_only):
            session.txn = None
        self._return(session)

    async def request(self, config: RequestConfig) -> dict[str, Any]:
        """Issue a unary call on a session leased for the duration of the call."""
        session = await self.get_session()
        try:
            return await session.request(config)
        finally:
            self.release(session)

    async def request_stream(self, config: RequestConfig) -> AsyncIterator[dict[str, Any]]:
        """Issue a streaming call on a session leased until the stream closes."""
        session = await self.get_session()
        stream = session.request_stream(config)
        try:
            async for message in stream:
                yield message
        finally:
            try:
                await close_stream(stream)
            finally:
                self.release(session)

    def get_leaks(self) -> list[str]:
        """Describe each session that is (or was, at close) still borrowed."""
        if self._closed:
            return list(self._leaks)
        return [self._describe_leak(session, trace) for session, trace in self._borrowed.items()]

    async def close(self) -> None:
        """Stop the pool and delete every session it holds.

        Waiters fail with ``PoolClosedError``. Sessions still borrowed are
        recorded as leaks and deleted as well.
        """
        if self._closed:
            return
        self._closed = True
        self.is_open = False

        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_exception(PoolClosedError("Session pool was closed"))

        if self._maintenance is not None:
            # a cycle in progress finishes and deletes the sessions it holds
            if not self._maintaining:
                self._maintenance.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._maintenance
            self._maintenance = None

        self._leaks = [
            self._describe_leak(session, trace) for session, trace in self._borrowed.items()
        ]
        sessions = [*self._reads, *self._writes, *self._borrowed]
        self._reads.clear()
        self._writes.clear()
        self._borrowed.clear()

        await asyncio.gather(*(self._destroy(session) for session in sessions))
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        logger.info(
            "Session pool closed for %s (%d sessions deleted, %d leaked)",
            self.database.formatted_name,
            len(sessions),
            len(self._leaks),
        )

    async def _acquire(self, write: bool) -> Session:
        if self._closed:
            raise PoolClosedError("Session pool is closed")
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.options.acquire_timeout
        trace = "".join(traceback.format_stack()[:-2])
        front = False

        while True:
            session = self._take_idle(write)
            if session is not None:
                self._borrowed[session] = trace
                return session

            if self.size < self.options.max_sessions:
                self._pending += 1
                try:
                    session = await self._create_session()
                except BaseException:
                    self._wake_waiter()
                    raise
                finally:
                    self._pending -= 1
                if self._closed:
                    await self._destroy(session)
                    raise PoolClosedError("Session pool is closed")
                self._borrowed[session] = trace
                return session

            if self.options.fail_on_exhausted:
                raise PoolExhaustedError(
                    f"No session available ({self.options.max_sessions} in use)"
                )
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise self._exhausted()

            waiter: asyncio.Future[Session | None] = loop.create_future()
            if front:
                self._waiters.appendleft(waiter)
            else:
                self._waiters.append(waiter)
            try:
                done, _ = await asyncio.wait({waiter}, timeout=remaining)
            except BaseException:
                self._abandon(waiter)
                raise
            if not done:
                self._abandon(waiter)
                raise self._exhausted()

            session = waiter.result()
            if session is None:
                # capacity was freed; try again ahead of later arrivals
                front = True
                continue
            self._borrowed[session] = trace
            return session

    def _exhausted(self) -> PoolExhaustedError:
        return PoolExhaustedError(
            f"Timed out after {self.options.acquire_timeout}s waiting for a session "
            f"({self.options.max_sessions} in use)"
        )

    def _abandon(self, waiter: asyncio.Future[Session | None]) -> None:
        with contextlib.suppress(ValueError):
            self._waiters.remove(waiter)
        if not waiter.done():
            waiter.cancel()
        elif not waiter.cancelled() and waiter.exception() is None:
            session = waiter.result()
            if session is not None:
                self.release(session)

    def _take_idle(self, write: bool) -> Session | None:
        first, second = (self._writes, self._reads) if write else (self._reads, self._writes)
        if first:
            return first.popleft()
        if second:
            return second.popleft()
        return None

    async def _create_session(self) -> Session:
        async with self._create_limit:
            session = self.database.session()
            await session.create(labels=self.options.labels or None)
        return session

    def _return(self, session: Session, *, prepare: bool = True) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                # the waiter records its own trace when it wakes
                self._borrowed[session] = ""
                waiter.set_result(session)
                return
        if session.txn is not None:
            self._writes.append(session)
        elif prepare and self._needs_write_session():
            self._busy.add(session)
            self._preparing += 1
            self._spawn(self._prepare_write(session))
        else:
            self._reads.append(session)

    def _wake_waiter(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return

    def _needs_write_session(self) -> bool:
        if self.options.write_fraction <= 0:
            return False
        # the session being returned is not counted in size yet
        target = self.options.write_fraction * (self.size + 1)
        return len(self._writes) + self._preparing < target

    async def _prepare_write(self, session: Session) -> None:
        try:
            await self.create_transaction(session)
        except Exception as err:
            self._emit_error(err)
        finally:
            self._busy.discard(session)
            self._preparing -= 1
        if self._closed or not session.healthy:
            await self._destroy(session)
            self._wake_waiter()
            return
        self._return(session, prepare=False)

    async def _fill(self) -> None:
        count = self.options.min_sessions - self.size
        if count <= 0 or self._closed:
            return
        logger.debug("Creating %d sessions", count)
        self._pending += count
        await asyncio.gather(*(self._add_session() for _ in range(count)))

    async def _add_session(self) -> None:
        try:
            session = await self._create_session()
        except Exception as err:
            self._pending -= 1
            self._emit_error(err)
            self._wake_waiter()
            return
        self._pending -= 1
        if self._closed:
            await self._destroy(session)
            return
        self._return(session)

    async def _maintain(self) -> None:
        interval = min(self.options.keep_alive, self.options.idle_timeout)
        while not self._closed:
            await asyncio.sleep(interval)
            self._maintaining = True
            try:
                await self._evict_idle_sessions()
                await self._ping_idle_sessions()
                await self._fill()
            except Exception as err:
                self._emit_error(err)
            finally:
                self._maintaining = False

    async def _evict_idle_sessions(self) -> None:
        now = time.monotonic()
        idle = sorted([*self._reads, *self._writes], key=lambda s: s.last_used)
        evicted = []
        for session in idle:
            if self.available <= self.options.max_idle or self.size <= self.options.min_sessions:
                break
            if now - session.last_used < self.options.idle_timeout:
                break
            self._remove_idle(session)
            evicted.append(session)
        if evicted:
            logger.debug("Evicting %d idle sessions", len(evicted))
            await asyncio.gather(*(self._destroy(session) for session in evicted))

    async def _ping_idle_sessions(self) -> None:
        now = time.monotonic()
        stale = [
            session
            for session in (*self._reads, *self._writes)
            if now - session.last_used >= self.options.keep_alive
        ]
        for session in stale:
            self._remove_idle(session)
            self._busy.add(session)
        await asyncio.gather(*(self._ping(session) for session in stale))

    async def _ping(self, session: Session) -> None:
        try:
            await session.keep_alive()
        except Exception as err:
            self._busy.discard(session)
            logger.warning("Keep-alive failed for session %s", session.name)
            self._emit_error(err)
            await self._destroy(session)
            self._wake_waiter()
            return
        self._busy.discard(session)
        if self._closed:
            await self._destroy(session)
            return
        self._return(session, prepare=False)

    def _remove_idle(self, session: Session) -> None:
        if session in self._reads:
            self._reads.remove(session)
        else:
            self._writes.remove(session)

    async def _destroy(self, session: Session) -> None:
        if not session.healthy:
            return
        try:
            await session.delete()
        except Exception as err:
            self._emit_error(err)

    def _on_transaction_end(self, txn: Transaction) -> None:
        if txn.session in self._borrowed:
            self.release(txn.session)

    def _emit_error(self, err: BaseException) -> None:
        if not self._error_listeners:
            logger.error("Session pool error: %s", err, exc_info=err)
            return
        for listener in list(self._error_listeners):
            listener(err)

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    @staticmethod
    def _describe_leak(session: Session, trace: str) -> str:
        return f"Session {session.name} leaked; acquired at:\n{trace}"
