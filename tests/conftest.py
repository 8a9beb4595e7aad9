"""Shared test fixtures."""

import inspect
from collections.abc import Callable
from typing import Any

import pytest_asyncio

from managed_db.database import Database
from managed_db.models.options import PoolOptions
from managed_db.retry import NO_BACKOFF
from managed_db.transport.base import RequestConfig
from managed_db.transport.sqlite import SQLiteTransport

INSTANCE = "projects/test/instances/local"

SCHEMA = """
CREATE TABLE accounts (
    id INTEGER PRIMARY KEY,
    owner TEXT NOT NULL,
    balance INTEGER NOT NULL
);
INSERT INTO accounts (id, owner, balance) VALUES (1, 'alice', 100);
INSERT INTO accounts (id, owner, balance) VALUES (2, 'bob', 50);
INSERT INTO accounts (id, owner, balance) VALUES (3, 'carol', 0);
"""


class FakeTransport:
    """Scriptable in-memory transport.

    Unary calls get canned responses unless ``handlers`` maps the method to
    a function of the RequestConfig; a handler may be async and may return
    an exception to raise it. ``on_stream`` returns the list of messages
    (or exceptions) a streaming call produces.
    """

    def __init__(self) -> None:
        self.calls: list[RequestConfig] = []
        self.handlers: dict[str, Callable[[RequestConfig], Any]] = {}
        self.on_stream: Callable[[RequestConfig], list[Any]] = lambda config: []
        self.deleted: list[str] = []
        self.closed = False
        self._sessions = 0
        self._transactions = 0

    def methods(self) -> list[str]:
        return [call.method for call in self.calls]

    async def request(self, config: RequestConfig) -> dict[str, Any]:
        self.calls.append(config)
        handler = self.handlers.get(config.method)
        if handler is not None:
            result = handler(config)
            if inspect.isawaitable(result):
                result = await result
            if isinstance(result, BaseException):
                raise result
            return result
        return self._default(config)

    def request_stream(self, config: RequestConfig):
        self.calls.append(config)
        return self._stream(config)

    async def _stream(self, config: RequestConfig):
        for item in self.on_stream(config):
            if isinstance(item, BaseException):
                raise item
            yield item

    def _default(self, config: RequestConfig) -> dict[str, Any]:
        req = config.req_opts
        if config.method == "createSession":
            self._sessions += 1
            return {
                "name": f"{req['database']}/sessions/s{self._sessions}",
                "createTime": "2024-05-01T12:00:00Z",
            }
        if config.method == "beginTransaction":
            self._transactions += 1
            return {"id": f"txn-{self._transactions}"}
        if config.method == "commit":
            return {"commitTimestamp": "2024-05-01T12:00:01Z"}
        if config.method == "deleteSession":
            self.deleted.append(req["name"])
            return {}
        if config.method == "executeSql":
            return {"stats": {"rowCountExact": "1"}}
        return {}

    async def close(self) -> None:
        self.closed = True


@pytest_asyncio.fixture
async def transport():
    """Scriptable fake transport."""
    return FakeTransport()


@pytest_asyncio.fixture
async def database(transport):
    """Open database over the fake transport with a small, lazily filled pool."""
    db = Database(
        transport,
        "orders",
        PoolOptions(min_sessions=0, max_sessions=4, acquire_timeout=1.0),
        instance_name=INSTANCE,
        backoff=NO_BACKOFF,
    )
    db.open()
    yield db
    await db.pool.close()


@pytest_asyncio.fixture
async def emulator():
    """In-memory SQLite emulator seeded with an accounts table."""
    transport = await SQLiteTransport.create(":memory:", rows_per_partial=2)
    await transport.executescript(SCHEMA)
    yield transport
    await transport.close()


@pytest_asyncio.fixture
async def sqlite_db(emulator):
    """Open database over the SQLite emulator."""
    db = Database(
        emulator,
        "bank",
        PoolOptions(min_sessions=0, max_sessions=5, acquire_timeout=2.0),
        instance_name=INSTANCE,
        backoff=NO_BACKOFF,
    )
    db.open()
    yield db
    await db.pool.close()
