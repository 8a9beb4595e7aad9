"""In-process emulator of the backend RPC surface on top of SQLite.

Serves the same methods as the HTTP gateway so the query layer can run
against a local file or ``:memory:`` database. It emulates sessions,
transactions and streamed partial results, not the backend's isolation:

* One aiosqlite connection is shared by every session, so reads see the
  open writer's uncommitted changes and read-only transactions are not
  snapshots.
* A read/write transaction takes the single write lock (``BEGIN
  IMMEDIATE``) at its first DML statement. Another transaction that tries
  to write meanwhile gets ``ABORTED``.
"""

from __future__ import annotations

import base64
import json
import logging
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any

import aiosqlite

from managed_db.codec import decode_value, encode_value
from managed_db.errors import StatusCode, TransportError
from managed_db.row import Row
from managed_db.transport.base import RequestConfig

logger = logging.getLogger(__name__)

DEFAULT_ROWS_PER_PARTIAL = 100

_QUERY_KEYWORDS = {"SELECT", "WITH", "VALUES", "EXPLAIN"}
_DML_KEYWORDS = {"INSERT", "UPDATE", "DELETE", "REPLACE"}


def _now() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


def _first_keyword(sql: str) -> str:
    stripped = sql.lstrip(" \t\r\n(")
    return stripped.split(None, 1)[0].upper() if stripped else ""


def _to_sqlite(value: Any) -> Any:
    """Convert a decoded parameter into something sqlite3 can bind."""
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return encode_value(value)
    if isinstance(value, Row):
        return json.dumps(value.to_dict(), default=str)
    if isinstance(value, (list, dict)):
        return json.dumps(value, default=str)
    return value


def _column_type(values: list[Any]) -> dict[str, Any]:
    sample = next((v for v in values if v is not None), None)
    if isinstance(sample, int):
        return {"code": "INT64"}
    if isinstance(sample, float):
        return {"code": "FLOAT64"}
    if isinstance(sample, bytes):
        return {"code": "BYTES"}
    return {"code": "STRING"}


def _encode_token(offset: int) -> str:
    return base64.b64encode(str(offset).encode()).decode("ascii")


def _decode_token(token: str) -> int:
    try:
        return int(base64.b64decode(token).decode())
    except ValueError:
        raise TransportError(
            f"Invalid resume token: {token}", StatusCode.INVALID_ARGUMENT
        ) from None


@dataclass
class _Transaction:
    id: str
    session: str
    read_only: bool
    writing: bool = False


@dataclass
class _Session:
    name: str
    labels: dict[str, str] = field(default_factory=dict)
    create_time: str = field(default_factory=_now)
    last_use_time: str = field(default_factory=_now)
    txn: _Transaction | None = None


class SQLiteTransport:
    """Transport that executes requests against a local SQLite database."""

    def __init__(
        self, conn: aiosqlite.Connection, *, rows_per_partial: int = DEFAULT_ROWS_PER_PARTIAL
    ) -> None:
        """Initialize with an aiosqlite connection opened in autocommit mode."""
        self._conn = conn
        self.rows_per_partial = rows_per_partial
        self._sessions: dict[str, _Session] = {}
        self._transactions: dict[str, _Transaction] = {}
        self._writer: _Transaction | None = None
        self._handlers: dict[str, Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]] = {
            "createSession": self._create_session,
            "getSession": self._get_session,
            "deleteSession": self._delete_session,
            "executeSql": self._execute_sql,
            "beginTransaction": self._begin_transaction,
            "commit": self._commit,
            "rollback": self._rollback,
        }

    @classmethod
    async def create(cls, path: Path | str = ":memory:", **kwargs: Any) -> SQLiteTransport:
        """Open (or create) a SQLite database and wrap it."""
        path = str(path)
        if path != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        conn = await aiosqlite.connect(path, isolation_level=None)
        await conn.execute("PRAGMA foreign_keys=ON")
        logger.debug("SQLite emulator opened at %s", path)
        return cls(conn, **kwargs)

    @property
    def session_names(self) -> list[str]:
        return list(self._sessions)

    async def executescript(self, sql: str) -> None:
        """Run DDL or seed statements directly, outside any session."""
        await self._conn.executescript(sql)

    async def request(self, config: RequestConfig) -> dict[str, Any]:
        """Serve a unary call."""
        handler = self._handlers.get(config.method)
        if handler is None:
            raise TransportError(f"Unsupported method: {config.method}", StatusCode.UNIMPLEMENTED)
        return await handler(dict(config.req_opts))

    async def request_stream(self, config: RequestConfig) -> AsyncIterator[dict[str, Any]]:
        """Serve executeStreamingSql as a series of partial result sets."""
        if config.method != "executeStreamingSql":
            raise TransportError(f"Unsupported method: {config.method}", StatusCode.UNIMPLEMENTED)
        req = dict(config.req_opts)
        self._touch(req.get("session"))
        self._resolve_transaction(req)
        fields, rows = await self._query(req)

        token = req.get("resumeToken")
        offset = _decode_token(token) if token else 0
        first = True
        while True:
            batch = rows[offset : offset + self.rows_per_partial]
            offset += len(batch)
            partial: dict[str, Any] = {
                "values": [value for row in batch for value in row],
            }
            if first:
                partial["metadata"] = {"rowType": {"fields": fields}}
                first = False
            if offset >= len(rows):
                partial["stats"] = {"rowCountExact": str(len(rows))}
                yield partial
                return
            partial["resumeToken"] = _encode_token(offset)
            yield partial

    async def close(self) -> None:
        """Roll back any open write and close the connection."""
        if self._writer is not None:
            await self._release_writer(commit=False)
        await self._conn.close()

    # -- Sessions --

    async def _create_session(self, req: dict[str, Any]) -> dict[str, Any]:
        database = req.get("database")
        if not database:
            raise TransportError("createSession requires 'database'", StatusCode.INVALID_ARGUMENT)
        labels = (req.get("session") or {}).get("labels") or {}
        session = _Session(f"{database}/sessions/{uuid.uuid4().hex}", dict(labels))
        self._sessions[session.name] = session
        return self._session_info(session)

    async def _get_session(self, req: dict[str, Any]) -> dict[str, Any]:
        return self._session_info(self._lookup_session(req.get("name")))

    async def _delete_session(self, req: dict[str, Any]) -> dict[str, Any]:
        session = self._lookup_session(req.get("name"))
        if session.txn is not None:
            await self._discard(session.txn)
        del self._sessions[session.name]
        return {}

    def _session_info(self, session: _Session) -> dict[str, Any]:
        return {
            "name": session.name,
            "labels": session.labels,
            "createTime": session.create_time,
            "approximateLastUseTime": session.last_use_time,
        }

    def _lookup_session(self, name: str | None) -> _Session:
        session = self._sessions.get(name or "")
        if session is None:
            raise TransportError.from_status(StatusCode.NOT_FOUND, f"Session not found: {name}")
        return session

    def _touch(self, name: str | None) -> _Session:
        session = self._lookup_session(name)
        session.last_use_time = _now()
        return session

    # -- Transactions --

    async def _begin_transaction(self, req: dict[str, Any]) -> dict[str, Any]:
        session = self._touch(req.get("session"))
        options = req.get("options") or {}
        read_only = "readOnly" in options
        if session.txn is not None:
            # a session runs one transaction at a time
            await self._discard(session.txn)
        txn = _Transaction(uuid.uuid4().hex, session.name, read_only)
        self._transactions[txn.id] = txn
        session.txn = txn
        response: dict[str, Any] = {"id": txn.id}
        if read_only and options["readOnly"].get("returnReadTimestamp"):
            response["readTimestamp"] = _now()
        return response

    async def _commit(self, req: dict[str, Any]) -> dict[str, Any]:
        session = self._touch(req.get("session"))
        txn = self._lookup_transaction(session, req.get("transactionId"))
        if txn.writing:
            await self._release_writer(commit=True)
        self._forget(txn)
        return {"commitTimestamp": _now()}

    async def _rollback(self, req: dict[str, Any]) -> dict[str, Any]:
        session = self._touch(req.get("session"))
        txn = self._lookup_transaction(session, req.get("transactionId"))
        await self._discard(txn)
        return {}

    def _lookup_transaction(self, session: _Session, txn_id: str | None) -> _Transaction:
        txn = self._transactions.get(txn_id or "")
        if txn is None or txn.session != session.name:
            raise TransportError(f"Transaction not found: {txn_id}", StatusCode.NOT_FOUND)
        return txn

    def _resolve_transaction(self, req: dict[str, Any]) -> _Transaction | None:
        selector = req.get("transaction") or {}
        if "id" not in selector:
            return None
        session = self._lookup_session(req.get("session"))
        return self._lookup_transaction(session, selector["id"])

    async def _acquire_writer(self, txn: _Transaction) -> None:
        if txn.writing:
            return
        if self._writer is not None:
            raise TransportError.from_status(
                StatusCode.ABORTED, "Transaction was aborted because of a conflicting write"
            )
        await self._conn.execute("BEGIN IMMEDIATE")
        self._writer = txn
        txn.writing = True

    async def _release_writer(self, *, commit: bool) -> None:
        writer, self._writer = self._writer, None
        if writer is not None:
            writer.writing = False
        await self._conn.execute("COMMIT" if commit else "ROLLBACK")

    async def _discard(self, txn: _Transaction) -> None:
        if txn.writing:
            await self._release_writer(commit=False)
        self._forget(txn)

    def _forget(self, txn: _Transaction) -> None:
        self._transactions.pop(txn.id, None)
        session = self._sessions.get(txn.session)
        if session is not None and session.txn is txn:
            session.txn = None

    # -- SQL --

    async def _execute_sql(self, req: dict[str, Any]) -> dict[str, Any]:
        self._touch(req.get("session"))
        txn = self._resolve_transaction(req)
        keyword = _first_keyword(req.get("sql", ""))
        if keyword in _DML_KEYWORDS:
            if txn is None or txn.read_only:
                raise TransportError(
                    "DML statements require a read/write transaction",
                    StatusCode.FAILED_PRECONDITION,
                )
            await self._acquire_writer(txn)
            count = await self._execute(req)
            return {
                "metadata": {"rowType": {"fields": []}},
                "stats": {"rowCountExact": str(count)},
            }
        fields, rows = await self._query(req)
        return {
            "metadata": {"rowType": {"fields": fields}},
            "rows": rows,
            "stats": {"rowCountExact": str(len(rows))},
        }

    async def _query(self, req: dict[str, Any]) -> tuple[list[dict[str, Any]], list[list[Any]]]:
        sql = req.get("sql", "")
        if _first_keyword(sql) not in _QUERY_KEYWORDS:
            raise TransportError(
                f"Only queries can be streamed: {sql[:40]}", StatusCode.INVALID_ARGUMENT
            )
        try:
            cursor = await self._conn.execute(sql, self._bind(req))
            raw = await cursor.fetchall()
        except aiosqlite.Error as exc:
            raise TransportError(str(exc), StatusCode.INVALID_ARGUMENT) from exc
        names = [column[0] for column in cursor.description or ()]
        fields = [
            {"name": name, "type": _column_type([row[i] for row in raw])}
            for i, name in enumerate(names)
        ]
        rows = [[encode_value(value) for value in row] for row in raw]
        return fields, rows

    async def _execute(self, req: dict[str, Any]) -> int:
        try:
            cursor = await self._conn.execute(req.get("sql", ""), self._bind(req))
        except aiosqlite.Error as exc:
            raise TransportError(str(exc), StatusCode.INVALID_ARGUMENT) from exc
        return max(cursor.rowcount, 0)

    def _bind(self, req: dict[str, Any]) -> dict[str, Any]:
        params = req.get("params") or {}
        types = req.get("paramTypes") or {}
        bound = {}
        for name, value in params.items():
            param_type = types.get(name, {"code": "STRING"})
            if param_type.get("code") == "JSON":
                bound[name] = value
            else:
                bound[name] = _to_sqlite(decode_value(value, param_type))
        return bound
