"""Tests for the SQLite emulator transport, directly and through Database."""

import asyncio

import pytest

from managed_db.errors import (
    AbortedError,
    SessionNotFoundError,
    StatusCode,
    TransportError,
)
from managed_db.transport.base import RequestConfig

DATABASE = "projects/test/instances/local/databases/bank"


async def _session(emulator) -> str:
    response = await emulator.request(RequestConfig("createSession", {"database": DATABASE}))
    return response["name"]


async def _stream(emulator, req_opts):
    return [
        partial
        async for partial in emulator.request_stream(
            RequestConfig("executeStreamingSql", req_opts)
        )
    ]


async def _begin(emulator, session: str) -> str:
    response = await emulator.request(
        RequestConfig("beginTransaction", {"session": session, "options": {"readWrite": {}}})
    )
    return response["id"]


async def _balance(db, account_id: int) -> int:
    rows = await db.run(
        {"sql": "SELECT balance FROM accounts WHERE id = @id", "params": {"id": account_id}}
    )
    return rows[0]["balance"]


@pytest.mark.asyncio
async def test_session_lifecycle(emulator):
    name = await _session(emulator)
    assert name.startswith(f"{DATABASE}/sessions/")
    info = await emulator.request(RequestConfig("getSession", {"name": name}))
    assert info["name"] == name
    assert "createTime" in info

    await emulator.request(RequestConfig("deleteSession", {"name": name}))
    with pytest.raises(SessionNotFoundError):
        await emulator.request(RequestConfig("getSession", {"name": name}))


@pytest.mark.asyncio
async def test_stream_is_split_with_resume_tokens(emulator):
    name = await _session(emulator)
    partials = await _stream(
        emulator, {"session": name, "sql": "SELECT id, owner FROM accounts ORDER BY id"}
    )
    assert [p["values"] for p in partials] == [["1", "alice", "2", "bob"], ["3", "carol"]]
    assert partials[0]["metadata"]["rowType"]["fields"] == [
        {"name": "id", "type": {"code": "INT64"}},
        {"name": "owner", "type": {"code": "STRING"}},
    ]
    assert "resumeToken" in partials[0]
    assert partials[-1]["stats"] == {"rowCountExact": "3"}

    resumed = await _stream(
        emulator,
        {
            "session": name,
            "sql": "SELECT id, owner FROM accounts ORDER BY id",
            "resumeToken": partials[0]["resumeToken"],
        },
    )
    assert [p["values"] for p in resumed] == [["3", "carol"]]


@pytest.mark.asyncio
async def test_unknown_session_is_not_found(emulator):
    with pytest.raises(SessionNotFoundError):
        await _stream(emulator, {"session": "nope", "sql": "SELECT 1"})


@pytest.mark.asyncio
async def test_dml_requires_read_write_transaction(emulator):
    name = await _session(emulator)
    with pytest.raises(TransportError) as exc_info:
        await emulator.request(
            RequestConfig("executeSql", {"session": name, "sql": "DELETE FROM accounts"})
        )
    assert exc_info.value.code is StatusCode.FAILED_PRECONDITION


@pytest.mark.asyncio
async def test_sql_errors_are_invalid_argument(emulator):
    name = await _session(emulator)
    with pytest.raises(TransportError) as exc_info:
        await _stream(emulator, {"session": name, "sql": "SELECT * FROM missing"})
    assert exc_info.value.code is StatusCode.INVALID_ARGUMENT


@pytest.mark.asyncio
async def test_conflicting_writer_is_aborted(emulator):
    first, second = await _session(emulator), await _session(emulator)
    txn_a = await _begin(emulator, first)
    txn_b = await _begin(emulator, second)

    update = "UPDATE accounts SET balance = balance + 1 WHERE id = 1"
    await emulator.request(
        RequestConfig(
            "executeSql", {"session": first, "sql": update, "transaction": {"id": txn_a}}
        )
    )
    with pytest.raises(AbortedError):
        await emulator.request(
            RequestConfig(
                "executeSql", {"session": second, "sql": update, "transaction": {"id": txn_b}}
            )
        )
    await emulator.request(RequestConfig("commit", {"session": first, "transactionId": txn_a}))


@pytest.mark.asyncio
async def test_commit_unknown_transaction(emulator):
    name = await _session(emulator)
    with pytest.raises(TransportError) as exc_info:
        await emulator.request(RequestConfig("commit", {"session": name, "transactionId": "x"}))
    assert exc_info.value.code is StatusCode.NOT_FOUND


@pytest.mark.asyncio
async def test_database_reads_rows(sqlite_db):
    rows = await sqlite_db.run("SELECT id, owner, balance FROM accounts ORDER BY id")
    assert [row.to_dict() for row in rows] == [
        {"id": 1, "owner": "alice", "balance": 100},
        {"id": 2, "owner": "bob", "balance": 50},
        {"id": 3, "owner": "carol", "balance": 0},
    ]
    assert await _balance(sqlite_db, 2) == 50


@pytest.mark.asyncio
async def test_transfer_commits(sqlite_db):
    async def transfer(txn):
        rows = await txn.run("SELECT balance FROM accounts WHERE id = 1")
        amount = rows[0]["balance"] // 2
        await txn.run_update(
            {
                "sql": "UPDATE accounts SET balance = balance - @amount WHERE id = 1",
                "params": {"amount": amount},
            }
        )
        await txn.run_update(
            {
                "sql": "UPDATE accounts SET balance = balance + @amount WHERE id = 2",
                "params": {"amount": amount},
            }
        )
        await txn.commit()
        return amount

    assert await sqlite_db.run_transaction(transfer) == 50
    assert await _balance(sqlite_db, 1) == 50
    assert await _balance(sqlite_db, 2) == 100
    assert sqlite_db.pool.borrowed == 0


@pytest.mark.asyncio
async def test_failed_transaction_is_rolled_back(sqlite_db):
    async def broken(txn):
        await txn.run_update("UPDATE accounts SET balance = 0 WHERE id = 1")
        raise RuntimeError("insufficient funds")

    with pytest.raises(RuntimeError):
        await sqlite_db.run_transaction(broken)
    assert await _balance(sqlite_db, 1) == 100


@pytest.mark.asyncio
async def test_conflicting_transactions_both_commit(sqlite_db):
    holding = asyncio.Event()

    async def slow(txn):
        await txn.run_update("UPDATE accounts SET balance = balance + 10 WHERE id = 3")
        holding.set()
        await asyncio.sleep(0.05)
        await txn.commit()

    async def fast(txn):
        await holding.wait()
        await txn.run_update("UPDATE accounts SET balance = balance + 5 WHERE id = 3")
        await txn.commit()
        return txn.attempts

    _, retries = await asyncio.gather(
        sqlite_db.run_transaction(slow), sqlite_db.run_transaction(fast)
    )
    assert retries >= 1
    assert await _balance(sqlite_db, 3) == 15


@pytest.mark.asyncio
async def test_close_deletes_sessions(sqlite_db, emulator):
    await sqlite_db.run("SELECT 1")
    assert emulator.session_names
    await sqlite_db.close()
    assert emulator.session_names == []
