"""Tests for HttpTransport (mocked HTTP)."""

import json

import httpx
import pytest

from managed_db.errors import (
    AbortedError,
    SessionNotFoundError,
    StatusCode,
    TransportError,
)
from managed_db.transport.base import RequestConfig
from managed_db.transport.http import HttpTransport

DATABASE = "projects/p/instances/i/databases/d"
SESSION = f"{DATABASE}/sessions/s1"


def _transport(handler) -> HttpTransport:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpTransport("http://gateway.local/", access_token="secret", http_client=client)


@pytest.mark.asyncio
async def test_create_session_route():
    captured: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(200, json={"name": SESSION})

    transport = _transport(handler)
    try:
        response = await transport.request(
            RequestConfig(
                "createSession", {"database": DATABASE, "session": {"labels": {"a": "b"}}}
            )
        )
    finally:
        await transport.close()

    assert response == {"name": SESSION}
    request = captured[0]
    assert request.method == "POST"
    assert str(request.url) == f"http://gateway.local/v1/{DATABASE}/sessions"
    assert json.loads(request.content) == {"session": {"labels": {"a": "b"}}}
    assert request.headers["Authorization"] == "Bearer secret"


@pytest.mark.asyncio
async def test_session_scoped_routes():
    seen: list[tuple[str, str]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.method, request.url.path))
        if request.method == "DELETE":
            return httpx.Response(200)
        return httpx.Response(200, json={"id": "t1"})

    transport = _transport(handler)
    try:
        await transport.request(RequestConfig("beginTransaction", {"session": SESSION}))
        await transport.request(RequestConfig("getSession", {"name": SESSION}))
        assert await transport.request(RequestConfig("deleteSession", {"name": SESSION})) == {}
    finally:
        await transport.close()

    assert seen == [
        ("POST", f"/v1/{SESSION}:beginTransaction"),
        ("GET", f"/v1/{SESSION}"),
        ("DELETE", f"/v1/{SESSION}"),
    ]


@pytest.mark.asyncio
async def test_error_body_maps_to_aborted_with_retry_delay():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            409,
            json={
                "error": {
                    "status": "ABORTED",
                    "message": "Transaction was aborted.",
                    "details": [
                        {
                            "@type": "type.googleapis.com/google.rpc.RetryInfo",
                            "retryDelay": "0.2s",
                        }
                    ],
                }
            },
        )

    transport = _transport(handler)
    try:
        with pytest.raises(AbortedError) as exc_info:
            await transport.request(RequestConfig("commit", {"session": SESSION}))
    finally:
        await transport.close()
    assert exc_info.value.retry_delay == 0.2


@pytest.mark.asyncio
async def test_session_not_found():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"error": {"message": f"Session not found: {SESSION}"}})

    transport = _transport(handler)
    try:
        with pytest.raises(SessionNotFoundError) as exc_info:
            await transport.request(RequestConfig("executeSql", {"session": SESSION, "sql": "x"}))
    finally:
        await transport.close()
    assert exc_info.value.code is StatusCode.NOT_FOUND


@pytest.mark.asyncio
async def test_plain_text_error_uses_http_status():
    transport = _transport(lambda request: httpx.Response(503, text="overloaded"))
    try:
        with pytest.raises(TransportError) as exc_info:
            await transport.request(RequestConfig("executeSql", {"session": SESSION}))
    finally:
        await transport.close()
    assert exc_info.value.code is StatusCode.UNAVAILABLE
    assert exc_info.value.message == "overloaded"


@pytest.mark.asyncio
async def test_connection_failure_is_unavailable():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    transport = _transport(handler)
    try:
        with pytest.raises(TransportError) as exc_info:
            await transport.request(RequestConfig("executeSql", {"session": SESSION}))
    finally:
        await transport.close()
    assert exc_info.value.code is StatusCode.UNAVAILABLE
    assert isinstance(exc_info.value.__cause__, httpx.ConnectError)


@pytest.mark.asyncio
async def test_stream_reads_ndjson():
    lines = [{"values": ["1"], "resumeToken": "a"}, {"values": ["2"]}]

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path.endswith(":executeStreamingSql")
        body = "\n".join(json.dumps(line) for line in lines) + "\n"
        return httpx.Response(200, content=body.encode())

    transport = _transport(handler)
    try:
        config = RequestConfig("executeStreamingSql", {"session": SESSION, "sql": "SELECT 1"})
        messages = [message async for message in transport.request_stream(config)]
    finally:
        await transport.close()
    assert messages == lines


@pytest.mark.asyncio
async def test_stream_error_line_raises():
    def handler(request: httpx.Request) -> httpx.Response:
        body = (
            json.dumps({"values": ["1"]})
            + "\n"
            + json.dumps({"error": {"status": "UNAVAILABLE", "message": "reset"}})
        )
        return httpx.Response(200, content=body.encode())

    transport = _transport(handler)
    received = []
    try:
        config = RequestConfig("executeStreamingSql", {"session": SESSION})
        with pytest.raises(TransportError) as exc_info:
            async for message in transport.request_stream(config):
                received.append(message)
    finally:
        await transport.close()
    assert received == [{"values": ["1"]}]
    assert exc_info.value.code is StatusCode.UNAVAILABLE


@pytest.mark.asyncio
async def test_unknown_method_and_missing_resource():
    transport = _transport(lambda request: httpx.Response(200, json={}))
    try:
        with pytest.raises(TransportError) as unknown:
            await transport.request(RequestConfig("partitionQuery", {"session": SESSION}))
        with pytest.raises(TransportError) as missing:
            await transport.request(RequestConfig("executeSql", {"sql": "SELECT 1"}))
    finally:
        await transport.close()
    assert unknown.value.code is StatusCode.UNIMPLEMENTED
    assert missing.value.code is StatusCode.INVALID_ARGUMENT


@pytest.mark.asyncio
async def test_malformed_bodies_are_internal_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith(":executeStreamingSql"):
            return httpx.Response(200, content=b'{"values": ["1"]}\nnot json\n')
        return httpx.Response(200, content=b"<html>gateway</html>")

    transport = _transport(handler)
    received = []
    try:
        with pytest.raises(TransportError) as unary:
            await transport.request(RequestConfig("executeSql", {"session": SESSION}))
        config = RequestConfig("executeStreamingSql", {"session": SESSION})
        with pytest.raises(TransportError) as streamed:
            async for message in transport.request_stream(config):
                received.append(message)
    finally:
        await transport.close()
    assert unary.value.code is StatusCode.INTERNAL
    assert isinstance(unary.value.__cause__, ValueError)
    assert streamed.value.code is StatusCode.INTERNAL
    assert received == [{"values": ["1"]}]
