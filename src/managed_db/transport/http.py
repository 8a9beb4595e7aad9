"""HTTP transport for the backend's REST/JSON gateway."""

import json
import logging
from collections.abc import AsyncIterator
from typing import Any

import httpx

from managed_db.config import get_access_token, get_api_endpoint, get_request_timeout
from managed_db.errors import StatusCode, TransportError
from managed_db.transport.base import RequestConfig

logger = logging.getLogger(__name__)

# method -> (HTTP verb, request field holding the resource name, path suffix)
_ROUTES: dict[str, tuple[str, str, str]] = {
    "createSession": ("POST", "database", "/sessions"),
    "getSession": ("GET", "name", ""),
    "deleteSession": ("DELETE", "name", ""),
    "executeSql": ("POST", "session", ":executeSql"),
    "executeStreamingSql": ("POST", "session", ":executeStreamingSql"),
    "beginTransaction": ("POST", "session", ":beginTransaction"),
    "commit": ("POST", "session", ":commit"),
    "rollback": ("POST", "session", ":rollback"),
}

_HTTP_STATUS: dict[int, StatusCode] = {
    400: StatusCode.INVALID_ARGUMENT,
    401: StatusCode.UNAUTHENTICATED,
    403: StatusCode.PERMISSION_DENIED,
    404: StatusCode.NOT_FOUND,
    409: StatusCode.ABORTED,
    412: StatusCode.FAILED_PRECONDITION,
    429: StatusCode.RESOURCE_EXHAUSTED,
    499: StatusCode.CANCELLED,
    500: StatusCode.INTERNAL,
    501: StatusCode.UNIMPLEMENTED,
    503: StatusCode.UNAVAILABLE,
    504: StatusCode.DEADLINE_EXCEEDED,
}


def _error_from_payload(payload: Any, http_status: int | None = None) -> TransportError:
    """Build a TransportError from a ``{"error": {...}}`` body."""
    error = payload.get("error", {}) if isinstance(payload, dict) else {}
    if not isinstance(error, dict):
        error = {"message": str(error)}
    message = error.get("message") or f"HTTP {http_status}"
    status: Any = error.get("status")
    if not status:
        status = _HTTP_STATUS.get(http_status or 0, StatusCode.UNKNOWN)
    return TransportError.from_status(status, message, error.get("details"))


def _error_from_response(response: httpx.Response) -> TransportError:
    try:
        payload = response.json()
    except ValueError:
        payload = {"error": {"message": response.text or f"HTTP {response.status_code}"}}
    return _error_from_payload(payload, response.status_code)


def _parse_message(raw: str | bytes) -> dict[str, Any]:
    try:
        message = json.loads(raw)
    except ValueError as exc:
        raise TransportError(f"Malformed response body: {exc}", StatusCode.INTERNAL) from exc
    if not isinstance(message, dict):
        raise TransportError("Response body is not a JSON object", StatusCode.INTERNAL)
    return message


def _error_from_exception(exc: httpx.HTTPError) -> TransportError:
    if isinstance(exc, httpx.TimeoutException):
        return TransportError(str(exc) or "Request timed out", StatusCode.DEADLINE_EXCEEDED)
    return TransportError(str(exc) or type(exc).__name__, StatusCode.UNAVAILABLE)


class HttpTransport:
    """Dispatches RPCs as REST calls with httpx.

    Streaming calls expect newline-delimited JSON, one partial result per
    line. An ``{"error": ...}`` line ends the stream with that error.
    """

    def __init__(
        self,
        endpoint: str | None = None,
        *,
        access_token: str | None = None,
        timeout: float | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize with an endpoint, optional token and optional HTTP client."""
        self.endpoint = (endpoint or get_api_endpoint()).rstrip("/")
        self._token = access_token if access_token is not None else get_access_token()
        self._timeout = timeout if timeout is not None else get_request_timeout()
        self._http = http_client

    async def request(self, config: RequestConfig) -> dict[str, Any]:
        """Issue a unary call and return the decoded JSON response."""
        verb, url, body = self._route(config)
        client = self._get_client()
        logger.debug("%s %s", verb, url)
        try:
            resp = await client.request(
                verb,
                url,
                json=body if verb == "POST" else None,
                headers=self._headers(),
                timeout=config.gax_opts.get("timeout", self._timeout),
            )
        except httpx.HTTPError as exc:
            raise _error_from_exception(exc) from exc
        if resp.status_code >= 400:
            raise _error_from_response(resp)
        if not resp.content:
            return {}
        return _parse_message(resp.content)

    async def request_stream(self, config: RequestConfig) -> AsyncIterator[dict[str, Any]]:
        """Issue a streaming call and yield each partial result."""
        verb, url, body = self._route(config)
        client = self._get_client()
        logger.debug("%s %s", verb, url)
        try:
            async with client.stream(
                verb,
                url,
                json=body,
                headers=self._headers(),
                timeout=config.gax_opts.get("timeout", self._timeout),
            ) as resp:
                if resp.status_code >= 400:
                    await resp.aread()
                    raise _error_from_response(resp)
                async for line in resp.aiter_lines():
                    if not line.strip():
                        continue
                    message = _parse_message(line)
                    if "error" in message:
                        raise _error_from_payload(message)
                    yield message
        except httpx.HTTPError as exc:
            raise _error_from_exception(exc) from exc

    def _route(self, config: RequestConfig) -> tuple[str, str, dict[str, Any]]:
        try:
            verb, name_field, suffix = _ROUTES[config.method]
        except KeyError:
            raise TransportError(
                f"Unsupported method: {config.method}", StatusCode.UNIMPLEMENTED
            ) from None
        body = dict(config.req_opts)
        resource = body.pop(name_field, None)
        if not resource:
            raise TransportError(
                f"{config.method} requires '{name_field}'", StatusCode.INVALID_ARGUMENT
            )
        return verb, f"{self.endpoint}/v1/{resource}{suffix}", body

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    def _get_client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient()
        return self._http

    async def close(self) -> None:
        """Close the HTTP client if open."""
        if self._http is not None:
            await self._http.aclose()
            self._http = None
