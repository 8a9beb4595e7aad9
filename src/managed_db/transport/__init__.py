"""Transports that carry requests to the backend."""

from managed_db.transport.base import DEFAULT_CLIENT, RequestConfig, Transport
from managed_db.transport.http import HttpTransport
from managed_db.transport.sqlite import SQLiteTransport

__all__ = ["DEFAULT_CLIENT", "HttpTransport", "RequestConfig", "SQLiteTransport", "Transport"]
