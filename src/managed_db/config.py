"""Environment-variable-based configuration."""

import os
from pathlib import Path


def get_api_endpoint() -> str:
    """Return the REST gateway base URL from MDB_API_ENDPOINT."""
    return os.environ.get("MDB_API_ENDPOINT", "http://localhost:9020")


def get_access_token() -> str | None:
    """Return the bearer token from MDB_ACCESS_TOKEN, if set."""
    return os.environ.get("MDB_ACCESS_TOKEN") or None


def get_request_timeout() -> float:
    """Return the HTTP request timeout in seconds from MDB_REQUEST_TIMEOUT."""
    return float(os.environ.get("MDB_REQUEST_TIMEOUT", "60.0"))


def get_instance_name() -> str | None:
    """Return the instance path prefixed to bare database names from MDB_INSTANCE."""
    return os.environ.get("MDB_INSTANCE") or None


def get_database_name() -> str:
    """Return the database name used by the CLI from MDB_DATABASE."""
    return os.environ.get("MDB_DATABASE", "default")


def get_sqlite_path() -> Path | None:
    """Return the emulator database path from MDB_SQLITE_PATH, if set."""
    raw = os.environ.get("MDB_SQLITE_PATH")
    if not raw:
        return None
    if raw == ":memory:":
        return Path(raw)
    return Path(raw).expanduser()


def get_pool_min() -> int:
    """Return the minimum pool size from MDB_POOL_MIN."""
    return int(os.environ.get("MDB_POOL_MIN", "25"))


def get_pool_max() -> int:
    """Return the maximum pool size from MDB_POOL_MAX."""
    return int(os.environ.get("MDB_POOL_MAX", "100"))


def get_pool_acquire_timeout() -> float:
    """Return the session acquire timeout in seconds from MDB_POOL_ACQUIRE_TIMEOUT."""
    return float(os.environ.get("MDB_POOL_ACQUIRE_TIMEOUT", "30.0"))


def get_pool_keep_alive() -> float:
    """Return the idle session ping interval in seconds from MDB_POOL_KEEP_ALIVE."""
    return float(os.environ.get("MDB_POOL_KEEP_ALIVE", "1800.0"))


def get_pool_write_fraction() -> float:
    """Return the write-prepared share of idle sessions from MDB_POOL_WRITE_FRACTION."""
    return float(os.environ.get("MDB_POOL_WRITE_FRACTION", "0.0"))


def get_log_level() -> str:
    """Return the logging level from MDB_LOG_LEVEL."""
    return os.environ.get("MDB_LOG_LEVEL", "WARNING")
