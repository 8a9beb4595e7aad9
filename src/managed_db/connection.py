"""Database construction from environment configuration."""

import logging
from pathlib import Path

from managed_db.config import get_instance_name, get_sqlite_path
from managed_db.database import Database
from managed_db.models.options import PoolOptions
from managed_db.transport.base import Transport
from managed_db.transport.http import HttpTransport
from managed_db.transport.sqlite import SQLiteTransport

logger = logging.getLogger(__name__)


async def create_database(
    name: str,
    *,
    instance_name: str | None = None,
    sqlite_path: Path | str | None = None,
    pool_options: PoolOptions | None = None,
    endpoint: str | None = None,
) -> Database:
    """Create and open a Database with a transport chosen from configuration.

    Uses the SQLite emulator when ``sqlite_path`` or MDB_SQLITE_PATH is set,
    otherwise the HTTP gateway. The returned database owns its transport.
    For an in-memory emulator, pass ":memory:".
    """
    path = sqlite_path or get_sqlite_path()
    transport: Transport
    if path:
        transport = await SQLiteTransport.create(path)
    else:
        transport = HttpTransport(endpoint)
        logger.debug("Using HTTP gateway at %s", transport.endpoint)

    db = Database(
        transport,
        name,
        pool_options or PoolOptions.from_env(),
        instance_name=instance_name or get_instance_name(),
        owns_transport=True,
    )
    db.open()
    return db
