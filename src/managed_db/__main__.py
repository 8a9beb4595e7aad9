"""Command-line entry point: run one SQL statement and print its rows as JSON."""

import argparse
import asyncio
import json
import logging
import sys

from managed_db.config import get_database_name, get_log_level
from managed_db.connection import create_database
from managed_db.errors import ManagedDBError
from managed_db.models.options import PoolOptions, TransactionOptions

logger = logging.getLogger("managed_db")


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="managed_db", description=__doc__)
    parser.add_argument("sql", help="statement to run")
    parser.add_argument("--database", default=None, help="database name (MDB_DATABASE)")
    parser.add_argument("--sqlite", default=None, help="run against a SQLite emulator file")
    parser.add_argument(
        "--read-only",
        action="store_true",
        help="run the query in a strong read-only transaction",
    )
    return parser.parse_args(argv)


async def _run(args: argparse.Namespace) -> int:
    db = await create_database(
        args.database or get_database_name(),
        sqlite_path=args.sqlite,
        pool_options=PoolOptions.from_env(min_sessions=0),
    )
    try:
        if args.read_only:
            options = TransactionOptions(read_only=True, strong=True)
            txn = await db.get_transaction(options)
            try:
                rows = await txn.run(args.sql)
            finally:
                txn.end()
        else:
            rows = await db.run(args.sql)
        for row in rows:
            print(json.dumps(row.to_dict(), default=str))
    finally:
        await db.close()
    return 0


def main(argv: list[str] | None = None) -> int:
    """Run the managed_db CLI."""
    args = _parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, get_log_level()),
        stream=sys.stderr,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    try:
        return asyncio.run(_run(args))
    except ManagedDBError as exc:
        logger.error("%s", exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
