"""Database utilities for interacting with the gateway's SQLite store."""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from .config import DATA_CONFIG, resolve_sqlite_path


def _ensure_parent_directory(path: Path) -> None:
    """Create the directory structure for the SQLite database if missing."""

    path.parent.mkdir(parents=True, exist_ok=True)


def _connect(isolation_level: str | None = "") -> sqlite3.Connection:
    path = resolve_sqlite_path()
    _ensure_parent_directory(path)
    connection = sqlite3.connect(
        path,
        timeout=DATA_CONFIG.busy_timeout_seconds,
        isolation_level=isolation_level,
        check_same_thread=False,
    )
    connection.row_factory = sqlite3.Row
    return connection


@contextmanager
def sqlite_connection() -> Iterator[sqlite3.Connection]:
    """Provide a configured SQLite connection as a context manager."""

    connection = _connect()
    try:
        connection.execute("PRAGMA foreign_keys = ON")
        yield connection
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()


@contextmanager
def sqlite_transaction() -> Iterator[sqlite3.Connection]:
    """Provide a connection inside an immediate write transaction.

    ``BEGIN IMMEDIATE`` takes the write lock up front, so concurrent writers
    queue on the busy timeout instead of interleaving. Everything executed on
    the yielded connection commits together or not at all.
    """

    connection = _connect(isolation_level=None)
    try:
        connection.execute("PRAGMA foreign_keys = ON")
        connection.execute("BEGIN IMMEDIATE")
        try:
            yield connection
        except BaseException:
            connection.execute("ROLLBACK")
            raise
        connection.execute("COMMIT")
    finally:
        connection.close()
