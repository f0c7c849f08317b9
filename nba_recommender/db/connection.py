"""
SQLite connection management.

Provides a context manager ``get_connection()`` that:
  - Enables foreign key enforcement (OFF by default in SQLite).
  - Enables WAL journal mode so audit appends do not block concurrent readers.
  - Sets a busy timeout to handle lock contention between evaluation threads.
  - Uses ``sqlite3.Row`` factory so rows behave like dicts.
  - Optionally applies the schema (idempotent) before yielding.
  - Commits on clean exit, rolls back on exception.

Connections are short-lived and never shared between threads: the SQLite
adapters (rule source, recommendation store, audit sink) open one per call.

Usage::

    from nba_recommender.db.connection import get_connection

    with get_connection("data/db/nba_recommender.db") as conn:
        conn.execute("INSERT INTO ...")
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

logger = logging.getLogger(__name__)


@contextmanager
def get_connection(
    db_path: str,
    wal_mode: bool = True,
    busy_timeout_ms: int = 5000,
    ensure_schema: bool = False,
) -> Generator[sqlite3.Connection, None, None]:
    """Context manager yielding a configured SQLite connection.

    Args:
        db_path: Path to the SQLite database file, or ``":memory:"``.
        wal_mode: If ``True``, enable WAL journal mode (ignored for
            in-memory databases).
        busy_timeout_ms: Milliseconds to wait on a locked database before
            raising ``OperationalError``.
        ensure_schema: If ``True``, run ``apply_schema()`` first.

    Yields:
        An open, configured ``sqlite3.Connection``.

    Raises:
        sqlite3.OperationalError: If the database cannot be opened or is locked.
    """
    in_memory = db_path == ":memory:"
    if not in_memory:
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(db_path, timeout=busy_timeout_ms / 1000)
    conn.row_factory = sqlite3.Row

    try:
        conn.execute("PRAGMA foreign_keys = ON;")
        conn.execute(f"PRAGMA busy_timeout = {int(busy_timeout_ms)};")
        if wal_mode and not in_memory:
            conn.execute("PRAGMA journal_mode = WAL;")

        if ensure_schema:
            from nba_recommender.db.schema import apply_schema

            apply_schema(conn)

        yield conn
        conn.commit()

    except Exception:
        conn.rollback()
        raise

    finally:
        conn.close()


class ConnectionFactory:
    """Opens configured connections to one database, applying the schema once.

    The SQLite adapters hold a factory instead of a connection so that every
    call runs in its own short transaction on the calling thread.

    Usage::

        connect = ConnectionFactory("data/db/nba_recommender.db")
        with connect() as conn:
            ...
    """

    def __init__(self, db_path: str, wal_mode: bool = True, busy_timeout_ms: int = 5000) -> None:
        self.db_path = db_path
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self._schema_ready = False

    @contextmanager
    def __call__(self) -> Generator[sqlite3.Connection, None, None]:
        with get_connection(
            self.db_path,
            wal_mode=self.wal_mode,
            busy_timeout_ms=self.busy_timeout_ms,
            ensure_schema=not self._schema_ready,
        ) as conn:
            self._schema_ready = True
            yield conn
