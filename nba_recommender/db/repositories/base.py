"""
Base repository providing shared SQLite execution helpers.

All repositories inherit from ``BaseRepository`` and receive a
``sqlite3.Connection`` at construction time.  The connection is opened and
committed by the caller (``get_connection()``), so one adapter call is one
transaction.

Conventions:
  - No ORM: SQL is explicit and lives in repository methods.
  - Repositories speak pydantic models, not raw dicts.
  - Mapping-valued columns are stored as canonical JSON text.
  - Timestamps are stored as ISO-8601 UTC strings (``to_iso``).
"""

from __future__ import annotations

import json
import logging
import sqlite3
from typing import Any, Optional

logger = logging.getLogger(__name__)

Params = tuple[Any, ...] | dict[str, Any]


class BaseRepository:
    """Shared SQL execution helpers for all repository classes.

    Attributes:
        conn: The active ``sqlite3.Connection``.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def execute(self, sql: str, params: Params = ()) -> sqlite3.Cursor:
        logger.debug("SQL: %s | params: %s", sql.strip(), params)
        return self.conn.execute(sql, params)

    def executemany(self, sql: str, params_list: list[Params]) -> sqlite3.Cursor:
        logger.debug("SQL (many): %s | count: %d", sql.strip(), len(params_list))
        return self.conn.executemany(sql, params_list)

    def fetchone(self, sql: str, params: Params = ()) -> Optional[sqlite3.Row]:
        return self.execute(sql, params).fetchone()

    def fetchall(self, sql: str, params: Params = ()) -> list[sqlite3.Row]:
        return self.execute(sql, params).fetchall()

    def count(self, table: str) -> int:
        """Return the number of rows in ``table`` (trusted table names only)."""
        row = self.fetchone(f"SELECT COUNT(*) AS n FROM {table};")
        return int(row["n"]) if row is not None else 0

    @staticmethod
    def dump_json(value: Any) -> Optional[str]:
        """Serialize a mapping/list column; ``None`` stays ``NULL``."""
        if value is None:
            return None
        return json.dumps(value, sort_keys=True, default=str, separators=(",", ":"))

    @staticmethod
    def load_json(text: Optional[str]) -> Any:
        if text is None:
            return None
        return json.loads(text)
