"""
Repository for the append-only ``audit_events`` table.

The ``UNIQUE (recommendation_id, status)`` constraint makes appends
idempotent: ``INSERT OR IGNORE`` of a duplicate key is a no-op and the
first-written event stays authoritative.
"""

from __future__ import annotations

import sqlite3
from typing import Optional

from nba_recommender.db.repositories.base import BaseRepository
from nba_recommender.models.recommendation import AuditEvent
from nba_recommender.taxonomy.lifecycle_taxonomy import RecommendationStatus
from nba_recommender.utils.time_utils import parse_timestamp, to_iso


class AuditEventRepository(BaseRepository):
    """Append/read access to ``audit_events``."""

    def insert_if_absent(self, event: AuditEvent) -> bool:
        """Append ``event``; returns ``False`` if its dedupe key already exists."""
        cur = self.execute(
            """
            INSERT OR IGNORE INTO audit_events (
                recommendation_id, status, outcome, details, event_ts, actor_id
            ) VALUES (?, ?, ?, ?, ?, ?);
            """,
            (
                event.recommendation_id,
                event.status.value,
                event.outcome,
                self.dump_json(event.details),
                to_iso(event.timestamp),
                event.actor_id,
            ),
        )
        return cur.rowcount > 0

    def find(
        self, recommendation_id: str, status: RecommendationStatus
    ) -> Optional[AuditEvent]:
        row = self.fetchone(
            "SELECT * FROM audit_events WHERE recommendation_id = ? AND status = ?;",
            (recommendation_id, status.value),
        )
        return self._row_to_event(row) if row is not None else None

    def history(self, recommendation_id: str) -> list[AuditEvent]:
        """Return every event for ``recommendation_id`` in append order."""
        rows = self.fetchall(
            "SELECT * FROM audit_events WHERE recommendation_id = ? ORDER BY event_id;",
            (recommendation_id,),
        )
        return [self._row_to_event(r) for r in rows]

    def _row_to_event(self, row: sqlite3.Row) -> AuditEvent:
        return AuditEvent(
            recommendation_id=row["recommendation_id"],
            status=row["status"],
            outcome=row["outcome"],
            details=self.load_json(row["details"]),
            timestamp=parse_timestamp(row["event_ts"]),
            actor_id=row["actor_id"],
        )
