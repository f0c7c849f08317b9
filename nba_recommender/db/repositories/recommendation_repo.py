"""
Repository for materialized recommendations.

A row is inserted once, when a candidate is first surfaced, and afterwards
only its lifecycle columns change.  The score, reason and rule references
are never rewritten.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Optional

from nba_recommender.db.repositories.base import BaseRepository
from nba_recommender.models.recommendation import Recommendation
from nba_recommender.utils.time_utils import parse_timestamp, to_iso

logger = logging.getLogger(__name__)


class RecommendationRepository(BaseRepository):
    """Read/write access to the ``recommendations`` table."""

    def insert_if_absent(self, rec: Recommendation) -> bool:
        """Insert ``rec`` unless its id already exists.

        Returns:
            ``True`` if a row was inserted, ``False`` if one already existed.
        """
        cur = self.execute(
            """
            INSERT OR IGNORE INTO recommendations (
                recommendation_id, context_type, context_ref, customer_ref,
                rule_id, rule_version, rule_set_version, action_type,
                target_object_ref, execution_strategy, score, priority_tier,
                reason, suggested_action, status, outcome, execution_details,
                created_at, shown_at, responded_at, executed_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (
                rec.recommendation_id,
                rec.context_type,
                rec.context_ref,
                rec.customer_ref,
                rec.rule_id,
                rec.rule_version,
                rec.rule_set_version,
                rec.action_type,
                rec.target_object_ref,
                rec.execution_strategy.value,
                rec.score,
                rec.priority_tier,
                rec.reason,
                rec.suggested_action,
                rec.status.value,
                rec.outcome,
                self.dump_json(rec.execution_details),
                to_iso(rec.created_at),
                to_iso(rec.shown_at),
                to_iso(rec.responded_at),
                to_iso(rec.executed_at),
            ),
        )
        return cur.rowcount > 0

    def update_lifecycle(self, rec: Recommendation) -> None:
        """Persist the lifecycle columns of ``rec``."""
        self.execute(
            """
            UPDATE recommendations SET
                status            = ?,
                outcome           = ?,
                execution_details = ?,
                shown_at          = ?,
                responded_at      = ?,
                executed_at       = ?
            WHERE recommendation_id = ?;
            """,
            (
                rec.status.value,
                rec.outcome,
                self.dump_json(rec.execution_details),
                to_iso(rec.shown_at),
                to_iso(rec.responded_at),
                to_iso(rec.executed_at),
                rec.recommendation_id,
            ),
        )

    def get(self, recommendation_id: str) -> Optional[Recommendation]:
        row = self.fetchone(
            "SELECT * FROM recommendations WHERE recommendation_id = ?;",
            (recommendation_id,),
        )
        return self._row_to_recommendation(row) if row is not None else None

    def list_for_context(self, context_type: str, context_ref: str) -> list[Recommendation]:
        rows = self.fetchall(
            """
            SELECT * FROM recommendations
            WHERE context_type = ? AND context_ref = ?
            ORDER BY created_at, recommendation_id;
            """,
            (context_type, context_ref),
        )
        return [self._row_to_recommendation(r) for r in rows]

    def _row_to_recommendation(self, row: sqlite3.Row) -> Recommendation:
        return Recommendation(
            recommendation_id=row["recommendation_id"],
            context_type=row["context_type"],
            context_ref=row["context_ref"],
            customer_ref=row["customer_ref"],
            rule_id=row["rule_id"],
            rule_version=row["rule_version"],
            rule_set_version=row["rule_set_version"],
            action_type=row["action_type"],
            target_object_ref=row["target_object_ref"],
            execution_strategy=row["execution_strategy"],
            score=row["score"],
            priority_tier=row["priority_tier"],
            reason=row["reason"],
            suggested_action=row["suggested_action"],
            status=row["status"],
            outcome=row["outcome"],
            execution_details=self.load_json(row["execution_details"]),
            created_at=parse_timestamp(row["created_at"]),
            shown_at=parse_timestamp(row["shown_at"]),
            responded_at=parse_timestamp(row["responded_at"]),
            executed_at=parse_timestamp(row["executed_at"]),
        )
