"""
Recommendation stores.

A store owns materialized ``Recommendation`` records.  ``add_if_absent``
keys on the deterministic recommendation id, so re-evaluating an unchanged
context re-surfaces the stored record instead of creating a duplicate.
Stores hand out copies: callers mutate their copy and persist it with
``save``.
"""

from __future__ import annotations

import threading
from typing import Optional, Protocol

from nba_recommender.db.connection import ConnectionFactory
from nba_recommender.db.repositories.recommendation_repo import RecommendationRepository
from nba_recommender.models.recommendation import Recommendation


class RecommendationStore(Protocol):
    def get(self, recommendation_id: str) -> Optional[Recommendation]:
        ...

    def add_if_absent(self, rec: Recommendation) -> tuple[Recommendation, bool]:
        """Store ``rec`` unless its id exists.

        Returns:
            ``(stored_record, created)``; ``stored_record`` is the existing one
            when ``created`` is ``False``.
        """
        ...

    def save(self, rec: Recommendation) -> None:
        """Persist the lifecycle fields of an existing record."""
        ...

    def list_for_context(self, context_type: str, context_ref: str) -> list[Recommendation]:
        ...


class InMemoryRecommendationStore:
    def __init__(self) -> None:
        self._records: dict[str, Recommendation] = {}
        self._lock = threading.Lock()

    def get(self, recommendation_id: str) -> Optional[Recommendation]:
        with self._lock:
            rec = self._records.get(recommendation_id)
            return rec.model_copy(deep=True) if rec is not None else None

    def add_if_absent(self, rec: Recommendation) -> tuple[Recommendation, bool]:
        with self._lock:
            existing = self._records.get(rec.recommendation_id)
            if existing is not None:
                return existing.model_copy(deep=True), False
            self._records[rec.recommendation_id] = rec.model_copy(deep=True)
            return rec, True

    def save(self, rec: Recommendation) -> None:
        with self._lock:
            if rec.recommendation_id not in self._records:
                raise KeyError(rec.recommendation_id)
            self._records[rec.recommendation_id] = rec.model_copy(deep=True)

    def list_for_context(self, context_type: str, context_ref: str) -> list[Recommendation]:
        with self._lock:
            matches = [
                r for r in self._records.values()
                if r.context_type == context_type and r.context_ref == context_ref
            ]
        return sorted(
            (r.model_copy(deep=True) for r in matches),
            key=lambda r: (r.created_at, r.recommendation_id),
        )

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


class SqliteRecommendationStore:
    """Store backed by the ``recommendations`` table; one connection per call."""

    def __init__(self, db_path: str, wal_mode: bool = True, busy_timeout_ms: int = 5000) -> None:
        self.connect = ConnectionFactory(db_path, wal_mode=wal_mode, busy_timeout_ms=busy_timeout_ms)

    def get(self, recommendation_id: str) -> Optional[Recommendation]:
        with self.connect() as conn:
            return RecommendationRepository(conn).get(recommendation_id)

    def add_if_absent(self, rec: Recommendation) -> tuple[Recommendation, bool]:
        with self.connect() as conn:
            repo = RecommendationRepository(conn)
            if repo.insert_if_absent(rec):
                return rec, True
            existing = repo.get(rec.recommendation_id)
            assert existing is not None
            return existing, False

    def save(self, rec: Recommendation) -> None:
        with self.connect() as conn:
            RecommendationRepository(conn).update_lifecycle(rec)

    def list_for_context(self, context_type: str, context_ref: str) -> list[Recommendation]:
        with self.connect() as conn:
            return RecommendationRepository(conn).list_for_context(context_type, context_ref)
