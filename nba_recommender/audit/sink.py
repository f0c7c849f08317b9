"""
Audit sinks.

The ``LifecycleTracker`` appends one ``AuditEvent`` per applied transition.
A sink stores at most one event per ``(recommendation_id, status)`` and
reports whether an append was new, which is what makes lifecycle callbacks
safe to repeat or deliver out of order.
"""

from __future__ import annotations

import threading
from typing import Optional, Protocol

from nba_recommender.db.connection import ConnectionFactory
from nba_recommender.db.repositories.audit_repo import AuditEventRepository
from nba_recommender.models.recommendation import AuditEvent
from nba_recommender.taxonomy.lifecycle_taxonomy import RecommendationStatus


class AuditSink(Protocol):
    def append(self, event: AuditEvent) -> bool:
        """Store ``event``; ``False`` if its dedupe key was already present."""
        ...

    def find(
        self, recommendation_id: str, status: RecommendationStatus
    ) -> Optional[AuditEvent]:
        ...

    def history(self, recommendation_id: str) -> list[AuditEvent]:
        ...


class InMemoryAuditSink:
    """Process-local sink, used by tests and the ``memory`` storage backend."""

    def __init__(self) -> None:
        self._events: dict[tuple[str, str], AuditEvent] = {}
        self._order: list[tuple[str, str]] = []
        self._lock = threading.Lock()

    def append(self, event: AuditEvent) -> bool:
        key = event.dedupe_key
        with self._lock:
            if key in self._events:
                return False
            self._events[key] = event
            self._order.append(key)
            return True

    def find(
        self, recommendation_id: str, status: RecommendationStatus
    ) -> Optional[AuditEvent]:
        with self._lock:
            return self._events.get((recommendation_id, status.value))

    def history(self, recommendation_id: str) -> list[AuditEvent]:
        with self._lock:
            return [self._events[k] for k in self._order if k[0] == recommendation_id]

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)


class SqliteAuditSink:
    """Sink backed by the ``audit_events`` table; one connection per call.

    Attributes:
        connect: Factory for configured connections (schema applied on first use).
    """

    def __init__(self, db_path: str, wal_mode: bool = True, busy_timeout_ms: int = 5000) -> None:
        self.connect = ConnectionFactory(db_path, wal_mode=wal_mode, busy_timeout_ms=busy_timeout_ms)

    def append(self, event: AuditEvent) -> bool:
        with self.connect() as conn:
            return AuditEventRepository(conn).insert_if_absent(event)

    def find(
        self, recommendation_id: str, status: RecommendationStatus
    ) -> Optional[AuditEvent]:
        with self.connect() as conn:
            return AuditEventRepository(conn).find(recommendation_id, status)

    def history(self, recommendation_id: str) -> list[AuditEvent]:
        with self.connect() as conn:
            return AuditEventRepository(conn).history(recommendation_id)
