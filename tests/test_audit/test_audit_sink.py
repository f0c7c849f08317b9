"""Tests for nba_recommender/audit/sink.py — in-memory and SQLite sinks share one contract."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from nba_recommender.audit.sink import InMemoryAuditSink, SqliteAuditSink
from nba_recommender.models.recommendation import AuditEvent
from nba_recommender.taxonomy.lifecycle_taxonomy import RecommendationStatus as S

TS = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def _event(rec_id: str = "rec_1", status: S = S.SHOWN, **kwargs) -> AuditEvent:
    return AuditEvent(recommendation_id=rec_id, status=status, timestamp=TS, **kwargs)


@pytest.fixture(params=["memory", "sqlite"])
def sink(request, db_path):
    if request.param == "memory":
        return InMemoryAuditSink()
    return SqliteAuditSink(db_path)


class TestAuditSinkContract:
    def test_append_new_event(self, sink):
        assert sink.append(_event()) is True
        assert sink.find("rec_1", S.SHOWN) is not None

    def test_duplicate_key_rejected(self, sink):
        assert sink.append(_event(actor_id="first")) is True
        assert sink.append(_event(actor_id="second")) is False
        # First write stays authoritative
        assert sink.find("rec_1", S.SHOWN).actor_id == "first"
        assert len(sink.history("rec_1")) == 1

    def test_history_in_append_order(self, sink):
        sink.append(_event(status=S.SHOWN))
        sink.append(_event(status=S.ACCEPTED))
        sink.append(_event(status=S.EXECUTED, outcome="done", details={"task_id": "T-9"}))
        sink.append(_event("rec_2", status=S.SHOWN))

        history = sink.history("rec_1")
        assert [e.status for e in history] == [S.SHOWN, S.ACCEPTED, S.EXECUTED]
        assert history[-1].outcome == "done"
        assert history[-1].details == {"task_id": "T-9"}
        assert history[-1].timestamp == TS

    def test_find_missing(self, sink):
        assert sink.find("rec_1", S.ACCEPTED) is None
        assert sink.history("rec_unknown") == []


def test_sqlite_sink_survives_reopen(db_path):
    SqliteAuditSink(db_path).append(_event())
    reopened = SqliteAuditSink(db_path)
    assert reopened.append(_event()) is False
    assert reopened.find("rec_1", S.SHOWN) is not None
