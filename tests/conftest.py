"""
Shared pytest fixtures for the next-best-action recommender test suite.

Provides:
  - ``in_memory_db``: a fresh in-memory SQLite connection with the schema applied.
  - ``db_path``: a SQLite file path under ``tmp_path`` for adapter tests.
  - ``as_of``: the fixed evaluation timestamp every scoring test uses.
  - ``make_rule`` / ``make_context``: factories with sensible defaults.
  - ``StaticRuleSource``: an in-memory ``RuleSource`` that can be edited or
    switched to failing mid-test.
  - ``make_service``: a fully wired in-memory ``RecommendationService``.
"""

from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from typing import Any, Generator, Optional

import pytest

from nba_recommender.audit.sink import InMemoryAuditSink
from nba_recommender.cache.recommendation_cache import RecommendationCache
from nba_recommender.db.schema import apply_schema
from nba_recommender.evaluation.conditions import ConditionEvaluator
from nba_recommender.evaluation.pipeline import EvaluationPipeline
from nba_recommender.evaluation.scoring import ScoringEngine
from nba_recommender.executor import HandlerActionExecutor
from nba_recommender.lifecycle.store import InMemoryRecommendationStore
from nba_recommender.lifecycle.tracker import LifecycleTracker
from nba_recommender.models.context import Context
from nba_recommender.models.rule import Rule
from nba_recommender.rules.repository import RuleRepository
from nba_recommender.service import RecommendationService

AS_OF = datetime(2025, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class StaticRuleSource:
    """In-memory rule source; ``failing = True`` makes every read raise."""

    def __init__(self, rules: Optional[list[Rule]] = None) -> None:
        self.rules: list[Rule] = list(rules or [])
        self.failing = False
        self.loads = 0

    def load(self, context_type: str) -> list[Rule]:
        self.loads += 1
        if self.failing:
            raise ConnectionError("configuration store unreachable")
        return [r for r in self.rules if r.context_type == context_type]

    def context_types(self) -> list[str]:
        if self.failing:
            raise ConnectionError("configuration store unreachable")
        return sorted({r.context_type for r in self.rules})


# ── Database fixtures ─────────────────────────────────────────────────────────

@pytest.fixture
def in_memory_db() -> Generator[sqlite3.Connection, None, None]:
    """Yield a fresh in-memory SQLite connection with the schema applied."""
    conn = sqlite3.connect(":memory:")
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    apply_schema(conn)
    yield conn
    conn.close()


@pytest.fixture
def db_path(tmp_path) -> str:
    return str(tmp_path / "db" / "nba_test.db")


# ── Domain object factories ───────────────────────────────────────────────────

@pytest.fixture
def as_of() -> datetime:
    return AS_OF


@pytest.fixture
def make_rule():
    """Factory for ``Rule`` objects; keyword arguments override defaults."""

    def _make(rule_id: str = "OPP-001", base_score: float = 50.0, **overrides: Any) -> Rule:
        fields: dict[str, Any] = {
            "rule_id": rule_id,
            "context_type": "opportunity",
            "base_score": base_score,
            "action_type": "create_follow_up",
            "target_object_ref": "Task",
            "description": f"Rule {rule_id}",
        }
        fields.update(overrides)
        return Rule(**fields)

    return _make


@pytest.fixture
def make_context():
    """Factory for opportunity ``Context`` objects."""

    def _make(context_id: str = "006-0001", **overrides: Any) -> Context:
        fields: dict[str, Any] = {
            "context_type": "opportunity",
            "context_id": context_id,
            "related_ids": {"account": "001-ACME"},
            "attributes": {
                "stage": "Negotiation",
                "amount": 120_000,
                "days_since_activity": 21,
                "last_activity_at": "2025-02-08T12:00:00Z",
            },
            "user_role": "sales_rep",
        }
        fields.update(overrides)
        return Context(**fields)

    return _make


@pytest.fixture
def static_source() -> StaticRuleSource:
    return StaticRuleSource()


@pytest.fixture
def make_service(static_source):
    """Build an in-memory service around ``static_source``.

    Keyword arguments: ``rules``, ``executor``, ``guard``, ``cache``,
    ``evaluator``, ``top_n``.
    """
    built: list[RecommendationService] = []

    def _make(
        rules: Optional[list[Rule]] = None,
        executor=None,
        guard=None,
        cache: Optional[RecommendationCache] = None,
        evaluator: Optional[ConditionEvaluator] = None,
        top_n: int = 3,
    ) -> RecommendationService:
        if rules is not None:
            static_source.rules = list(rules)
        repository = RuleRepository(static_source)
        tracker = LifecycleTracker(InMemoryRecommendationStore(), InMemoryAuditSink())
        cache = cache if cache is not None else RecommendationCache(ttl_seconds=600)
        pipeline = EvaluationPipeline(
            repository=repository,
            evaluator=evaluator or ConditionEvaluator(timeout_seconds=1.0),
            scorer=ScoringEngine(timeout_seconds=1.0),
            tracker=tracker,
            cache=cache,
            guard=guard,
            top_n=top_n,
        )
        service = RecommendationService(
            repository=repository,
            pipeline=pipeline,
            tracker=tracker,
            executor=executor or HandlerActionExecutor(),
            cache=cache,
        )
        built.append(service)
        return service

    yield _make
    for service in built:
        service.close()
