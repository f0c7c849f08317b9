"""
End-to-end tests for RecommendationService: evaluate, lifecycle, execute.

Uses the in-memory ``make_service`` fixture except for the ``build_service``
tests, which wire a service from an ``AppConfig`` the way the CLI does.
"""

from __future__ import annotations

import sqlite3
import threading
from datetime import datetime, timezone

import pytest

from nba_recommender.config import AppConfig, CacheConfig, DatabaseConfig, RulesConfig, StorageConfig
from nba_recommender.errors import InvalidTransition, UnknownRecommendation
from nba_recommender.executor import HandlerActionExecutor
from nba_recommender.models.recommendation import ExecutionResult
from nba_recommender.service import build_service
from nba_recommender.taxonomy.lifecycle_taxonomy import (
    ExecutionStatus,
    ExecutionStrategy,
    RecommendationStatus as S,
)

AS_OF = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


class CountingExecutor:
    def __init__(self, result: ExecutionResult | None = None, error: Exception | None = None):
        self.calls = 0
        self.result = result or ExecutionResult(
            status=ExecutionStatus.SUCCESS, outcome="task_created", details={"task_id": "T-1"}
        )
        self.error = error
        self._lock = threading.Lock()

    def execute(self, recommendation, payload):
        with self._lock:
            self.calls += 1
        if self.error is not None:
            raise self.error
        return self.result

def _top_id(service, context) -> str:
    result = service.evaluate(context, as_of=AS_OF)
    assert result.recommendations
    return result.recommendations[0].recommendation_id

# ── Evaluate ──────────────────────────────────────────────────────────────────

class TestEvaluate:
    def test_accepts_a_plain_mapping(self, make_service, make_rule, make_context):
        service = make_service(rules=[make_rule("OPP-1", 80.0)])
        raw = make_context().model_dump()
        result = service.evaluate(raw, as_of=AS_OF)
        assert [v.rule_id for v in result.recommendations] == ["OPP-1"]

    def test_re_evaluation_resurfaces_same_recommendation(self, make_service, make_rule, make_context):
        service = make_service(rules=[make_rule("OPP-1", 80.0)])
        first = _top_id(service, make_context())
        service.invalidate_context("006-0001")
        assert _top_id(service, make_context()) == first

    def test_invalidate_context_forces_recompute(self, make_service, make_rule, make_context):
        service = make_service(rules=[make_rule("OPP-1", 80.0)])
        service.evaluate(make_context(), as_of=AS_OF)
        assert service.evaluate(make_context(), as_of=AS_OF).from_cache is True
        assert service.invalidate_context("006-0001") >= 1
        assert service.evaluate(make_context(), as_of=AS_OF).from_cache is False

    def test_invalidate_rules_publishes_new_version(
        self, make_service, make_rule, make_context, static_source
    ):
        service = make_service(rules=[make_rule("OPP-1", 80.0)])
        before = service.evaluate(make_context(), as_of=AS_OF)
        static_source.rules = [make_rule("OPP-1", 80.0), make_rule("OPP-2", 90.0)]
        versions = service.invalidate_rules("opportunity")
        after = service.evaluate(make_context(), as_of=AS_OF)

        assert versions["opportunity"] > before.rule_set_version
        assert after.from_cache is False
        assert [v.rule_id for v in after.recommendations] == ["OPP-2", "OPP-1"]

    def test_batch_mixes_context_types(self, make_service, make_rule, make_context):
        service = make_service(rules=[
            make_rule("OPP-1", 80.0),
            make_rule("CASE-1", 40.0, context_type="case"),
        ])
        results = service.evaluate_batch(
            [make_context(), make_context("500-1", context_type="case")], as_of=AS_OF
        )
        assert [r.recommendations[0].rule_id for r in results] == ["OPP-1", "CASE-1"]

# ── Execute ───────────────────────────────────────────────────────────────────

class TestExecute:
    def test_accept_then_execute(self, make_service, make_rule, make_context):
        executor = CountingExecutor()
        service = make_service(rules=[make_rule("OPP-1", 80.0)], executor=executor)
        rec_id = _top_id(service, make_context())

        service.record_shown([rec_id], actor_id="ui")
        service.record_response(rec_id, accepted=True, actor_id="u-1")
        result = service.execute(rec_id, {"note": "call"}, actor_id="u-1")

        assert result.succeeded
        rec = service.get_recommendation(rec_id)
        assert rec.status is S.EXECUTED
        assert rec.outcome == "task_created"
        assert [e.status for e in service.history(rec_id)] == [S.SHOWN, S.ACCEPTED, S.EXECUTED]

    def test_repeated_execute_calls_executor_once(self, make_service, make_rule, make_context):
        executor = CountingExecutor()
        service = make_service(rules=[make_rule("OPP-1", 80.0)], executor=executor)
        rec_id = _top_id(service, make_context())
        service.record_response(rec_id, accepted=True)

        first = service.execute(rec_id)
        second = service.execute(rec_id)

        assert executor.calls == 1
        assert second == first
        executed = [e for e in service.history(rec_id) if e.status is S.EXECUTED]
        assert len(executed) == 1

    def test_concurrent_execute_calls_executor_once(self, make_service, make_rule, make_context):
        executor = CountingExecutor()
        service = make_service(rules=[make_rule("OPP-1", 80.0)], executor=executor)
        rec_id = _top_id(service, make_context())
        service.record_response(rec_id, accepted=True)

        results = []
        threads = [
            threading.Thread(target=lambda: results.append(service.execute(rec_id)))
            for _ in range(8)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert executor.calls == 1
        assert len(results) == 8
        assert all(r == results[0] for r in results)

    def test_execute_from_shown_requires_acceptance(self, make_service, make_rule, make_context):
        executor = CountingExecutor()
        service = make_service(rules=[make_rule("OPP-1", 80.0)], executor=executor)
        rec_id = _top_id(service, make_context())
        service.record_shown([rec_id])

        with pytest.raises(InvalidTransition) as exc_info:
            service.execute(rec_id)

        assert executor.calls == 0
        assert exc_info.value.current_status == S.SHOWN
        assert service.get_recommendation(rec_id).status is S.SHOWN

    def test_direct_strategy_executes_from_shown(self, make_service, make_rule, make_context):
        executor = CountingExecutor()
        rule = make_rule("OPP-1", 80.0, execution_strategy=ExecutionStrategy.DIRECT)
        service = make_service(rules=[rule], executor=executor)
        rec_id = _top_id(service, make_context())

        service.execute(rec_id)
        assert service.get_recommendation(rec_id).status is S.EXECUTED

        late = service.record_response(rec_id, accepted=True)
        assert late.applied is False
        assert late.recommendation.status is S.EXECUTED

    def test_rejected_cannot_be_executed(self, make_service, make_rule, make_context):
        executor = CountingExecutor()
        service = make_service(rules=[make_rule("OPP-1", 80.0)], executor=executor)
        rec_id = _top_id(service, make_context())
        service.record_response(rec_id, accepted=False)

        with pytest.raises(InvalidTransition):
            service.execute(rec_id)
        assert executor.calls == 0

    def test_executor_exception_marks_failed(self, make_service, make_rule, make_context):
        executor = CountingExecutor(error=RuntimeError("CRM timeout"))
        service = make_service(rules=[make_rule("OPP-1", 80.0)], executor=executor)
        rec_id = _top_id(service, make_context())
        service.record_response(rec_id, accepted=True)

        result = service.execute(rec_id)

        assert result.status is ExecutionStatus.ERROR
        assert result.outcome == "executor_error"
        assert "CRM timeout" in result.details["error"]
        assert service.get_recommendation(rec_id).status is S.FAILED

        again = service.execute(rec_id)
        assert again == result
        assert executor.calls == 1

    def test_missing_handler_reports_error(self, make_service, make_rule, make_context):
        executor = HandlerActionExecutor().register(
            "send_email", lambda rec, payload: ExecutionResult(status=ExecutionStatus.SUCCESS)
        )
        service = make_service(rules=[make_rule("OPP-1", 80.0)], executor=executor)
        rec_id = _top_id(service, make_context())
        service.record_response(rec_id, accepted=True)

        result = service.execute(rec_id)
        assert result.outcome == "no_handler"
        assert result.details == {"action_type": "create_follow_up"}

    def test_handler_receives_payload(self, make_service, make_rule, make_context):
        seen = {}

        def handler(rec, payload):
            seen.update(payload, rule_id=rec.rule_id)
            return ExecutionResult(status=ExecutionStatus.SUCCESS, outcome="done")

        executor = HandlerActionExecutor({"create_follow_up": handler})
        service = make_service(rules=[make_rule("OPP-1", 80.0)], executor=executor)
        rec_id = _top_id(service, make_context())
        service.record_response(rec_id, accepted=True)
        service.execute(rec_id, {"due_in_days": 2})

        assert seen == {"due_in_days": 2, "rule_id": "OPP-1"}

    def test_unknown_id(self, make_service):
        service = make_service(rules=[])
        with pytest.raises(UnknownRecommendation):
            service.execute("rec_missing")

    def test_unrecorded_result_is_not_executed_twice(
        self, make_service, make_rule, make_context, monkeypatch
    ):
        executor = CountingExecutor()
        service = make_service(rules=[make_rule("OPP-1", 80.0)], executor=executor)
        rec_id = _top_id(service, make_context())
        service.record_response(rec_id, accepted=True)

        sink = service.tracker.audit_sink
        real_append = sink.append
        failures = [sqlite3.OperationalError("database is locked")]

        def flaky_append(event):
            if failures:
                raise failures.pop()
            return real_append(event)

        monkeypatch.setattr(sink, "append", flaky_append)

        with pytest.raises(sqlite3.OperationalError):
            service.execute(rec_id)
        assert executor.calls == 1
        assert service.get_recommendation(rec_id).status is S.ACCEPTED

        result = service.execute(rec_id)
        assert executor.calls == 1
        assert result.outcome == "task_created"
        assert service.get_recommendation(rec_id).status is S.EXECUTED
        executed = [e for e in service.history(rec_id) if e.status is S.EXECUTED]
        assert len(executed) == 1


def test_list_recommendations_for_context(make_service, make_rule, make_context):
    service = make_service(rules=[make_rule("OPP-1", 80.0), make_rule("OPP-2", 60.0)])
    service.evaluate(make_context(), as_of=AS_OF)

    recs = service.list_recommendations("opportunity", "006-0001")
    assert sorted(r.rule_id for r in recs) == ["OPP-1", "OPP-2"]
    assert service.list_recommendations("opportunity", "006-9999") == []

# ── Workflow callbacks ────────────────────────────────────────────────────────

def test_workflow_result_reported_later(make_service, make_rule, make_context):
    rule = make_rule("OPP-1", 80.0, execution_strategy=ExecutionStrategy.WORKFLOW)
    service = make_service(rules=[rule])
    rec_id = _top_id(service, make_context())
    service.record_response(rec_id, accepted=True)

    outcome = service.record_executed(
        rec_id, ExecutionResult(status=ExecutionStatus.ERROR, outcome="approval_denied")
    )

    assert outcome.applied is True
    assert outcome.recommendation.status is S.FAILED
    assert service.history(rec_id)[-1].outcome == "approval_denied"

# ── build_service ─────────────────────────────────────────────────────────────

def _write_rules(path) -> None:
    path.write_text(
        "\n".join([
            "[[rules]]",
            'rule_id = "OPP-1"',
            'context_type = "opportunity"',
            "base_score = 80.0",
            'action_type = "create_follow_up"',
            'reason_template = "Stage {stage}"',
            'condition_expr = { field = "stage", op = "eq", value = "Negotiation" }',
            "",
        ]),
        encoding="utf-8",
    )

@pytest.mark.parametrize("backend", ["memory", "sqlite"])
def test_build_service_from_config(tmp_path, db_path, make_context, backend):
    rules_path = tmp_path / "rules.toml"
    _write_rules(rules_path)
    config = AppConfig(
        database=DatabaseConfig(db_path=db_path),
        rules=RulesConfig(source="toml", rules_path=str(rules_path), poll_interval_seconds=0),
        cache=CacheConfig(enabled=True),
        storage=StorageConfig(backend=backend),
    )

    with build_service(config) as service:
        assert service.poller is None
        result = service.evaluate(make_context(), as_of=AS_OF)
        assert [v.reason for v in result.recommendations] == ["Stage Negotiation"]

        rec_id = result.recommendations[0].recommendation_id
        service.record_response(rec_id, accepted=True, actor_id="u-1")
        result = service.execute(rec_id)

    assert result.outcome == "no_handler"
    assert service.get_recommendation(rec_id).status is S.FAILED

def test_build_service_sqlite_state_survives_rebuild(tmp_path, db_path, make_context):
    rules_path = tmp_path / "rules.toml"
    _write_rules(rules_path)
    config = AppConfig(
        database=DatabaseConfig(db_path=db_path),
        rules=RulesConfig(rules_path=str(rules_path), poll_interval_seconds=0),
        storage=StorageConfig(backend="sqlite"),
    )

    with build_service(config) as first:
        rec_id = first.evaluate(make_context(), as_of=AS_OF).recommendations[0].recommendation_id
        first.record_response(rec_id, accepted=False, actor_id="u-1")

    with build_service(config) as second:
        assert second.get_recommendation(rec_id).status is S.REJECTED
        assert [e.actor_id for e in second.history(rec_id)] == ["u-1"]

def test_build_service_creates_poller(tmp_path):
    rules_path = tmp_path / "rules.toml"
    _write_rules(rules_path)
    config = AppConfig(
        rules=RulesConfig(rules_path=str(rules_path), poll_interval_seconds=60),
        storage=StorageConfig(backend="memory"),
        cache=CacheConfig(enabled=False),
    )
    service = build_service(config)
    try:
        assert service.poller is not None
        assert service.cache is None
        assert service.invalidate_context("anything") == 0
    finally:
        service.close()
