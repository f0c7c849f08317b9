"""
Tests for nba_recommender/lifecycle/tracker.py.

What we test
------------
- materialize(): deterministic ids, Shown state, idempotent re-surfacing.
- Valid transitions: Shown→Accepted|Rejected, Accepted→Executed|Failed,
  Shown→Executed only for direct-execution rules.
- Every other request raises InvalidTransition and leaves state unchanged.
- Repeated or late callbacks are no-ops (applied=False) with one audit event.
"""

from __future__ import annotations

import sqlite3
import threading
from datetime import datetime, timedelta, timezone

import pytest

from nba_recommender.audit.sink import InMemoryAuditSink
from nba_recommender.errors import InvalidTransition, UnknownRecommendation
from nba_recommender.lifecycle.store import InMemoryRecommendationStore
from nba_recommender.lifecycle.tracker import LifecycleTracker
from nba_recommender.models.recommendation import ExecutionResult, ScoredCandidate
from nba_recommender.taxonomy.lifecycle_taxonomy import (
    ExecutionStatus,
    ExecutionStrategy,
    RecommendationStatus as S,
)

SUCCESS = ExecutionResult(status=ExecutionStatus.SUCCESS, outcome="task_created", details={"task_id": "T-1"})
FAILURE = ExecutionResult(status=ExecutionStatus.ERROR, outcome="api_error")


class TickClock:
    def __init__(self) -> None:
        self.now = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


@pytest.fixture
def sink() -> InMemoryAuditSink:
    return InMemoryAuditSink()


@pytest.fixture
def tracker(sink) -> LifecycleTracker:
    return LifecycleTracker(InMemoryRecommendationStore(), sink, clock=TickClock())


def _candidate(rule_id="OPP-1", strategy=ExecutionStrategy.ON_ACCEPT) -> ScoredCandidate:
    return ScoredCandidate(
        rule_id=rule_id,
        rule_version=3,
        score=72.5,
        priority_tier=2,
        reason="No activity for 21 days",
        action_type="create_follow_up",
        target_object_ref="Task",
        suggested_action="Schedule a follow-up",
        execution_strategy=strategy,
    )


@pytest.fixture
def shown(tracker, make_context):
    return tracker.materialize(make_context(), _candidate(), rule_set_version=1)


@pytest.fixture
def shown_direct(tracker, make_context):
    return tracker.materialize(
        make_context(), _candidate("OPP-D", ExecutionStrategy.DIRECT), rule_set_version=1
    )


class TestMaterialize:
    def test_creates_shown_record(self, shown):
        assert shown.status is S.SHOWN
        assert shown.recommendation_id.startswith("rec_")
        assert shown.context_ref == "006-0001"
        assert shown.customer_ref == "001-ACME"
        assert (shown.rule_id, shown.rule_version, shown.rule_set_version) == ("OPP-1", 3, 1)
        assert shown.score == 72.5

    def test_same_inputs_same_record(self, tracker, make_context, shown):
        again = tracker.materialize(make_context(), _candidate(), rule_set_version=1)
        assert again.recommendation_id == shown.recommendation_id
        assert again.created_at == shown.created_at
        assert len(tracker.store) == 1

    def test_new_rule_set_version_new_identity(self, tracker, make_context, shown):
        newer = tracker.materialize(make_context(), _candidate(), rule_set_version=2)
        assert newer.recommendation_id != shown.recommendation_id

    def test_role_is_part_of_identity(self, tracker, make_context, shown):
        other = tracker.materialize(make_context(user_role="manager"), _candidate(), rule_set_version=1)
        assert other.recommendation_id != shown.recommendation_id

    def test_unknown_id(self, tracker):
        with pytest.raises(UnknownRecommendation):
            tracker.get("rec_missing")


class TestValidTransitions:
    def test_shown_accept_execute(self, tracker, shown, sink):
        rec_id = shown.recommendation_id
        tracker.record_shown([rec_id])
        accepted = tracker.record_response(rec_id, accepted=True, actor_id="u-1")
        assert accepted.applied is True
        assert accepted.recommendation.status is S.ACCEPTED
        assert accepted.recommendation.responded_at is not None

        executed = tracker.record_executed(rec_id, SUCCESS)
        rec = executed.recommendation
        assert rec.status is S.EXECUTED
        assert rec.outcome == "task_created"
        assert rec.execution_details == {"task_id": "T-1"}
        assert rec.executed_at is not None

        statuses = [e.status for e in sink.history(rec_id)]
        assert statuses == [S.SHOWN, S.ACCEPTED, S.EXECUTED]
        assert sink.history(rec_id)[1].actor_id == "u-1"

    def test_accepted_then_failed(self, tracker, shown):
        tracker.record_response(shown.recommendation_id, accepted=True)
        outcome = tracker.record_executed(shown.recommendation_id, FAILURE)
        assert outcome.recommendation.status is S.FAILED
        assert outcome.event.outcome == "api_error"

    def test_reject(self, tracker, shown):
        outcome = tracker.record_response(shown.recommendation_id, accepted=False)
        assert outcome.recommendation.status is S.REJECTED

    def test_direct_execution_from_shown(self, tracker, shown_direct):
        outcome = tracker.record_executed(shown_direct.recommendation_id, SUCCESS)
        assert outcome.applied is True
        assert outcome.recommendation.status is S.EXECUTED

    def test_transitions_persisted(self, tracker, shown):
        tracker.record_response(shown.recommendation_id, accepted=True)
        assert tracker.get(shown.recommendation_id).status is S.ACCEPTED


class TestInvalidTransitions:
    def test_execute_from_shown_without_direct_strategy(self, tracker, shown, sink):
        with pytest.raises(InvalidTransition) as exc_info:
            tracker.record_executed(shown.recommendation_id, SUCCESS)
        assert "Accepted" in str(exc_info.value)
        assert tracker.get(shown.recommendation_id).status is S.SHOWN
        assert sink.history(shown.recommendation_id) == []

    def test_check_execution_rejects_shown(self, tracker, shown):
        with pytest.raises(InvalidTransition):
            tracker.check_execution(shown.recommendation_id)

    @pytest.mark.parametrize("accepted", [True, False])
    def test_rejected_is_terminal(self, tracker, shown, accepted):
        tracker.record_response(shown.recommendation_id, accepted=False)
        if accepted:
            with pytest.raises(InvalidTransition, match="terminal"):
                tracker.record_response(shown.recommendation_id, accepted=True)
        with pytest.raises(InvalidTransition):
            tracker.record_executed(shown.recommendation_id, SUCCESS)
        assert tracker.get(shown.recommendation_id).status is S.REJECTED

    def test_reject_after_accept(self, tracker, shown):
        tracker.record_response(shown.recommendation_id, accepted=True)
        with pytest.raises(InvalidTransition):
            tracker.record_response(shown.recommendation_id, accepted=False)
        assert tracker.get(shown.recommendation_id).status is S.ACCEPTED

    def test_reject_after_execute(self, tracker, shown_direct):
        tracker.record_executed(shown_direct.recommendation_id, SUCCESS)
        with pytest.raises(InvalidTransition):
            tracker.record_response(shown_direct.recommendation_id, accepted=False)


class TestIdempotency:
    def test_repeated_response_is_noop(self, tracker, shown, sink):
        first = tracker.record_response(shown.recommendation_id, accepted=True)
        second = tracker.record_response(shown.recommendation_id, accepted=True)
        assert second.applied is False
        assert second.event is None
        assert second.recommendation.responded_at == first.recommendation.responded_at
        assert len(sink.history(shown.recommendation_id)) == 1

    def test_repeated_execution_keeps_first_result(self, tracker, shown, sink):
        tracker.record_response(shown.recommendation_id, accepted=True)
        tracker.record_executed(shown.recommendation_id, SUCCESS)
        again = tracker.record_executed(shown.recommendation_id, FAILURE)
        assert again.applied is False
        assert again.recommendation.status is S.EXECUTED
        assert again.recommendation.outcome == "task_created"
        executed = [e for e in sink.history(shown.recommendation_id) if e.status in (S.EXECUTED, S.FAILED)]
        assert len(executed) == 1

    def test_late_accept_after_direct_execution(self, tracker, shown_direct):
        tracker.record_executed(shown_direct.recommendation_id, SUCCESS)
        late = tracker.record_response(shown_direct.recommendation_id, accepted=True)
        assert late.applied is False
        assert late.recommendation.status is S.EXECUTED

    def test_shown_recorded_once(self, tracker, shown, sink):
        first = tracker.record_shown([shown.recommendation_id, shown.recommendation_id])
        second = tracker.record_shown([shown.recommendation_id])
        assert [o.applied for o in first] == [True]
        assert [o.applied for o in second] == [False]
        assert len(sink.history(shown.recommendation_id)) == 1

    def test_late_shown_does_not_move_status_back(self, tracker, shown):
        tracker.record_response(shown.recommendation_id, accepted=True)
        outcome = tracker.record_shown([shown.recommendation_id])[0]
        assert outcome.applied is True
        assert outcome.recommendation.status is S.ACCEPTED
        assert outcome.recommendation.shown_at is not None

    def test_record_shown_unknown_id_changes_nothing(self, tracker, shown, sink):
        with pytest.raises(UnknownRecommendation):
            tracker.record_shown([shown.recommendation_id, "rec_missing"])
        assert sink.history(shown.recommendation_id) == []

    def test_audit_record_short_circuits(self, tracker, shown, sink):
        # An event already in the sink (e.g. written by another process) wins
        from nba_recommender.models.recommendation import AuditEvent

        sink.append(AuditEvent(
            recommendation_id=shown.recommendation_id,
            status=S.ACCEPTED,
            timestamp=datetime(2025, 3, 1, tzinfo=timezone.utc),
        ))
        outcome = tracker.record_response(shown.recommendation_id, accepted=True)
        assert outcome.applied is False
        assert outcome.recommendation.status is S.ACCEPTED
        assert tracker.get(shown.recommendation_id).responded_at == datetime(2025, 3, 1, tzinfo=timezone.utc)

    def test_concurrent_responses_apply_once(self, tracker, shown, sink):
        outcomes = []
        barrier = threading.Barrier(8)

        def respond():
            barrier.wait()
            outcomes.append(tracker.record_response(shown.recommendation_id, accepted=True))

        threads = [threading.Thread(target=respond) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sum(o.applied for o in outcomes) == 1
        assert len(sink.history(shown.recommendation_id)) == 1


class FlakySink(InMemoryAuditSink):
    """Raises on the next ``fail_appends`` appends, then behaves normally."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_appends = 0

    def append(self, event):
        if self.fail_appends:
            self.fail_appends -= 1
            raise sqlite3.OperationalError("database is locked")
        return super().append(event)


class FlakyStore(InMemoryRecommendationStore):
    """Raises on the next ``fail_saves`` saves, then behaves normally."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_saves = 0

    def save(self, rec):
        if self.fail_saves:
            self.fail_saves -= 1
            raise sqlite3.OperationalError("database is locked")
        super().save(rec)


class TestWriteFailures:
    @pytest.fixture
    def flaky_sink(self) -> FlakySink:
        return FlakySink()

    @pytest.fixture
    def flaky_store(self) -> FlakyStore:
        return FlakyStore()

    @pytest.fixture
    def flaky_tracker(self, flaky_store, flaky_sink) -> LifecycleTracker:
        return LifecycleTracker(flaky_store, flaky_sink, clock=TickClock())

    @pytest.fixture
    def rec_id(self, flaky_tracker, make_context) -> str:
        return flaky_tracker.materialize(make_context(), _candidate(), rule_set_version=1).recommendation_id

    def test_failed_audit_append_leaves_status_unchanged(self, flaky_tracker, flaky_sink, rec_id):
        flaky_sink.fail_appends = 1
        with pytest.raises(sqlite3.OperationalError):
            flaky_tracker.record_response(rec_id, accepted=True)
        assert flaky_tracker.get(rec_id).status is S.SHOWN

        retry = flaky_tracker.record_response(rec_id, accepted=True)
        assert retry.applied is True
        assert retry.recommendation.status is S.ACCEPTED
        assert [e.status for e in flaky_tracker.history(rec_id)] == [S.ACCEPTED]

    def test_failed_save_is_restored_from_audit(self, flaky_tracker, flaky_store, flaky_sink, rec_id):
        flaky_store.fail_saves = 1
        with pytest.raises(sqlite3.OperationalError):
            flaky_tracker.record_response(rec_id, accepted=True, actor_id="u-1")
        assert flaky_tracker.get(rec_id).status is S.SHOWN

        retry = flaky_tracker.record_response(rec_id, accepted=True, actor_id="u-2")
        assert retry.recommendation.status is S.ACCEPTED
        events = flaky_tracker.history(rec_id)
        assert [(e.status, e.actor_id) for e in events] == [(S.ACCEPTED, "u-1")]
        assert flaky_tracker.get(rec_id).responded_at == events[0].timestamp

    def test_failed_execution_save_keeps_first_result(self, flaky_tracker, flaky_store, rec_id):
        flaky_tracker.record_response(rec_id, accepted=True)
        flaky_store.fail_saves = 1
        with pytest.raises(sqlite3.OperationalError):
            flaky_tracker.record_executed(rec_id, FAILURE)

        prior = flaky_tracker.check_execution(rec_id)
        assert prior is not None
        assert prior.recommendation.status is S.FAILED
        assert prior.recommendation.execution_result().outcome == "api_error"

        again = flaky_tracker.record_executed(rec_id, SUCCESS)
        assert again.applied is False
        assert flaky_tracker.get(rec_id).status is S.FAILED

    def test_failed_shown_append_is_retried(self, flaky_tracker, flaky_sink, rec_id):
        flaky_sink.fail_appends = 1
        with pytest.raises(sqlite3.OperationalError):
            flaky_tracker.record_shown([rec_id])
        assert flaky_tracker.get(rec_id).shown_at is None

        [outcome] = flaky_tracker.record_shown([rec_id])
        assert outcome.applied is True
        assert flaky_tracker.get(rec_id).shown_at == outcome.event.timestamp


class TestLocks:
    def test_lock_released_after_use(self, tracker):
        with tracker.lock_for("rec_a"):
            with tracker.lock_for("rec_a"):
                pass
        assert tracker._locks == {}

    def test_different_ids_do_not_contend(self, tracker):
        entered = threading.Event()
        release = threading.Event()

        def hold():
            with tracker.lock_for("rec_a"):
                entered.set()
                release.wait(5)

        holder = threading.Thread(target=hold)
        holder.start()
        assert entered.wait(5)
        try:
            acquired = threading.Event()

            def other():
                with tracker.lock_for("rec_b"):
                    acquired.set()

            t = threading.Thread(target=other)
            t.start()
            assert acquired.wait(5)
            t.join()
        finally:
            release.set()
            holder.join()
