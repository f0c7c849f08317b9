"""
Lifecycle tracker: the recommendation status state machine.

Every status change goes through this class, at explicit call sites:

  materialize()      — a ranked candidate is surfaced; record created in Shown.
  record_shown()     — the UI surface rendered the recommendations.
  record_response()  — the user accepted or rejected.
  record_executed()  — the Action Executor reported success or failure.

Idempotency
-----------
A request for a status the recommendation is already in or past is a no-op
returning the stored record with ``applied=False``, so a callback delivered
twice or late never double-applies.

Write order
-----------
A transition appends its audit event (deduplicated on
``(recommendation_id, status)``) before the new status is saved.  If the
append fails, nothing changed and a retry applies normally.  If the save
fails after the append, the next request for that transition finds the audit
record and restores the stored status from it instead of appending again.

Anything else outside the status graph raises ``InvalidTransition`` and leaves
the stored record untouched.

Concurrency
-----------
Transitions on one recommendation are serialized by a re-entrant lock held
per recommendation id while in use.  ``lock_for`` is public so the service
can hold the same lock across check, execute and record for one Execute call.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable, Optional

from nba_recommender.audit.sink import AuditSink
from nba_recommender.errors import InvalidTransition, UnknownRecommendation
from nba_recommender.lifecycle.store import RecommendationStore
from nba_recommender.models.context import Context
from nba_recommender.models.recommendation import (
    AuditEvent,
    ExecutionResult,
    Recommendation,
    ScoredCandidate,
    recommendation_id_for,
)
from nba_recommender.taxonomy.lifecycle_taxonomy import RecommendationStatus
from nba_recommender.utils.time_utils import utcnow

logger = logging.getLogger(__name__)

S = RecommendationStatus

# Statuses that satisfy a request for the key status.
_AT_OR_PAST: dict[RecommendationStatus, frozenset[RecommendationStatus]] = {
    S.ACCEPTED: frozenset({S.ACCEPTED, S.EXECUTED, S.FAILED}),
    S.REJECTED: frozenset({S.REJECTED}),
    S.EXECUTED: frozenset({S.EXECUTED, S.FAILED}),
    S.FAILED:   frozenset({S.EXECUTED, S.FAILED}),
}

_ALLOWED: dict[RecommendationStatus, frozenset[RecommendationStatus]] = {
    S.SHOWN:    frozenset({S.ACCEPTED, S.REJECTED}),
    S.ACCEPTED: frozenset({S.EXECUTED, S.FAILED}),
}

_EXECUTION_STATUSES = frozenset({S.EXECUTED, S.FAILED})

# Audit statuses that record the same transition as the key status.
_SAME_TRANSITION: dict[RecommendationStatus, tuple[RecommendationStatus, ...]] = {
    S.ACCEPTED: (S.ACCEPTED,),
    S.REJECTED: (S.REJECTED,),
    S.EXECUTED: (S.EXECUTED, S.FAILED),
    S.FAILED:   (S.FAILED, S.EXECUTED),
}


@dataclass(frozen=True)
class TransitionOutcome:
    """Result of a lifecycle request.

    Attributes:
        recommendation: The stored record after the request.
        applied:        ``False`` when the request was an idempotent no-op.
        event:          The audit event appended, when ``applied``.
    """

    recommendation: Recommendation
    applied: bool
    event: Optional[AuditEvent] = None


@dataclass
class _LockEntry:
    lock: threading.RLock = field(default_factory=threading.RLock)
    holders: int = 0


class LifecycleTracker:
    """Validates and applies lifecycle transitions, forwarding them to the audit sink.

    Attributes:
        store:      Where materialized recommendations live.
        audit_sink: Append-only lifecycle event record.
    """

    def __init__(
        self,
        store: RecommendationStore,
        audit_sink: AuditSink,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.audit_sink = audit_sink
        self._clock = clock
        self._locks: dict[str, _LockEntry] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def lock_for(self, recommendation_id: str) -> Iterator[None]:
        """Hold the lock of one recommendation; other ids never contend with it."""
        with self._locks_guard:
            entry = self._locks.get(recommendation_id)
            if entry is None:
                entry = self._locks[recommendation_id] = _LockEntry()
            entry.holders += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._locks_guard:
                entry.holders -= 1
                if entry.holders == 0:
                    del self._locks[recommendation_id]

    # ── Creation ──────────────────────────────────────────────────────────────

    def materialize(
        self,
        context: Context,
        candidate: ScoredCandidate,
        rule_set_version: int,
    ) -> Recommendation:
        """Give ``candidate`` a stable identity in Shown state.

        Re-surfacing the same candidate for the same context version, role and
        rule snapshot returns the already stored record unchanged.
        """
        rec_id = recommendation_id_for(
            context.context_type,
            context.context_id,
            context.context_version_hash(),
            context.user_role,
            rule_set_version,
            candidate.rule_id,
            candidate.rule_version,
        )
        rec = Recommendation(
            recommendation_id=rec_id,
            context_type=context.context_type,
            context_ref=context.context_id,
            customer_ref=context.customer_ref,
            rule_id=candidate.rule_id,
            rule_version=candidate.rule_version,
            rule_set_version=rule_set_version,
            action_type=candidate.action_type,
            target_object_ref=candidate.target_object_ref,
            execution_strategy=candidate.execution_strategy,
            score=candidate.score,
            priority_tier=candidate.priority_tier,
            reason=candidate.reason,
            suggested_action=candidate.suggested_action,
            created_at=self._clock(),
        )
        stored, created = self.store.add_if_absent(rec)
        if created:
            logger.debug("Materialized %s | rule_id=%s", rec_id, candidate.rule_id)
        return stored

    # ── Reads ─────────────────────────────────────────────────────────────────

    def get(self, recommendation_id: str) -> Recommendation:
        rec = self.store.get(recommendation_id)
        if rec is None:
            raise UnknownRecommendation(recommendation_id)
        return rec

    def history(self, recommendation_id: str) -> list[AuditEvent]:
        return self.audit_sink.history(recommendation_id)

    def list_for_context(self, context_type: str, context_id: str) -> list[Recommendation]:
        return self.store.list_for_context(context_type, context_id)

    # ── Lifecycle reporting ───────────────────────────────────────────────────

    def record_shown(
        self, recommendation_ids: Iterable[str], actor_id: str = "system"
    ) -> list[TransitionOutcome]:
        """Record that recommendations were rendered to the user.

        Every id is checked before any is recorded, so an unknown id leaves
        all of them unchanged.  A Shown callback arriving after a response
        still stamps ``shown_at`` but never moves the status backwards.

        Raises:
            UnknownRecommendation: If any id was never materialized.
        """
        ids = list(dict.fromkeys(recommendation_ids))
        for rec_id in ids:
            self.get(rec_id)
        return [self._record_shown_one(rec_id, actor_id) for rec_id in ids]

    def _record_shown_one(self, rec_id: str, actor_id: str) -> TransitionOutcome:
        with self.lock_for(rec_id):
            rec = self.get(rec_id)
            recorded = self.audit_sink.find(rec_id, S.SHOWN)
            if recorded is not None:
                if rec.shown_at is None:
                    rec.shown_at = recorded.timestamp
                    self.store.save(rec)
                return TransitionOutcome(rec, applied=False)

            event = self._append(rec, S.SHOWN, self._clock(), actor_id)
            if rec.shown_at is None:
                rec.shown_at = event.timestamp
                self.store.save(rec)
            return self._applied(rec, event)

    def record_response(
        self, recommendation_id: str, accepted: bool, actor_id: str = "system"
    ) -> TransitionOutcome:
        """Record an Accepted or Rejected response.

        Raises:
            UnknownRecommendation: If the id was never materialized.
            InvalidTransition: If the response does not follow from the stored status.
        """
        target = S.ACCEPTED if accepted else S.REJECTED
        return self._transition(recommendation_id, target, actor_id)

    def record_executed(
        self,
        recommendation_id: str,
        result: ExecutionResult,
        actor_id: str = "system",
    ) -> TransitionOutcome:
        """Record the Action Executor's result as Executed or Failed.

        Raises:
            UnknownRecommendation: If the id was never materialized.
            InvalidTransition: If execution is not allowed from the stored status.
        """
        target = S.EXECUTED if result.succeeded else S.FAILED
        return self._transition(
            recommendation_id, target, actor_id,
            outcome=result.outcome, details=dict(result.details),
        )

    def check_execution(self, recommendation_id: str) -> Optional[TransitionOutcome]:
        """Decide whether an Execute call may invoke the executor.

        Returns:
            ``None`` if execution may proceed, or a no-op outcome holding the
            already recorded result when the recommendation was executed before.

        Raises:
            UnknownRecommendation: If the id was never materialized.
            InvalidTransition: If execution is not allowed from the stored status.
        """
        with self.lock_for(recommendation_id):
            rec = self.get(recommendation_id)
            if rec.status in _EXECUTION_STATUSES:
                return TransitionOutcome(rec, applied=False)
            recorded = self._find_recorded(recommendation_id, S.EXECUTED)
            if recorded is not None:
                return self._restore(rec, recorded)
            self._validate(rec, S.EXECUTED)
            return None

    # ── Internals ─────────────────────────────────────────────────────────────

    def _transition(
        self,
        rec_id: str,
        target: RecommendationStatus,
        actor_id: str,
        outcome: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> TransitionOutcome:
        with self.lock_for(rec_id):
            rec = self.get(rec_id)
            if rec.status in _AT_OR_PAST[target]:
                logger.debug(
                    "Transition no-op | %s | status=%s | requested=%s",
                    rec_id, rec.status, target,
                )
                return TransitionOutcome(rec, applied=False)

            self._validate(rec, target)
            recorded = self._find_recorded(rec_id, target)
            if recorded is not None:
                return self._restore(rec, recorded)

            event = self._append(rec, target, self._clock(), actor_id, outcome, details)
            _apply_event(rec, event)
            self.store.save(rec)
            return self._applied(rec, event)

    def _find_recorded(
        self, rec_id: str, target: RecommendationStatus
    ) -> Optional[AuditEvent]:
        for status in _SAME_TRANSITION[target]:
            event = self.audit_sink.find(rec_id, status)
            if event is not None:
                return event
        return None

    def _restore(self, rec: Recommendation, event: AuditEvent) -> TransitionOutcome:
        """Save the status an earlier request audited but did not store."""
        logger.warning(
            "Restoring %s for %s from its audit record", event.status, rec.recommendation_id,
            extra={"rule_id": rec.rule_id},
        )
        _apply_event(rec, event)
        self.store.save(rec)
        return TransitionOutcome(rec, applied=False, event=event)

    def _append(
        self,
        rec: Recommendation,
        status: RecommendationStatus,
        now: datetime,
        actor_id: str,
        outcome: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        event = AuditEvent(
            recommendation_id=rec.recommendation_id,
            status=status,
            outcome=outcome,
            details=details,
            timestamp=now,
            actor_id=actor_id,
        )
        if not self.audit_sink.append(event):
            logger.warning(
                "Audit sink already held %s for %s", status, rec.recommendation_id
            )
        return event

    @staticmethod
    def _applied(rec: Recommendation, event: AuditEvent) -> TransitionOutcome:
        logger.info(
            "Lifecycle %s | %s | rule_id=%s | actor=%s",
            event.status, rec.recommendation_id, rec.rule_id, event.actor_id,
            extra={"rule_id": rec.rule_id},
        )
        return TransitionOutcome(rec, applied=True, event=event)

    @staticmethod
    def _validate(rec: Recommendation, target: RecommendationStatus) -> None:
        current = rec.status
        if target in _ALLOWED.get(current, frozenset()):
            return
        if (
            current is S.SHOWN
            and target in _EXECUTION_STATUSES
            and rec.execution_strategy.allows_direct_execution
        ):
            return

        if current.is_terminal:
            reason = f"{current} is terminal."
        elif current is S.SHOWN and target in _EXECUTION_STATUSES:
            reason = (
                f"Execution requires an Accepted response "
                f"(execution_strategy={rec.execution_strategy})."
            )
        else:
            reason = ""
        raise InvalidTransition(rec.recommendation_id, current, target, reason)


def _apply_event(rec: Recommendation, event: AuditEvent) -> None:
    """Copy a response or execution event onto the stored record."""
    rec.status = event.status
    if event.status in _EXECUTION_STATUSES:
        rec.outcome = event.outcome
        rec.execution_details = dict(event.details or {})
        rec.executed_at = event.timestamp
    else:
        rec.responded_at = event.timestamp
