"""
Recommendation models.

``ScoredCandidate`` is the transient per-evaluation output of scoring: it is
what the ranker orders and what the cache stores.  It is never persisted
directly.

``Recommendation`` is a candidate materialized with a stable identity and a
lifecycle status.  It copies the score and reason of the rule snapshot it was
evaluated against, so later rule edits never alter an already-shown
recommendation.  It is the one mutable model in the package: its lifecycle
fields (``status``, ``outcome``, ``execution_details`` and the timestamps)
change only through ``LifecycleTracker`` transitions.

``ExecutionResult`` is what the Action Executor reports back;
``AuditEvent`` is what the tracker appends to the ``AuditSink``.
"""

from __future__ import annotations

import hashlib
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from nba_recommender.taxonomy.lifecycle_taxonomy import (
    ExecutionStatus,
    ExecutionStrategy,
    RecommendationStatus,
)


class ScoredCandidate(BaseModel):
    """A rule that applied to a context, with its computed score.

    Attributes:
        rule_id:            Source rule.
        rule_version:       Version of the rule snapshot it was scored from.
        score:              ``base_score + Σ modifiers``.
        priority_tier:      Copied from the rule; secondary ranking key.
        reason:             Templated explanation text.
        action_type:        Action to perform if executed.
        target_object_ref:  Object the action targets.
        suggested_action:   UI label.
        execution_strategy: Copied from the rule; governs direct execution.
        components:         Per-modifier contributions (``"base"`` included).
    """

    model_config = ConfigDict(frozen=True)

    rule_id: str
    rule_version: int
    score: float
    priority_tier: int
    reason: str
    action_type: str
    target_object_ref: str = ""
    suggested_action: str = ""
    execution_strategy: ExecutionStrategy = ExecutionStrategy.ON_ACCEPT
    components: dict[str, float] = Field(default_factory=dict)


class ExecutionResult(BaseModel):
    """Result reported by the Action Executor for one recommendation.

    Attributes:
        status:  ``"success"`` or ``"error"``.
        outcome: Short outcome description (e.g. ``"task_created"``).
        details: Free-form executor details (ids created, error text, ...).
    """

    model_config = ConfigDict(frozen=True)

    status: ExecutionStatus
    outcome: str = ""
    details: dict[str, Any] = Field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status is ExecutionStatus.SUCCESS


class Recommendation(BaseModel):
    """A materialized recommendation with lifecycle status.

    Attributes:
        recommendation_id:  Deterministic id (see ``recommendation_id_for``).
        context_type:       Discriminant of the context it was computed for.
        context_ref:        ``context_id`` of that context.
        customer_ref:       Related customer/account id, if any.
        rule_id:            Rule snapshot reference.
        rule_version:       Rule snapshot reference.
        rule_set_version:   Repository version at evaluation time.
        action_type:        Action to execute.
        target_object_ref:  Object the action targets.
        execution_strategy: Whether direct execution (without Accepted) is allowed.
        score:              Score recorded at evaluation time.
        priority_tier:      Priority tier recorded at evaluation time.
        reason:             Reason recorded at evaluation time.
        status:             Current lifecycle status.
        outcome:            Execution outcome once Executed/Failed.
        execution_details:  Executor details once Executed/Failed.
        created_at:         When the recommendation was materialized.
        shown_at:           When the Shown event was recorded.
        responded_at:       When Accepted/Rejected was recorded.
        executed_at:        When Executed/Failed was recorded.
    """

    # Not frozen: lifecycle fields are updated by LifecycleTracker
    model_config = ConfigDict(frozen=False, validate_assignment=True)

    recommendation_id: str
    context_type: str
    context_ref: str
    customer_ref: Optional[str] = None
    rule_id: str
    rule_version: int
    rule_set_version: int
    action_type: str
    target_object_ref: str = ""
    execution_strategy: ExecutionStrategy = ExecutionStrategy.ON_ACCEPT
    score: float
    priority_tier: int
    reason: str
    suggested_action: str = ""
    status: RecommendationStatus = RecommendationStatus.SHOWN
    outcome: Optional[str] = None
    execution_details: Optional[dict[str, Any]] = None
    created_at: datetime
    shown_at: Optional[datetime] = None
    responded_at: Optional[datetime] = None
    executed_at: Optional[datetime] = None

    def execution_result(self) -> Optional[ExecutionResult]:
        """Rebuild the recorded ``ExecutionResult``; ``None`` before execution."""
        if self.status is RecommendationStatus.EXECUTED:
            status = ExecutionStatus.SUCCESS
        elif self.status is RecommendationStatus.FAILED:
            status = ExecutionStatus.ERROR
        else:
            return None
        return ExecutionResult(
            status=status,
            outcome=self.outcome or "",
            details=dict(self.execution_details or {}),
        )


class AuditEvent(BaseModel):
    """One lifecycle event appended to the audit sink.

    The dedupe key is ``(recommendation_id, status)``: a sink must store at
    most one event per key.
    """

    model_config = ConfigDict(frozen=True)

    recommendation_id: str
    status: RecommendationStatus
    outcome: Optional[str] = None
    details: Optional[dict[str, Any]] = None
    timestamp: datetime
    actor_id: str = "system"

    @field_validator("recommendation_id")
    @classmethod
    def non_empty(cls, v: str) -> str:
        if not v:
            raise ValueError("recommendation_id must be non-empty.")
        return v

    @property
    def dedupe_key(self) -> tuple[str, str]:
        return (self.recommendation_id, self.status.value)


class RecommendationView(BaseModel):
    """One item of Evaluate output, as rendered by the UI surface."""

    model_config = ConfigDict(frozen=True)

    recommendation_id: str
    rule_id: str
    action_type: str
    score: float
    priority_tier: int
    reason: str
    target_object_ref: str
    suggested_action: str

    @classmethod
    def from_recommendation(cls, rec: Recommendation) -> "RecommendationView":
        return cls(
            recommendation_id=rec.recommendation_id,
            rule_id=rec.rule_id,
            action_type=rec.action_type,
            score=rec.score,
            priority_tier=rec.priority_tier,
            reason=rec.reason,
            target_object_ref=rec.target_object_ref,
            suggested_action=rec.suggested_action,
        )


class EvaluationResult(BaseModel):
    """Evaluate output for one context.

    Attributes:
        context_type:      Context discriminant.
        context_id:        Context the result belongs to.
        recommendations:   Ranked output, length ≤ N.
        rule_set_version:  Repository version used; ``None`` if unavailable.
        degraded:          ``True`` when the rule source was unavailable and the
                           result was failed closed to empty.
        cancelled:         ``True`` when the context went stale mid-evaluation.
        from_cache:        ``True`` when the ranking was served from cache.
        excluded_rule_ids: Rules excluded because their condition failed.
    """

    model_config = ConfigDict(frozen=True)

    context_type: str
    context_id: str
    recommendations: tuple[RecommendationView, ...] = ()
    rule_set_version: Optional[int] = None
    degraded: bool = False
    cancelled: bool = False
    from_cache: bool = False
    excluded_rule_ids: tuple[str, ...] = ()


def recommendation_id_for(
    context_type: str,
    context_id: str,
    context_version_hash: str,
    user_role: str,
    rule_set_version: int,
    rule_id: str,
    rule_version: int,
) -> str:
    """Return the deterministic id of a candidate surfaced for a context.

    The same context version, role and rule snapshot always map to the same
    id, so re-evaluation re-surfaces the existing recommendation instead of
    creating a duplicate.
    """
    key = "|".join([
        context_type,
        context_id,
        context_version_hash,
        user_role,
        str(rule_set_version),
        rule_id,
        str(rule_version),
    ])
    return "rec_" + hashlib.sha256(key.encode("utf-8")).hexdigest()[:24]
