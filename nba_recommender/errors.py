"""
Error taxonomy for the recommender.

Propagation policy
------------------
Rule-level and modifier-level failures are absorbed locally (the rule is
excluded, the modifier contributes zero).  Only repository-level and
transition-validity failures reach the caller:

  RepositoryUnavailable — rule source unreachable.  The pipeline fails closed:
                          empty ranked list, ``degraded=True``.
  RuleEvaluationError   — condition failure/timeout for one rule.  Absorbed by
                          ``ConditionEvaluator.filter_applicable``.
  InvalidTransition     — lifecycle rule violation.  Surfaced to the caller,
                          recommendation state unchanged.
  CacheUnavailable      — cache backend failure.  The pipeline bypasses the
                          cache and computes fresh.
  UnknownRecommendation — lifecycle call for an id that was never materialized.

A repeated Execute is not an error: the idempotent path returns the prior
recorded result.
"""

from __future__ import annotations

from typing import Optional


class RecommenderError(RuntimeError):
    """Base class for all recommender failures."""


class RepositoryUnavailable(RecommenderError):
    """Raised when the rule configuration source cannot be read.

    Attributes:
        context_type: The context type whose rules could not be loaded.
    """

    def __init__(self, context_type: str, reason: str) -> None:
        self.context_type = context_type
        self.reason = reason
        super().__init__(
            f"Rule repository unavailable for context type '{context_type}': {reason}"
        )


class RuleEvaluationError(RecommenderError):
    """Raised when a rule's condition cannot be evaluated for a context.

    Attributes:
        rule_id: The rule being evaluated, when known.
    """

    def __init__(self, message: str, rule_id: Optional[str] = None) -> None:
        self.rule_id = rule_id
        super().__init__(message if rule_id is None else f"[{rule_id}] {message}")


class InvalidTransition(RecommenderError):
    """Raised when a lifecycle transition is not allowed from the current state.

    Attributes:
        recommendation_id: The recommendation the transition was requested for.
        current_status:    Status the recommendation is in (unchanged).
        requested_status:  Status that was requested.
    """

    def __init__(
        self,
        recommendation_id: str,
        current_status: str,
        requested_status: str,
        reason: str = "",
    ) -> None:
        self.recommendation_id = recommendation_id
        self.current_status = current_status
        self.requested_status = requested_status
        message = (
            f"Recommendation '{recommendation_id}' cannot move from "
            f"{current_status} to {requested_status}."
        )
        if reason:
            message = f"{message}  {reason}"
        super().__init__(message)


class CacheUnavailable(RecommenderError):
    """Raised by a cache backend that cannot serve reads or writes."""


class UnknownRecommendation(RecommenderError):
    """Raised when a lifecycle call references an id that was never materialized."""

    def __init__(self, recommendation_id: str) -> None:
        self.recommendation_id = recommendation_id
        super().__init__(f"Unknown recommendation '{recommendation_id}'.")
