"""
Lifecycle taxonomy for recommendations.

Three enumerations describe a recommendation's life:
  - ``RecommendationStatus`` — where the recommendation is in its lifecycle.
  - ``ExecutionStrategy``    — how a rule's action may be executed.
  - ``ExecutionStatus``      — what the Action Executor reported back.

Status graph::

    Shown ──► Accepted ──► Executed
      │           │
      │           └──────► Failed
      ├──► Rejected
      └──► Executed | Failed      (only with ExecutionStrategy.DIRECT)

Rejected, Executed and Failed are terminal.

This module has NO imports from any other ``nba_recommender`` package.
"""

from enum import StrEnum


class RecommendationStatus(StrEnum):
    """Lifecycle status of a materialized recommendation."""

    SHOWN = "Shown"
    """Surfaced to a caller; initial state."""

    ACCEPTED = "Accepted"
    """The user accepted the recommendation."""

    REJECTED = "Rejected"
    """The user rejected the recommendation.  Terminal."""

    EXECUTED = "Executed"
    """The action ran and the outcome was recorded as success.  Terminal."""

    FAILED = "Failed"
    """The action ran and failed.  Terminal."""

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def stage(self) -> int:
        """Depth in the lifecycle: 0 shown, 1 responded, 2 executed/failed."""
        return _STAGE[self]


TERMINAL_STATUSES: frozenset[RecommendationStatus] = frozenset({
    RecommendationStatus.REJECTED,
    RecommendationStatus.EXECUTED,
    RecommendationStatus.FAILED,
})

_STAGE: dict[RecommendationStatus, int] = {
    RecommendationStatus.SHOWN:    0,
    RecommendationStatus.ACCEPTED: 1,
    RecommendationStatus.REJECTED: 1,
    RecommendationStatus.EXECUTED: 2,
    RecommendationStatus.FAILED:   2,
}


class ExecutionStrategy(StrEnum):
    """How a rule's action is carried out once the user engages."""

    ON_ACCEPT = "on_accept"
    """Default.  Execution requires a prior Accepted response."""

    DIRECT = "direct"
    """Configured exception: may execute straight from Shown."""

    WORKFLOW = "workflow"
    """Dispatched to a long-running workflow; requires acceptance.  The
    Executed/Failed callback may arrive much later."""

    @property
    def allows_direct_execution(self) -> bool:
        return self is ExecutionStrategy.DIRECT


class ExecutionStatus(StrEnum):
    """Result status reported by the Action Executor."""

    SUCCESS = "success"
    ERROR = "error"
