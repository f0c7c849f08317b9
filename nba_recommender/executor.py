"""
Action Executor collaborators.

The service never performs an action's side effect itself: ``execute``
delegates to an ``ActionExecutor`` and records whatever it reports.  An
executor that raises is reported as an ``error`` result, so the
recommendation moves to Failed rather than staying half-executed.

``HandlerActionExecutor`` is the in-process implementation: a table of
handler callables keyed by ``action_type``.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Mapping, Optional, Protocol

from nba_recommender.models.recommendation import ExecutionResult, Recommendation
from nba_recommender.taxonomy.lifecycle_taxonomy import ExecutionStatus

logger = logging.getLogger(__name__)

ActionHandler = Callable[[Recommendation, dict[str, Any]], ExecutionResult]


class ActionExecutor(Protocol):
    def execute(self, recommendation: Recommendation, payload: dict[str, Any]) -> ExecutionResult:
        ...


class HandlerActionExecutor:
    """Dispatches to a registered handler by the recommendation's ``action_type``.

    An unknown action type yields an ``error`` result instead of raising.
    """

    def __init__(self, handlers: Optional[Mapping[str, ActionHandler]] = None) -> None:
        self._handlers: dict[str, ActionHandler] = dict(handlers or {})

    def register(self, action_type: str, handler: ActionHandler) -> "HandlerActionExecutor":
        self._handlers[action_type] = handler
        return self

    def action_types(self) -> list[str]:
        return sorted(self._handlers)

    def execute(self, recommendation: Recommendation, payload: dict[str, Any]) -> ExecutionResult:
        handler = self._handlers.get(recommendation.action_type)
        if handler is None:
            return ExecutionResult(
                status=ExecutionStatus.ERROR,
                outcome="no_handler",
                details={"action_type": recommendation.action_type},
            )
        return handler(recommendation, payload)


def run_executor(
    executor: ActionExecutor,
    recommendation: Recommendation,
    payload: dict[str, Any],
) -> ExecutionResult:
    """Call ``executor`` and turn an exception into an ``error`` result."""
    try:
        result = executor.execute(recommendation, payload)
    except Exception as exc:
        logger.error(
            "Action executor raised | %s | action_type=%s | %s: %s",
            recommendation.recommendation_id, recommendation.action_type,
            type(exc).__name__, exc,
            extra={"rule_id": recommendation.rule_id},
        )
        return ExecutionResult(
            status=ExecutionStatus.ERROR,
            outcome="executor_error",
            details={"error": f"{type(exc).__name__}: {exc}"},
        )
    if not isinstance(result, ExecutionResult):
        return ExecutionResult(
            status=ExecutionStatus.ERROR,
            outcome="invalid_result",
            details={"returned": type(result).__name__},
        )
    return result
