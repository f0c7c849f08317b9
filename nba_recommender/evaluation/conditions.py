"""
Condition evaluation: deciding whether a rule applies to a context.

A rule's ``condition_expr`` is an opaque predicate description.  The
evaluator is polymorphic over three predicate kinds:

Static boolean
    ``true`` / ``false`` — the rule always / never applies.

Expression tree
    ``{"all": [<expr>, ...]}``, ``{"any": [<expr>, ...]}``, ``{"not": <expr>}``
    and comparisons ``{"field": "<path>", "op": "<op>", "value": <value>}``.
    Operators: eq, ne, gt, gte, lt, lte, in, not_in, exists, contains.
    Field paths are resolved by ``Context.lookup``.  A comparison against a
    missing field is false (``exists`` reports the absence).

External decision
    ``{"decision": "<name>", "params": {...}}`` — calls a function registered
    in the ``DecisionRegistry`` with ``(context, params)``.  The call runs on
    a worker thread and is bounded by ``timeout_seconds``.

Evaluation is pure with respect to the context.  Any malformed expression,
internal error, non-boolean decision result or timeout raises
``RuleEvaluationError``.  ``filter_applicable`` absorbs those per rule: the
failing rule is excluded for this cycle and one warning is logged with its id.
"""

from __future__ import annotations

import logging
import operator
import threading
from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import Executor, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from nba_recommender.errors import RuleEvaluationError
from nba_recommender.models.context import Context
from nba_recommender.models.rule import Rule

logger = logging.getLogger(__name__)

DecisionFn = Callable[[Context, dict[str, Any]], bool]

_MISSING = object()

_ORDERING_OPS: dict[str, Callable[[Any, Any], bool]] = {
    "gt":  operator.gt,
    "gte": operator.ge,
    "lt":  operator.lt,
    "lte": operator.le,
}

VALID_OPERATORS = frozenset(
    {"eq", "ne", "in", "not_in", "exists", "contains"} | set(_ORDERING_OPS)
)


# ── Predicate kinds ───────────────────────────────────────────────────────────


class Predicate(Protocol):
    def test(self, context: Context, evaluator: "ConditionEvaluator") -> bool: ...


@dataclass(frozen=True)
class StaticPredicate:
    value: bool

    def test(self, context: Context, evaluator: "ConditionEvaluator") -> bool:
        return self.value


@dataclass(frozen=True)
class Comparison:
    path: str
    op: str
    value: Any = None

    def test(self, context: Context, evaluator: "ConditionEvaluator") -> bool:
        actual = context.lookup(self.path, default=_MISSING)
        if self.op == "exists":
            expected = True if self.value is None else bool(self.value)
            return (actual is not _MISSING) == expected
        if actual is _MISSING or actual is None:
            return False

        try:
            if self.op == "eq":
                return actual == self.value
            if self.op == "ne":
                return actual != self.value
            if self.op == "in":
                return actual in self.value
            if self.op == "not_in":
                return actual not in self.value
            if self.op == "contains":
                return self.value in actual
            return bool(_ORDERING_OPS[self.op](actual, self.value))
        except TypeError as exc:
            raise RuleEvaluationError(
                f"Cannot apply '{self.op}' to field '{self.path}' "
                f"({type(actual).__name__} vs {type(self.value).__name__}): {exc}"
            ) from exc


@dataclass(frozen=True)
class AllOf:
    children: tuple[Predicate, ...]

    def test(self, context: Context, evaluator: "ConditionEvaluator") -> bool:
        return all(child.test(context, evaluator) for child in self.children)


@dataclass(frozen=True)
class AnyOf:
    children: tuple[Predicate, ...]

    def test(self, context: Context, evaluator: "ConditionEvaluator") -> bool:
        return any(child.test(context, evaluator) for child in self.children)


@dataclass(frozen=True)
class Not:
    child: Predicate

    def test(self, context: Context, evaluator: "ConditionEvaluator") -> bool:
        return not self.child.test(context, evaluator)


@dataclass(frozen=True)
class DecisionRef:
    name: str
    params: Mapping[str, Any] = field(default_factory=dict)

    def test(self, context: Context, evaluator: "ConditionEvaluator") -> bool:
        return evaluator.call_decision(self.name, context, dict(self.params))


def compile_condition(expr: Any) -> Predicate:
    """Turn a raw condition description into a predicate tree.

    Raises:
        RuleEvaluationError: If the description is malformed.
    """
    if isinstance(expr, bool):
        return StaticPredicate(expr)
    if not isinstance(expr, Mapping):
        raise RuleEvaluationError(
            f"Condition must be a boolean or a mapping, got {type(expr).__name__}."
        )

    if "all" in expr:
        return AllOf(tuple(compile_condition(c) for c in _as_list(expr["all"], "all")))
    if "any" in expr:
        return AnyOf(tuple(compile_condition(c) for c in _as_list(expr["any"], "any")))
    if "not" in expr:
        return Not(compile_condition(expr["not"]))
    if "decision" in expr:
        params = expr.get("params", {})
        if not isinstance(params, Mapping):
            raise RuleEvaluationError("Decision 'params' must be a mapping.")
        return DecisionRef(name=str(expr["decision"]), params=dict(params))
    if "field" in expr:
        op = expr.get("op", "eq")
        if op not in VALID_OPERATORS:
            raise RuleEvaluationError(
                f"Unknown operator '{op}'. Must be one of {sorted(VALID_OPERATORS)}."
            )
        if op in ("in", "not_in") and not isinstance(expr.get("value"), (list, tuple, set, frozenset)):
            raise RuleEvaluationError(f"Operator '{op}' requires a list value.")
        return Comparison(path=str(expr["field"]), op=op, value=expr.get("value"))

    raise RuleEvaluationError(f"Unrecognized condition keys: {sorted(expr)}.")


def _as_list(value: Any, key: str) -> list[Any]:
    if not isinstance(value, (list, tuple)) or not value:
        raise RuleEvaluationError(f"'{key}' requires a non-empty list of conditions.")
    return list(value)


# ── Decision registry ─────────────────────────────────────────────────────────


class DecisionRegistry:
    """Named external decision subroutines available to conditions."""

    def __init__(self, decisions: Optional[Mapping[str, DecisionFn]] = None) -> None:
        self._decisions: dict[str, DecisionFn] = dict(decisions or {})

    def register(self, name: str, fn: DecisionFn) -> "DecisionRegistry":
        self._decisions[name] = fn
        return self

    def get(self, name: str) -> DecisionFn:
        try:
            return self._decisions[name]
        except KeyError:
            raise RuleEvaluationError(f"Unknown decision '{name}'.") from None

    def names(self) -> list[str]:
        return sorted(self._decisions)


# ── Evaluator ─────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ConditionFilterResult:
    """Rules that applied to a context plus the ids excluded by failures."""

    applicable: tuple[Rule, ...]
    excluded_rule_ids: tuple[str, ...] = ()


class ConditionEvaluator:
    """Decides rule applicability for a context.

    Attributes:
        decisions:       Registry of external decision functions.
        timeout_seconds: Upper bound on each external decision call.
    """

    def __init__(
        self,
        decisions: Optional[DecisionRegistry] = None,
        timeout_seconds: float = 2.0,
        executor: Optional[Executor] = None,
        max_workers: int = 4,
    ) -> None:
        self.decisions = decisions or DecisionRegistry()
        self.timeout_seconds = timeout_seconds
        self._executor = executor
        self._owns_executor = executor is None
        self._max_workers = max_workers
        self._executor_lock = threading.Lock()

    def evaluate(self, condition_expr: Any, context: Context) -> bool:
        """Return whether ``condition_expr`` holds for ``context``.

        Raises:
            RuleEvaluationError: On malformed expressions, internal errors or
                decision timeouts.
        """
        predicate = compile_condition(condition_expr)
        try:
            return bool(predicate.test(context, self))
        except RuleEvaluationError:
            raise
        except Exception as exc:
            raise RuleEvaluationError(f"{type(exc).__name__}: {exc}") from exc

    def filter_applicable(
        self,
        rules: Iterable[Rule],
        context: Context,
    ) -> ConditionFilterResult:
        """Evaluate every rule independently; one failing rule never blocks others."""
        applicable: list[Rule] = []
        excluded: list[str] = []
        for rule in rules:
            try:
                if self.evaluate(rule.condition_expr, context):
                    applicable.append(rule)
            except RuleEvaluationError as exc:
                excluded.append(rule.rule_id)
                logger.warning(
                    "Rule excluded: condition failed | rule_id=%s | context_id=%s | %s",
                    rule.rule_id, context.context_id, exc,
                    extra={"rule_id": rule.rule_id},
                )
        return ConditionFilterResult(tuple(applicable), tuple(excluded))

    def call_decision(self, name: str, context: Context, params: dict[str, Any]) -> bool:
        """Run a registered decision on a worker thread, bounded by the timeout."""
        fn = self.decisions.get(name)
        future = self._get_executor().submit(fn, context, params)
        try:
            result = future.result(timeout=self.timeout_seconds)
        except FutureTimeoutError:
            future.cancel()
            raise RuleEvaluationError(
                f"Decision '{name}' timed out after {self.timeout_seconds:.2f}s."
            ) from None
        except Exception as exc:
            raise RuleEvaluationError(
                f"Decision '{name}' raised {type(exc).__name__}: {exc}"
            ) from exc
        if not isinstance(result, bool):
            raise RuleEvaluationError(
                f"Decision '{name}' returned {type(result).__name__}, expected bool."
            )
        return result

    def _get_executor(self) -> Executor:
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self._max_workers, thread_name_prefix="nba-decision"
                )
            return self._executor

    def close(self) -> None:
        """Shut down the worker pool if this evaluator created it."""
        if self._owns_executor and self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None
