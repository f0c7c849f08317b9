"""
Rule scoring: base score plus named modifiers, with templated reason text.

Score formula
-------------
    total = base_score + Σ modifier_i(rule, context, signal_overrides, as_of)

Modifiers run in the order they are listed on the rule.  Each one is
independent: a modifier that is unknown, raises, times out (external
modifiers only), or returns ``None``/NaN/±inf contributes 0 and is logged
with the rule id.  It never fails the rule or the batch.

Determinism
-----------
Given the same rule snapshot, context, signal overrides and ``as_of``, the
result is bit-for-bit identical: modifiers read time only through ``as_of``,
and contributions are summed in rule order with ``math.fsum``.

Reason text
-----------
``rule.reason_template`` formatted with the context attributes plus
``score``, ``base_score`` and ``rule_id``.  Unknown placeholders render
literally.  Falls back to ``rule.description``.  Non-zero modifier
contributions are appended as ``"<name> <+value>"`` tokens, e.g.::

    "No activity for 21 days at stage Negotiation; time_decay -10.5"
"""

from __future__ import annotations

import logging
import math
import threading
from collections.abc import Mapping
from concurrent.futures import Executor, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from nba_recommender.models.context import Context
from nba_recommender.models.recommendation import ScoredCandidate
from nba_recommender.models.rule import ModifierSpec, Rule
from nba_recommender.evaluation.modifiers import ModifierRegistry, RegisteredModifier

logger = logging.getLogger(__name__)


@dataclass
class ScoreBreakdown:
    """All components of one rule's score.

    Attributes:
        base_score:       The rule's configured base score.
        contributions:    Modifier name → contribution, in application order.
                          A repeated modifier name gets a ``#n`` suffix.
        failed_modifiers: Names of modifiers that contributed 0 due to failure.
    """

    base_score:       float
    contributions:    dict[str, float] = field(default_factory=dict)
    failed_modifiers: tuple[str, ...] = ()

    @property
    def total(self) -> float:
        return math.fsum([self.base_score, *self.contributions.values()])

    def as_components(self) -> dict[str, float]:
        return {"base": self.base_score, **self.contributions}


class _TemplateValues(dict):
    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


class ScoringEngine:
    """Computes a numeric score per applicable rule.

    Attributes:
        modifiers:       Registry resolving modifier names.
        timeout_seconds: Upper bound on each external modifier call.
    """

    def __init__(
        self,
        modifiers: Optional[ModifierRegistry] = None,
        timeout_seconds: float = 2.0,
        executor: Optional[Executor] = None,
        max_workers: int = 4,
    ) -> None:
        self.modifiers = modifiers or ModifierRegistry.with_builtins()
        self.timeout_seconds = timeout_seconds
        self._executor = executor
        self._owns_executor = executor is None
        self._max_workers = max_workers
        self._executor_lock = threading.Lock()

    def score(
        self,
        rule: Rule,
        context: Context,
        signal_overrides: Optional[Mapping[str, float]],
        as_of: datetime,
    ) -> ScoreBreakdown:
        """Score ``rule`` for ``context`` as of ``as_of``.

        Args:
            rule:             Rule from the current snapshot.
            context:          Context being evaluated.
            signal_overrides: Named signals; defaults to ``context.signal_overrides``.
            as_of:            The only time source modifiers may use.

        Returns:
            ScoreBreakdown whose ``total`` is the rule's score.
        """
        overrides = dict(context.signal_overrides if signal_overrides is None else signal_overrides)
        contributions: dict[str, float] = {}
        failed: list[str] = []

        for spec in rule.modifiers:
            key = spec.name
            n = 2
            while key in contributions:
                key = f"{spec.name}#{n}"
                n += 1
            value = self._apply(spec, rule, context, overrides, as_of)
            if value is None:
                failed.append(spec.name)
                value = 0.0
            contributions[key] = value

        return ScoreBreakdown(
            base_score=float(rule.base_score),
            contributions=contributions,
            failed_modifiers=tuple(failed),
        )

    def score_candidate(
        self,
        rule: Rule,
        context: Context,
        as_of: datetime,
        signal_overrides: Optional[Mapping[str, float]] = None,
    ) -> ScoredCandidate:
        """Score ``rule`` and package the result as a ``ScoredCandidate``."""
        breakdown = self.score(rule, context, signal_overrides, as_of)
        total = breakdown.total
        return ScoredCandidate(
            rule_id=rule.rule_id,
            rule_version=rule.version,
            score=total,
            priority_tier=rule.priority_tier,
            reason=build_reason(rule, context, breakdown),
            action_type=rule.action_type,
            target_object_ref=rule.target_object_ref,
            suggested_action=rule.suggested_action or rule.action_type,
            execution_strategy=rule.execution_strategy,
            components=breakdown.as_components(),
        )

    def _apply(
        self,
        spec: ModifierSpec,
        rule: Rule,
        context: Context,
        overrides: dict[str, float],
        as_of: datetime,
    ) -> Optional[float]:
        """Run one modifier.  Returns ``None`` on any failure (logged)."""
        registered = self.modifiers.get(spec.name)
        if registered is None:
            self._log_failure(rule, spec.name, "unknown modifier")
            return None

        try:
            if registered.external:
                value = self._call_bounded(registered, rule, context, overrides, as_of, spec.params)
            else:
                value = registered.fn(rule, context, overrides, as_of, **spec.params)
        except FutureTimeoutError:
            self._log_failure(rule, spec.name, f"timed out after {self.timeout_seconds:.2f}s")
            return None
        except Exception as exc:
            self._log_failure(rule, spec.name, f"{type(exc).__name__}: {exc}")
            return None

        if value is None:
            self._log_failure(rule, spec.name, "returned no value")
            return None
        try:
            value = float(value)
        except (TypeError, ValueError):
            self._log_failure(rule, spec.name, f"returned non-numeric {value!r}")
            return None
        if not math.isfinite(value):
            self._log_failure(rule, spec.name, f"returned non-finite {value}")
            return None
        return value

    def _call_bounded(
        self,
        registered: RegisteredModifier,
        rule: Rule,
        context: Context,
        overrides: dict[str, float],
        as_of: datetime,
        params: Mapping[str, Any],
    ) -> Any:
        future = self._get_executor().submit(
            registered.fn, rule, context, overrides, as_of, **params
        )
        try:
            return future.result(timeout=self.timeout_seconds)
        except FutureTimeoutError:
            future.cancel()
            raise

    def _log_failure(self, rule: Rule, modifier: str, reason: str) -> None:
        logger.warning(
            "Modifier contributed 0 | rule_id=%s | modifier=%s | %s",
            rule.rule_id, modifier, reason,
            extra={"rule_id": rule.rule_id},
        )

    def _get_executor(self) -> Executor:
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self._max_workers, thread_name_prefix="nba-modifier"
                )
            return self._executor

    def close(self) -> None:
        """Shut down the worker pool if this engine created it."""
        if self._owns_executor and self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None


def build_reason(rule: Rule, context: Context, breakdown: ScoreBreakdown) -> str:
    """Assemble the templated reason string for a scored rule.

    Returns:
        Non-empty reason string.
    """
    reasons: list[str] = []

    headline = ""
    if rule.reason_template:
        values = _TemplateValues(context.attributes)
        values.update(
            score=round(breakdown.total, 2),
            base_score=breakdown.base_score,
            rule_id=rule.rule_id,
        )
        try:
            headline = rule.reason_template.format_map(values)
        except (ValueError, IndexError, AttributeError, KeyError, TypeError) as exc:
            logger.warning(
                "Reason template failed | rule_id=%s | %s", rule.rule_id, exc,
                extra={"rule_id": rule.rule_id},
            )
    reasons.append(headline or rule.description)

    for name, value in breakdown.contributions.items():
        if value != 0.0:
            reasons.append(f"{name} {value:+.1f}")

    return "; ".join(r for r in reasons if r) or f"Rule {rule.rule_id} applies"
