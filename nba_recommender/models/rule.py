"""
Rule configuration models.

A ``Rule`` is a configured candidate action: a condition deciding whether it
applies to a context, a base score plus named scoring modifiers, and the
action/execution metadata carried onto the recommendation it produces.

Rules are owned by the ``RuleRepository``: they are loaded from the external
configuration source and published inside an immutable ``RuleSnapshot``.
Evaluation code treats both as read-only, and every recommendation records
the ``rule_id`` + ``version`` it was scored from.
"""

from __future__ import annotations

import hashlib
import json
from datetime import datetime
from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from nba_recommender.taxonomy.lifecycle_taxonomy import ExecutionStrategy

ConditionExpr = Union[bool, dict[str, Any]]


class ModifierSpec(BaseModel):
    """Reference to a named scoring modifier plus its parameters.

    Attributes:
        name:   Registered modifier name, e.g. ``"time_decay"``.
        params: Keyword parameters passed to the modifier function.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    params: dict[str, Any] = Field(default_factory=dict)


class Rule(BaseModel):
    """A configured candidate action definition.

    Attributes:
        rule_id:            Unique rule identifier; final ranking tiebreak.
        context_type:       Context type this rule applies to.
        active:             Inactive rules are never published in a snapshot.
        base_score:         Score before modifiers.
        priority_tier:      Secondary ranking key (higher ranks first).
        condition_expr:     Predicate description — ``true``/``false``, an
                            expression tree, or an external decision reference.
        action_type:        Action the Action Executor performs on execute.
        target_object_ref:  Object the action targets (e.g. ``"Task"``).
        execution_strategy: Whether execution requires prior acceptance.
        description:        Human-readable description; fallback reason text.
        version:            Configuration version of this rule.
        modifiers:          Named scoring modifiers applied in order.
        reason_template:    ``str.format`` template for the reason text.
        suggested_action:   Short label rendered by the UI surface.
    """

    model_config = ConfigDict(frozen=True)

    rule_id: str
    context_type: str
    active: bool = True
    base_score: float
    priority_tier: int = 0
    condition_expr: ConditionExpr = True
    action_type: str
    target_object_ref: str = ""
    execution_strategy: ExecutionStrategy = ExecutionStrategy.ON_ACCEPT
    description: str = ""
    version: int = 1
    modifiers: tuple[ModifierSpec, ...] = ()
    reason_template: str = ""
    suggested_action: str = ""

    @field_validator("rule_id", "context_type", "action_type")
    @classmethod
    def non_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("rule_id, context_type and action_type must be non-empty.")
        return v

    @field_validator("version")
    @classmethod
    def positive_version(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"version must be >= 1, got {v}.")
        return v


class RuleSnapshot(BaseModel):
    """Immutable, version-stamped set of active rules for one context type.

    Readers hold a reference to a snapshot for the whole of an evaluation;
    a refresh publishes a new snapshot object rather than mutating this one.

    Attributes:
        context_type: Context type all ``rules`` belong to.
        version:      Monotonic rule-set version for this context type.
        rules:        Active rules ordered by ``rule_id``.
        fingerprint:  SHA-256 of the rule content; drives version bumps.
        loaded_at:    UTC time the snapshot was loaded.
    """

    model_config = ConfigDict(frozen=True)

    context_type: str
    version: int
    rules: tuple[Rule, ...] = ()
    fingerprint: str = ""
    loaded_at: datetime

    @model_validator(mode="after")
    def validate_rules(self) -> "RuleSnapshot":
        for rule in self.rules:
            if rule.context_type != self.context_type:
                raise ValueError(
                    f"Rule '{rule.rule_id}' has context_type '{rule.context_type}', "
                    f"expected '{self.context_type}'."
                )
        return self


def rules_fingerprint(rules: tuple[Rule, ...] | list[Rule]) -> str:
    """Return a stable SHA-256 over the serialized content of ``rules``."""
    payload = json.dumps(
        [r.model_dump(mode="json") for r in sorted(rules, key=lambda r: r.rule_id)],
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
