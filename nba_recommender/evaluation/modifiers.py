"""
Scoring modifiers: named, independently pluggable score adjustments.

Every modifier has the signature::

    fn(rule, context, signal_overrides, as_of, **params) -> float | None

and returns an additive contribution to the rule's base score.  ``params``
come from the rule's ``[[rules.modifiers]]`` entry.  Modifiers must be
deterministic: time enters only through ``as_of``.

Built-in modifiers
------------------
time_decay (≤ 0):
    Penalty proportional to days since an activity timestamp attribute.
    penalty = per_day * max(0, days_since - grace_days), capped at max_penalty.
    Reads ``timestamp_field`` (ISO-8601 / datetime) or, if given,
    ``days_field`` (a precomputed day count).  Missing value → 0.

amount_scaling (≥ 0):
    Log-scaled boost from a monetary amount attribute.
    boost = scale * log10(1 + amount / reference), capped at ``cap``.
    Missing or negative amount → 0.

signal_boost:
    ``weight * signal_overrides[signal]`` (``default`` when absent).

fixed:
    Constant ``value``.

A modifier registered with ``external=True`` calls out to an external data
source; the scoring engine bounds it with a timeout.
"""

from __future__ import annotations

import math
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from nba_recommender.models.context import Context
from nba_recommender.models.rule import Rule
from nba_recommender.utils.time_utils import days_between, parse_timestamp

ModifierFn = Callable[..., Optional[float]]


@dataclass(frozen=True)
class RegisteredModifier:
    name:     str
    fn:       ModifierFn
    external: bool = False


class ModifierRegistry:
    """Name → modifier function lookup used by the ``ScoringEngine``."""

    def __init__(self) -> None:
        self._modifiers: dict[str, RegisteredModifier] = {}

    def register(self, name: str, fn: ModifierFn, external: bool = False) -> "ModifierRegistry":
        self._modifiers[name] = RegisteredModifier(name=name, fn=fn, external=external)
        return self

    def get(self, name: str) -> Optional[RegisteredModifier]:
        return self._modifiers.get(name)

    def names(self) -> list[str]:
        return sorted(self._modifiers)

    @classmethod
    def with_builtins(cls) -> "ModifierRegistry":
        registry = cls()
        registry.register("time_decay", time_decay)
        registry.register("amount_scaling", amount_scaling)
        registry.register("signal_boost", signal_boost)
        registry.register("fixed", fixed)
        return registry


# ── Built-ins ─────────────────────────────────────────────────────────────────


def time_decay(
    rule: Rule,
    context: Context,
    signal_overrides: Mapping[str, float],
    as_of: datetime,
    timestamp_field: str = "last_activity_at",
    days_field: Optional[str] = None,
    per_day: float = 1.0,
    grace_days: float = 0.0,
    max_penalty: Optional[float] = None,
) -> float:
    if days_field is not None:
        raw_days = context.lookup(days_field, default=None)
        if raw_days is None:
            return 0.0
        days = float(raw_days)
    else:
        ts = parse_timestamp(context.lookup(timestamp_field, default=None))
        if ts is None:
            return 0.0
        days = days_between(ts, as_of)

    penalty = per_day * max(0.0, days - grace_days)
    if max_penalty is not None:
        penalty = min(penalty, max_penalty)
    return -penalty


def amount_scaling(
    rule: Rule,
    context: Context,
    signal_overrides: Mapping[str, float],
    as_of: datetime,
    amount_field: str = "amount",
    scale: float = 1.0,
    reference: float = 1000.0,
    cap: Optional[float] = None,
) -> float:
    raw = context.lookup(amount_field, default=None)
    if raw is None:
        return 0.0
    amount = float(raw)
    if amount <= 0 or reference <= 0:
        return 0.0
    boost = scale * math.log10(1.0 + amount / reference)
    if cap is not None:
        boost = min(boost, cap)
    return boost


def signal_boost(
    rule: Rule,
    context: Context,
    signal_overrides: Mapping[str, float],
    as_of: datetime,
    signal: str = "",
    weight: float = 1.0,
    default: float = 0.0,
) -> float:
    return weight * float(signal_overrides.get(signal, default))


def fixed(
    rule: Rule,
    context: Context,
    signal_overrides: Mapping[str, float],
    as_of: datetime,
    value: float = 0.0,
) -> float:
    return float(value)

