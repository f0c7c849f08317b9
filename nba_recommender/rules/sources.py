"""
Rule configuration sources.

A ``RuleSource`` reads the *current* rule configuration from the external
configuration store every time it is asked.  It does no caching of its own:
caching and versioning are the ``RuleRepository``'s job.

Sources
-------
``TomlRuleSource``   — a rules TOML file (default ``config/rules.toml``).
``SqliteRuleSource`` — the ``rules`` table, edited out of band through
                       ``RuleConfigRepository``.

TOML structure expected in rules.toml
-------------------------------------
    [[rules]]
    rule_id       = "OPP-001"
    context_type  = "opportunity"
    base_score    = 80.0
    priority_tier = 2
    action_type   = "create_follow_up"
    ...

    [rules.condition_expr]
    all = [ { field = "stage", op = "eq", value = "Negotiation" } ]

    [[rules.modifiers]]
    name   = "time_decay"
    params = { timestamp_field = "last_activity_at", per_day = 0.5 }

Any read or validation failure propagates; the repository turns it into
``RepositoryUnavailable``.
"""

from __future__ import annotations

import tomllib
from pathlib import Path
from typing import Any, Protocol

from nba_recommender.db.connection import ConnectionFactory
from nba_recommender.db.repositories.rule_repo import RuleConfigRepository
from nba_recommender.models.rule import ModifierSpec, Rule


class RuleSource(Protocol):
    """Anything that can read the current rule configuration."""

    def load(self, context_type: str) -> list[Rule]:
        """Return every configured rule (active or not) for ``context_type``."""
        ...

    def context_types(self) -> list[str]:
        """Return every context type with at least one configured rule."""
        ...


def parse_rule(raw: dict[str, Any]) -> Rule:
    """Parse one raw rule mapping into a validated ``Rule``.

    Args:
        raw: Mapping with the Rule fields; ``modifiers`` is a list of
             ``{"name": ..., "params": {...}}`` mappings.

    Returns:
        Validated ``Rule``.

    Raises:
        pydantic.ValidationError: If any field fails validation.
    """
    fields = dict(raw)
    fields["modifiers"] = tuple(
        ModifierSpec(name=m["name"], params=m.get("params", {}))
        for m in raw.get("modifiers", [])
    )
    return Rule(**fields)


def _load_rules_file(rules_path: Path) -> list[Rule]:
    """Load and parse a rules TOML file.

    Raises:
        FileNotFoundError: If rules_path does not exist.
        tomllib.TOMLDecodeError: If the TOML is malformed.
        pydantic.ValidationError: If a rule fails validation.
        ValueError: If two rules share a rule_id.
    """
    if not rules_path.exists():
        raise FileNotFoundError(
            f"Rules file not found: {rules_path}\n"
            "Set rules.rules_path in default.toml to override."
        )

    with open(rules_path, "rb") as f:
        raw = tomllib.load(f)

    rules = [parse_rule(block) for block in raw.get("rules", [])]
    seen: set[str] = set()
    for rule in rules:
        if rule.rule_id in seen:
            raise ValueError(f"Duplicate rule_id '{rule.rule_id}' in {rules_path}.")
        seen.add(rule.rule_id)
    return rules


class TomlRuleSource:
    """Reads rules from a TOML file on every ``load`` call.

    Attributes:
        rules_path: Path to the rules TOML file.
    """

    def __init__(self, rules_path: str | Path) -> None:
        self.rules_path = Path(rules_path)

    def load(self, context_type: str) -> list[Rule]:
        return [r for r in _load_rules_file(self.rules_path) if r.context_type == context_type]

    def context_types(self) -> list[str]:
        return sorted({r.context_type for r in _load_rules_file(self.rules_path)})

    def load_all(self) -> list[Rule]:
        """Return every rule in the file, used by ``import-rules``."""
        return _load_rules_file(self.rules_path)


class SqliteRuleSource:
    """Reads rules from the ``rules`` table, opening a connection per call.

    Attributes:
        connect: Factory for configured connections to the rules database.
    """

    def __init__(self, db_path: str, wal_mode: bool = True, busy_timeout_ms: int = 5000) -> None:
        self.connect = ConnectionFactory(db_path, wal_mode=wal_mode, busy_timeout_ms=busy_timeout_ms)

    def load(self, context_type: str) -> list[Rule]:
        with self.connect() as conn:
            return RuleConfigRepository(conn).list_for_context_type(context_type)

    def context_types(self) -> list[str]:
        with self.connect() as conn:
            return RuleConfigRepository(conn).context_types()
