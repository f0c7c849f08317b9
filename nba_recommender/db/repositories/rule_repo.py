"""
Repository for the ``rules`` configuration table.

The table is the SQLite flavour of the external rule configuration store.
Administrators edit it out of band (``import-rules`` or direct SQL); the
``SqliteRuleSource`` reads it through ``list_for_context_type``.
"""

from __future__ import annotations

import json
import logging
import sqlite3

from nba_recommender.db.repositories.base import BaseRepository
from nba_recommender.models.rule import ModifierSpec, Rule

logger = logging.getLogger(__name__)

_COLUMNS = (
    "rule_id, context_type, active, base_score, priority_tier, condition_expr, "
    "action_type, target_object_ref, execution_strategy, description, version, "
    "modifiers, reason_template, suggested_action"
)


class RuleConfigRepository(BaseRepository):
    """Read/write access to the ``rules`` table."""

    def upsert(self, rule: Rule) -> None:
        """Insert ``rule`` or replace the stored row with the same ``rule_id``."""
        self.execute(
            f"""
            INSERT INTO rules ({_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(rule_id) DO UPDATE SET
                context_type       = excluded.context_type,
                active             = excluded.active,
                base_score         = excluded.base_score,
                priority_tier      = excluded.priority_tier,
                condition_expr     = excluded.condition_expr,
                action_type        = excluded.action_type,
                target_object_ref  = excluded.target_object_ref,
                execution_strategy = excluded.execution_strategy,
                description        = excluded.description,
                version            = excluded.version,
                modifiers          = excluded.modifiers,
                reason_template    = excluded.reason_template,
                suggested_action   = excluded.suggested_action,
                updated_at         = strftime('%Y-%m-%dT%H:%M:%SZ', 'now');
            """,
            (
                rule.rule_id,
                rule.context_type,
                int(rule.active),
                rule.base_score,
                rule.priority_tier,
                json.dumps(rule.condition_expr, sort_keys=True),
                rule.action_type,
                rule.target_object_ref,
                rule.execution_strategy.value,
                rule.description,
                rule.version,
                json.dumps([m.model_dump(mode="json") for m in rule.modifiers], sort_keys=True),
                rule.reason_template,
                rule.suggested_action,
            ),
        )

    def upsert_many(self, rules: list[Rule]) -> int:
        for rule in rules:
            self.upsert(rule)
        logger.info("Upserted %d rules.", len(rules))
        return len(rules)

    def set_active(self, rule_id: str, active: bool) -> bool:
        """Toggle a rule; returns ``False`` if ``rule_id`` does not exist."""
        cur = self.execute(
            "UPDATE rules SET active = ?, updated_at = strftime('%Y-%m-%dT%H:%M:%SZ', 'now') "
            "WHERE rule_id = ?;",
            (int(active), rule_id),
        )
        return cur.rowcount > 0

    def get(self, rule_id: str) -> Rule | None:
        row = self.fetchone(f"SELECT {_COLUMNS} FROM rules WHERE rule_id = ?;", (rule_id,))
        return _row_to_rule(row) if row is not None else None

    def list_for_context_type(self, context_type: str) -> list[Rule]:
        """Return every configured rule (active or not) for ``context_type``."""
        rows = self.fetchall(
            f"SELECT {_COLUMNS} FROM rules WHERE context_type = ? ORDER BY rule_id;",
            (context_type,),
        )
        return [_row_to_rule(r) for r in rows]

    def list_all(self) -> list[Rule]:
        rows = self.fetchall(f"SELECT {_COLUMNS} FROM rules ORDER BY context_type, rule_id;")
        return [_row_to_rule(r) for r in rows]

    def context_types(self) -> list[str]:
        rows = self.fetchall("SELECT DISTINCT context_type FROM rules ORDER BY context_type;")
        return [r["context_type"] for r in rows]


def _row_to_rule(row: sqlite3.Row) -> Rule:
    return Rule(
        rule_id=row["rule_id"],
        context_type=row["context_type"],
        active=bool(row["active"]),
        base_score=row["base_score"],
        priority_tier=row["priority_tier"],
        condition_expr=json.loads(row["condition_expr"]),
        action_type=row["action_type"],
        target_object_ref=row["target_object_ref"],
        execution_strategy=row["execution_strategy"],
        description=row["description"],
        version=row["version"],
        modifiers=tuple(ModifierSpec(**m) for m in json.loads(row["modifiers"])),
        reason_template=row["reason_template"],
        suggested_action=row["suggested_action"],
    )
