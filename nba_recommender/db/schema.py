"""
SQLite schema DDL — all CREATE TABLE and CREATE INDEX statements.

All statements use ``IF NOT EXISTS`` so ``apply_schema()`` is **idempotent**:
safe to call on an already-initialized database (e.g. after restart or in tests).

Tables:
  1. rules            — external rule configuration (SqliteRuleSource reads it).
  2. recommendations  — materialized recommendations and their lifecycle fields.
  3. audit_events     (→ recommendations) — append-only lifecycle events,
                        one row per (recommendation_id, status).
"""

from __future__ import annotations

import logging
import sqlite3

logger = logging.getLogger(__name__)

# ── DDL statements ─────────────────────────────────────────────────────────────

_DDL_RULES = """
CREATE TABLE IF NOT EXISTS rules (
    rule_id             TEXT    PRIMARY KEY,
    context_type        TEXT    NOT NULL,
    active              INTEGER NOT NULL DEFAULT 1,
    base_score          REAL    NOT NULL,
    priority_tier       INTEGER NOT NULL DEFAULT 0,
    condition_expr      TEXT    NOT NULL DEFAULT 'true',
    action_type         TEXT    NOT NULL,
    target_object_ref   TEXT    NOT NULL DEFAULT '',
    execution_strategy  TEXT    NOT NULL DEFAULT 'on_accept'
                                CHECK (execution_strategy IN ('on_accept', 'direct', 'workflow')),
    description         TEXT    NOT NULL DEFAULT '',
    version             INTEGER NOT NULL DEFAULT 1 CHECK (version >= 1),
    modifiers           TEXT    NOT NULL DEFAULT '[]',
    reason_template     TEXT    NOT NULL DEFAULT '',
    suggested_action    TEXT    NOT NULL DEFAULT '',
    updated_at          TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);
"""

_DDL_RECOMMENDATIONS = """
CREATE TABLE IF NOT EXISTS recommendations (
    recommendation_id   TEXT    PRIMARY KEY,
    context_type        TEXT    NOT NULL,
    context_ref         TEXT    NOT NULL,
    customer_ref        TEXT,
    rule_id             TEXT    NOT NULL,
    rule_version        INTEGER NOT NULL,
    rule_set_version    INTEGER NOT NULL,
    action_type         TEXT    NOT NULL,
    target_object_ref   TEXT    NOT NULL DEFAULT '',
    execution_strategy  TEXT    NOT NULL,
    score               REAL    NOT NULL,
    priority_tier       INTEGER NOT NULL,
    reason              TEXT    NOT NULL,
    suggested_action    TEXT    NOT NULL DEFAULT '',
    status              TEXT    NOT NULL DEFAULT 'Shown'
                                CHECK (status IN ('Shown', 'Accepted', 'Rejected', 'Executed', 'Failed')),
    outcome             TEXT,
    execution_details   TEXT,
    created_at          TEXT    NOT NULL,
    shown_at            TEXT,
    responded_at        TEXT,
    executed_at         TEXT
);
"""

_DDL_AUDIT_EVENTS = """
CREATE TABLE IF NOT EXISTS audit_events (
    event_id            INTEGER PRIMARY KEY AUTOINCREMENT,
    recommendation_id   TEXT    NOT NULL,
    status              TEXT    NOT NULL,
    outcome             TEXT,
    details             TEXT,
    event_ts            TEXT    NOT NULL,
    actor_id            TEXT    NOT NULL,
    UNIQUE (recommendation_id, status)
);
"""

_DDL_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_rules_context_type ON rules(context_type);",
    "CREATE INDEX IF NOT EXISTS idx_recommendations_context ON recommendations(context_type, context_ref);",
    "CREATE INDEX IF NOT EXISTS idx_recommendations_status ON recommendations(status);",
    "CREATE INDEX IF NOT EXISTS idx_audit_events_rec ON audit_events(recommendation_id);",
]

_ALL_DDL = [_DDL_RULES, _DDL_RECOMMENDATIONS, _DDL_AUDIT_EVENTS]

ALL_TABLE_NAMES: list[str] = ["rules", "recommendations", "audit_events"]


def apply_schema(conn: sqlite3.Connection) -> None:
    """Create all tables and indexes if they do not already exist.

    Args:
        conn: An open ``sqlite3.Connection``.
    """
    for ddl in _ALL_DDL:
        conn.execute(ddl)
    for idx in _DDL_INDEXES:
        conn.execute(idx)
    conn.commit()
    logger.debug("Schema applied: %d tables, %d indexes.", len(_ALL_DDL), len(_DDL_INDEXES))


def get_existing_tables(conn: sqlite3.Connection) -> list[str]:
    """Return table names present in the database, sorted."""
    rows = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name;"
    ).fetchall()
    return [row["name"] for row in rows]


def get_existing_indexes(conn: sqlite3.Connection) -> list[str]:
    rows = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='index' ORDER BY name;"
    ).fetchall()
    return [row["name"] for row in rows]
