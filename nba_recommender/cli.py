"""
Next-best-action recommender — CLI entry point.

All commands follow this pattern:
  1. Load ``AppConfig`` via ``load_config()``.
  2. Configure logging.
  3. Validate inputs.
  4. Execute the action (DB init, rule import, evaluation, lifecycle call).
  5. Report the result to stdout.

Install and run::

    pip install -e .
    nba-recommender --help
    nba-recommender validate-config
    nba-recommender init-db
    nba-recommender import-rules --file config/rules.toml
    nba-recommender list-rules --context-type opportunity
    nba-recommender evaluate contexts/opp-42.json
    nba-recommender shown rec_0123abcd...
    nba-recommender respond rec_0123abcd... --accept
    nba-recommender execute rec_0123abcd... --payload '{"due_in_days": 2}'
    nba-recommender report rec_0123abcd... --success --outcome task_created
    nba-recommender recommendations opportunity 006-42
    nba-recommender history rec_0123abcd...
"""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Optional

import typer

app = typer.Typer(
    name="nba-recommender",
    help="Rule-driven next-best-action recommender.",
    add_completion=False,
)


# ── Helpers ───────────────────────────────────────────────────────────────────

def _load_config_or_exit(config_path: Optional[str] = None):
    """Load AppConfig, printing a friendly error and exiting on failure."""
    from nba_recommender.config import load_config

    try:
        cfg_path = Path(config_path) if config_path else None
        return load_config(cfg_path)
    except FileNotFoundError as exc:
        typer.echo(f"[ERROR] {exc}", err=True)
        raise typer.Exit(code=1)
    except Exception as exc:
        typer.echo(f"[ERROR] Config validation failed: {exc}", err=True)
        raise typer.Exit(code=1)


def _configure_logging(config):
    from nba_recommender.utils.logging import configure_logging
    configure_logging(config.logging)


def _require_sqlite_storage(config) -> None:
    if config.storage.backend != "sqlite":
        typer.echo(
            "[ERROR] Lifecycle commands need storage.backend = \"sqlite\"; "
            f"configured backend is '{config.storage.backend}'.",
            err=True,
        )
        raise typer.Exit(code=1)


# ── Commands ──────────────────────────────────────────────────────────────────

@app.command("validate-config")
def validate_config(
    config_path: Optional[str] = typer.Option(
        None, "--config", help="Path to TOML config file (default: config/default.toml)."
    ),
    show_full: bool = typer.Option(False, "--full", help="Print the full config as JSON."),
) -> None:
    """Validate the configuration file and print parsed values.

    Exits with code 1 if the config fails validation.
    """
    config = _load_config_or_exit(config_path)

    typer.echo("Configuration validated successfully.")
    typer.echo("")
    typer.echo(f"  Database path:   {config.database.db_path}")
    typer.echo(f"  Rule source:     {config.rules.source} ({config.rules.rules_path})")
    typer.echo(f"  Poll interval:   {config.rules.poll_interval_seconds:.0f}s")
    typer.echo(f"  Top N:           {config.evaluation.top_n}")
    typer.echo(f"  Cache:           {'on' if config.cache.enabled else 'off'} "
               f"(ttl {config.cache.ttl_seconds:.0f}s)")
    typer.echo(f"  Storage backend: {config.storage.backend}")
    typer.echo(f"  Log level:       {config.logging.level}")
    typer.echo(f"  Debug mode:      {config.debug}")

    if show_full:
        typer.echo("")
        typer.echo("Full config (JSON):")
        typer.echo(json.dumps(config.model_dump(), indent=2, default=str))

    typer.echo("")
    typer.echo("[OK] Config valid.")


@app.command("init-db")
def init_db(
    db_path: Optional[str] = typer.Option(None, "--db-path", help="Override DB path from config."),
    config_path: Optional[str] = typer.Option(None, "--config", help="Path to TOML config file."),
) -> None:
    """Initialize the SQLite database and apply the schema.

    Safe to run multiple times — all DDL uses IF NOT EXISTS.
    """
    from nba_recommender.db.connection import get_connection
    from nba_recommender.db.schema import ALL_TABLE_NAMES, apply_schema

    config = _load_config_or_exit(config_path)
    _configure_logging(config)

    target_path = db_path or config.database.db_path
    typer.echo(f"Initializing database at: {target_path}")

    with get_connection(
        target_path,
        wal_mode=config.database.wal_mode,
        busy_timeout_ms=config.database.busy_timeout_ms,
    ) as conn:
        apply_schema(conn)

    typer.echo(f"  Tables: {len(ALL_TABLE_NAMES)} created/verified.")
    typer.echo("[OK] Database ready.")


@app.command("import-rules")
def import_rules(
    rules_file: Optional[str] = typer.Option(
        None, "--file", "-f", help="Rules TOML file. Defaults to rules.rules_path."
    ),
    config_path: Optional[str] = typer.Option(None, "--config", help="Path to TOML config file."),
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Validate rules but do not write to the database."
    ),
) -> None:
    """Import rules from a TOML file into the ``rules`` table.

    Uses UPSERT semantics — existing rules with the same rule_id are replaced.
    A running service picks the change up on its next poll or invalidation.
    """
    from nba_recommender.db.connection import get_connection
    from nba_recommender.db.repositories.rule_repo import RuleConfigRepository
    from nba_recommender.rules.sources import TomlRuleSource

    config = _load_config_or_exit(config_path)
    _configure_logging(config)

    path = Path(rules_file) if rules_file else Path(config.rules.rules_path)
    typer.echo(f"Loading rules from: {path}")
    try:
        rules = TomlRuleSource(path).load_all()
    except FileNotFoundError as exc:
        typer.echo(f"[ERROR] {exc}", err=True)
        raise typer.Exit(code=1)
    except Exception as exc:
        typer.echo(f"[ERROR] Rules failed validation: {exc}", err=True)
        raise typer.Exit(code=1)

    typer.echo(f"  Validated {len(rules)} rule(s).")

    if dry_run:
        typer.echo("[DRY RUN] No rules written to database.")
        for rule in rules:
            typer.echo(f"  {rule.rule_id} | {rule.context_type} | {rule.action_type}")
        return

    with get_connection(
        config.database.db_path,
        wal_mode=config.database.wal_mode,
        busy_timeout_ms=config.database.busy_timeout_ms,
        ensure_schema=True,
    ) as conn:
        RuleConfigRepository(conn).upsert_many(rules)

    typer.echo(f"  Upserted {len(rules)} rule(s) into database.")
    typer.echo("[OK] Rules imported.")


@app.command("list-rules")
def list_rules(
    context_type: Optional[str] = typer.Option(
        None, "--context-type", "-t", help="Only list this context type."
    ),
    config_path: Optional[str] = typer.Option(None, "--config", help="Path to TOML config file."),
) -> None:
    """List configured rules from the configured rule source."""
    from nba_recommender.service import build_rule_source

    config = _load_config_or_exit(config_path)
    _configure_logging(config)
    source = build_rule_source(config)

    try:
        types = [context_type] if context_type else source.context_types()
        for ctype in types:
            rules = source.load(ctype)
            typer.echo(f"{ctype} ({len(rules)} rules)")
            for rule in rules:
                flag = " " if rule.active else "x"
                typer.echo(
                    f"  [{flag}] {rule.rule_id:<10} v{rule.version}  "
                    f"base={rule.base_score:<7.2f} tier={rule.priority_tier}  "
                    f"{rule.action_type} ({rule.execution_strategy})"
                )
    except Exception as exc:
        typer.echo(f"[ERROR] Rule source unavailable: {exc}", err=True)
        raise typer.Exit(code=1)


@app.command("evaluate")
def evaluate(
    context_file: Path = typer.Argument(
        ..., help="JSON file holding one context object or an array of them."
    ),
    as_of: Optional[str] = typer.Option(
        None, "--as-of", help="ISO timestamp to score against (default: now, UTC)."
    ),
    as_json: bool = typer.Option(False, "--json", help="Print results as JSON."),
    config_path: Optional[str] = typer.Option(None, "--config", help="Path to TOML config file."),
) -> None:
    """Rank next-best actions for one or more contexts."""
    from pydantic import ValidationError

    from nba_recommender.models.context import Context
    from nba_recommender.service import build_service
    from nba_recommender.utils.time_utils import parse_timestamp

    config = _load_config_or_exit(config_path)
    _configure_logging(config)

    try:
        with open(context_file, encoding="utf-8") as f:
            raw = json.load(f)
    except (json.JSONDecodeError, OSError) as exc:
        typer.echo(f"[ERROR] Cannot read context file: {exc}", err=True)
        raise typer.Exit(code=1)

    try:
        contexts = [Context.model_validate(r) for r in (raw if isinstance(raw, list) else [raw])]
        as_of_dt: Optional[datetime] = parse_timestamp(as_of) if as_of else None
    except (ValidationError, ValueError) as exc:
        typer.echo(f"[ERROR] Invalid input: {exc}", err=True)
        raise typer.Exit(code=1)

    service = build_service(config)
    try:
        results = service.evaluate_batch(contexts, as_of=as_of_dt)
    finally:
        service.close()

    if as_json:
        typer.echo(json.dumps([r.model_dump(mode="json") for r in results], indent=2))
        return

    for result in results:
        status = ""
        if result.degraded:
            status = "  [DEGRADED: rule source unavailable]"
        elif result.cancelled:
            status = "  [CANCELLED: stale context]"
        typer.echo(
            f"{result.context_type}/{result.context_id}  "
            f"rules v{result.rule_set_version}{status}"
        )
        for i, view in enumerate(result.recommendations, 1):
            typer.echo(
                f"  {i}. {view.suggested_action:<24} score={view.score:8.2f} "
                f"tier={view.priority_tier}  {view.recommendation_id}"
            )
            typer.echo(f"     {view.reason}")
        if result.excluded_rule_ids:
            typer.echo(f"  excluded: {', '.join(result.excluded_rule_ids)}")


@app.command("respond")
def respond(
    recommendation_id: str = typer.Argument(..., help="Recommendation id."),
    accept: bool = typer.Option(..., "--accept/--reject", help="User response."),
    actor_id: str = typer.Option("cli", "--actor", help="Actor recorded on the audit event."),
    config_path: Optional[str] = typer.Option(None, "--config", help="Path to TOML config file."),
) -> None:
    """Record an Accepted or Rejected response for a recommendation."""
    from nba_recommender.errors import InvalidTransition, UnknownRecommendation
    from nba_recommender.service import build_service

    config = _load_config_or_exit(config_path)
    _configure_logging(config)
    _require_sqlite_storage(config)

    service = build_service(config)
    try:
        outcome = service.record_response(recommendation_id, accept, actor_id=actor_id)
    except (InvalidTransition, UnknownRecommendation) as exc:
        typer.echo(f"[ERROR] {exc}", err=True)
        raise typer.Exit(code=1)
    finally:
        service.close()

    note = "" if outcome.applied else " (already recorded)"
    typer.echo(f"[OK] {recommendation_id} → {outcome.recommendation.status}{note}")


@app.command("shown")
def shown(
    recommendation_ids: list[str] = typer.Argument(..., help="Recommendation ids rendered to the user."),
    actor_id: str = typer.Option("cli", "--actor", help="Actor recorded on the audit events."),
    config_path: Optional[str] = typer.Option(None, "--config", help="Path to TOML config file."),
) -> None:
    """Record that recommendations were shown to the user."""
    from nba_recommender.errors import UnknownRecommendation
    from nba_recommender.service import build_service

    config = _load_config_or_exit(config_path)
    _configure_logging(config)
    _require_sqlite_storage(config)

    service = build_service(config)
    try:
        outcomes = service.record_shown(recommendation_ids, actor_id=actor_id)
    except UnknownRecommendation as exc:
        typer.echo(f"[ERROR] {exc}", err=True)
        raise typer.Exit(code=1)
    finally:
        service.close()

    for outcome in outcomes:
        note = "" if outcome.applied else " (already recorded)"
        typer.echo(f"[OK] {outcome.recommendation.recommendation_id} shown{note}")


@app.command("execute")
def execute(
    recommendation_id: str = typer.Argument(..., help="Recommendation id."),
    payload: Optional[str] = typer.Option(
        None, "--payload", help="JSON object passed to the action executor."
    ),
    actor_id: str = typer.Option("cli", "--actor", help="Actor recorded on the audit event."),
    config_path: Optional[str] = typer.Option(None, "--config", help="Path to TOML config file."),
) -> None:
    """Execute a recommendation's action through the configured executor.

    The CLI service has no action handlers registered, so every action
    reports ``no_handler`` and the recommendation moves to Failed.  Use
    ``report`` to record the result of an action performed elsewhere.
    """
    from nba_recommender.errors import InvalidTransition, UnknownRecommendation
    from nba_recommender.service import build_service

    config = _load_config_or_exit(config_path)
    _configure_logging(config)
    _require_sqlite_storage(config)

    try:
        payload_data = json.loads(payload) if payload else {}
    except json.JSONDecodeError as exc:
        typer.echo(f"[ERROR] Invalid --payload JSON: {exc}", err=True)
        raise typer.Exit(code=1)
    if not isinstance(payload_data, dict):
        typer.echo("[ERROR] --payload must be a JSON object.", err=True)
        raise typer.Exit(code=1)

    service = build_service(config)
    try:
        result = service.execute(recommendation_id, payload_data, actor_id=actor_id)
    except (InvalidTransition, UnknownRecommendation) as exc:
        typer.echo(f"[ERROR] {exc}", err=True)
        raise typer.Exit(code=1)
    finally:
        service.close()

    typer.echo(f"[{'OK' if result.succeeded else 'FAILED'}] {recommendation_id} → {result.outcome}")
    if result.details:
        typer.echo(f"  details: {json.dumps(result.details, default=str)}")


@app.command("report")
def report(
    recommendation_id: str = typer.Argument(..., help="Recommendation id."),
    success: bool = typer.Option(..., "--success/--error", help="Execution result status."),
    outcome: str = typer.Option("", "--outcome", help="Short outcome description."),
    actor_id: str = typer.Option("cli", "--actor", help="Actor recorded on the audit event."),
    config_path: Optional[str] = typer.Option(None, "--config", help="Path to TOML config file."),
) -> None:
    """Record the result of an action executed outside the recommender."""
    from nba_recommender.errors import InvalidTransition, UnknownRecommendation
    from nba_recommender.models.recommendation import ExecutionResult
    from nba_recommender.service import build_service
    from nba_recommender.taxonomy.lifecycle_taxonomy import ExecutionStatus

    config = _load_config_or_exit(config_path)
    _configure_logging(config)
    _require_sqlite_storage(config)

    result = ExecutionResult(
        status=ExecutionStatus.SUCCESS if success else ExecutionStatus.ERROR,
        outcome=outcome,
    )
    service = build_service(config)
    try:
        recorded = service.record_executed(recommendation_id, result, actor_id=actor_id)
    except (InvalidTransition, UnknownRecommendation) as exc:
        typer.echo(f"[ERROR] {exc}", err=True)
        raise typer.Exit(code=1)
    finally:
        service.close()

    note = "" if recorded.applied else " (already recorded)"
    typer.echo(f"[OK] {recommendation_id} → {recorded.recommendation.status}{note}")


@app.command("recommendations")
def recommendations(
    context_type: str = typer.Argument(..., help="Context type, e.g. opportunity."),
    context_id: str = typer.Argument(..., help="Context id."),
    config_path: Optional[str] = typer.Option(None, "--config", help="Path to TOML config file."),
) -> None:
    """List every recommendation materialized for a context."""
    from nba_recommender.service import build_service

    config = _load_config_or_exit(config_path)
    _configure_logging(config)
    _require_sqlite_storage(config)

    service = build_service(config)
    try:
        recs = service.list_recommendations(context_type, context_id)
    finally:
        service.close()

    if not recs:
        typer.echo(f"No recommendations for {context_type}/{context_id}.")
        return
    for rec in recs:
        typer.echo(
            f"  {rec.recommendation_id}  {rec.rule_id:<10} {rec.status:<9} "
            f"score={rec.score:8.2f}  {rec.suggested_action or rec.action_type}"
        )


@app.command("history")
def history(
    recommendation_id: str = typer.Argument(..., help="Recommendation id."),
    config_path: Optional[str] = typer.Option(None, "--config", help="Path to TOML config file."),
) -> None:
    """Print the audit trail of a recommendation."""
    from nba_recommender.errors import UnknownRecommendation
    from nba_recommender.service import build_service

    config = _load_config_or_exit(config_path)
    _configure_logging(config)
    _require_sqlite_storage(config)

    service = build_service(config)
    try:
        rec = service.get_recommendation(recommendation_id)
        events = service.history(recommendation_id)
    except UnknownRecommendation as exc:
        typer.echo(f"[ERROR] {exc}", err=True)
        raise typer.Exit(code=1)
    finally:
        service.close()

    typer.echo(
        f"{rec.recommendation_id}  {rec.rule_id} v{rec.rule_version}  "
        f"{rec.action_type}  status={rec.status}"
    )
    if not events:
        typer.echo("  (no lifecycle events recorded)")
    for event in events:
        outcome = f"  outcome={event.outcome}" if event.outcome else ""
        typer.echo(
            f"  {event.timestamp.isoformat(timespec='seconds')}  "
            f"{event.status:<9} by {event.actor_id}{outcome}"
        )


if __name__ == "__main__":
    app()
