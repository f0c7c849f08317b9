"""
Application configuration management.

Load order (each layer overrides the previous):
  1. ``config/default.toml``      — committed static defaults
  2. ``config/local.toml``        — optional local overrides (gitignored)
  3. ``.env``                     — local secrets and env overrides (gitignored)
  4. Environment variables        — ``NBA_RECOMMENDER_*`` prefix

Entry point: ``load_config(config_path=None) -> AppConfig``

The service factory and every CLI command receive an ``AppConfig`` instance —
never raw dicts or individual env var lookups scattered through the codebase.
"""

from __future__ import annotations

import os
import tomllib
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, field_validator

# ── Sub-config models ─────────────────────────────────────────────────────────


class DatabaseConfig(BaseModel):
    """SQLite database connection settings."""

    model_config = ConfigDict(frozen=True)

    db_path: str = "data/db/nba_recommender.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000


VALID_RULE_SOURCES = frozenset({"toml", "sqlite"})


class RulesConfig(BaseModel):
    """Where the active rule configuration lives and how often it is re-read."""

    model_config = ConfigDict(frozen=True)

    source: str = "toml"
    rules_path: str = "config/rules.toml"
    poll_interval_seconds: float = 300.0

    @field_validator("source")
    @classmethod
    def validate_source(cls, v: str) -> str:
        if v not in VALID_RULE_SOURCES:
            raise ValueError(
                f"rules.source must be one of {sorted(VALID_RULE_SOURCES)}, got '{v}'."
            )
        return v

    @field_validator("poll_interval_seconds")
    @classmethod
    def validate_poll_interval(cls, v: float) -> float:
        if v < 0.0:
            raise ValueError(f"poll_interval_seconds must be >= 0, got {v}.")
        return v


class EvaluationConfig(BaseModel):
    """Rule evaluation, scoring and ranking parameters.

    Timeouts bound calls to external decision subroutines and external
    scoring modifiers.  A timeout excludes (condition) or zeroes (modifier)
    only the rule it belongs to.
    """

    model_config = ConfigDict(frozen=True)

    top_n: int = 3
    score_epsilon: float = 1e-6
    condition_timeout_seconds: float = 2.0
    modifier_timeout_seconds: float = 2.0
    max_workers: int = 4

    @field_validator("top_n")
    @classmethod
    def validate_top_n(cls, v: int) -> int:
        if v < 0:
            raise ValueError(f"top_n must be >= 0, got {v}.")
        return v

    @field_validator("score_epsilon", "condition_timeout_seconds", "modifier_timeout_seconds")
    @classmethod
    def positive_float(cls, v: float) -> float:
        if v <= 0.0:
            raise ValueError(f"Value must be > 0, got {v}.")
        return v

    @field_validator("max_workers")
    @classmethod
    def validate_max_workers(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"max_workers must be >= 1, got {v}.")
        return v


class CacheConfig(BaseModel):
    """Ranked-result cache settings."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    ttl_seconds: float = 900.0
    max_entries: int = 10_000

    @field_validator("ttl_seconds")
    @classmethod
    def validate_ttl(cls, v: float) -> float:
        if v <= 0.0:
            raise ValueError(f"ttl_seconds must be > 0, got {v}.")
        return v

    @field_validator("max_entries")
    @classmethod
    def validate_max_entries(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"max_entries must be >= 1, got {v}.")
        return v


VALID_STORAGE_BACKENDS = frozenset({"memory", "sqlite"})


class StorageConfig(BaseModel):
    """Backend for materialized recommendations and the audit trail."""

    model_config = ConfigDict(frozen=True)

    backend: str = "sqlite"

    @field_validator("backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        if v not in VALID_STORAGE_BACKENDS:
            raise ValueError(
                f"storage.backend must be one of {sorted(VALID_STORAGE_BACKENDS)}, got '{v}'."
            )
        return v


class LoggingConfig(BaseModel):
    """Logging output settings."""

    model_config = ConfigDict(frozen=True)

    level: str = "INFO"
    log_file: str = "data/logs/nba_recommender.log"
    json_format: bool = False

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        valid = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid:
            raise ValueError(f"Log level must be one of {sorted(valid)}, got '{v}'.")
        return v.upper()


class AppConfig(BaseModel):
    """Complete application configuration — the single source of truth.

    It is constructed by ``load_config()`` which merges TOML + .env.
    """

    model_config = ConfigDict(frozen=True)

    database: DatabaseConfig = DatabaseConfig()
    rules: RulesConfig = RulesConfig()
    evaluation: EvaluationConfig = EvaluationConfig()
    cache: CacheConfig = CacheConfig()
    storage: StorageConfig = StorageConfig()
    logging: LoggingConfig = LoggingConfig()
    debug: bool = False


# ── Loader ────────────────────────────────────────────────────────────────────

_PROJECT_ROOT = Path(__file__).parent.parent


def _find_project_root() -> Path:
    """Walk up from this file to find the project root (contains pyproject.toml)."""
    candidate = Path(__file__).parent
    for _ in range(5):
        if (candidate / "pyproject.toml").exists():
            return candidate
        candidate = candidate.parent
    return _PROJECT_ROOT


def load_config(config_path: Optional[Path] = None) -> AppConfig:
    """Load and merge application configuration.

    Args:
        config_path: Explicit path to a TOML config file. Defaults to
            ``<project_root>/config/default.toml``.

    Returns:
        Fully validated ``AppConfig`` instance.

    Raises:
        FileNotFoundError: If the specified ``config_path`` does not exist.
        pydantic.ValidationError: If merged config values fail validation.
    """
    root = _find_project_root()

    # 1. Load .env file (silently skip if missing)
    dotenv_path = root / ".env"
    load_dotenv(dotenv_path=dotenv_path, override=False)

    # 2. Load TOML config
    if config_path is None:
        config_path = root / "config" / "default.toml"

    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Config file not found: {config_path}\n"
            "Create config/default.toml or pass --config explicitly."
        )

    with open(config_path, "rb") as f:
        raw: dict[str, Any] = tomllib.load(f)

    # Also merge local.toml if present (gitignored local overrides)
    local_config_path = config_path.parent / "local.toml"
    if local_config_path.exists():
        with open(local_config_path, "rb") as f:
            local_raw: dict[str, Any] = tomllib.load(f)
        raw = _deep_merge(raw, local_raw)

    # 3. Apply NBA_RECOMMENDER_* environment variable overrides
    raw = _apply_env_overrides(raw)

    # 4. Build and validate AppConfig
    return _build_app_config(raw)


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge ``override`` into ``base``."""
    result = dict(base)
    for key, val in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(val, dict):
            result[key] = _deep_merge(result[key], val)
        else:
            result[key] = val
    return result


def _apply_env_overrides(raw: dict[str, Any]) -> dict[str, Any]:
    """Apply NBA_RECOMMENDER_* env vars to the raw config dict.

    Supported overrides:
      NBA_RECOMMENDER_DB_PATH     → raw["database"]["db_path"]
      NBA_RECOMMENDER_RULES_PATH  → raw["rules"]["rules_path"]
      NBA_RECOMMENDER_LOG_LEVEL   → raw["logging"]["level"]
      NBA_RECOMMENDER_DEBUG       → raw["debug"]
    """
    if db_path := os.environ.get("NBA_RECOMMENDER_DB_PATH"):
        raw.setdefault("database", {})["db_path"] = db_path

    if rules_path := os.environ.get("NBA_RECOMMENDER_RULES_PATH"):
        raw.setdefault("rules", {})["rules_path"] = rules_path

    if log_level := os.environ.get("NBA_RECOMMENDER_LOG_LEVEL"):
        raw.setdefault("logging", {})["level"] = log_level

    if debug := os.environ.get("NBA_RECOMMENDER_DEBUG"):
        raw["debug"] = debug.lower() in ("1", "true", "yes")

    return raw


def _build_app_config(raw: dict[str, Any]) -> AppConfig:
    """Map raw TOML dict to ``AppConfig`` model structure."""
    # Flatten top-level keys that may be nested under [project]
    project = raw.pop("project", {})

    return AppConfig(
        database=DatabaseConfig(**raw.get("database", {})),
        rules=RulesConfig(**raw.get("rules", {})),
        evaluation=EvaluationConfig(**raw.get("evaluation", {})),
        cache=CacheConfig(**raw.get("cache", {})),
        storage=StorageConfig(**raw.get("storage", {})),
        logging=LoggingConfig(**raw.get("logging", {})),
        debug=raw.get("debug", project.get("debug", False)),
    )
