"""Tests for nba_recommender/config.py — TOML loading, merging and env overrides."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from nba_recommender.config import (
    AppConfig,
    CacheConfig,
    EvaluationConfig,
    RulesConfig,
    StorageConfig,
    load_config,
)


def _write(path, text: str):
    path.write_text(text, encoding="utf-8")
    return path


@pytest.fixture(autouse=True)
def _clear_env(monkeypatch):
    for var in (
        "NBA_RECOMMENDER_DB_PATH",
        "NBA_RECOMMENDER_RULES_PATH",
        "NBA_RECOMMENDER_LOG_LEVEL",
        "NBA_RECOMMENDER_DEBUG",
    ):
        monkeypatch.delenv(var, raising=False)


class TestLoadConfig:
    def test_default_config_loads(self):
        config = load_config()
        assert isinstance(config, AppConfig)
        assert config.evaluation.top_n == 3
        assert config.evaluation.score_epsilon == pytest.approx(1e-6)
        assert config.rules.source in {"toml", "sqlite"}

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.toml")

    def test_sections_parsed(self, tmp_path):
        cfg = _write(tmp_path / "app.toml", """
[evaluation]
top_n = 5
score_epsilon = 0.001

[cache]
enabled = false
ttl_seconds = 30.0

[storage]
backend = "memory"
""")
        config = load_config(cfg)
        assert config.evaluation.top_n == 5
        assert config.evaluation.score_epsilon == pytest.approx(0.001)
        assert config.cache.enabled is False
        assert config.storage.backend == "memory"
        # Untouched sections keep their defaults
        assert config.rules.poll_interval_seconds == pytest.approx(300.0)

    def test_local_toml_overrides(self, tmp_path):
        cfg = _write(tmp_path / "default.toml", "[evaluation]\ntop_n = 5\nmax_workers = 2\n")
        _write(tmp_path / "local.toml", "[evaluation]\ntop_n = 1\n")
        config = load_config(cfg)
        assert config.evaluation.top_n == 1
        assert config.evaluation.max_workers == 2

    def test_env_overrides(self, tmp_path, monkeypatch):
        cfg = _write(tmp_path / "app.toml", "[logging]\nlevel = \"INFO\"\n")
        monkeypatch.setenv("NBA_RECOMMENDER_DB_PATH", "/tmp/other.db")
        monkeypatch.setenv("NBA_RECOMMENDER_RULES_PATH", "/tmp/rules.toml")
        monkeypatch.setenv("NBA_RECOMMENDER_LOG_LEVEL", "debug")
        monkeypatch.setenv("NBA_RECOMMENDER_DEBUG", "true")
        config = load_config(cfg)
        assert config.database.db_path == "/tmp/other.db"
        assert config.rules.rules_path == "/tmp/rules.toml"
        assert config.logging.level == "DEBUG"
        assert config.debug is True

    def test_project_debug_flag(self, tmp_path):
        cfg = _write(tmp_path / "app.toml", "[project]\ndebug = true\n")
        assert load_config(cfg).debug is True

    def test_invalid_value_raises_validation_error(self, tmp_path):
        cfg = _write(tmp_path / "app.toml", "[evaluation]\ntop_n = -1\n")
        with pytest.raises(ValidationError):
            load_config(cfg)


class TestSubConfigValidation:
    def test_unknown_rule_source_rejected(self):
        with pytest.raises(ValidationError):
            RulesConfig(source="yaml")

    def test_negative_poll_interval_rejected(self):
        with pytest.raises(ValidationError):
            RulesConfig(poll_interval_seconds=-1.0)

    def test_zero_poll_interval_allowed(self):
        assert RulesConfig(poll_interval_seconds=0.0).poll_interval_seconds == 0.0

    @pytest.mark.parametrize("field", ["score_epsilon", "condition_timeout_seconds", "modifier_timeout_seconds"])
    def test_non_positive_floats_rejected(self, field):
        with pytest.raises(ValidationError):
            EvaluationConfig(**{field: 0.0})

    def test_max_workers_must_be_positive(self):
        with pytest.raises(ValidationError):
            EvaluationConfig(max_workers=0)

    def test_cache_bounds(self):
        with pytest.raises(ValidationError):
            CacheConfig(ttl_seconds=0)
        with pytest.raises(ValidationError):
            CacheConfig(max_entries=0)

    def test_unknown_storage_backend_rejected(self):
        with pytest.raises(ValidationError):
            StorageConfig(backend="postgres")

    def test_config_is_frozen(self):
        config = AppConfig()
        with pytest.raises(ValidationError):
            config.debug = True
