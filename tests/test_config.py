"""
Tests for configuration loading
"""

from datetime import timedelta
from pathlib import Path

import pytest
from pydantic import ValidationError

from trend_engine.config import EngineConfig, RefreshConfig
from trend_engine.utils import hashing

EXAMPLE_CONFIG = Path(__file__).parent.parent / "config.example.yaml"


def test_defaults():
    config = EngineConfig()

    assert config.index.dimension == 384
    assert config.trends.signal_weights == {"popularity": 0.4, "adoption": 0.3, "mentions": 0.3}
    assert config.scoring.alignment_weight == 0.3
    assert config.storage.mode == "none"


def test_example_config_loads():
    """測試範本設定檔可以載入"""
    config = EngineConfig.from_yaml(str(EXAMPLE_CONFIG))

    assert config.index.max_overfetch == 8
    assert config.trends.cadence == timedelta(minutes=60)
    assert config.refresh.cadence_for("user_analytics") == timedelta(minutes=240)
    assert config.storage.postgres_dsn_env == "TREND_ENGINE_PG_DSN"
    assert config.history.max_events_per_user == 5000


def test_empty_yaml(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("", encoding="utf-8")

    assert EngineConfig.from_yaml(str(path)) == EngineConfig()


def test_partial_yaml_override(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("index:\n  dimension: 768\nscoring:\n  default_deadline_ms: 50\n", encoding="utf-8")

    config = EngineConfig.from_yaml(str(path))

    assert config.index.dimension == 768
    assert config.index.m == 16
    assert config.scoring.default_deadline_ms == 50


def test_invalid_values_rejected():
    with pytest.raises(ValidationError):
        EngineConfig(index={"dimension": 0})
    with pytest.raises(ValidationError):
        EngineConfig(storage={"mode": "s3"})
    with pytest.raises(ValidationError):
        EngineConfig(scoring={"novelty_weight": 0.9})
    with pytest.raises(ValidationError):
        EngineConfig(history={"max_events_per_user": 0})


def test_unknown_refresh_kind():
    with pytest.raises(ValueError):
        RefreshConfig().cadence_for("weekly_digest")


def test_postgres_dsn_from_env(monkeypatch):
    config = EngineConfig(storage={"mode": "postgres", "postgres_dsn_env": "TEST_PG_DSN"})
    monkeypatch.setenv("TEST_PG_DSN", "postgresql://localhost/trends")

    assert config.get_postgres_dsn() == "postgresql://localhost/trends"


def test_config_hash_ignores_storage():
    a = EngineConfig().model_dump()
    b = EngineConfig(storage={"mode": "file"}).model_dump()
    c = EngineConfig(index={"dimension": 768}).model_dump()

    assert hashing.config_hash(a) == hashing.config_hash(b)
    assert hashing.config_hash(a) != hashing.config_hash(c)
