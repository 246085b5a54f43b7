from pathlib import Path

import pytest
from pydantic import ValidationError

from content_pipeline.config import (
    DB_PATH_ENV,
    backoff_delay,
    load_yaml,
    merge_dicts,
    resolve_config,
)
from content_pipeline.models import PipelineConfig


@pytest.fixture(autouse=True)
def no_db_env(monkeypatch):
    monkeypatch.delenv(DB_PATH_ENV, raising=False)


def test_default_config_loads():
    """Test default.yaml loads without errors."""
    config = resolve_config()
    assert isinstance(config, PipelineConfig)
    assert config.jobs.max_attempts == 3
    assert config.jobs.backoff_base_s == 1.0
    assert config.poller.enabled is True
    assert config.providers.factory is None


def test_missing_yaml_returns_empty_dict():
    """Test graceful handling of missing config files."""
    assert load_yaml(Path("nonexistent.yaml")) == {}


def test_local_overrides_default(tmp_path):
    """Local YAML wins over default YAML, section by section."""
    default = tmp_path / "default.yaml"
    local = tmp_path / "local.yaml"
    default.write_text("jobs:\n  max_attempts: 3\n  backoff_base_s: 2.0\n")
    local.write_text("jobs:\n  max_attempts: 7\n")

    config = resolve_config(default_path=default, local_path=local)

    assert config.jobs.max_attempts == 7
    assert config.jobs.backoff_base_s == 2.0


def test_env_overrides_yaml(tmp_path, monkeypatch):
    default = tmp_path / "default.yaml"
    default.write_text("database:\n  path: from-yaml.db\n")
    monkeypatch.setenv(DB_PATH_ENV, "/data/from-env.db")

    config = resolve_config(default_path=default, local_path=tmp_path / "absent.yaml")

    assert config.database.path == "/data/from-env.db"


def test_cli_overrides_everything(tmp_path, monkeypatch):
    monkeypatch.setenv(DB_PATH_ENV, "/data/from-env.db")

    config = resolve_config({
        "db_path": "cli.db",
        "max_attempts": 5,
        "no_poller": True,
        "batch_size": 4,
        "log_level": "DEBUG",
        "providers_factory": "myproviders:build",
    })

    assert config.database.path == "cli.db"
    assert config.jobs.max_attempts == 5
    assert config.poller.enabled is False
    assert config.poller.batch_size == 4
    assert config.logging.level == "DEBUG"
    assert config.providers.factory == "myproviders:build"


def test_invalid_yaml_value_rejected(tmp_path):
    default = tmp_path / "default.yaml"
    default.write_text("jobs:\n  max_attempts: 0\n")
    with pytest.raises(ValidationError):
        resolve_config(default_path=default, local_path=tmp_path / "absent.yaml")


def test_merge_dicts_is_recursive():
    base = {"jobs": {"max_attempts": 3, "backoff_base_s": 1.0}, "poller": {"enabled": True}}
    merged = merge_dicts(base, {"jobs": {"max_attempts": 9}})

    assert merged == {"jobs": {"max_attempts": 9, "backoff_base_s": 1.0}, "poller": {"enabled": True}}
    assert base["jobs"]["max_attempts"] == 3


def test_backoff_delay():
    config = PipelineConfig.from_dict({"jobs": {"backoff_base_s": 0.5, "backoff_max_s": 3.0}})
    assert [backoff_delay(config, k) for k in range(5)] == [0.5, 1.0, 2.0, 3.0, 3.0]
