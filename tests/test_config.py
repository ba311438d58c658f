"""Tests for almanac.config: TOML loading, env resolution and validation."""

from __future__ import annotations

from pathlib import Path

import pytest

from almanac.config import (
    DEFAULT_NOTION_API_VERSION,
    ConfigError,
    ConflictPolicy,
    load_config,
    resolve_env_vars,
)

pytestmark = pytest.mark.unit


def _write(tmp_path: Path, content: str) -> Path:
    path = tmp_path / "almanac.toml"
    path.write_text(content)
    return path


def test_defaults_for_minimal_file(tmp_path):
    config = load_config(_write(tmp_path, "[almanac]\n"))

    assert config.name == "almanac"
    assert config.db.url is None
    assert config.logging.format == "text"
    assert config.sync.past_days == 30
    assert config.sync.future_days == 365
    assert config.sync.retry_errored is False
    assert config.sync.conflict_policy == ConflictPolicy.REMOTE_WINS
    assert config.providers.notion.api_version == DEFAULT_NOTION_API_VERSION


def test_full_file(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgresql://cal:pw@db:5432/cal")
    monkeypatch.setenv("GOOGLE_CLIENT_ID", "client-123")
    path = _write(
        tmp_path,
        """
[almanac]
name = "almanac-test"

[almanac.db]
url = "${DATABASE_URL}"
max_pool_size = 8

[almanac.logging]
level = "debug"
format = "JSON"
log_root = "logs"

[sync]
past_days = 7
future_days = 90
http_timeout_seconds = 5
retry_errored = true
conflict_policy = "manual"

[providers.google]
api_base_url = "https://google.test/calendar/v3/"
client_id = "${GOOGLE_CLIENT_ID}"

[providers.notion]
schema_cache_ttl_seconds = 60
""",
    )

    config = load_config(path)

    assert config.name == "almanac-test"
    assert config.db.url == "postgresql://cal:pw@db:5432/cal"
    assert config.db.max_pool_size == 8
    assert config.logging.level == "DEBUG"
    assert config.logging.format == "json"
    assert config.logging.log_root == "logs"
    assert config.sync.past_days == 7
    assert config.sync.http_timeout_seconds == 5.0
    assert config.sync.retry_errored is True
    assert config.sync.conflict_policy == ConflictPolicy.MANUAL
    assert config.providers.google.api_base_url == "https://google.test/calendar/v3"
    assert config.providers.google.client_id == "client-123"
    assert config.providers.google.client_secret is None
    assert config.providers.notion.schema_cache_ttl_seconds == 60.0


def test_directory_path_resolves_file(tmp_path):
    _write(tmp_path, '[almanac]\nname = "from-dir"\n')
    assert load_config(tmp_path).name == "from-dir"


def test_env_var_points_at_config(tmp_path, monkeypatch):
    path = _write(tmp_path, '[almanac]\nname = "from-env"\n')
    monkeypatch.setenv("ALMANAC_CONFIG", str(path))
    assert load_config().name == "from-env"


def test_missing_file(tmp_path):
    with pytest.raises(ConfigError, match="not found"):
        load_config(tmp_path / "nope.toml")


def test_invalid_toml(tmp_path):
    with pytest.raises(ConfigError, match="Invalid TOML"):
        load_config(_write(tmp_path, "[almanac\n"))


def test_unresolved_env_vars_reported_together(monkeypatch):
    monkeypatch.delenv("ALMANAC_A", raising=False)
    monkeypatch.delenv("ALMANAC_B", raising=False)
    with pytest.raises(ConfigError, match="ALMANAC_A, ALMANAC_B"):
        resolve_env_vars({"x": ["${ALMANAC_A}-${ALMANAC_B}"]})


def test_non_string_values_pass_through():
    assert resolve_env_vars({"port": 5432, "on": True, "none": None}) == {
        "port": 5432,
        "on": True,
        "none": None,
    }


@pytest.mark.parametrize(
    ("content", "message"),
    [
        ('[sync]\nconflict_policy = "newest_wins"\n', "conflict_policy"),
        ("[sync]\npast_days = 0\n", "sync.past_days"),
        ('[sync]\nretry_errored = "yes"\n', "retry_errored"),
        ('[almanac.logging]\nformat = "xml"\n', "logging.format"),
        ("[almanac.db]\nmin_pool_size = 6\nmax_pool_size = 2\n", "min_pool_size"),
        ('[providers.notion]\nschema_cache_ttl_seconds = "soon"\n', "schema_cache_ttl_seconds"),
    ],
)
def test_validation_errors(tmp_path, content, message):
    with pytest.raises(ConfigError, match=message):
        load_config(_write(tmp_path, content))
