"""Almanac configuration loading and validation.

Reads ``almanac.toml``, resolves ``${VAR}`` environment references, and
returns a validated :class:`AlmanacConfig` dataclass.
"""

from __future__ import annotations

import enum
import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

DEFAULT_CONFIG_FILENAME = "almanac.toml"
DEFAULT_GOOGLE_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
DEFAULT_GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
DEFAULT_NOTION_API_BASE_URL = "https://api.notion.com/v1"
DEFAULT_NOTION_API_VERSION = "2022-06-28"

# Pattern matching ${VAR_NAME}; supports alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ConfigError(Exception):
    """Raised when configuration is missing, malformed, or invalid."""


class ConflictPolicy(enum.StrEnum):
    """How pulled remote changes relate to unsynced local edits.

    Only ``remote_wins`` describes what the sync engine actually does; the
    other values are accepted and reported but not enforced.
    """

    REMOTE_WINS = "remote_wins"
    LOCAL_WINS = "local_wins"
    MANUAL = "manual"


@dataclass
class LoggingConfig:
    """Logging configuration from [almanac.logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class DatabaseConfig:
    """PostgreSQL settings from [almanac.db]."""

    url: str | None = None
    host: str = "localhost"
    port: int = 5432
    user: str = "almanac"
    password: str = "almanac"
    name: str = "almanac"
    min_pool_size: int = 1
    max_pool_size: int = 5


@dataclass
class SyncSettings:
    """Sync window, timeouts and policies from [sync]."""

    past_days: int = 30
    future_days: int = 365
    http_timeout_seconds: float = 20.0
    connect_timeout_seconds: float = 10.0
    retry_errored: bool = False
    conflict_policy: ConflictPolicy = ConflictPolicy.REMOTE_WINS


@dataclass
class GoogleProviderConfig:
    api_base_url: str = DEFAULT_GOOGLE_API_BASE_URL
    oauth_token_url: str = DEFAULT_GOOGLE_OAUTH_TOKEN_URL
    client_id: str | None = None
    client_secret: str | None = field(default=None, repr=False)


@dataclass
class NotionProviderConfig:
    api_base_url: str = DEFAULT_NOTION_API_BASE_URL
    api_version: str = DEFAULT_NOTION_API_VERSION
    schema_cache_ttl_seconds: float = 300.0


@dataclass
class ProvidersConfig:
    google: GoogleProviderConfig = field(default_factory=GoogleProviderConfig)
    notion: NotionProviderConfig = field(default_factory=NotionProviderConfig)


@dataclass
class AlmanacConfig:
    """Parsed and validated configuration."""

    name: str = "almanac"
    db: DatabaseConfig = field(default_factory=DatabaseConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    sync: SyncSettings = field(default_factory=SyncSettings)
    providers: ProvidersConfig = field(default_factory=ProvidersConfig)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    # int, float, bool, None pass through unchanged.
    return value


def _resolve_string(s: str) -> str:
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values.

    Collects all missing variable names and reports them in a single error.
    """
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)  # keep placeholder for error reporting
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        vars_str = ", ".join(missing)
        raise ConfigError(f"Unresolved environment variable(s) in config value: {vars_str}")

    return result


def _positive_int(section: dict, key: str, default: int, qualified: str) -> int:
    raw = section.get(key, default)
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {qualified}: {raw!r}. Must be an integer.") from exc
    if value <= 0:
        raise ConfigError(f"Invalid {qualified}: {value!r}. Must be a positive integer.")
    return value


def _positive_float(section: dict, key: str, default: float, qualified: str) -> float:
    raw = section.get(key, default)
    try:
        value = float(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {qualified}: {raw!r}. Must be a number.") from exc
    if value <= 0:
        raise ConfigError(f"Invalid {qualified}: {value!r}. Must be positive.")
    return value


def _optional_str(section: dict, key: str) -> str | None:
    raw = section.get(key)
    if raw is None:
        return None
    normalized = str(raw).strip()
    return normalized or None


def _parse_db(section: dict) -> DatabaseConfig:
    db = DatabaseConfig(
        url=_optional_str(section, "url"),
        host=str(section.get("host", "localhost")),
        port=_positive_int(section, "port", 5432, "almanac.db.port"),
        user=str(section.get("user", "almanac")),
        password=str(section.get("password", "almanac")),
        name=str(section.get("name", "almanac")).strip(),
        min_pool_size=_positive_int(section, "min_pool_size", 1, "almanac.db.min_pool_size"),
        max_pool_size=_positive_int(section, "max_pool_size", 5, "almanac.db.max_pool_size"),
    )
    if not db.name:
        raise ConfigError("almanac.db.name must be a non-empty string")
    if db.min_pool_size > db.max_pool_size:
        raise ConfigError("almanac.db.min_pool_size must not exceed almanac.db.max_pool_size")
    return db


def _parse_logging(section: dict) -> LoggingConfig:
    log_format = str(section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(
            f"Invalid almanac.logging.format: {log_format!r}. Expected 'text' or 'json'."
        )
    return LoggingConfig(
        level=str(section.get("level", "INFO")).upper(),
        format=log_format,
        log_root=_optional_str(section, "log_root"),
    )


def _parse_sync(section: dict) -> SyncSettings:
    raw_policy = str(section.get("conflict_policy", ConflictPolicy.REMOTE_WINS.value)).lower()
    try:
        conflict_policy = ConflictPolicy(raw_policy)
    except ValueError as exc:
        choices = ", ".join(policy.value for policy in ConflictPolicy)
        raise ConfigError(
            f"Invalid sync.conflict_policy: {raw_policy!r}. Expected one of: {choices}."
        ) from exc

    retry_errored = section.get("retry_errored", False)
    if not isinstance(retry_errored, bool):
        raise ConfigError("sync.retry_errored must be a boolean")

    return SyncSettings(
        past_days=_positive_int(section, "past_days", 30, "sync.past_days"),
        future_days=_positive_int(section, "future_days", 365, "sync.future_days"),
        http_timeout_seconds=_positive_float(
            section, "http_timeout_seconds", 20.0, "sync.http_timeout_seconds"
        ),
        connect_timeout_seconds=_positive_float(
            section, "connect_timeout_seconds", 10.0, "sync.connect_timeout_seconds"
        ),
        retry_errored=retry_errored,
        conflict_policy=conflict_policy,
    )


def _parse_providers(section: dict) -> ProvidersConfig:
    google_section = section.get("google", {})
    notion_section = section.get("notion", {})
    return ProvidersConfig(
        google=GoogleProviderConfig(
            api_base_url=str(
                google_section.get("api_base_url", DEFAULT_GOOGLE_API_BASE_URL)
            ).rstrip("/"),
            oauth_token_url=str(
                google_section.get("oauth_token_url", DEFAULT_GOOGLE_OAUTH_TOKEN_URL)
            ),
            client_id=_optional_str(google_section, "client_id"),
            client_secret=_optional_str(google_section, "client_secret"),
        ),
        notion=NotionProviderConfig(
            api_base_url=str(
                notion_section.get("api_base_url", DEFAULT_NOTION_API_BASE_URL)
            ).rstrip("/"),
            api_version=str(notion_section.get("api_version", DEFAULT_NOTION_API_VERSION)),
            schema_cache_ttl_seconds=_positive_float(
                notion_section,
                "schema_cache_ttl_seconds",
                300.0,
                "providers.notion.schema_cache_ttl_seconds",
            ),
        ),
    )


def load_config(path: Path | None = None) -> AlmanacConfig:
    """Load and validate ``almanac.toml``.

    Parameters
    ----------
    path:
        A config file, or a directory containing ``almanac.toml``. Defaults
        to ``$ALMANAC_CONFIG`` or ``./almanac.toml``.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or fails validation.
    """
    if path is None:
        path = Path(os.environ.get("ALMANAC_CONFIG", DEFAULT_CONFIG_FILENAME))
    toml_path = path / DEFAULT_CONFIG_FILENAME if path.is_dir() else path

    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_text())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    data = resolve_env_vars(data)

    almanac_section = data.get("almanac", {})
    if not isinstance(almanac_section, dict):
        raise ConfigError("[almanac] must be a table")

    return AlmanacConfig(
        name=str(almanac_section.get("name", "almanac")),
        db=_parse_db(almanac_section.get("db", {})),
        logging=_parse_logging(almanac_section.get("logging", {})),
        sync=_parse_sync(data.get("sync", {})),
        providers=_parse_providers(data.get("providers", {})),
    )
