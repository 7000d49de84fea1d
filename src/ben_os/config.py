"""
Runtime Configuration

Settings for the Ben OS API, MCP server and background workers, read from
environment variables. Defaults favour a single local SQLite file with
optional agent authentication.
"""

import os
from dataclasses import dataclass, field
from typing import List, Mapping, Optional

DEFAULT_DATABASE_PATH = "ben_os.db"
DEFAULT_RATE_LIMIT = 100
DEFAULT_RATE_LIMIT_WINDOW = 60  # seconds
DEFAULT_ACTIVITY_RETENTION_DAYS = 90

_TRUTHY = {"1", "true", "yes", "on"}


def _env_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in _TRUTHY


def _env_int(value: Optional[str], default: int) -> int:
    try:
        return int(value) if value is not None else default
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    """Resolved process settings."""
    database_path: str = DEFAULT_DATABASE_PATH
    require_auth: bool = False
    rate_limit: int = DEFAULT_RATE_LIMIT
    rate_limit_window: int = DEFAULT_RATE_LIMIT_WINDOW
    activity_retention_days: int = DEFAULT_ACTIVITY_RETENTION_DAYS
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    log_level: str = "INFO"


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Build Settings from environment variables.

    Args:
        environ: Mapping to read from, defaults to os.environ

    Returns:
        Settings instance with defaults applied for unset or malformed values
    """
    env = os.environ if environ is None else environ
    origins = [o.strip() for o in env.get("BEN_OS_CORS_ORIGINS", "*").split(",") if o.strip()]
    return Settings(
        database_path=env.get("DATABASE_PATH", DEFAULT_DATABASE_PATH),
        require_auth=_env_bool(env.get("BEN_OS_REQUIRE_AUTH")),
        rate_limit=max(1, _env_int(env.get("BEN_OS_RATE_LIMIT"), DEFAULT_RATE_LIMIT)),
        rate_limit_window=max(1, _env_int(env.get("BEN_OS_RATE_LIMIT_WINDOW"), DEFAULT_RATE_LIMIT_WINDOW)),
        activity_retention_days=_env_int(
            env.get("BEN_OS_ACTIVITY_RETENTION_DAYS"), DEFAULT_ACTIVITY_RETENTION_DAYS
        ),
        cors_origins=origins or ["*"],
        log_level=env.get("BEN_OS_LOG_LEVEL", "INFO").upper(),
    )
