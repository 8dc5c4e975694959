"""
Agendum Configuration — loads and merges config from multiple sources.

Precedence (highest to lowest):
1. Explicit overrides (passed in code)
2. Environment variables (AGENDUM_*)
3. Project config (./agendum.toml)
4. User config (~/.agendum/config.toml)
5. Defaults (hardcoded)

Environment variable mapping:
    AGENDUM_POLL_INTERVAL → scheduler.poll_interval
    AGENDUM_DB_PATH → store.db_path
    AGENDUM_SMTP_HOST → smtp.host
    AGENDUM_SMTP_PASSWORD → smtp.password
"""

from __future__ import annotations

import os
import re
import sys
from pathlib import Path
from typing import Any, Mapping

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from agendum.core.errors import ConfigError

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Config Sub-Models
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class SchedulerConfig(BaseModel):
    """Poller and retry policy configuration. Durations are seconds."""

    poll_interval: float = Field(default=30.0, gt=0)
    batch_size: int = Field(default=10, ge=1)
    lock_duration: float = Field(default=300.0, gt=0)
    job_timeout: float = Field(default=120.0, gt=0)
    max_attempts: int = Field(default=5, ge=1)
    backoff_base: float = Field(default=30.0, gt=0)
    backoff_max: float = Field(default=3600.0, gt=0)


class StoreConfig(BaseModel):
    """Job store configuration."""

    backend: str = "sqlite"  # "sqlite" or "memory"
    db_path: str = "~/.agendum/jobs.db"
    busy_timeout: float = 5.0


class SMTPConfig(BaseModel):
    """Outgoing mail relay used by the 'send email' executor."""

    host: str = ""
    port: int = 587
    username: str = ""
    password: str = ""
    from_address: str = ""
    use_tls: bool = True
    timeout: float = 30.0

    @property
    def configured(self) -> bool:
        return bool(self.host and self.from_address)


class LoggingConfig(BaseModel):
    """Log output configuration."""

    dir: str = "~/.agendum/logs"
    console_level: str = "WARNING"


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Main Config
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class AgendumConfig(BaseModel):
    """Root configuration for Agendum."""

    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    smtp: SMTPConfig = Field(default_factory=SMTPConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @staticmethod
    def load(
        overrides: dict[str, Any] | None = None,
        project_path: Path | None = None,
        user_path: Path | None = None,
    ) -> AgendumConfig:
        """
        Load configuration from all sources and merge.

        Precedence: overrides > env vars > project toml > user toml > defaults
        """
        files = [
            user_path or Path.home() / ".agendum" / "config.toml",
            project_path or Path.cwd() / "agendum.toml",
        ]
        layers = [_read_toml(p) for p in files if p.exists()]
        layers += [_env_layer(), overrides or {}]
        merged = _expand_env_refs(_merge(*layers))

        try:
            return AgendumConfig(**merged)
        except PydanticValidationError as e:
            raise ConfigError(f"Invalid configuration: {e}") from e

    def get_db_path(self) -> Path:
        """Get the resolved job database path."""
        return Path(self.store.db_path).expanduser()

    def get_log_dir(self) -> Path:
        """Get the resolved log directory."""
        return Path(self.logging.dir).expanduser()


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Config Layers
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

# Values stay strings; pydantic coerces them to the field types.
ENV_VARS: dict[str, tuple[str, str]] = {
    "AGENDUM_POLL_INTERVAL": ("scheduler", "poll_interval"),
    "AGENDUM_BATCH_SIZE": ("scheduler", "batch_size"),
    "AGENDUM_LOCK_DURATION": ("scheduler", "lock_duration"),
    "AGENDUM_JOB_TIMEOUT": ("scheduler", "job_timeout"),
    "AGENDUM_MAX_ATTEMPTS": ("scheduler", "max_attempts"),
    "AGENDUM_BACKOFF_BASE": ("scheduler", "backoff_base"),
    "AGENDUM_BACKOFF_MAX": ("scheduler", "backoff_max"),
    "AGENDUM_STORE_BACKEND": ("store", "backend"),
    "AGENDUM_DB_PATH": ("store", "db_path"),
    "AGENDUM_SMTP_HOST": ("smtp", "host"),
    "AGENDUM_SMTP_PORT": ("smtp", "port"),
    "AGENDUM_SMTP_USERNAME": ("smtp", "username"),
    "AGENDUM_SMTP_PASSWORD": ("smtp", "password"),
    "AGENDUM_SMTP_FROM": ("smtp", "from_address"),
    "AGENDUM_SMTP_USE_TLS": ("smtp", "use_tls"),
    "AGENDUM_LOG_DIR": ("logging", "dir"),
    "AGENDUM_LOG_LEVEL": ("logging", "console_level"),
}

_ENV_REF = re.compile(r"\$\{([^}]+)\}")


def _read_toml(path: Path) -> dict[str, Any]:
    try:
        with path.open("rb") as f:
            return tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        raise ConfigError(f"Failed to load config from {path}: {e}") from e


def _env_layer(environ: Mapping[str, str] | None = None) -> dict[str, dict[str, str]]:
    """Collect AGENDUM_* variables into a {section: {key: raw string}} layer."""
    environ = os.environ if environ is None else environ
    layer: dict[str, dict[str, str]] = {}
    for var, (section, key) in ENV_VARS.items():
        if var in environ:
            layer.setdefault(section, {})[key] = environ[var]
    return layer


def _merge(*layers: Mapping[str, Any]) -> dict[str, Any]:
    """Merge layers left to right into a new dict. Later layers win, tables merge."""
    merged: dict[str, Any] = {}
    for layer in layers:
        for key, value in layer.items():
            current = merged.get(key)
            if isinstance(current, Mapping) and isinstance(value, Mapping):
                merged[key] = _merge(current, value)
            else:
                merged[key] = value
    return merged


def _expand_env_refs(value: Any) -> Any:
    """Replace ${VAR} in every string with the variable's value (empty if unset)."""
    if isinstance(value, Mapping):
        return {k: _expand_env_refs(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand_env_refs(v) for v in value]
    if isinstance(value, str):
        return _ENV_REF.sub(lambda m: os.environ.get(m.group(1), ""), value)
    return value
