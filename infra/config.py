"""Centralized application configuration with schema validation.

Settings are read from a dotenv-style ``config.env`` file and the process
environment (process values win):
- Flat names mirror the console options (for example ``DATABASE_URL``,
  ``MAX_SPOT_PRICE``, ``SYSTEMD_SERVICES``).
- Nested names (for example ``CONSOLE__MAX_SPOT_PRICE``) take precedence
  over the flat ones when both are present.
"""

from __future__ import annotations

import os
import re
from collections.abc import Mapping
from pathlib import Path
from threading import Lock

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def user_config_dir() -> Path:
    """Return the per-user configuration directory (``$XDG_CONFIG_HOME`` or ``~/.config``)."""
    base = str(os.environ.get("XDG_CONFIG_HOME") or "").strip()
    if base:
        return Path(base)
    return Path.home() / ".config"


def _default_script_directory() -> str:
    return str(user_config_dir() / "aws_app" / "scripts")


def _default_secret_path() -> str:
    return str(user_config_dir() / "aws_app" / "secret.bin")


def _split_csv(value: object, *, field_name: str) -> list[str]:
    """Accept list or comma-separated string and normalize to a unique ordered list."""
    if value is None:
        return []
    if isinstance(value, str):
        items = [part.strip() for part in value.split(",") if part.strip()]
    elif isinstance(value, (list, tuple)):
        items = [str(part).strip() for part in value if str(part).strip()]
    else:
        raise TypeError(f"{field_name} must be a list[str] or comma-separated string")

    seen: set[str] = set()
    ordered: list[str] = []
    for item in items:
        if item not in seen:
            seen.add(item)
            ordered.append(item)
    return ordered


def _optional_text(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class DatabaseConfig(BaseModel):
    """Database connection settings."""

    model_config = ConfigDict(frozen=True)

    url: str | None = Field(default=None, description="Postgres connection URL (DATABASE_URL)")
    pool_maxconn: int = Field(default=10, ge=1, le=100)
    connect_timeout: int = Field(default=5, ge=1, le=60)


class AWSConfig(BaseModel):
    """AWS client defaults used by the client factory."""

    model_config = ConfigDict(frozen=True)

    region_name: str = Field(default="us-east-1")
    max_retries: int = Field(default=10, ge=1, le=25)
    timeout: int = Field(default=60, ge=1, le=300)
    connect_timeout: int = Field(default=5, ge=1, le=60)

    @field_validator("region_name", mode="before")
    @classmethod
    def _normalize_region(cls, value: object) -> str:
        return str(value or "").strip() or "us-east-1"


class APIConfig(BaseModel):
    """Flask API runtime configuration."""

    model_config = ConfigDict(frozen=True)

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3096, ge=1, le=65535)
    domain: str = Field(default="localhost")
    version: str = Field(default="v1")
    debug_errors: bool = Field(default=False)
    rate_limit_rps: float | None = Field(default=None, gt=0.0)
    rate_limit_burst: float | None = Field(default=None, gt=0.0)
    enforce_schema_gate: bool = Field(default=True)
    bearer_token: str = Field(default="")

    @field_validator("version")
    @classmethod
    def _normalize_version(cls, value: str) -> str:
        text = str(value or "").strip().lower()
        if re.match(r"^v\d+$", text):
            return text
        return "v1"


class LoggingSettings(BaseModel):
    """Repository-wide logging settings."""

    model_config = ConfigDict(frozen=True)

    level: str = Field(default="INFO")
    json_logs: bool = Field(default=False)
    override_root_handlers: bool = Field(default=False)

    @field_validator("level")
    @classmethod
    def _normalize_level(cls, value: str) -> str:
        text = str(value or "").strip().upper()
        if text in _LOG_LEVELS:
            return text
        return "INFO"


class DbMetricsConfig(BaseModel):
    """DB query instrumentation settings."""

    model_config = ConfigDict(frozen=True)

    metrics_enabled: bool = Field(default=True)
    slow_query_threshold_ms: float = Field(default=1000.0, ge=0.0)

    @field_validator("metrics_enabled", mode="before")
    @classmethod
    def _normalize_metrics_enabled(cls, value: object) -> bool:
        text = str(value if value is not None else "").strip().lower()
        if text in {"0", "false", "no", "off"}:
            return False
        return True

    @field_validator("slow_query_threshold_ms", mode="before")
    @classmethod
    def _normalize_threshold_ms(cls, value: object) -> float:
        try:
            parsed = float(str(value).strip())
        except (TypeError, ValueError):
            return 1000.0
        return max(0.0, parsed)


class ConsoleConfig(BaseModel):
    """Operator console options: launch defaults, host paths and feature toggles."""

    model_config = ConfigDict(frozen=True)

    my_owner_id: str | None = Field(default=None)
    max_spot_price: float = Field(default=0.20, gt=0.0)
    default_security_group: str | None = Field(default=None)
    spot_security_group: str | None = Field(default=None)
    default_key_name: str | None = Field(default=None)
    script_directory: str = Field(default_factory=_default_script_directory)
    ubuntu_release: str = Field(default="bionic-18.04")
    novnc_path: str | None = Field(default=None)
    novnc_cert_path: str | None = Field(default=None)
    novnc_key_path: str | None = Field(default=None)
    secret_path: str = Field(default_factory=_default_secret_path)
    jwt_secret_path: str = Field(default_factory=_default_secret_path)
    systemd_services: list[str] = Field(default_factory=list)
    root_crontab: str | None = Field(default=None)
    user_crontab: str | None = Field(default=None)
    inbound_email_bucket: str | None = Field(default=None)
    service_name: str = Field(default="aws-app-http")
    ssh_user: str = Field(default="ubuntu")
    public_ip_url: str = Field(default="https://ipinfo.io/ip")

    @field_validator("systemd_services", mode="before")
    @classmethod
    def _normalize_services(cls, value: object) -> list[str]:
        return _split_csv(value, field_name="systemd_services")

    @field_validator(
        "my_owner_id",
        "default_security_group",
        "spot_security_group",
        "default_key_name",
        "novnc_path",
        "novnc_cert_path",
        "novnc_key_path",
        "root_crontab",
        "user_crontab",
        "inbound_email_bucket",
        mode="before",
    )
    @classmethod
    def _normalize_optional(cls, value: object) -> str | None:
        return _optional_text(value)

    @property
    def novnc_enabled(self) -> bool:
        """Remote desktop needs all three paths configured."""
        return bool(self.novnc_path and self.novnc_cert_path and self.novnc_key_path)


class WorkerConfig(BaseModel):
    """Scheduled refresher intervals."""

    model_config = ConfigDict(frozen=True)

    refresh_interval_seconds: int = Field(default=86_400, ge=60)
    email_sync_interval_seconds: int = Field(default=300, ge=10)


class Settings(BaseModel):
    """Top-level settings model."""

    model_config = ConfigDict(frozen=True)

    db: DatabaseConfig = Field(default_factory=DatabaseConfig)
    aws: AWSConfig = Field(default_factory=AWSConfig)
    api: APIConfig = Field(default_factory=APIConfig)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    db_metrics: DbMetricsConfig = Field(default_factory=DbMetricsConfig)
    console: ConsoleConfig = Field(default_factory=ConsoleConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)

    @classmethod
    def from_env(
        cls,
        *,
        env: Mapping[str, str] | None = None,
        env_file: str | Path | None = None,
    ) -> Settings:
        """Build settings from ``config.env`` then environment variables."""
        runtime_env = os.environ if env is None else env
        path = Path(env_file) if env_file is not None else default_env_file()
        merged_env = _merge_env(_load_dotenv(path), runtime_env)
        payload = _build_payload(merged_env)
        return cls.model_validate(payload)


def default_env_file() -> Path:
    """Prefer ``./config.env``; fall back to ``<config dir>/aws_app/config.env``."""
    local = Path("config.env")
    if local.is_file():
        return local
    return user_config_dir() / "aws_app" / "config.env"


def _load_dotenv(path: Path) -> dict[str, str]:
    """Parse ``KEY=value`` lines; blank lines and ``#`` comments are ignored."""
    if not path.is_file():
        return {}

    values: dict[str, str] = {}
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        if line.startswith("export "):
            line = line[len("export ") :].lstrip()
        key, raw_value = line.split("=", 1)
        value = raw_value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
            value = value[1:-1]
        if key.strip():
            values[key.strip()] = value
    return values


def _merge_env(dotenv_values: Mapping[str, str], runtime_env: Mapping[str, str]) -> dict[str, str]:
    """Return env map where process env overrides file values."""
    merged = {str(k): str(v) for k, v in dotenv_values.items()}
    merged.update({str(k): str(v) for k, v in runtime_env.items()})
    return merged


def _first_non_empty(env: Mapping[str, str], *keys: str) -> str | None:
    """Return the first non-empty value for the provided keys."""
    for key in keys:
        value = str(env.get(key, "")).strip()
        if value:
            return value
    return None


def _section(env: Mapping[str, str], prefix: str, fields: Mapping[str, tuple[str, ...]]) -> dict[str, str]:
    """Collect one settings section: ``PREFIX__FIELD`` first, then the flat aliases."""
    out: dict[str, str] = {}
    for field_name, aliases in fields.items():
        value = _first_non_empty(env, f"{prefix}__{field_name.upper()}", *aliases)
        if value is not None:
            out[field_name] = value
    return out


_CONSOLE_FIELDS = (
    "my_owner_id",
    "max_spot_price",
    "default_security_group",
    "spot_security_group",
    "default_key_name",
    "script_directory",
    "ubuntu_release",
    "novnc_path",
    "novnc_cert_path",
    "novnc_key_path",
    "secret_path",
    "jwt_secret_path",
    "systemd_services",
    "root_crontab",
    "user_crontab",
    "inbound_email_bucket",
    "service_name",
    "ssh_user",
    "public_ip_url",
)


def _build_payload(env: Mapping[str, str]) -> dict[str, object]:
    """Build nested settings payload from env values."""
    return {
        "db": _section(
            env,
            "DB",
            {
                "url": ("DATABASE_URL", "DB_URL"),
                "pool_maxconn": ("DB_POOL_MAXCONN",),
                "connect_timeout": ("DB_CONNECT_TIMEOUT",),
            },
        ),
        "aws": _section(
            env,
            "AWS",
            {
                "region_name": ("AWS_REGION_NAME", "AWS_DEFAULT_REGION"),
                "max_retries": ("AWS_MAX_RETRIES",),
                "timeout": ("AWS_TIMEOUT",),
                "connect_timeout": ("AWS_CONNECT_TIMEOUT",),
            },
        ),
        "api": _section(
            env,
            "API",
            {
                "host": ("HOST", "API_HOST"),
                "port": ("PORT", "API_PORT"),
                "domain": ("DOMAIN",),
                "version": ("API_VERSION",),
                "debug_errors": ("API_DEBUG_ERRORS",),
                "rate_limit_rps": ("API_RATE_LIMIT_RPS",),
                "rate_limit_burst": ("API_RATE_LIMIT_BURST",),
                "enforce_schema_gate": ("API_ENFORCE_SCHEMA_GATE",),
                "bearer_token": ("API_BEARER_TOKEN",),
            },
        ),
        "logging": _section(
            env,
            "LOGGING",
            {
                "level": ("AWSAPP_LOG_LEVEL",),
                "json_logs": ("AWSAPP_LOG_JSON",),
                "override_root_handlers": ("AWSAPP_LOG_OVERRIDE",),
            },
        ),
        "db_metrics": _section(
            env,
            "DB_METRICS",
            {
                "metrics_enabled": ("DB_QUERY_METRICS_ENABLED",),
                "slow_query_threshold_ms": ("DB_SLOW_QUERY_THRESHOLD_MS",),
            },
        ),
        "console": _section(env, "CONSOLE", {name: (name.upper(),) for name in _CONSOLE_FIELDS}),
        "worker": _section(
            env,
            "WORKER",
            {
                "refresh_interval_seconds": ("WORKER_REFRESH_INTERVAL_SECONDS",),
                "email_sync_interval_seconds": ("WORKER_EMAIL_SYNC_INTERVAL_SECONDS",),
            },
        ),
    }


_SETTINGS_LOCK = Lock()
_SETTINGS_CACHE: Settings | None = None


def get_settings(*, reload: bool = False) -> Settings:
    """Return cached settings, optionally forcing reload from env."""
    global _SETTINGS_CACHE
    with _SETTINGS_LOCK:
        if reload or _SETTINGS_CACHE is None:
            _SETTINGS_CACHE = Settings.from_env()
        return _SETTINGS_CACHE


def clear_settings_cache() -> None:
    """Clear in-process settings cache."""
    global _SETTINGS_CACHE
    with _SETTINGS_LOCK:
        _SETTINGS_CACHE = None


__all__ = [
    "APIConfig",
    "AWSConfig",
    "ConsoleConfig",
    "DatabaseConfig",
    "DbMetricsConfig",
    "LoggingSettings",
    "Settings",
    "WorkerConfig",
    "default_env_file",
    "get_settings",
    "clear_settings_cache",
    "user_config_dir",
    "ValidationError",
]
