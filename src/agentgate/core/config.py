"""AgentGate configuration: Pydantic model, load, and save."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import httpx
from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator

from agentgate.core.constants import (
    AGENTGATE_DIR_NAME,
    AUDIT_FILENAME,
    CONFIG_FILENAME,
    DEFAULT_REFRESH_INTERVAL_SECONDS,
    DEFAULT_REQUEST_TIMEOUT_SECONDS,
    MIN_REFRESH_INTERVAL_SECONDS,
    TELEMETRY_FILENAME,
)
from agentgate.core.exceptions import ConfigError, ConfigNotFoundError
from agentgate.core.risk import RiskLevel


def agentgate_dir() -> Path:
    """Return the AgentGate data directory (~/.agentgate), creating it if needed."""
    d = Path.home() / AGENTGATE_DIR_NAME
    d.mkdir(mode=0o700, parents=True, exist_ok=True)
    return d


# ---------------------------------------------------------------------------
# Sub-models
# ---------------------------------------------------------------------------


def check_policy_url(url: str) -> str:
    """Return the stripped URL, or raise ValueError unless it is an absolute http(s) URL."""
    url = url.strip()
    try:
        parsed = httpx.URL(url)
    except (httpx.InvalidURL, ValueError) as exc:
        raise ValueError(f"Invalid policy URL {url!r}: {exc}") from None
    if parsed.scheme not in ("http", "https") or not parsed.host:
        raise ValueError("Policy URL must be an http:// or https:// URL with a host")
    return url


class PolicySyncConfig(BaseModel):
    url: str = ""  # empty → remote policy disabled
    refresh_interval_seconds: float = DEFAULT_REFRESH_INTERVAL_SECONDS
    request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS
    sync_on_start: bool = True
    # Never read from or written to the config file; env only.
    dev_override_token: SecretStr | None = Field(default=None, exclude=True)

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        v = v.strip()
        if not v:
            return v
        try:
            return check_policy_url(v)
        except ValueError as exc:
            raise ValueError(f"policy_sync.url: {exc}") from None

    @field_validator("refresh_interval_seconds")
    @classmethod
    def validate_refresh(cls, v: float) -> float:
        if v < MIN_REFRESH_INTERVAL_SECONDS:
            raise ValueError(
                f"refresh_interval_seconds must be at least {MIN_REFRESH_INTERVAL_SECONDS:g}"
            )
        return v


def _default_auto_allow() -> dict[str, RiskLevel]:
    return {
        "standard": RiskLevel.LOW,
        "developer": RiskLevel.MEDIUM,
        "admin": RiskLevel.MEDIUM,
    }


class RiskConfig(BaseModel):
    # user_mode → highest risk level that is allowed without approval
    auto_allow: dict[str, RiskLevel] = Field(default_factory=_default_auto_allow)
    fallback_mode: str = "standard"
    inspect_args: bool = False

    @field_validator("auto_allow")
    @classmethod
    def reject_high_auto_allow(cls, v: dict[str, RiskLevel]) -> dict[str, RiskLevel]:
        for mode, level in v.items():
            if level == RiskLevel.HIGH:
                raise ValueError(
                    f"risk.auto_allow.{mode} cannot be 'high'. "
                    "High-risk actions always require approval."
                )
        return v

    @model_validator(mode="after")
    def fallback_mode_has_row(self) -> RiskConfig:
        if self.fallback_mode not in self.auto_allow:
            raise ValueError(
                f"risk.fallback_mode {self.fallback_mode!r} has no row in risk.auto_allow"
            )
        return self


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: str = "text"  # "text" | "json"

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR"}
        if v.upper() not in allowed:
            raise ValueError(f"Log level must be one of: {allowed}")
        return v.upper()

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        if v not in ("text", "json"):
            raise ValueError("Log format must be 'text' or 'json'")
        return v


class AuditConfig(BaseModel):
    enabled: bool = True
    path: str = ""  # empty → use default


class TelemetryConfig(BaseModel):
    enabled: bool = False
    path: str = ""  # empty → use default


# ---------------------------------------------------------------------------
# Root config
# ---------------------------------------------------------------------------


class AgentGateConfig(BaseModel):
    """Root AgentGate configuration model."""

    policy_sync: PolicySyncConfig = Field(default_factory=PolicySyncConfig)
    risk: RiskConfig = Field(default_factory=RiskConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)
    telemetry: TelemetryConfig = Field(default_factory=TelemetryConfig)

    @property
    def audit_path(self) -> Path:
        if self.audit.path:
            return Path(self.audit.path).expanduser()
        return agentgate_dir() / AUDIT_FILENAME

    @property
    def telemetry_path(self) -> Path:
        if self.telemetry.path:
            return Path(self.telemetry.path).expanduser()
        return agentgate_dir() / TELEMETRY_FILENAME


# ---------------------------------------------------------------------------
# Load / save
# ---------------------------------------------------------------------------


def _config_file_path() -> Path:
    if env_path := os.environ.get("AGENTGATE_CONFIG"):
        return Path(env_path)
    return Path.home() / AGENTGATE_DIR_NAME / CONFIG_FILENAME


def load_config(path: Path | None = None) -> AgentGateConfig:
    """
    Load AgentGateConfig from TOML file, overlaid with environment variables.

    Priority (highest to lowest):
      1. Environment variables (AGENTGATE_*)
      2. Config file (~/.agentgate/config.toml)
    """
    cfg_path = path or _config_file_path()

    if not cfg_path.exists():
        raise ConfigNotFoundError(f"Config file not found: {cfg_path}")

    return _validate(read_config_file(cfg_path), source=str(cfg_path))


def read_config_file(path: Path | None = None) -> dict[str, Any]:
    """Raw TOML data from the config file, without env overrides ({} if absent)."""
    import tomllib

    cfg_path = path or _config_file_path()
    if not cfg_path.exists():
        return {}

    try:
        with open(cfg_path, "rb") as f:
            return tomllib.load(f)
    except Exception as exc:
        raise ConfigError(f"Cannot read config file {cfg_path}: {exc}") from exc


def load_config_or_default(path: Path | None = None) -> AgentGateConfig:
    """Like :func:`load_config`, but a missing file yields the defaults (plus env)."""
    try:
        return load_config(path)
    except ConfigNotFoundError:
        return _validate({}, source="<defaults>")


def _validate(data: dict[str, Any], source: str) -> AgentGateConfig:
    _apply_env_overrides(data)
    try:
        return AgentGateConfig.model_validate(data)
    except Exception as exc:
        raise ConfigError(f"Invalid config at {source}: {exc}") from exc


def _apply_env_overrides(data: dict[str, Any]) -> None:
    """Overlay AGENTGATE_* environment variables onto the parsed TOML data."""
    if url := os.environ.get("AGENTGATE_POLICY_URL"):
        data.setdefault("policy_sync", {})["url"] = url
    if refresh := os.environ.get("AGENTGATE_POLICY_REFRESH_SECONDS"):
        try:
            seconds = float(refresh)
        except ValueError:
            raise ConfigError(
                f"AGENTGATE_POLICY_REFRESH_SECONDS must be a number, got {refresh!r}"
            ) from None
        data.setdefault("policy_sync", {})["refresh_interval_seconds"] = seconds
    if token := os.environ.get("AGENTGATE_DEV_OVERRIDE_TOKEN"):
        data.setdefault("policy_sync", {})["dev_override_token"] = token
    if level := os.environ.get("AGENTGATE_LOG_LEVEL"):
        data.setdefault("logging", {})["level"] = level


def save_config(config_data: dict[str, Any], path: Path | None = None) -> Path:
    """Write config dict to TOML file with secure permissions (0600)."""
    import tomli_w

    cfg_path = path or _config_file_path()
    cfg_path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)

    # Write atomically
    tmp_path = cfg_path.with_suffix(".tmp")
    try:
        with open(tmp_path, "wb") as f:
            tomli_w.dump(config_data, f)
        tmp_path.rename(cfg_path)
    except Exception as exc:
        tmp_path.unlink(missing_ok=True)
        raise ConfigError(f"Cannot write config to {cfg_path}: {exc}") from exc

    cfg_path.chmod(0o600)
    return cfg_path
