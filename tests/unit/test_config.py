"""Unit tests for configuration loading, validation, env overrides, and saving."""

from __future__ import annotations

import stat
from pathlib import Path

import pytest
from pydantic import ValidationError

from agentgate.core.config import (
    AgentGateConfig,
    LoggingConfig,
    PolicySyncConfig,
    RiskConfig,
    load_config,
    load_config_or_default,
    save_config,
)
from agentgate.core.exceptions import ConfigError, ConfigNotFoundError
from agentgate.core.risk import RiskLevel


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for var in (
        "AGENTGATE_CONFIG",
        "AGENTGATE_POLICY_URL",
        "AGENTGATE_POLICY_REFRESH_SECONDS",
        "AGENTGATE_DEV_OVERRIDE_TOKEN",
        "AGENTGATE_LOG_LEVEL",
    ):
        monkeypatch.delenv(var, raising=False)


class TestDefaults:
    def test_defaults(self) -> None:
        config = AgentGateConfig()
        assert config.policy_sync.url == ""
        assert config.policy_sync.refresh_interval_seconds == 300.0
        assert config.risk.auto_allow == {
            "standard": RiskLevel.LOW,
            "developer": RiskLevel.MEDIUM,
            "admin": RiskLevel.MEDIUM,
        }
        assert config.risk.inspect_args is False
        assert config.audit.enabled is True
        assert config.telemetry.enabled is False

    def test_explicit_paths(self, tmp_path: Path) -> None:
        config = AgentGateConfig.model_validate(
            {
                "audit": {"path": str(tmp_path / "a.jsonl")},
                "telemetry": {"path": str(tmp_path / "t.jsonl")},
            }
        )
        assert config.audit_path == tmp_path / "a.jsonl"
        assert config.telemetry_path == tmp_path / "t.jsonl"


class TestValidation:
    def test_url_must_be_http(self) -> None:
        with pytest.raises(ValidationError, match="http"):
            PolicySyncConfig(url="file:///etc/policy.json")

    def test_url_is_stripped(self) -> None:
        assert PolicySyncConfig(url="  https://p.example.com  ").url == "https://p.example.com"

    def test_url_must_parse(self) -> None:
        with pytest.raises(ValidationError, match="policy_sync.url"):
            PolicySyncConfig(url="https://[::1/bundle")

    def test_url_needs_host(self) -> None:
        with pytest.raises(ValidationError, match="policy_sync.url"):
            PolicySyncConfig(url="https://:80/x")

    def test_refresh_floor(self) -> None:
        with pytest.raises(ValidationError, match="at least 10"):
            PolicySyncConfig(refresh_interval_seconds=5)

    def test_high_auto_allow_rejected(self) -> None:
        with pytest.raises(ValidationError, match="always require approval"):
            RiskConfig(auto_allow={"admin": "high"})

    def test_fallback_mode_needs_row(self) -> None:
        with pytest.raises(ValidationError, match="fallback_mode"):
            AgentGateConfig.model_validate({"risk": {"auto_allow": {"admin": "medium"}}})

    def test_custom_fallback_mode(self) -> None:
        risk = RiskConfig(auto_allow={"ops": RiskLevel.MEDIUM}, fallback_mode="ops")
        assert risk.fallback_mode == "ops"

    def test_log_level_normalised(self) -> None:
        assert LoggingConfig(level="debug").level == "DEBUG"

    def test_log_level_rejected(self) -> None:
        with pytest.raises(ValidationError):
            LoggingConfig(level="TRACE")

    def test_log_format_rejected(self) -> None:
        with pytest.raises(ValidationError):
            LoggingConfig(format="xml")


class TestLoad:
    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigNotFoundError):
            load_config(tmp_path / "nope.toml")

    def test_missing_file_defaults(self, tmp_path: Path) -> None:
        config = load_config_or_default(tmp_path / "nope.toml")
        assert config == AgentGateConfig()

    def test_load_toml(self, tmp_path: Path) -> None:
        cfg = tmp_path / "config.toml"
        cfg.write_text(
            "[policy_sync]\n"
            'url = "https://policy.example.com/bundle"\n'
            "refresh_interval_seconds = 60\n"
            "\n"
            "[risk]\n"
            "inspect_args = true\n"
            "\n"
            "[risk.auto_allow]\n"
            'standard = "medium"\n'
        )
        config = load_config(cfg)
        assert config.policy_sync.url == "https://policy.example.com/bundle"
        assert config.policy_sync.refresh_interval_seconds == 60
        assert config.risk.inspect_args is True
        assert config.risk.auto_allow == {"standard": RiskLevel.MEDIUM}

    def test_invalid_toml(self, tmp_path: Path) -> None:
        cfg = tmp_path / "config.toml"
        cfg.write_text("[policy_sync\nurl = ")
        with pytest.raises(ConfigError, match="Cannot read"):
            load_config(cfg)

    def test_invalid_values(self, tmp_path: Path) -> None:
        cfg = tmp_path / "config.toml"
        cfg.write_text('[policy_sync]\nurl = "ftp://nope"\n')
        with pytest.raises(ConfigError, match="Invalid config"):
            load_config(cfg)

    def test_partial_auto_allow_table(self, tmp_path: Path) -> None:
        cfg = tmp_path / "config.toml"
        cfg.write_text('[risk.auto_allow]\nadmin = "medium"\n')
        with pytest.raises(ConfigError, match="fallback_mode"):
            load_config(cfg)

    def test_config_env_var_path(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        cfg = tmp_path / "custom.toml"
        cfg.write_text('[logging]\nlevel = "WARNING"\n')
        monkeypatch.setenv("AGENTGATE_CONFIG", str(cfg))
        assert load_config().logging.level == "WARNING"


class TestEnvOverrides:
    def test_env_wins_over_file(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        cfg = tmp_path / "config.toml"
        cfg.write_text('[policy_sync]\nurl = "https://file.example.com"\n')
        monkeypatch.setenv("AGENTGATE_POLICY_URL", "https://env.example.com")
        monkeypatch.setenv("AGENTGATE_POLICY_REFRESH_SECONDS", "45")
        monkeypatch.setenv("AGENTGATE_LOG_LEVEL", "debug")
        config = load_config(cfg)
        assert config.policy_sync.url == "https://env.example.com"
        assert config.policy_sync.refresh_interval_seconds == 45
        assert config.logging.level == "DEBUG"

    def test_malformed_refresh_env(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("AGENTGATE_POLICY_REFRESH_SECONDS", "soon")
        with pytest.raises(ConfigError, match="AGENTGATE_POLICY_REFRESH_SECONDS"):
            load_config_or_default(tmp_path / "nope.toml")

    def test_dev_override_token_env_only(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("AGENTGATE_DEV_OVERRIDE_TOKEN", "letmein")
        config = load_config_or_default(tmp_path / "nope.toml")
        assert config.policy_sync.dev_override_token is not None
        assert config.policy_sync.dev_override_token.get_secret_value() == "letmein"
        assert "letmein" not in repr(config)
        assert "dev_override_token" not in config.model_dump(mode="json")["policy_sync"]


class TestSave:
    def test_round_trip(self, tmp_path: Path) -> None:
        cfg = tmp_path / "sub" / "config.toml"
        config = AgentGateConfig(
            policy_sync=PolicySyncConfig(url="https://policy.example.com/bundle"),
            risk=RiskConfig(auto_allow={"standard": RiskLevel.LOW, "ops": RiskLevel.MEDIUM}),
        )
        path = save_config(config.model_dump(mode="json", exclude_none=True), cfg)
        assert path == cfg
        assert load_config(cfg) == config

    def test_permissions(self, tmp_path: Path) -> None:
        cfg = tmp_path / "config.toml"
        save_config(AgentGateConfig().model_dump(mode="json", exclude_none=True), cfg)
        assert stat.S_IMODE(cfg.stat().st_mode) == 0o600
        assert not cfg.with_suffix(".tmp").exists()
