"""Tests for configuration loading and validation."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from insights_guard.config import (
    GuardConfig,
    IpWhitelistConfig,
    RateLimitConfig,
    load_guard_config,
    load_principals_config,
)
from insights_guard.models import Role


def _write(path: Path, data: dict) -> None:
    path.write_text(yaml.safe_dump(data))


class TestDefaults:
    def test_defaults(self) -> None:
        cfg = GuardConfig()
        assert cfg.ip_whitelist.enabled is False
        assert cfg.ip_whitelist.allowed_ips == []
        assert cfg.rate_limit.per_minute == 30
        assert cfg.rate_limit.per_hour == 100
        assert cfg.sanitizer.max_length == 2000
        assert cfg.execution_timeout == 30

    def test_missing_file_yields_defaults(self, tmp_path: Path) -> None:
        cfg = load_guard_config(tmp_path, env={})
        assert cfg == GuardConfig()


class TestLoadGuardConfig:
    """Tests for guard.yaml loading and env overrides."""

    def test_yaml_values(self, tmp_path: Path) -> None:
        _write(
            tmp_path / "guard.yaml",
            {
                "ip_whitelist": {"enabled": True, "allowed_ips": ["10.0.0.1", "localhost"]},
                "rate_limit": {"per_minute": 10, "per_hour": 50},
                "audit": {"log_path": "/var/log/insights/audit.jsonl"},
                "execution_timeout": 60,
            },
        )
        cfg = load_guard_config(tmp_path, env={})
        assert cfg.ip_whitelist.enabled
        assert cfg.ip_whitelist.allowed_ips == ["10.0.0.1", "127.0.0.1", "::1"]
        assert cfg.rate_limit.per_minute == 10
        assert cfg.rate_limit.per_hour == 50
        assert cfg.audit.log_path == "/var/log/insights/audit.jsonl"
        assert cfg.execution_timeout == 60

    def test_env_overrides_file(self, tmp_path: Path) -> None:
        _write(tmp_path / "guard.yaml", {"rate_limit": {"per_minute": 10, "per_hour": 50}})
        cfg = load_guard_config(
            tmp_path,
            env={
                "INSIGHTS_GUARD_RATE_PER_MINUTE": "5",
                "INSIGHTS_GUARD_IP_WHITELIST_ENABLED": "true",
                "INSIGHTS_GUARD_ALLOWED_IPS": "10.0.0.1, 10.0.0.2",
                "INSIGHTS_GUARD_AUDIT_LOG": "/tmp/audit.jsonl",
            },
        )
        assert cfg.rate_limit.per_minute == 5
        assert cfg.rate_limit.per_hour == 50
        assert cfg.ip_whitelist.enabled
        assert cfg.ip_whitelist.allowed_ips == ["10.0.0.1", "10.0.0.2"]
        assert cfg.audit.log_path == "/tmp/audit.jsonl"

    def test_env_disables_whitelist(self, tmp_path: Path) -> None:
        _write(tmp_path / "guard.yaml", {"ip_whitelist": {"enabled": True, "allowed_ips": ["10.0.0.1"]}})
        cfg = load_guard_config(tmp_path, env={"INSIGHTS_GUARD_IP_WHITELIST_ENABLED": "off"})
        assert not cfg.ip_whitelist.enabled
        assert cfg.ip_whitelist.allowed_ips == ["10.0.0.1"]

    def test_unrelated_env_ignored(self, tmp_path: Path) -> None:
        cfg = load_guard_config(tmp_path, env={"PATH": "/usr/bin", "INSIGHTS_GUARD_UNKNOWN": "1"})
        assert cfg == GuardConfig()


class TestValidation:
    def test_invalid_ip_rejected(self) -> None:
        with pytest.raises(ValidationError, match="Invalid IP"):
            IpWhitelistConfig(allowed_ips=["10.0.0.0/8"])

    def test_zero_rate_rejected(self) -> None:
        with pytest.raises(ValidationError):
            RateLimitConfig(per_minute=0)

    def test_short_idle_ttl_rejected(self) -> None:
        with pytest.raises(ValidationError):
            RateLimitConfig(idle_ttl_seconds=60)

    def test_bad_env_value_rejected(self, tmp_path: Path) -> None:
        with pytest.raises(ValidationError):
            load_guard_config(tmp_path, env={"INSIGHTS_GUARD_RATE_PER_HOUR": "lots"})

    def test_timeout_bounds(self) -> None:
        with pytest.raises(ValidationError):
            GuardConfig(execution_timeout=0)
        with pytest.raises(ValidationError):
            GuardConfig(execution_timeout=301)


class TestPrincipalsConfig:
    def test_load(self, tmp_path: Path) -> None:
        _write(
            tmp_path / "principals.yaml",
            {
                "principals": {
                    "admin-1": {"role": "ADMIN", "conversations": ["conv-1", "conv-2"]},
                    "root": {"role": "SUPER_ADMIN"},
                    "former": {"role": "ADMIN", "active": False},
                }
            },
        )
        cfg = load_principals_config(tmp_path)
        principals = cfg.to_principals()
        assert principals["admin-1"].role == Role.ADMIN
        assert principals["root"].role == Role.SUPER_ADMIN
        assert principals["former"].active is False
        assert cfg.conversation_owners() == {"conv-1": "admin-1", "conv-2": "admin-1"}

    def test_missing_file(self, tmp_path: Path) -> None:
        assert load_principals_config(tmp_path).principals == {}

    def test_unknown_role_rejected(self, tmp_path: Path) -> None:
        _write(tmp_path / "principals.yaml", {"principals": {"x": {"role": "OWNER"}}})
        with pytest.raises(ValidationError):
            load_principals_config(tmp_path)

    def test_shipped_example_config_is_valid(self) -> None:
        config_dir = Path(__file__).resolve().parent.parent / "config"
        guard = load_guard_config(config_dir, env={})
        principals = load_principals_config(config_dir)
        assert guard.rate_limit.per_minute == 30
        assert "admin-1" in principals.principals
