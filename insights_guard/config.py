"""Configuration loading and validation using Pydantic models.

Loads guard configuration from ``guard.yaml`` in a config directory and
applies a small set of environment variable overrides on top. All
config models use Pydantic v2 for strict validation.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

from insights_guard.models import Principal, Role
from insights_guard.security.ip_gate import normalize_allow_list

ENV_PREFIX = "INSIGHTS_GUARD_"


class IpWhitelistConfig(BaseModel):
    """Source address allow-list. Off by default."""

    enabled: bool = False
    allowed_ips: list[str] = Field(default_factory=list)

    @field_validator("allowed_ips")
    @classmethod
    def normalize_ips(cls, v: list[str]) -> list[str]:
        """Reject malformed entries at load time and store canonical forms."""
        return sorted(normalize_allow_list(v))


class RateLimitConfig(BaseModel):
    """Per-admin request budgets."""

    per_minute: int = Field(default=30, ge=1)
    per_hour: int = Field(default=100, ge=1)
    idle_ttl_seconds: int = Field(default=7200, ge=3600)


class SanitizerConfig(BaseModel):
    """Inbound message cleaning."""

    max_length: int = Field(default=2000, ge=1, le=100_000)


class AuditConfig(BaseModel):
    """Where the audit trail is written."""

    log_path: str = "./logs/admin-audit.jsonl"


class GuardConfig(BaseModel):
    """Top-level guard configuration loaded from guard.yaml."""

    ip_whitelist: IpWhitelistConfig = Field(default_factory=IpWhitelistConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    sanitizer: SanitizerConfig = Field(default_factory=SanitizerConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)
    execution_timeout: int = Field(default=30, ge=1, le=300)


class PrincipalDefinition(BaseModel):
    """A principal entry for the demo identity oracle."""

    role: Role = Role.USER
    active: bool = True
    conversations: list[str] = Field(default_factory=list)


class PrincipalsConfig(BaseModel):
    """Demo principals and their conversations, loaded from principals.yaml."""

    principals: dict[str, PrincipalDefinition] = Field(default_factory=dict)

    def to_principals(self) -> dict[str, Principal]:
        return {
            pid: Principal(principal_id=pid, role=d.role, active=d.active)
            for pid, d in self.principals.items()
        }

    def conversation_owners(self) -> dict[str, str]:
        return {cid: pid for pid, d in self.principals.items() for cid in d.conversations}


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load and parse a YAML file, returning an empty dict if missing."""
    if not path.exists():
        return {}
    with open(path) as f:
        data = yaml.safe_load(f)
    return data if isinstance(data, dict) else {}


def _env_overrides(env: dict[str, str]) -> dict[str, Any]:
    """Translate INSIGHTS_GUARD_* variables into a nested config dict."""
    overrides: dict[str, Any] = {}

    def put(section: str, key: str, value: Any) -> None:
        overrides.setdefault(section, {})[key] = value

    if f"{ENV_PREFIX}IP_WHITELIST_ENABLED" in env:
        raw = env[f"{ENV_PREFIX}IP_WHITELIST_ENABLED"].strip().lower()
        put("ip_whitelist", "enabled", raw in ("1", "true", "yes", "on"))
    if f"{ENV_PREFIX}ALLOWED_IPS" in env:
        ips = [x.strip() for x in env[f"{ENV_PREFIX}ALLOWED_IPS"].split(",") if x.strip()]
        put("ip_whitelist", "allowed_ips", ips)
    if f"{ENV_PREFIX}RATE_PER_MINUTE" in env:
        put("rate_limit", "per_minute", env[f"{ENV_PREFIX}RATE_PER_MINUTE"])
    if f"{ENV_PREFIX}RATE_PER_HOUR" in env:
        put("rate_limit", "per_hour", env[f"{ENV_PREFIX}RATE_PER_HOUR"])
    if f"{ENV_PREFIX}AUDIT_LOG" in env:
        put("audit", "log_path", env[f"{ENV_PREFIX}AUDIT_LOG"])
    return overrides


def load_guard_config(config_dir: str | Path, env: dict[str, str] | None = None) -> GuardConfig:
    """Load guard configuration from config_dir/guard.yaml plus env overrides.

    Args:
        config_dir: Directory containing guard.yaml. A missing file
            yields the defaults.
        env: Environment mapping to read overrides from. Defaults to
            ``os.environ``.

    Returns:
        The validated GuardConfig.

    Raises:
        pydantic.ValidationError: If the file or overrides are invalid.
    """
    data = _load_yaml(Path(config_dir) / "guard.yaml")
    for section, values in _env_overrides(dict(os.environ if env is None else env)).items():
        merged = dict(data.get(section) or {})
        merged.update(values)
        data[section] = merged
    return GuardConfig(**data)


def load_principals_config(config_dir: str | Path) -> PrincipalsConfig:
    """Load demo principals from config_dir/principals.yaml."""
    data = _load_yaml(Path(config_dir) / "principals.yaml")
    return PrincipalsConfig(**data)
