"""Tests for the insights-guard CLI."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest
import structlog
import yaml
from click.testing import CliRunner

from insights_guard.main import cli, configure_logging
from insights_guard.models import AuditAction, AuditRecord, AuditStatus, Stage
from insights_guard.security.audit import JsonlAuditStore

# Wide enough that rich never wraps table cells
WIDE = {"COLUMNS": "200"}


def _seed(log_file: Path) -> None:
    with JsonlAuditStore(log_file) as store:
        store.append(
            AuditRecord("admin-1", AuditAction.CONVERSATIONS_LISTED, AuditStatus.SUCCESS, Stage.SUCCEEDED)
        )
        store.append(
            AuditRecord("admin-1", AuditAction.ACCESS_DENIED, AuditStatus.FAILURE, Stage.ROLE_CHECKED)
        )


class TestCheckConfig:
    def test_valid_config(self, tmp_path: Path) -> None:
        (tmp_path / "guard.yaml").write_text(yaml.safe_dump({"rate_limit": {"per_minute": 12}}))
        (tmp_path / "principals.yaml").write_text(
            yaml.safe_dump({"principals": {"admin-1": {"role": "ADMIN", "conversations": ["c1"]}}})
        )
        result = CliRunner().invoke(cli, ["check-config", "--config-dir", str(tmp_path)], env={})
        assert result.exit_code == 0
        assert "Configuration OK" in result.output
        assert "12/min" in result.output
        assert "admin-1 (ADMIN)" in result.output

    def test_invalid_config(self, tmp_path: Path) -> None:
        (tmp_path / "guard.yaml").write_text(yaml.safe_dump({"ip_whitelist": {"allowed_ips": ["nope"]}}))
        result = CliRunner().invoke(cli, ["check-config", "--config-dir", str(tmp_path)])
        assert result.exit_code == 1
        assert "FAIL" in result.output


class TestAuditCommands:
    """Tests for audit list and audit verify."""

    def test_list(self, tmp_path: Path) -> None:
        log_file = tmp_path / "audit.jsonl"
        _seed(log_file)
        result = CliRunner().invoke(cli, ["audit", "list", "admin-1", "--log", str(log_file)], env=WIDE)
        assert result.exit_code == 0
        assert "CONVERSATIONS_LISTED" in result.output
        assert "ACCESS_DENIED" in result.output

    def test_list_failures_only(self, tmp_path: Path) -> None:
        log_file = tmp_path / "audit.jsonl"
        _seed(log_file)
        result = CliRunner().invoke(
            cli, ["audit", "list", "admin-1", "--failures", "--log", str(log_file)], env=WIDE
        )
        assert result.exit_code == 0
        assert "ACCESS_DENIED" in result.output
        assert "CONVERSATIONS_LISTED" not in result.output

    def test_list_unknown_principal(self, tmp_path: Path) -> None:
        log_file = tmp_path / "audit.jsonl"
        _seed(log_file)
        result = CliRunner().invoke(cli, ["audit", "list", "nobody", "--log", str(log_file)], env=WIDE)
        assert result.exit_code == 0
        assert "No audit records." in result.output

    def test_missing_log(self, tmp_path: Path) -> None:
        result = CliRunner().invoke(cli, ["audit", "verify", "--log", str(tmp_path / "none.jsonl")])
        assert result.exit_code == 1

    def test_verify_intact_and_tampered(self, tmp_path: Path) -> None:
        log_file = tmp_path / "audit.jsonl"
        _seed(log_file)
        runner = CliRunner()

        result = runner.invoke(cli, ["audit", "verify", "--log", str(log_file)])
        assert result.exit_code == 0
        assert "Audit chain OK" in result.output

        lines = log_file.read_text().splitlines()
        entry = json.loads(lines[0])
        entry["principal_id"] = "admin-9"
        lines[0] = json.dumps(entry)
        log_file.write_text("\n".join(lines) + "\n")

        result = runner.invoke(cli, ["audit", "verify", "--log", str(log_file)])
        assert result.exit_code == 1
        assert "line 1" in result.output

    def test_torn_line_reported_not_fatal(self, tmp_path: Path) -> None:
        log_file = tmp_path / "audit.jsonl"
        _seed(log_file)
        with open(log_file, "a") as f:
            f.write('{"event": "audit_record", "principal_id": "adm')
        runner = CliRunner()

        listed = runner.invoke(cli, ["audit", "list", "admin-1", "--log", str(log_file)], env=WIDE)
        assert listed.exit_code == 0
        assert "ACCESS_DENIED" in listed.output

        verified = runner.invoke(cli, ["audit", "verify", "--log", str(log_file)])
        assert verified.exit_code == 1
        assert "line 3" in verified.output


class TestConfigureLogging:
    @pytest.fixture(autouse=True)
    def _restore_structlog(self):
        yield
        structlog.reset_defaults()

    @pytest.mark.parametrize(
        "name, level",
        [("DEBUG", logging.DEBUG), ("warning", logging.WARNING), ("ERROR", logging.ERROR)],
    )
    def test_level_sets_filter(self, name: str, level: int) -> None:
        configure_logging(name)
        wrapper = structlog.get_config()["wrapper_class"]
        assert wrapper is structlog.make_filtering_bound_logger(level)

    def test_unknown_level_falls_back_to_info(self) -> None:
        configure_logging("chatty")
        wrapper = structlog.get_config()["wrapper_class"]
        assert wrapper is structlog.make_filtering_bound_logger(logging.INFO)
