"""CLI entry point for the admin insights guard using Click."""

from __future__ import annotations

import logging
import os
import sys

import click
import structlog
from rich.console import Console
from rich.table import Table

from insights_guard import __version__
from insights_guard.config import load_guard_config, load_principals_config

logger = structlog.get_logger()

_STATUS_STYLES = {"SUCCESS": "green", "FAILURE": "yellow", "ERROR": "red"}


def configure_logging(log_level: str) -> None:
    """Configure structlog for console output."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer() if sys.stderr.isatty() else structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, log_level.upper(), logging.INFO)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _config_path(config_dir: str | None) -> str:
    return config_dir or os.environ.get("INSIGHTS_GUARD_CONFIG", "./config")


def _build_app(config_path: str):
    """Wire the guard, demo backend and FastAPI app from a config directory.

    Returns:
        Tuple of (FastAPI app, JsonlAuditStore).
    """
    from insights_guard.api import create_app
    from insights_guard.backend import InMemoryInsightsBackend
    from insights_guard.orchestrator import PolicyOrchestrator
    from insights_guard.security.access import StaticConversationStore, StaticIdentityOracle
    from insights_guard.security.audit import JsonlAuditStore

    guard_cfg = load_guard_config(config_path)
    principals_cfg = load_principals_config(config_path)

    identity = StaticIdentityOracle(principals_cfg.to_principals())
    conversations = StaticConversationStore(principals_cfg.conversation_owners())
    store = JsonlAuditStore(guard_cfg.audit.log_path)

    orchestrator = PolicyOrchestrator.from_config(guard_cfg, identity, conversations, store=store)
    backend = InMemoryInsightsBackend(conversations)
    return create_app(orchestrator, backend), store


@click.group()
@click.version_option(version=__version__, prog_name="insights-guard")
def cli() -> None:
    """Insights Guard - policy enforcement and audit trail for admin insights."""


@cli.command()
@click.option(
    "--config-dir",
    type=click.Path(exists=True, file_okay=False, resolve_path=True),
    default=None,
    help="Path to configuration directory. Defaults to INSIGHTS_GUARD_CONFIG env or ./config/",
)
@click.option("--host", default="127.0.0.1", show_default=True, help="Bind address.")
@click.option("--port", default=8080, show_default=True, type=int, help="Bind port.")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Logging level. Defaults to INSIGHTS_GUARD_LOG_LEVEL env or INFO.",
)
def serve(config_dir: str | None, host: str, port: int, log_level: str | None) -> None:
    """Serve the guarded admin insights API."""
    import uvicorn

    level = log_level or os.environ.get("INSIGHTS_GUARD_LOG_LEVEL", "INFO")
    configure_logging(level)

    try:
        app, store = _build_app(_config_path(config_dir))
    except Exception as e:
        click.echo(f"Startup error: {e}", err=True)
        logger.exception("startup_failed")
        sys.exit(1)

    logger.info("server_starting", host=host, port=port, audit_log=str(store.path))
    try:
        uvicorn.run(app, host=host, port=port, log_level=level.lower())
    finally:
        store.close()
        logger.info("server_stopped")


@cli.command()
@click.option(
    "--config-dir",
    type=click.Path(exists=True, file_okay=False, resolve_path=True),
    default=None,
    help="Path to configuration directory.",
)
def check_config(config_dir: str | None) -> None:
    """Validate configuration files without starting the server."""
    config_path = _config_path(config_dir)

    try:
        guard_cfg = load_guard_config(config_path)
        principals_cfg = load_principals_config(config_path)
    except Exception as e:
        click.echo(f"FAIL: {e}", err=True)
        sys.exit(1)

    ip_cfg = guard_cfg.ip_whitelist
    click.echo("Configuration OK")
    click.echo(f"  IP whitelist: {'enabled' if ip_cfg.enabled else 'disabled'}")
    if ip_cfg.enabled:
        click.echo(f"    allowed: {', '.join(ip_cfg.allowed_ips) or '(none, all requests rejected)'}")
    click.echo(
        f"  Rate limit: {guard_cfg.rate_limit.per_minute}/min, {guard_cfg.rate_limit.per_hour}/hour"
    )
    click.echo(f"  Max message length: {guard_cfg.sanitizer.max_length}")
    click.echo(f"  Execution timeout: {guard_cfg.execution_timeout}s")
    click.echo(f"  Audit log: {guard_cfg.audit.log_path}")
    click.echo(f"  Principals: {len(principals_cfg.principals)}")
    for pid, definition in principals_cfg.principals.items():
        state = "" if definition.active else ", inactive"
        click.echo(f"    - {pid} ({definition.role.value}{state}): {len(definition.conversations)} conversations")


@cli.group()
def audit() -> None:
    """Inspect the audit trail."""


def _audit_log_option(fn):
    return click.option(
        "--log",
        "log_path",
        type=click.Path(dir_okay=False),
        default=None,
        help="Audit log file. Defaults to the path in guard.yaml.",
    )(
        click.option(
            "--config-dir",
            type=click.Path(file_okay=False),
            default=None,
            help="Path to configuration directory.",
        )(fn)
    )


def _resolve_log(log_path: str | None, config_dir: str | None) -> str:
    if log_path:
        return log_path
    return load_guard_config(_config_path(config_dir)).audit.log_path


@audit.command("list")
@click.argument("principal_id")
@click.option("--failures", is_flag=True, help="Only FAILURE and ERROR records.")
@click.option("--limit", default=50, show_default=True, type=int, help="Maximum records to show.")
@_audit_log_option
def audit_list(
    principal_id: str, failures: bool, limit: int, log_path: str | None, config_dir: str | None
) -> None:
    """Show a principal's audit records, newest first."""
    from insights_guard.security.audit import AuditRecorder, JsonlAuditStore

    path = _resolve_log(log_path, config_dir)
    if not os.path.exists(path):
        click.echo(f"Error: audit log not found at {path}", err=True)
        sys.exit(1)

    with JsonlAuditStore(path) as store:
        recorder = AuditRecorder(store)
        if failures:
            records = recorder.list_failures(principal_id)[:limit]
        else:
            records = recorder.recent(principal_id, limit)

    if not records:
        click.echo("No audit records.")
        return

    table = Table(title=f"Audit trail: {principal_id}")
    table.add_column("Time")
    table.add_column("Action", no_wrap=True)
    table.add_column("Status")
    table.add_column("Stage")
    table.add_column("Resource")
    table.add_column("IP")
    table.add_column("Detail", overflow="fold")
    for r in records:
        table.add_row(
            r.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            r.action.value,
            f"[{_STATUS_STYLES.get(r.status.value, '')}]{r.status.value}[/]",
            r.stage.value,
            r.resource_id or "",
            r.ip_address,
            r.detail,
        )
    Console().print(table)


@audit.command("verify")
@_audit_log_option
def audit_verify(log_path: str | None, config_dir: str | None) -> None:
    """Check the audit log's hash chain for edits and deletions."""
    from insights_guard.security.audit import JsonlAuditStore

    path = _resolve_log(log_path, config_dir)
    if not os.path.exists(path):
        click.echo(f"Error: audit log not found at {path}", err=True)
        sys.exit(1)

    with JsonlAuditStore(path) as store:
        broken = store.verify_chain()

    if broken is not None:
        click.echo(f"FAIL: hash chain broken at line {broken}", err=True)
        sys.exit(1)
    click.echo("Audit chain OK")


if __name__ == "__main__":
    cli()
