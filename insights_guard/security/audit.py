"""Append-only audit trail for privileged admin actions.

The recorder writes one AuditRecord per request to an injected store.
A store failure never aborts the request being recorded: it is logged
to the operational logger as ``audit_write_failed`` and handed to an
optional alert hook.

JsonlAuditStore writes JSON Lines through a dedicated structlog logger.
Each line is chained to the previous one with a SHA-256 hash so edits
and deletions in the file can be detected with ``verify_chain``.
"""

from __future__ import annotations

import hashlib
import json
import os
import threading
from dataclasses import fields
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, Protocol

import structlog

from insights_guard.models import AuditAction, AuditRecord
from insights_guard.security.errors import AuditWriteFailure

logger = structlog.get_logger()

AUDIT_EVENT = "audit_record"
_RECORD_FIELDS: tuple[str, ...] = tuple(f.name for f in fields(AuditRecord))


class AuditStore(Protocol):
    """Durable, append-only storage for audit records."""

    def append(self, record: AuditRecord) -> None: ...

    def iter_records(self) -> Iterable[AuditRecord]: ...


class MemoryAuditStore:
    """Thread-safe in-process store. Used in tests and the demo server."""

    def __init__(self) -> None:
        self._records: list[AuditRecord] = []
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._records)

    def append(self, record: AuditRecord) -> None:
        with self._lock:
            self._records.append(record)

    def iter_records(self) -> list[AuditRecord]:
        with self._lock:
            return list(self._records)


def chain_hash(prev_hash: str | None, payload: dict[str, Any]) -> str:
    """Hash a record payload together with the previous line's hash."""
    canonical = json.dumps(
        {"prev_hash": prev_hash, "record": payload},
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class JsonlAuditStore:
    """Hash-chained JSON Lines audit file."""

    def __init__(self, log_path: str | Path) -> None:
        """Open (or create) the audit file for appending.

        Args:
            log_path: Path to the JSONL audit log file.
        """
        self._log_path = Path(log_path)
        self._log_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._last_hash = self._read_last_hash()
        torn = self._ends_mid_line()
        self._file = open(self._log_path, "a", buffering=1)  # noqa: SIM115
        if torn:
            # Start the next record on its own line
            self._file.write("\n")
            logger.warning("audit_partial_line", path=str(self._log_path))

        self._logger = structlog.wrap_logger(
            structlog.PrintLogger(file=self._file),
            processors=[
                structlog.processors.add_log_level,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.processors.JSONRenderer(sort_keys=True),
            ],
        )

    @property
    def path(self) -> Path:
        return self._log_path

    def __enter__(self) -> JsonlAuditStore:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def append(self, record: AuditRecord) -> None:
        payload = record.to_dict()
        with self._lock:
            digest = chain_hash(self._last_hash, payload)
            self._logger.info(AUDIT_EVENT, prev_hash=self._last_hash, hash=digest, **payload)
            self._last_hash = digest

    def iter_records(self) -> list[AuditRecord]:
        """Records in file order. Lines that cannot be parsed are logged and skipped."""
        records = []
        for lineno, entry in self._entries():
            if entry is None:
                continue
            try:
                records.append(AuditRecord.from_dict(entry))
            except (KeyError, TypeError, ValueError):
                self._log_corrupt(lineno)
        return records

    def verify_chain(self) -> int | None:
        """Check every line's hash link.

        Returns:
            The 1-based line number of the first broken link or
            unreadable line, or None if the whole file is intact.
        """
        prev: str | None = None
        for lineno, entry in self._entries():
            if entry is None:
                return lineno
            payload = {name: entry.get(name) for name in _RECORD_FIELDS}
            if entry.get("prev_hash") != prev or entry.get("hash") != chain_hash(prev, payload):
                return lineno
            prev = entry["hash"]
        return None

    def close(self) -> None:
        """Close the audit log file."""
        self._file.close()

    def _entries(self) -> Iterator[tuple[int, dict[str, Any] | None]]:
        """Yield (line number, entry) for audit lines; entry is None if unparseable."""
        with self._lock:
            if not self._log_path.exists():
                return
            lines = self._log_path.read_text(encoding="utf-8", errors="replace").splitlines()
        for lineno, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            entry = _decode(line)
            if entry is None:
                self._log_corrupt(lineno)
                yield lineno, None
            elif entry.get("event") == AUDIT_EVENT:
                yield lineno, entry

    def _log_corrupt(self, lineno: int) -> None:
        logger.error("audit_line_corrupt", path=str(self._log_path), lineno=lineno)

    def _read_last_hash(self) -> str | None:
        if not self._log_path.exists():
            return None
        last: str | None = None
        with open(self._log_path, encoding="utf-8", errors="replace") as f:
            for line in f:
                entry = _decode(line) if line.strip() else None
                if entry is not None:
                    last = entry.get("hash", last)
        return last

    def _ends_mid_line(self) -> bool:
        """True when the file's last write was cut off before its newline."""
        if not self._log_path.exists() or self._log_path.stat().st_size == 0:
            return False
        with open(self._log_path, "rb") as f:
            f.seek(-1, os.SEEK_END)
            return f.read(1) != b"\n"


def _decode(line: str) -> dict[str, Any] | None:
    try:
        entry = json.loads(line)
    except json.JSONDecodeError:
        return None
    return entry if isinstance(entry, dict) else None


class AuditRecorder:
    """Writes audit records and answers read queries over a store."""

    def __init__(
        self,
        store: AuditStore,
        on_failure: Callable[[AuditWriteFailure], None] | None = None,
    ) -> None:
        """Initialize the recorder.

        Args:
            store: Where records are persisted.
            on_failure: Alert hook called with the AuditWriteFailure
                whenever the store rejects a record.
        """
        self._store = store
        self._on_failure = on_failure

    @property
    def store(self) -> AuditStore:
        return self._store

    def record(self, record: AuditRecord) -> bool:
        """Persist one record. Never raises.

        Returns:
            True if the store accepted the record.
        """
        try:
            self._store.append(record)
        except Exception as e:
            failure = AuditWriteFailure(record.record_id, e)
            logger.error(
                "audit_write_failed",
                record_id=record.record_id,
                principal_id=record.principal_id,
                action=record.action.value,
                status=record.status.value,
                error=str(e),
            )
            self._alert(failure)
            return False

        logger.debug(
            "audit_recorded",
            action=record.action.value,
            principal_id=record.principal_id,
            status=record.status.value,
        )
        return True

    def list_by_principal(self, principal_id: str) -> list[AuditRecord]:
        """All records for a principal, newest first."""
        return _newest_first(r for r in self._store.iter_records() if r.principal_id == principal_id)

    def list_failures(self, principal_id: str) -> list[AuditRecord]:
        """FAILURE and ERROR records for a principal, newest first."""
        return [r for r in self.list_by_principal(principal_id) if r.is_failure]

    def recent(self, principal_id: str, limit: int = 50) -> list[AuditRecord]:
        return self.list_by_principal(principal_id)[:limit]

    def count_failures_since(self, principal_id: str, since: datetime) -> int:
        return sum(1 for r in self.list_failures(principal_id) if r.created_at > since)

    def list_by_action(self, action: AuditAction) -> list[AuditRecord]:
        return _newest_first(r for r in self._store.iter_records() if r.action == action)

    def list_by_resource(self, resource_id: str) -> list[AuditRecord]:
        return _newest_first(r for r in self._store.iter_records() if r.resource_id == resource_id)

    def _alert(self, failure: AuditWriteFailure) -> None:
        if self._on_failure is None:
            return
        try:
            self._on_failure(failure)
        except Exception:
            logger.exception("audit_alert_hook_failed", record_id=failure.record_id)


def _newest_first(records: Iterable[AuditRecord]) -> list[AuditRecord]:
    return sorted(records, key=lambda r: r.created_at, reverse=True)
