"""Domain types shared across the guard: roles, principals, audit records.

Everything here is a plain value object. Mutable state lives in the
rate limiter and the audit stores, never in these types.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping

# Stored user agents are capped at this many characters.
USER_AGENT_MAX_LEN = 500


class Role(str, Enum):
    """Principal roles, declared from least to most privileged."""

    USER = "USER"
    ADMIN = "ADMIN"
    SUPER_ADMIN = "SUPER_ADMIN"

    @property
    def rank(self) -> int:
        return _ROLE_ORDER.index(self)

    def meets(self, required: Role) -> bool:
        """Whether this role is at least as privileged as ``required``."""
        return self.rank >= required.rank


_ROLE_ORDER: list[Role] = list(Role)


class AuditAction(str, Enum):
    """What a privileged request was trying to do, or why it stopped."""

    CHAT_MESSAGE_SENT = "CHAT_MESSAGE_SENT"
    CHAT_ERROR = "CHAT_ERROR"
    CHAT_BLOCKED = "CHAT_BLOCKED"
    CONVERSATIONS_LISTED = "CONVERSATIONS_LISTED"
    CONVERSATIONS_LIST_FAILED = "CONVERSATIONS_LIST_FAILED"
    CONVERSATION_HISTORY_VIEWED = "CONVERSATION_HISTORY_VIEWED"
    CONVERSATION_HISTORY_FAILED = "CONVERSATION_HISTORY_FAILED"
    CONVERSATION_DELETED = "CONVERSATION_DELETED"
    CONVERSATION_DELETE_FAILED = "CONVERSATION_DELETE_FAILED"
    IP_BLOCKED = "IP_BLOCKED"
    ACCESS_DENIED = "ACCESS_DENIED"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    ROLE_VALIDATION_FAILED = "ROLE_VALIDATION_FAILED"


class AuditStatus(str, Enum):
    """Outcome of a privileged request.

    FAILURE is a policy rejection before execution; ERROR means the
    wrapped operation itself failed, timed out, or was cancelled.
    """

    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    ERROR = "ERROR"


class Stage(str, Enum):
    """Request lifecycle states, in the order the orchestrator walks them."""

    RECEIVED = "RECEIVED"
    IP_CHECKED = "IP_CHECKED"
    ROLE_CHECKED = "ROLE_CHECKED"
    RESOURCE_CHECKED = "RESOURCE_CHECKED"
    RATE_CHECKED = "RATE_CHECKED"
    SANITIZED = "SANITIZED"
    EXECUTING = "EXECUTING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class Principal:
    """An authenticated identity as reported by the identity oracle."""

    principal_id: str
    role: Role
    active: bool = True


@dataclass(frozen=True)
class SanitizationResult:
    """Cleaned text plus what the sanitizer found on the way."""

    text: str
    modified: bool = False
    flagged: bool = False
    reasons: tuple[str, ...] = ()


@dataclass(frozen=True)
class RequestContext:
    """Who is calling and from where, captured once per request."""

    principal_id: str
    ip_address: str = "unknown"
    user_agent: str = "unknown"
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @classmethod
    def from_headers(
        cls,
        principal_id: str,
        headers: Mapping[str, str],
        remote_addr: str | None = None,
    ) -> RequestContext:
        """Build a context from HTTP headers.

        The client address is the first ``X-Forwarded-For`` hop, then
        ``X-Real-IP``, then the socket peer address.
        """
        lowered = {k.lower(): v for k, v in headers.items()}
        ip = ""
        forwarded = lowered.get("x-forwarded-for", "")
        if forwarded:
            ip = forwarded.split(",")[0].strip()
        if not ip:
            ip = lowered.get("x-real-ip", "").strip()
        if not ip:
            ip = remote_addr or "unknown"

        user_agent = lowered.get("user-agent") or "unknown"
        if len(user_agent) > USER_AGENT_MAX_LEN:
            user_agent = user_agent[:USER_AGENT_MAX_LEN] + "..."

        return cls(principal_id=principal_id, ip_address=ip, user_agent=user_agent)


@dataclass(frozen=True)
class AuditRecord:
    """Immutable record of one privileged-action attempt."""

    principal_id: str
    action: AuditAction
    status: AuditStatus
    stage: Stage
    resource_id: str | None = None
    detail: str = ""
    ip_address: str = "unknown"
    user_agent: str = "unknown"
    duration_ms: int | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    record_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def is_failure(self) -> bool:
        return self.status in (AuditStatus.FAILURE, AuditStatus.ERROR)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to JSON-safe primitives."""
        data = asdict(self)
        data["action"] = self.action.value
        data["status"] = self.status.value
        data["stage"] = self.stage.value
        data["created_at"] = self.created_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> AuditRecord:
        """Rebuild a record from ``to_dict`` output, ignoring extra keys."""
        return cls(
            record_id=data["record_id"],
            principal_id=data["principal_id"],
            action=AuditAction(data["action"]),
            status=AuditStatus(data["status"]),
            stage=Stage(data["stage"]),
            resource_id=data.get("resource_id"),
            detail=data.get("detail", ""),
            ip_address=data.get("ip_address", "unknown"),
            user_agent=data.get("user_agent", "unknown"),
            duration_ms=data.get("duration_ms"),
            created_at=datetime.fromisoformat(data["created_at"]),
        )
