"""Security layer: IP allow-listing, access validation, rate limiting, sanitization, audit logging."""

from __future__ import annotations

from insights_guard.security.access import AccessValidator, ConversationStore, IdentityOracle
from insights_guard.security.audit import AuditRecorder, JsonlAuditStore, MemoryAuditStore
from insights_guard.security.errors import (
    AuditWriteFailure,
    GuardError,
    IpRejected,
    PolicyRejection,
    RateLimitExceeded,
    ResourceAccessDenied,
    RoleInsufficient,
    SanitizationFlagged,
    UpstreamExecutionError,
)
from insights_guard.security.ip_gate import check_ip
from insights_guard.security.rate_limiter import RateLimiter
from insights_guard.security.sanitizer import sanitize

__all__ = [
    "AccessValidator",
    "AuditRecorder",
    "AuditWriteFailure",
    "ConversationStore",
    "GuardError",
    "IdentityOracle",
    "IpRejected",
    "JsonlAuditStore",
    "MemoryAuditStore",
    "PolicyRejection",
    "RateLimitExceeded",
    "RateLimiter",
    "ResourceAccessDenied",
    "RoleInsufficient",
    "SanitizationFlagged",
    "UpstreamExecutionError",
    "check_ip",
    "sanitize",
]
