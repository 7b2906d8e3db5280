"""Exception taxonomy for the guard.

Policy rejections are deterministic given current state and are never
retried. UpstreamExecutionError wraps a failure of the guarded
operation itself. AuditWriteFailure never reaches callers; it is handed
to the recorder's alert hook.
"""

from __future__ import annotations

from insights_guard.models import AuditAction


class GuardError(Exception):
    """Base class for every error raised by the guard."""


class PolicyRejection(GuardError):
    """A request denied before the guarded operation ran."""

    code = "policy_rejected"
    action = AuditAction.ACCESS_DENIED

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class IpRejected(PolicyRejection):
    """Source address is malformed or not on the allow-list."""

    code = "ip_rejected"
    action = AuditAction.IP_BLOCKED

    def __init__(self, address: str) -> None:
        self.address = address
        super().__init__(f"Access denied from IP: {address}")


class RoleInsufficient(PolicyRejection):
    """Principal is unknown, inactive, or below the required role."""

    code = "role_insufficient"
    action = AuditAction.ROLE_VALIDATION_FAILED

    def __init__(self, principal_id: str, reason: str) -> None:
        self.principal_id = principal_id
        super().__init__(reason)


class ResourceAccessDenied(PolicyRejection):
    """Principal has no rights to the requested resource."""

    code = "resource_access_denied"
    action = AuditAction.ACCESS_DENIED

    def __init__(self, principal_id: str, resource_id: str, reason: str) -> None:
        self.principal_id = principal_id
        self.resource_id = resource_id
        super().__init__(reason)


class RateLimitExceeded(PolicyRejection):
    """Principal has no tokens left in the minute or hour window."""

    code = "rate_limit_exceeded"
    action = AuditAction.RATE_LIMIT_EXCEEDED

    def __init__(self, principal_id: str, remaining: tuple[int, int]) -> None:
        self.principal_id = principal_id
        self.remaining = remaining
        super().__init__(
            f"Rate limit exceeded (remaining: {remaining[0]}/min, {remaining[1]}/hour)"
        )


class SanitizationFlagged(PolicyRejection):
    """Input matched an injection signature and was refused."""

    code = "input_rejected"
    action = AuditAction.CHAT_BLOCKED

    def __init__(self, reasons: tuple[str, ...]) -> None:
        self.reasons = reasons
        super().__init__(f"Input rejected: {', '.join(reasons)}")


class UpstreamExecutionError(GuardError):
    """The guarded operation raised, timed out, or returned an error."""

    code = "upstream_error"

    def __init__(self, operation: str, cause: BaseException | str) -> None:
        self.operation = operation
        self.cause = cause
        if isinstance(cause, BaseException):
            message = f"{type(cause).__name__}: {cause}"
        else:
            message = cause
        super().__init__(f"{operation} failed: {message}")


class AuditWriteFailure(GuardError):
    """The audit store refused a record. Reported, never raised to callers."""

    def __init__(self, record_id: str, cause: BaseException) -> None:
        self.record_id = record_id
        self.cause = cause
        super().__init__(f"Failed to write audit record {record_id}: {cause}")
