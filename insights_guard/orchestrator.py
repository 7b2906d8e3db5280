"""Policy orchestration for privileged admin insights operations.

Every guarded operation passes through ``PolicyOrchestrator.run``:

1. IP allow-list
2. Admin role
3. Conversation ownership (history, delete, chat on an existing conversation)
4. Rate limit (consumes a token)
5. Message sanitization (chat only)
6. Execute the wrapped operation with a timeout
7. Write exactly one audit record for whichever way the request ended

Checks short-circuit on the first failure, so a rejected IP never
touches the identity oracle or spends a rate token.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

import structlog

from insights_guard.config import GuardConfig
from insights_guard.models import AuditAction, AuditRecord, AuditStatus, RequestContext, Stage
from insights_guard.security.access import AccessValidator, ConversationStore, IdentityOracle
from insights_guard.security.audit import AuditRecorder, AuditStore, JsonlAuditStore
from insights_guard.security.errors import (
    AuditWriteFailure,
    IpRejected,
    PolicyRejection,
    RateLimitExceeded,
    ResourceAccessDenied,
    SanitizationFlagged,
    UpstreamExecutionError,
)
from insights_guard.security.ip_gate import check_ip, normalize_allow_list
from insights_guard.security.rate_limiter import RateLimiter
from insights_guard.security.sanitizer import preview, sanitize

logger = structlog.get_logger()

T = TypeVar("T")


class Operation(str, Enum):
    """Privileged operations the orchestrator guards."""

    CHAT = "chat"
    LIST_CONVERSATIONS = "list_conversations"
    CONVERSATION_HISTORY = "conversation_history"
    DELETE_CONVERSATION = "delete_conversation"


@dataclass(frozen=True)
class OperationPolicy:
    """Which checks an operation needs and how its outcome is audited."""

    success_action: AuditAction
    error_action: AuditAction
    success_detail: str
    requires_resource: bool = False
    sanitizes_input: bool = False


OPERATION_POLICIES: dict[Operation, OperationPolicy] = {
    Operation.CHAT: OperationPolicy(
        success_action=AuditAction.CHAT_MESSAGE_SENT,
        error_action=AuditAction.CHAT_ERROR,
        success_detail="Chat message processed",
        sanitizes_input=True,
    ),
    Operation.LIST_CONVERSATIONS: OperationPolicy(
        success_action=AuditAction.CONVERSATIONS_LISTED,
        error_action=AuditAction.CONVERSATIONS_LIST_FAILED,
        success_detail="Conversations listed",
    ),
    Operation.CONVERSATION_HISTORY: OperationPolicy(
        success_action=AuditAction.CONVERSATION_HISTORY_VIEWED,
        error_action=AuditAction.CONVERSATION_HISTORY_FAILED,
        success_detail="Conversation history viewed",
        requires_resource=True,
    ),
    Operation.DELETE_CONVERSATION: OperationPolicy(
        success_action=AuditAction.CONVERSATION_DELETED,
        error_action=AuditAction.CONVERSATION_DELETE_FAILED,
        success_detail="Conversation deleted successfully",
        requires_resource=True,
    ),
}


class PolicyOrchestrator:
    """Entry point every privileged admin operation passes through."""

    def __init__(
        self,
        config: GuardConfig,
        validator: AccessValidator,
        rate_limiter: RateLimiter,
        recorder: AuditRecorder,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            config: Guard configuration (IP allow-list, sanitizer, timeout).
            validator: Role and ownership checks.
            rate_limiter: Per-principal token buckets.
            recorder: Audit trail for every request outcome.
        """
        self._config = config
        self._allowed_ips = normalize_allow_list(config.ip_whitelist.allowed_ips)
        self._validator = validator
        self._rate_limiter = rate_limiter
        self._recorder = recorder

    @classmethod
    def from_config(
        cls,
        config: GuardConfig,
        identity: IdentityOracle,
        conversations: ConversationStore,
        store: AuditStore | None = None,
        on_audit_failure: Callable[[AuditWriteFailure], None] | None = None,
    ) -> PolicyOrchestrator:
        """Wire up the standard components from a GuardConfig.

        The audit store defaults to a JsonlAuditStore at
        ``config.audit.log_path``.
        """
        limiter = RateLimiter(
            per_minute=config.rate_limit.per_minute,
            per_hour=config.rate_limit.per_hour,
            idle_ttl=config.rate_limit.idle_ttl_seconds,
        )
        recorder = AuditRecorder(
            store if store is not None else JsonlAuditStore(config.audit.log_path),
            on_failure=on_audit_failure,
        )
        return cls(config, AccessValidator(identity, conversations), limiter, recorder)

    @property
    def recorder(self) -> AuditRecorder:
        return self._recorder

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._rate_limiter

    async def send_chat_message(
        self,
        ctx: RequestContext,
        message: str,
        chat: Callable[[str], Awaitable[T]],
        conversation_id: str | None = None,
    ) -> T:
        """Guard a chat turn. ``chat`` receives the sanitized message."""
        return await self.run(ctx, Operation.CHAT, chat, resource_id=conversation_id, message=message)

    async def list_conversations(self, ctx: RequestContext, lister: Callable[[], Awaitable[T]]) -> T:
        return await self.run(ctx, Operation.LIST_CONVERSATIONS, lister)

    async def get_conversation_history(
        self,
        ctx: RequestContext,
        conversation_id: str,
        fetch: Callable[[], Awaitable[T]],
    ) -> T:
        return await self.run(ctx, Operation.CONVERSATION_HISTORY, fetch, resource_id=conversation_id)

    async def delete_conversation(
        self,
        ctx: RequestContext,
        conversation_id: str,
        delete: Callable[[], Awaitable[T]],
    ) -> T:
        return await self.run(ctx, Operation.DELETE_CONVERSATION, delete, resource_id=conversation_id)

    async def run(
        self,
        ctx: RequestContext,
        operation: Operation,
        call: Callable[..., Awaitable[T]],
        *,
        resource_id: str | None = None,
        message: str | None = None,
    ) -> T:
        """Run ``call`` through the full policy pipeline.

        Args:
            ctx: Caller identity and origin.
            operation: Which guarded operation this is.
            call: The wrapped operation. Chat calls receive the
                sanitized message; all others are called with no arguments.
            resource_id: Conversation the operation touches, if any.
            message: Raw inbound message (chat only).

        Returns:
            Whatever ``call`` returned.

        Raises:
            PolicyRejection: A check failed before execution.
            UpstreamExecutionError: ``call`` raised or timed out.
            asyncio.CancelledError: The caller went away mid-execution.
        """
        policy = OPERATION_POLICIES[operation]
        started = time.monotonic()
        stages = [Stage.RECEIVED]
        message_note = f"Message: {preview(message)} | " if policy.sanitizes_input else ""

        with structlog.contextvars.bound_contextvars(
            request_id=ctx.request_id,
            principal_id=ctx.principal_id,
            ip_address=ctx.ip_address,
        ):
            try:
                args, sanitized_note = self._admit(ctx, policy, resource_id, message, stages)
            except PolicyRejection as e:
                stage = stages[-1]
                logger.warning(
                    "request_rejected",
                    operation=operation.value,
                    code=e.code,
                    stage=stage.value,
                    reason=e.reason,
                )
                self._finish(
                    ctx, e.action, AuditStatus.FAILURE, stage, resource_id,
                    f"{message_note}{e.reason}", started,
                )
                raise

            timeout = self._config.execution_timeout
            try:
                result = await asyncio.wait_for(call(*args), timeout=timeout)
            except asyncio.CancelledError:
                logger.warning("request_cancelled", operation=operation.value)
                self._finish(
                    ctx, policy.error_action, AuditStatus.ERROR, Stage.EXECUTING, resource_id,
                    f"{message_note}Cancelled: caller disconnected during execution", started,
                )
                raise
            except asyncio.TimeoutError:
                logger.error("request_timed_out", operation=operation.value, timeout=timeout)
                self._finish(
                    ctx, policy.error_action, AuditStatus.ERROR, Stage.EXECUTING, resource_id,
                    f"{message_note}Error: timed out after {timeout}s", started,
                )
                raise UpstreamExecutionError(operation.value, f"timed out after {timeout}s") from None
            except Exception as e:
                logger.error("request_failed", operation=operation.value, error=str(e))
                self._finish(
                    ctx, policy.error_action, AuditStatus.ERROR, Stage.EXECUTING, resource_id,
                    f"{message_note}Error: {type(e).__name__}: {e}", started,
                )
                raise UpstreamExecutionError(operation.value, e) from e

            if policy.sanitizes_input:
                detail = f"{message_note}Response length: {_response_length(result)}"
            else:
                detail = policy.success_detail
            self._finish(
                ctx, policy.success_action, AuditStatus.SUCCESS, Stage.SUCCEEDED, resource_id,
                detail + sanitized_note, started,
            )
            return result

    def _admit(
        self,
        ctx: RequestContext,
        policy: OperationPolicy,
        resource_id: str | None,
        message: str | None,
        stages: list[Stage],
    ) -> tuple[tuple[Any, ...], str]:
        """Walk the policy checks, appending each stage reached to ``stages``.

        Returns:
            Positional arguments for the wrapped call and a note for the
            audit detail if the message was altered by sanitization.
        """
        if not check_ip(ctx.ip_address, self._allowed_ips, self._config.ip_whitelist.enabled):
            raise IpRejected(ctx.ip_address)
        stages.append(Stage.IP_CHECKED)

        role = self._validator.validate_role(ctx.principal_id)
        stages.append(Stage.ROLE_CHECKED)

        if policy.requires_resource or resource_id is not None:
            if not resource_id:
                raise ResourceAccessDenied(ctx.principal_id, "", "Conversation ID is required")
            self._validator.validate_resource_access(ctx.principal_id, resource_id, role=role)
            stages.append(Stage.RESOURCE_CHECKED)

        if not self._rate_limiter.check_and_consume(ctx.principal_id):
            raise RateLimitExceeded(ctx.principal_id, self._rate_limiter.remaining(ctx.principal_id))
        stages.append(Stage.RATE_CHECKED)

        if not policy.sanitizes_input:
            return (), ""

        result = sanitize(message, self._config.sanitizer.max_length)
        if result.flagged:
            raise SanitizationFlagged(result.reasons)
        if not result.text:
            raise SanitizationFlagged(("empty message",))
        stages.append(Stage.SANITIZED)
        return (result.text,), " | input sanitized" if result.modified else ""

    def _finish(
        self,
        ctx: RequestContext,
        action: AuditAction,
        status: AuditStatus,
        stage: Stage,
        resource_id: str | None,
        detail: str,
        started: float,
    ) -> None:
        duration_ms = int((time.monotonic() - started) * 1000)
        self._recorder.record(
            AuditRecord(
                principal_id=ctx.principal_id,
                action=action,
                status=status,
                stage=stage,
                resource_id=resource_id,
                detail=detail,
                ip_address=ctx.ip_address,
                user_agent=ctx.user_agent,
                duration_ms=duration_ms,
                created_at=datetime.now(timezone.utc),
            )
        )
        logger.info(
            "request_completed",
            action=action.value,
            status=status.value,
            stage=stage.value,
            duration_ms=duration_ms,
        )


def _response_length(result: Any) -> int:
    text = result if isinstance(result, str) else getattr(result, "message", None)
    return len(text) if isinstance(text, str) else 0
