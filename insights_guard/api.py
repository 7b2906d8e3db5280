"""FastAPI surface for the admin insights endpoints.

Prefix: ``/api/v1/admin/insights``

Authentication happens upstream; the verified principal ID arrives in
the ``X-Principal-Id`` header. Every route except ``/health`` runs
through the PolicyOrchestrator, and policy rejections map to specific
HTTP statuses instead of a generic error.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from insights_guard import __version__
from insights_guard.backend import ChatReply, InsightsBackend
from insights_guard.models import RequestContext
from insights_guard.orchestrator import PolicyOrchestrator
from insights_guard.security.errors import (
    GuardError,
    IpRejected,
    PolicyRejection,
    RateLimitExceeded,
    ResourceAccessDenied,
    RoleInsufficient,
    SanitizationFlagged,
    UpstreamExecutionError,
)

API_PREFIX = "/api/v1/admin/insights"

_STATUS_BY_ERROR: dict[type[GuardError], int] = {
    IpRejected: status.HTTP_403_FORBIDDEN,
    RoleInsufficient: status.HTTP_403_FORBIDDEN,
    ResourceAccessDenied: status.HTTP_403_FORBIDDEN,
    RateLimitExceeded: status.HTTP_429_TOO_MANY_REQUESTS,
    SanitizationFlagged: status.HTTP_400_BAD_REQUEST,
    UpstreamExecutionError: status.HTTP_502_BAD_GATEWAY,
}


class ChatRequest(BaseModel):
    message: str = Field(..., min_length=1, max_length=10_000)
    conversation_id: Optional[str] = None


class ChatResponse(BaseModel):
    message: str
    conversation_id: str
    processing_time_ms: int
    timestamp: datetime


def request_context(
    request: Request,
    x_principal_id: Optional[str] = Header(None, alias="X-Principal-Id"),
) -> RequestContext:
    """FastAPI dependency building the RequestContext for a call.

    Raises ``401 Unauthorized`` when the upstream auth layer did not
    supply a principal.
    """
    if not x_principal_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )
    remote = request.client.host if request.client else None
    return RequestContext.from_headers(x_principal_id, request.headers, remote)


def build_router(orchestrator: PolicyOrchestrator, backend: InsightsBackend) -> APIRouter:
    """Create the guarded admin insights router."""
    router = APIRouter(prefix=API_PREFIX, tags=["admin-insights"])

    @router.post("/chat", response_model=ChatResponse)
    async def chat(body: ChatRequest, ctx: RequestContext = Depends(request_context)):
        """Send a message to the insights model."""
        started = time.monotonic()

        async def _complete(text: str) -> ChatReply:
            return await backend.chat(ctx.principal_id, text, body.conversation_id)

        reply = await orchestrator.send_chat_message(
            ctx, body.message, _complete, conversation_id=body.conversation_id
        )
        return ChatResponse(
            message=reply.message,
            conversation_id=reply.conversation_id,
            processing_time_ms=int((time.monotonic() - started) * 1000),
            timestamp=datetime.now(timezone.utc),
        )

    @router.get("/conversations")
    async def list_conversations(ctx: RequestContext = Depends(request_context)):
        """List the caller's conversations."""
        return await orchestrator.list_conversations(
            ctx, lambda: backend.list_conversations(ctx.principal_id)
        )

    @router.get("/conversations/{conversation_id}/history")
    async def conversation_history(conversation_id: str, ctx: RequestContext = Depends(request_context)):
        """Return every message in a conversation, oldest first."""
        return await orchestrator.get_conversation_history(
            ctx, conversation_id, lambda: backend.history(conversation_id)
        )

    @router.delete("/conversations/{conversation_id}")
    async def delete_conversation(conversation_id: str, ctx: RequestContext = Depends(request_context)):
        """Soft delete a conversation."""
        await orchestrator.delete_conversation(
            ctx, conversation_id, lambda: backend.delete(conversation_id)
        )
        return {"message": "Conversation deleted"}

    @router.get("/health")
    async def health() -> dict[str, Any]:
        """Unguarded liveness check."""
        return {
            "status": "UP",
            "service": "Admin Business Insights",
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    return router


async def _guard_error_handler(request: Request, exc: GuardError) -> JSONResponse:
    code = _STATUS_BY_ERROR.get(type(exc), status.HTTP_500_INTERNAL_SERVER_ERROR)
    headers: dict[str, str] = {}
    if isinstance(exc, RateLimitExceeded):
        headers["Retry-After"] = "60"
    detail = exc.reason if isinstance(exc, PolicyRejection) else "The insights service failed to respond"
    return JSONResponse(
        status_code=code,
        content={"error": getattr(exc, "code", "guard_error"), "detail": detail},
        headers=headers,
    )


def create_app(orchestrator: PolicyOrchestrator, backend: InsightsBackend) -> FastAPI:
    """Build the FastAPI application serving the guarded endpoints."""
    app = FastAPI(
        title="Admin Insights Guard",
        description="Policy-enforced admin insights chat API.",
        version=__version__,
    )
    app.include_router(build_router(orchestrator, backend))
    app.add_exception_handler(GuardError, _guard_error_handler)
    return app
