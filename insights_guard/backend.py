"""Conversation operations the guard wraps, with an in-memory implementation.

The real AI completion and conversation persistence live outside this
package. InMemoryInsightsBackend stands in for them in tests and in the
``serve`` demo; deletion is a soft delete, as in the production store.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Protocol

from insights_guard.security.access import StaticConversationStore


@dataclass(frozen=True)
class ChatReply:
    """Model response for one chat turn."""

    message: str
    conversation_id: str


class InsightsBackend(Protocol):
    async def chat(self, principal_id: str, message: str, conversation_id: str | None = None) -> ChatReply: ...

    async def list_conversations(self, principal_id: str) -> list[dict[str, Any]]: ...

    async def history(self, conversation_id: str) -> list[dict[str, Any]]: ...

    async def delete(self, conversation_id: str) -> None: ...


async def _acknowledge(message: str) -> str:
    return f"Received your question ({len(message)} characters). Insights are not connected in this environment."


class InMemoryInsightsBackend:
    """Keeps conversations in process memory and records ownership in a store."""

    def __init__(
        self,
        conversations: StaticConversationStore,
        responder: Callable[[str], Awaitable[str]] = _acknowledge,
    ) -> None:
        self._conversations = conversations
        self._responder = responder
        self._messages: dict[str, list[dict[str, Any]]] = {}
        self._inactive: set[str] = set()

    async def chat(self, principal_id: str, message: str, conversation_id: str | None = None) -> ChatReply:
        if conversation_id is None:
            conversation_id = uuid.uuid4().hex
            self._conversations.assign(conversation_id, principal_id)
        reply = await self._responder(message)
        log = self._messages.setdefault(conversation_id, [])
        now = datetime.now(timezone.utc).isoformat()
        log.append({"role": "user", "content": message, "sequence": len(log) + 1, "created_at": now})
        log.append({"role": "assistant", "content": reply, "sequence": len(log) + 1, "created_at": now})
        return ChatReply(message=reply, conversation_id=conversation_id)

    async def list_conversations(self, principal_id: str) -> list[dict[str, Any]]:
        return [
            {
                "conversation_id": cid,
                "message_count": len(self._messages.get(cid, [])),
                "is_active": cid not in self._inactive,
            }
            for cid in self._conversations.owned_by(principal_id)
        ]

    async def history(self, conversation_id: str) -> list[dict[str, Any]]:
        return list(self._messages.get(conversation_id, []))

    async def delete(self, conversation_id: str) -> None:
        self._inactive.add(conversation_id)
