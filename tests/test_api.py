"""Tests for the FastAPI admin insights endpoints."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from insights_guard.api import API_PREFIX, create_app
from insights_guard.backend import InMemoryInsightsBackend
from insights_guard.config import GuardConfig, IpWhitelistConfig, RateLimitConfig
from insights_guard.models import AuditAction, AuditStatus, Principal, Role
from insights_guard.orchestrator import PolicyOrchestrator
from insights_guard.security.access import StaticConversationStore, StaticIdentityOracle
from insights_guard.security.audit import MemoryAuditStore


def _make(config: GuardConfig | None = None):
    identity = StaticIdentityOracle(
        {
            "admin-1": Principal("admin-1", Role.ADMIN),
            "admin-2": Principal("admin-2", Role.ADMIN),
            "analyst": Principal("analyst", Role.USER),
        }
    )
    conversations = StaticConversationStore({"conv-2": "admin-2"})
    store = MemoryAuditStore()
    orchestrator = PolicyOrchestrator.from_config(
        config or GuardConfig(), identity, conversations, store=store
    )
    backend = InMemoryInsightsBackend(conversations)
    return TestClient(create_app(orchestrator, backend)), store


@pytest.fixture
def client_and_store():
    return _make()


def _headers(principal_id: str = "admin-1", **extra: str) -> dict[str, str]:
    return {"X-Principal-Id": principal_id, **extra}


class TestChatEndpoint:
    """Tests for POST /chat."""

    def test_requires_principal_header(self, client_and_store) -> None:
        client, store = client_and_store
        resp = client.post(f"{API_PREFIX}/chat", json={"message": "hi"})
        assert resp.status_code == 401
        assert len(store) == 0

    def test_chat_success(self, client_and_store) -> None:
        client, store = client_and_store
        resp = client.post(f"{API_PREFIX}/chat", json={"message": "Show Q3 revenue"}, headers=_headers())

        assert resp.status_code == 200
        body = resp.json()
        assert body["conversation_id"]
        assert body["message"]
        assert body["processing_time_ms"] >= 0
        record = store.iter_records()[0]
        assert record.action == AuditAction.CHAT_MESSAGE_SENT
        assert record.status == AuditStatus.SUCCESS

    def test_user_role_forbidden(self, client_and_store) -> None:
        client, store = client_and_store
        resp = client.post(f"{API_PREFIX}/chat", json={"message": "hi"}, headers=_headers("analyst"))
        assert resp.status_code == 403
        assert resp.json()["error"] == "role_insufficient"
        assert store.iter_records()[0].action == AuditAction.ROLE_VALIDATION_FAILED

    def test_injection_rejected(self, client_and_store) -> None:
        client, _ = client_and_store
        resp = client.post(
            f"{API_PREFIX}/chat",
            json={"message": "1 UNION SELECT password FROM users"},
            headers=_headers(),
        )
        assert resp.status_code == 400
        assert resp.json()["error"] == "input_rejected"

    def test_empty_message_fails_validation(self, client_and_store) -> None:
        client, store = client_and_store
        resp = client.post(f"{API_PREFIX}/chat", json={"message": ""}, headers=_headers())
        assert resp.status_code == 422
        assert len(store) == 0

    def test_rate_limit_returns_429(self) -> None:
        client, _ = _make(GuardConfig(rate_limit=RateLimitConfig(per_minute=1)))
        assert client.get(f"{API_PREFIX}/conversations", headers=_headers()).status_code == 200
        resp = client.get(f"{API_PREFIX}/conversations", headers=_headers())
        assert resp.status_code == 429
        assert resp.headers["Retry-After"] == "60"

    def test_ip_gate_uses_forwarded_for(self) -> None:
        config = GuardConfig(ip_whitelist=IpWhitelistConfig(enabled=True, allowed_ips=["10.0.0.1"]))
        client, store = _make(config)

        blocked = client.get(
            f"{API_PREFIX}/conversations", headers=_headers(**{"X-Forwarded-For": "203.0.113.5"})
        )
        allowed = client.get(
            f"{API_PREFIX}/conversations", headers=_headers(**{"X-Forwarded-For": "10.0.0.1, 172.16.0.1"})
        )

        assert blocked.status_code == 403
        assert blocked.json()["error"] == "ip_rejected"
        assert allowed.status_code == 200
        assert store.iter_records()[0].action == AuditAction.IP_BLOCKED


class TestConversationEndpoints:
    """Tests for list, history and delete."""

    def test_chat_then_list_and_history(self, client_and_store) -> None:
        client, _ = client_and_store
        conv_id = client.post(
            f"{API_PREFIX}/chat", json={"message": "hello"}, headers=_headers()
        ).json()["conversation_id"]

        listed = client.get(f"{API_PREFIX}/conversations", headers=_headers())
        assert listed.status_code == 200
        assert [c["conversation_id"] for c in listed.json()] == [conv_id]

        history = client.get(f"{API_PREFIX}/conversations/{conv_id}/history", headers=_headers())
        assert history.status_code == 200
        assert [m["role"] for m in history.json()] == ["user", "assistant"]
        assert history.json()[0]["content"] == "hello"

    def test_history_of_other_admin_forbidden(self, client_and_store) -> None:
        client, store = client_and_store
        resp = client.get(f"{API_PREFIX}/conversations/conv-2/history", headers=_headers())
        assert resp.status_code == 403
        assert resp.json()["error"] == "resource_access_denied"
        assert store.iter_records()[0].resource_id == "conv-2"

    def test_delete_own_conversation(self, client_and_store) -> None:
        client, store = client_and_store
        resp = client.delete(f"{API_PREFIX}/conversations/conv-2", headers=_headers("admin-2"))
        assert resp.status_code == 200
        assert resp.json() == {"message": "Conversation deleted"}
        assert store.iter_records()[0].action == AuditAction.CONVERSATION_DELETED

        listed = client.get(f"{API_PREFIX}/conversations", headers=_headers("admin-2")).json()
        assert listed[0]["is_active"] is False


class TestHealth:
    def test_health_is_unguarded(self, client_and_store) -> None:
        client, store = client_and_store
        resp = client.get(f"{API_PREFIX}/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "UP"
        assert len(store) == 0
