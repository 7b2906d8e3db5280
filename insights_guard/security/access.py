"""Role and resource-ownership checks for privileged admin operations.

The validator only reads from its collaborators and raises on denial.
Auditing the denial is the orchestrator's job, which keeps these checks
free of side effects. Results are never cached: a role can change
between two requests from the same principal.
"""

from __future__ import annotations

from typing import Mapping, Protocol

import structlog

from insights_guard.models import Principal, Role
from insights_guard.security.errors import ResourceAccessDenied, RoleInsufficient

logger = structlog.get_logger()


class IdentityOracle(Protocol):
    """Resolves a principal ID to its current role and status."""

    def resolve_principal(self, principal_id: str) -> Principal | None: ...


class ConversationStore(Protocol):
    """Reports who owns a conversation."""

    def owner_of(self, resource_id: str) -> str | None: ...


class StaticIdentityOracle:
    """Identity oracle backed by a fixed mapping, for tests and the demo server."""

    def __init__(self, principals: Mapping[str, Principal] | None = None) -> None:
        self._principals = dict(principals or {})

    def add(self, principal: Principal) -> None:
        self._principals[principal.principal_id] = principal

    def resolve_principal(self, principal_id: str) -> Principal | None:
        return self._principals.get(principal_id)


class StaticConversationStore:
    """Conversation ownership backed by a fixed mapping."""

    def __init__(self, owners: Mapping[str, str] | None = None) -> None:
        self._owners = dict(owners or {})

    def assign(self, resource_id: str, owner_id: str) -> None:
        self._owners[resource_id] = owner_id

    def owned_by(self, owner_id: str) -> list[str]:
        return [rid for rid, owner in self._owners.items() if owner == owner_id]

    def owner_of(self, resource_id: str) -> str | None:
        return self._owners.get(resource_id)


class AccessValidator:
    """Validates admin role and conversation ownership."""

    def __init__(
        self,
        identity: IdentityOracle,
        conversations: ConversationStore,
        required_role: Role = Role.ADMIN,
    ) -> None:
        self._identity = identity
        self._conversations = conversations
        self._required_role = required_role

    def validate_role(self, principal_id: str) -> Role:
        """Check the principal holds at least the required role.

        Returns:
            The principal's current role.

        Raises:
            RoleInsufficient: If the principal is unknown, inactive, or
                below the required role.
        """
        principal = self._identity.resolve_principal(principal_id)
        if principal is None:
            logger.warning("principal_not_found", principal_id=principal_id)
            raise RoleInsufficient(principal_id, "Principal not found")
        if not principal.active:
            logger.warning("principal_inactive", principal_id=principal_id)
            raise RoleInsufficient(principal_id, "Principal account is inactive")
        if not principal.role.meets(self._required_role):
            logger.warning(
                "role_insufficient",
                principal_id=principal_id,
                role=principal.role.value,
                required=self._required_role.value,
            )
            raise RoleInsufficient(
                principal_id,
                f"Role {principal.role.value} does not meet {self._required_role.value}",
            )
        return principal.role

    def validate_resource_access(
        self,
        principal_id: str,
        resource_id: str,
        role: Role | None = None,
    ) -> bool:
        """Check the principal may touch ``resource_id``.

        SUPER_ADMIN may access any resource. Everyone else must be the
        recorded owner. Unknown resources are denied.

        Args:
            principal_id: The caller.
            resource_id: Conversation ID being accessed.
            role: Role already resolved earlier in the same request. If
                omitted, the role is resolved (and validated) again.

        Raises:
            RoleInsufficient: If ``role`` is omitted and role validation fails.
            ResourceAccessDenied: If the principal may not access the resource.
        """
        if role is None:
            role = self.validate_role(principal_id)
        if role.meets(Role.SUPER_ADMIN):
            return True

        owner = self._conversations.owner_of(resource_id)
        if owner is None:
            logger.warning("resource_not_found", principal_id=principal_id, resource_id=resource_id)
            raise ResourceAccessDenied(principal_id, resource_id, "Conversation not found")
        if owner != principal_id:
            logger.warning(
                "resource_access_denied",
                principal_id=principal_id,
                resource_id=resource_id,
                owner_id=owner,
            )
            raise ResourceAccessDenied(
                principal_id, resource_id, "Conversation is owned by another admin"
            )
        return True
