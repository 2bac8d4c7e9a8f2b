"""
RequestContext — the "who is asking, what can they do, where are they scoped" value.

Every core operation receives the caller's RequestContext explicitly; there
is no ambient "current user". It carries:
- user_id: who is making the request ("system" for webhooks and workers)
- role: their role
- permissions: the resolved set of permissions for that role
- secretariat_id: the caller's department, used for department-scoped visibility
- ip / user_agent: request metadata copied into audit rows
"""

from __future__ import annotations

from dataclasses import dataclass, field

from ouvidoria.auth.permissions import Permission
from ouvidoria.auth.roles import Role, ROLE_PERMISSIONS
from ouvidoria.errors import AccessDeniedError


@dataclass
class RequestContext:
    user_id: str = "anonymous"
    role: Role = Role.VIEWER
    permissions: set[Permission] = field(default_factory=set)
    secretariat_id: str | None = None
    ip: str | None = None
    user_agent: str | None = None

    @classmethod
    def for_role(cls, user_id: str, role: Role, **kwargs) -> RequestContext:
        return cls(user_id=user_id, role=role, permissions=set(ROLE_PERMISSIONS.get(role, set())), **kwargs)

    @classmethod
    def system(cls, actor: str = "system") -> RequestContext:
        return cls.for_role(actor, Role.SYSTEM)

    def has_permission(self, perm: Permission) -> bool:
        return perm in self.permissions

    def require_permission(self, perm: Permission) -> None:
        """Raise AccessDeniedError if the caller lacks the given permission."""
        if not self.has_permission(perm):
            raise AccessDeniedError(f"Insufficient permissions: requires {perm.value}")

    @property
    def is_system(self) -> bool:
        return self.role == Role.SYSTEM

    @property
    def audit_user_id(self) -> str | None:
        """User id written to audit rows; None marks a system actor."""
        return None if self.is_system else self.user_id
