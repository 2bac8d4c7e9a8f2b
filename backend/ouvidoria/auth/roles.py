"""
Role definitions — which bundles of permissions make up each role.

    VIEWER      dashboards only; sees no cases at all
    STAFF       department-scoped secretariat staff (the default role)
    OPERATOR    queue-scoped front-line operator
    MANAGER     unrestricted case visibility, agent dispatch
    ADMIN       everything

Two legacy "global" roles are kept verbatim because existing tokens carry
them: GABINETE_VIEWER_GLOBAL (read-only, unrestricted visibility) and
GOVERNO_GESTOR_GLOBAL (manager-equivalent, unrestricted visibility).

There is also a SYSTEM role for internal services (worker, webhooks).
"""

from enum import Enum
from ouvidoria.auth.permissions import Permission


class Role(str, Enum):
    VIEWER = "viewer"
    STAFF = "staff"
    OPERATOR = "operator"
    MANAGER = "manager"
    ADMIN = "admin"
    GLOBAL_VIEWER = "GABINETE_VIEWER_GLOBAL"
    GLOBAL_MANAGER = "GOVERNO_GESTOR_GLOBAL"
    SYSTEM = "system"


# Roles whose visibility is never narrowed
UNRESTRICTED_ROLES = frozenset({Role.ADMIN, Role.MANAGER, Role.GLOBAL_VIEWER, Role.GLOBAL_MANAGER, Role.SYSTEM})

# Roles allowed to dispatch the automation agent
AGENT_DISPATCH_ROLES = frozenset({Role.ADMIN, Role.MANAGER, Role.GLOBAL_MANAGER})


_VIEWER_PERMS: set[Permission] = {
    Permission.ROUTING_READ,
}

_GLOBAL_VIEWER_PERMS: set[Permission] = {
    *_VIEWER_PERMS,
    Permission.CASES_READ,
    Permission.CITIZENS_READ,
    Permission.AUDIT_READ,
}

# ── Staff / operator: work cases inside their scope ──
_STAFF_PERMS: set[Permission] = {
    *_VIEWER_PERMS,
    Permission.CASES_READ,
    Permission.CASES_MANAGE,
    Permission.MESSAGES_SEND,
    Permission.CITIZENS_READ,
    Permission.CITIZENS_EDIT,
    Permission.AUDIT_READ,
}

_MANAGER_PERMS: set[Permission] = {
    *_STAFF_PERMS,
    Permission.ROUTING_SIMULATE,
    Permission.AGENT_RUN,
}

_ADMIN_PERMS: set[Permission] = {p for p in Permission}

_SYSTEM_PERMS: set[Permission] = {
    Permission.CASES_READ,
    Permission.CASES_MANAGE,
    Permission.MESSAGES_SEND,
    Permission.ROUTING_READ,
}


ROLE_PERMISSIONS: dict[Role, set[Permission]] = {
    Role.VIEWER: _VIEWER_PERMS,
    Role.STAFF: _STAFF_PERMS,
    Role.OPERATOR: _STAFF_PERMS,
    Role.MANAGER: _MANAGER_PERMS,
    Role.ADMIN: _ADMIN_PERMS,
    Role.GLOBAL_VIEWER: _GLOBAL_VIEWER_PERMS,
    Role.GLOBAL_MANAGER: _MANAGER_PERMS,
    Role.SYSTEM: _SYSTEM_PERMS,
}
