"""
Permission constants — the exhaustive list of actions in the system.

Each permission follows the pattern `resource:action`. Permissions gate
*what* a caller may do; *which* cases they may do it to is decided
separately by the visibility scope in `ouvidoria.auth.visibility`.
"""

from enum import Enum


class Permission(str, Enum):
    # ── Cases ──
    CASES_READ = "cases:read"
    CASES_MANAGE = "cases:manage"               # status, priority, queue transfer, assignment
    MESSAGES_SEND = "messages:send"             # external replies, internal notes, resend

    # ── Citizens ──
    CITIZENS_READ = "citizens:read"
    CITIZENS_EDIT = "citizens:edit"

    # ── Routing ──
    ROUTING_READ = "routing:read"
    ROUTING_SIMULATE = "routing:simulate"

    # ── Audit ──
    AUDIT_READ = "audit:read"

    # ── Agent ──
    AGENT_RUN = "agent:run"

    # ── Admin ──
    ADMIN_SYSTEM = "admin:system"
