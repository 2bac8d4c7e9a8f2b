"""
Case visibility — one authorization predicate, two projections.

`resolve_scope()` turns a caller's RequestContext into a VisibilityScope
value exactly once. That value is then interpreted either as a SQL filter
(`apply_scope`, used by listings) or as a boolean check against a single
case (`scope_allows`, used by detail reads and mutations). Both projections
read the same variant, so list filtering and single-object checks cannot
drift apart.

Policy, in order:
    admin / manager / global roles  → Unrestricted
    viewer                          → NoAccess
    legacy global department code   → Unrestricted (deprecated, logged)
    operator                        → QueueSet(assigned queues) or OwnerOnly(self)
    anything else (staff)           → DepartmentOnly(caller department) or NoAccess
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import Select, false, select
from sqlalchemy.ext.asyncio import AsyncSession

from ouvidoria.auth.context import RequestContext
from ouvidoria.auth.roles import Role, UNRESTRICTED_ROLES
from ouvidoria.config import settings
from ouvidoria.models import Case, Queue, Secretariat, UserQueue

logger = logging.getLogger(__name__)


# ── Scope variants ───────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Unrestricted:
    pass


@dataclass(frozen=True)
class NoAccess:
    pass


@dataclass(frozen=True)
class QueueSet:
    queue_ids: frozenset[str]


@dataclass(frozen=True)
class OwnerOnly:
    user_id: str


@dataclass(frozen=True)
class DepartmentOnly:
    secretariat_id: str


VisibilityScope = Unrestricted | NoAccess | QueueSet | OwnerOnly | DepartmentOnly


@dataclass(frozen=True)
class CaseOwnership:
    """The three case attributes visibility depends on."""
    queue_id: str | None = None
    assigned_to: str | None = None
    secretariat_id: str | None = None


# ── Scope resolution ─────────────────────────────────────────────────────────

async def resolve_scope(session: AsyncSession, ctx: RequestContext) -> VisibilityScope:
    if ctx.role in UNRESTRICTED_ROLES:
        return Unrestricted()

    if ctx.role == Role.VIEWER:
        return NoAccess()

    if ctx.secretariat_id and settings.legacy_global_department_access:
        if await _is_global_secretariat(session, ctx.secretariat_id):
            logger.warning(
                "Deprecated global access via secretariat code for user %s; migrate to a global role",
                ctx.user_id,
            )
            return Unrestricted()

    if ctx.role == Role.OPERATOR:
        result = await session.execute(
            select(UserQueue.queue_id).where(UserQueue.user_id == ctx.user_id)
        )
        queue_ids = frozenset(result.scalars())
        if queue_ids:
            return QueueSet(queue_ids)
        return OwnerOnly(ctx.user_id)

    if ctx.secretariat_id:
        return DepartmentOnly(ctx.secretariat_id)
    return NoAccess()


async def _is_global_secretariat(session: AsyncSession, secretariat_id: str) -> bool:
    code = await session.scalar(
        select(Secretariat.code).where(Secretariat.id == secretariat_id)
    )
    return code is not None and code in settings.global_secretariat_code_set


# ── Projection 1: SQL filter ─────────────────────────────────────────────────

def apply_scope(query: Select, scope: VisibilityScope) -> Select:
    """Narrow a query over `Case` to the rows the scope can see."""
    if isinstance(scope, Unrestricted):
        return query
    if isinstance(scope, QueueSet):
        return query.where(Case.queue_id.in_(sorted(scope.queue_ids)))
    if isinstance(scope, OwnerOnly):
        return query.where(Case.assigned_to == scope.user_id)
    if isinstance(scope, DepartmentOnly):
        department_queues = select(Queue.id).where(Queue.secretariat_id == scope.secretariat_id)
        return query.where(Case.queue_id.in_(department_queues))
    return query.where(false())


# ── Projection 2: boolean check ──────────────────────────────────────────────

def scope_allows(scope: VisibilityScope, ownership: CaseOwnership) -> bool:
    if isinstance(scope, Unrestricted):
        return True
    if isinstance(scope, QueueSet):
        return ownership.queue_id is not None and ownership.queue_id in scope.queue_ids
    if isinstance(scope, OwnerOnly):
        return ownership.assigned_to is not None and ownership.assigned_to == scope.user_id
    if isinstance(scope, DepartmentOnly):
        return ownership.secretariat_id is not None and ownership.secretariat_id == scope.secretariat_id
    return False


# ── Convenience wrappers ─────────────────────────────────────────────────────

async def scope_query(session: AsyncSession, ctx: RequestContext, query: Select) -> Select:
    return apply_scope(query, await resolve_scope(session, ctx))


async def can_access(session: AsyncSession, ctx: RequestContext, ownership: CaseOwnership) -> bool:
    return scope_allows(await resolve_scope(session, ctx), ownership)


async def ownership_of(session: AsyncSession, case: Case) -> CaseOwnership:
    """Build a CaseOwnership for a loaded case; the department comes from its queue."""
    secretariat_id = None
    if case.queue_id:
        secretariat_id = await session.scalar(
            select(Queue.secretariat_id).where(Queue.id == case.queue_id)
        )
    return CaseOwnership(
        queue_id=case.queue_id,
        assigned_to=case.assigned_to,
        secretariat_id=secretariat_id,
    )
