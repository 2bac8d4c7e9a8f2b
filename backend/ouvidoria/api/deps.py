"""
API Dependencies — DB session, caller context, permission guards, collaborators.

`get_request_context`:
  1. Extracts the Bearer token from the Authorization header
  2. Decodes and validates the JWT (issued by the identity service)
  3. Resolves role → permissions via ROLE_PERMISSIONS
  4. Returns a RequestContext carrying the caller's department and client info

Collaborators (automation platform, outbound sender, delayed delivery, public
intake limiter) are dependencies too, so tests can override them with fakes.
"""

import logging
from typing import AsyncGenerator

from fastapi import Depends, Request, HTTPException
from jose import JWTError
from sqlalchemy.ext.asyncio import AsyncSession

from ouvidoria.database import async_session
from ouvidoria.auth.permissions import Permission
from ouvidoria.auth.roles import Role
from ouvidoria.auth.context import RequestContext
from ouvidoria.auth.jwt import decode_access_token
from ouvidoria.middleware.rate_limit import SlidingWindowLimiter, public_intake_limiter
from ouvidoria.middleware.request_context import client_ip_of
from ouvidoria.services.automation import AutomationClient, HttpAutomationClient
from ouvidoria.services.case_manager import CaseManager
from ouvidoria.services.job_queue import DelayedDelivery, RedisDelayedDelivery
from ouvidoria.services.outbound import MetaWhatsAppSender, OutboundSender
from ouvidoria.services.sla_engine import SlaScheduler

logger = logging.getLogger(__name__)


# ── Database session ─────────────────────────────────────────────────────────

async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield a DB session per request, commit on success, rollback on error."""
    async with async_session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


# ── Request context (JWT authentication) ──────────────────────────────────────

async def get_request_context(request: Request) -> RequestContext:
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing or invalid Authorization header")

    token = auth_header[7:]
    try:
        claims = decode_access_token(token)
    except JWTError as e:
        logger.debug("JWT decode failed: %s", e)
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    try:
        role = Role(claims.get("role", "viewer"))
    except ValueError:
        role = Role.VIEWER

    return RequestContext.for_role(
        claims.get("sub", "anonymous"),
        role,
        secretariat_id=claims.get("secretariat_id"),
        ip=client_ip_of(request),
        user_agent=request.headers.get("User-Agent"),
    )


# ── Permission guards ────────────────────────────────────────────────────────

def require(*perms: Permission):
    """
    FastAPI dependency that checks the caller has ALL listed permissions.

    Usage:
        @router.get("/cases")
        async def list_cases(ctx: RequestContext = Depends(require(Permission.CASES_READ))):
            ...
    """
    async def _check(ctx: RequestContext = Depends(get_request_context)) -> RequestContext:
        for p in perms:
            ctx.require_permission(p)
        return ctx
    return _check


# ── Collaborators ────────────────────────────────────────────────────────────

def get_automation() -> AutomationClient:
    return HttpAutomationClient()


def get_outbound() -> OutboundSender:
    return MetaWhatsAppSender()


def get_delayed_delivery() -> DelayedDelivery:
    return RedisDelayedDelivery()


def get_public_limiter() -> SlidingWindowLimiter:
    return public_intake_limiter


def build_case_manager(
    db: AsyncSession,
    ctx: RequestContext,
    outbound: OutboundSender,
    delivery: DelayedDelivery,
) -> CaseManager:
    return CaseManager(db, ctx, outbound=outbound, sla=SlaScheduler(db, delivery))
