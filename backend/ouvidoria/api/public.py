"""
Public API — the citizen web form and protocol lookup (no authentication)

Submissions are limited per client IP by an hourly sliding window. Each
accepted form goes through the same intake pipeline as the messaging
channels, keyed by a generated `web_<uuid>` delivery id.
"""

import logging
from datetime import datetime
from uuid import uuid4

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ouvidoria.api.deps import get_automation, get_db, get_delayed_delivery, get_public_limiter
from ouvidoria.config import settings
from ouvidoria.middleware.rate_limit import SlidingWindowLimiter
from ouvidoria.middleware.request_context import client_ip_of
from ouvidoria.models import Case, Queue, Secretariat
from ouvidoria.schemas.schemas import PublicCaseCreate, PublicCaseCreated, PublicCaseStatus, SenderIdentity
from ouvidoria.services.audit_service import AuditService
from ouvidoria.services.automation import AutomationClient
from ouvidoria.services.case_intake import CaseIntakeService
from ouvidoria.services.citizens import normalize_email, normalize_phone_e164
from ouvidoria.services.job_queue import DelayedDelivery
from ouvidoria.services.protocol import parse_protocol
from ouvidoria.services.sla_engine import SlaScheduler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/public", tags=["public"])


@router.post("/cases", response_model=PublicCaseCreated, status_code=201)
async def create_public_case(
    body: PublicCaseCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    automation: AutomationClient = Depends(get_automation),
    delivery: DelayedDelivery = Depends(get_delayed_delivery),
    limiter: SlidingWindowLimiter = Depends(get_public_limiter),
):
    if not settings.public_intake_enabled:
        raise HTTPException(status_code=403, detail="Public intake is disabled")

    ip = client_ip_of(request)
    allowed, count = await limiter.hit(ip or "unknown")
    if not allowed:
        await AuditService(db).log_security_event(
            "rate_limit_exceeded",
            ip=ip,
            path=request.url.path,
            user_agent=request.headers.get("User-Agent"),
            details={"hits": count, "limit": limiter.limit},
        )
        return JSONResponse(
            status_code=429,
            content={"detail": "Too many submissions. Please try again later."},
            headers={"Retry-After": str(limiter.window)},
        )

    email = normalize_email(body.email)
    if email is None:
        raise HTTPException(status_code=400, detail="Invalid email")
    phone = normalize_phone_e164(body.phone_e164)
    if phone is None:
        raise HTTPException(status_code=400, detail="Invalid phone; expected E.164 such as +5586999999999")
    if not body.consent:
        raise HTTPException(status_code=400, detail="Consent is required to register a case")

    sender = SenderIdentity(
        full_name=body.full_name.strip(),
        email=email,
        phone=phone,
        consent_at=datetime.utcnow(),
        consent_source="web_form",
    )
    intake = CaseIntakeService(db, automation, SlaScheduler(db, delivery))
    result = await intake.ingest("web", sender, body.description, f"web_{uuid4()}", {"provider": "web", "ip": ip})

    status = await db.scalar(select(Case.status).where(Case.id == result.case_id))
    return PublicCaseCreated(protocol=result.protocol, case_id=result.case_id, status=status)


@router.get("/cases/{protocol}", response_model=PublicCaseStatus)
async def get_public_case(protocol: str, db: AsyncSession = Depends(get_db)):
    code = parse_protocol(protocol)
    if code is None:
        raise HTTPException(status_code=404, detail="Protocol not found")

    row = (await db.execute(
        select(Case, Queue.name, Secretariat.name)
        .outerjoin(Queue, Case.queue_id == Queue.id)
        .outerjoin(Secretariat, Queue.secretariat_id == Secretariat.id)
        .where(Case.protocol == code)
    )).first()
    if row is None:
        raise HTTPException(status_code=404, detail="Protocol not found")

    case, queue_name, secretariat_name = row
    return PublicCaseStatus(
        protocol=case.protocol,
        status=case.status,
        priority=case.priority,
        created_at=case.created_at,
        sla_due_at=case.sla_due_at,
        sla_breached=case.sla_breached,
        queue_name=queue_name,
        secretariat_name=secretariat_name,
    )
