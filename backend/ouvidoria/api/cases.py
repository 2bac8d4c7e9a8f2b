"""
Cases API — staff case work

Listing is filtered by the caller's visibility scope; single-case reads and
mutations check the same scope against the case. A case that exists but is
outside the scope is a 403, a missing one a 404.
"""

import math

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ouvidoria.api.deps import (
    build_case_manager,
    get_db,
    get_delayed_delivery,
    get_outbound,
    require,
)
from ouvidoria.auth.context import RequestContext
from ouvidoria.auth.permissions import Permission
from ouvidoria.auth.visibility import can_access, ownership_of, scope_query
from ouvidoria.errors import AccessDeniedError, NotFoundError
from ouvidoria.models import Case, CaseTag, Message, MissingField, Tag
from ouvidoria.schemas.schemas import (
    AuditEntry,
    AuditTrailResponse,
    CaseDetail,
    CaseListResponse,
    CaseSummary,
    CaseUpdate,
    MessageCreate,
    MessageOut,
)
from ouvidoria.services.audit_service import AuditService, parse_snapshot, summarize
from ouvidoria.services.job_queue import DelayedDelivery
from ouvidoria.services.outbound import OutboundSender

router = APIRouter(prefix="/api/cases", tags=["cases"])


# ── Helpers ──────────────────────────────────────────────────────────────────

async def _get_visible_case(case_id: str, db: AsyncSession, ctx: RequestContext, *, with_messages: bool = False) -> Case:
    query = select(Case).where(Case.id == case_id)
    if with_messages:
        query = query.options(selectinload(Case.messages))
    case = (await db.execute(query)).scalar_one_or_none()
    if case is None:
        raise NotFoundError("Case", case_id)
    if not await can_access(db, ctx, await ownership_of(db, case)):
        raise AccessDeniedError("Case is outside your visibility scope")
    return case


async def _case_detail(case: Case, db: AsyncSession) -> CaseDetail:
    tags = (await db.execute(
        select(Tag.name).join(CaseTag, CaseTag.tag_id == Tag.id).where(CaseTag.case_id == case.id).order_by(Tag.name)
    )).scalars().all()
    missing = (await db.execute(
        select(MissingField.field_name)
        .where(MissingField.case_id == case.id, MissingField.is_provided.is_(False))
        .order_by(MissingField.field_name)
    )).scalars().all()

    detail = CaseDetail.model_validate(case, from_attributes=True)
    detail.tags = list(tags)
    detail.missing_fields = list(missing)
    detail.messages = [MessageOut.model_validate(m) for m in case.messages]
    return detail


# ── Listing & detail ─────────────────────────────────────────────────────────

@router.get("", response_model=CaseListResponse)
async def list_cases(
    status: str | None = None,
    priority: str | None = None,
    queue_id: str | None = None,
    sla_breached: bool | None = None,
    page: int = Query(1, ge=1),
    size: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(require(Permission.CASES_READ)),
):
    query = select(Case)
    if status:
        query = query.where(Case.status == status)
    if priority:
        query = query.where(Case.priority == priority)
    if queue_id:
        query = query.where(Case.queue_id == queue_id)
    if sla_breached is not None:
        query = query.where(Case.sla_breached.is_(sla_breached))
    query = await scope_query(db, ctx, query)

    total = await db.scalar(select(func.count()).select_from(query.subquery())) or 0
    rows = (await db.execute(
        query.order_by(Case.created_at.desc(), Case.id).offset((page - 1) * size).limit(size)
    )).scalars().all()

    return CaseListResponse(
        items=[CaseSummary.model_validate(c) for c in rows],
        total=total,
        page=page,
        size=size,
        pages=math.ceil(total / size) if total else 0,
    )


@router.get("/{case_id}", response_model=CaseDetail)
async def get_case(
    case_id: str,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(require(Permission.CASES_READ)),
):
    case = await _get_visible_case(case_id, db, ctx, with_messages=True)
    return await _case_detail(case, db)


# ── Mutations ────────────────────────────────────────────────────────────────

@router.put("/{case_id}", response_model=CaseDetail)
async def update_case(
    case_id: str,
    body: CaseUpdate,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(require(Permission.CASES_MANAGE)),
    outbound: OutboundSender = Depends(get_outbound),
    delivery: DelayedDelivery = Depends(get_delayed_delivery),
):
    await _get_visible_case(case_id, db, ctx)
    manager = build_case_manager(db, ctx, outbound, delivery)

    if body.queue_id is not None:
        await manager.transfer_queue(case_id, body.queue_id)
    if body.status is not None:
        await manager.set_status(case_id, body.status)
    if body.priority is not None:
        await manager.set_priority(case_id, body.priority)
    if "assigned_to" in body.model_fields_set:
        await manager.assign(case_id, body.assigned_to)

    await db.flush()
    case = (await db.execute(
        select(Case).where(Case.id == case_id).options(selectinload(Case.messages)).execution_options(populate_existing=True)
    )).scalar_one()
    return await _case_detail(case, db)


@router.post("/{case_id}/messages", response_model=MessageOut, status_code=201)
async def post_message(
    case_id: str,
    body: MessageCreate,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(require(Permission.MESSAGES_SEND)),
    outbound: OutboundSender = Depends(get_outbound),
    delivery: DelayedDelivery = Depends(get_delayed_delivery),
):
    await _get_visible_case(case_id, db, ctx)
    manager = build_case_manager(db, ctx, outbound, delivery)
    if body.is_internal:
        message = await manager.add_internal_note(case_id, body.content)
    else:
        message = await manager.send_external(case_id, body.content)
    return MessageOut.model_validate(message)


@router.post("/messages/{message_id}/resend", response_model=MessageOut)
async def resend_message(
    message_id: str,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(require(Permission.MESSAGES_SEND)),
    outbound: OutboundSender = Depends(get_outbound),
    delivery: DelayedDelivery = Depends(get_delayed_delivery),
):
    message = await db.get(Message, message_id)
    if message is None:
        raise NotFoundError("Message", message_id)
    await _get_visible_case(message.case_id, db, ctx)

    manager = build_case_manager(db, ctx, outbound, delivery)
    return MessageOut.model_validate(await manager.resend(message_id))


# ── Audit timeline ───────────────────────────────────────────────────────────

@router.get("/{case_id}/audit", response_model=AuditTrailResponse)
async def case_audit(
    case_id: str,
    cursor: str | None = None,
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(require(Permission.AUDIT_READ)),
):
    await _get_visible_case(case_id, db, ctx)
    rows, next_cursor = await AuditService(db).trail("case", case_id, cursor=cursor, limit=limit)
    return AuditTrailResponse(
        items=[
            AuditEntry(
                id=row.id,
                action=row.action,
                user_id=row.user_id,
                summary=summarize(row.action, row.old_value, row.new_value),
                old_value=parse_snapshot(row.old_value),
                new_value=parse_snapshot(row.new_value),
                created_at=row.created_at,
            )
            for row in rows
        ],
        next_cursor=next_cursor,
    )
