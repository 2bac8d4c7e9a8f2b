"""
Webhooks API — inbound channel deliveries and automation callbacks

- WhatsApp Cloud API: GET subscription handshake, POST signed deliveries
  (`x-hub-signature-256`, HMAC-SHA256 with the Meta app secret)
- Instagram DMs relayed by the automation platform (`x-n8n-signature`)
- Agent results posted back by the automation platform (`x-n8n-signature`)

Signature failures are written as security events. They are returned as
plain responses rather than raised so the request session still commits the
event row.
"""

import json
import logging

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from ouvidoria.api.deps import (
    build_case_manager,
    get_automation,
    get_db,
    get_delayed_delivery,
    get_outbound,
)
from ouvidoria.auth.context import RequestContext
from ouvidoria.config import settings
from ouvidoria.errors import DuplicateDeliveryError
from ouvidoria.middleware.request_context import client_ip_of
from ouvidoria.schemas.schemas import (
    AgentResultPayload,
    InstagramInbound,
    IntakeResult,
    SenderIdentity,
    WhatsAppWebhook,
)
from ouvidoria.services.agent_policy import AgentRunService
from ouvidoria.services.audit_service import AuditService
from ouvidoria.services.automation import SIGNATURE_HEADER, AutomationClient, verify_signature
from ouvidoria.services.case_intake import CaseIntakeService
from ouvidoria.services.job_queue import DelayedDelivery
from ouvidoria.services.outbound import OutboundSender
from ouvidoria.services.sla_engine import SlaScheduler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])

META_SIGNATURE_HEADER = "x-hub-signature-256"
WHATSAPP_OBJECTS = ("whatsapp_business_account", "whatsapp_business_accounts")


# ── Signature checks ─────────────────────────────────────────────────────────

async def _reject_unsigned(
    request: Request,
    db: AsyncSession,
    header: str,
    secret: str,
    body: bytes,
) -> JSONResponse | None:
    """Return the error response for a bad signature, or None when the body is authentic."""
    if not secret:
        logger.error("Webhook %s rejected: signing secret not configured", request.url.path)
        return JSONResponse(status_code=503, content={"detail": "Webhook signing secret not configured"})

    signature = request.headers.get(header)
    if verify_signature(body, signature, secret):
        return None

    event_type = "webhook_signature_missing" if not signature else "webhook_signature_invalid"
    await AuditService(db).log_security_event(
        event_type,
        ip=client_ip_of(request),
        path=request.url.path,
        user_agent=request.headers.get("User-Agent"),
        details={"header": header},
    )
    if not signature:
        return JSONResponse(status_code=401, content={"detail": "Missing webhook signature"})
    return JSONResponse(status_code=403, content={"detail": "Invalid webhook signature"})


def _parse(model, body: bytes):
    try:
        return model.model_validate(json.loads(body or b"{}")), None
    except (json.JSONDecodeError, ValidationError) as exc:
        logger.warning("Malformed webhook body for %s: %s", model.__name__, exc)
        return None, JSONResponse(status_code=400, content={"detail": "Malformed payload"})


async def _ingest_one(
    db: AsyncSession,
    intake: CaseIntakeService,
    channel: str,
    sender: SenderIdentity,
    text: str,
    provider_message_id: str,
    metadata: dict,
) -> IntakeResult:
    try:
        async with db.begin_nested():
            return await intake.ingest(channel, sender, text, provider_message_id, metadata)
    except DuplicateDeliveryError:
        logger.info("Concurrent duplicate delivery %s absorbed", provider_message_id)
        return IntakeResult(deduplicated=True)


# ── WhatsApp ─────────────────────────────────────────────────────────────────

@router.get("/whatsapp")
async def whatsapp_verify(
    mode: str | None = Query(None, alias="hub.mode"),
    token: str | None = Query(None, alias="hub.verify_token"),
    challenge: str | None = Query(None, alias="hub.challenge"),
):
    """Meta subscription handshake: echo the challenge when the verify token matches."""
    if mode == "subscribe" and token and token == settings.meta_verify_token:
        return PlainTextResponse(challenge or "")
    return JSONResponse(status_code=403, content={"detail": "Verification failed"})


@router.post("/whatsapp")
async def whatsapp_inbound(
    request: Request,
    db: AsyncSession = Depends(get_db),
    automation: AutomationClient = Depends(get_automation),
    delivery: DelayedDelivery = Depends(get_delayed_delivery),
):
    body = await request.body()
    rejected = await _reject_unsigned(request, db, META_SIGNATURE_HEADER, settings.meta_app_secret, body)
    if rejected is not None:
        return rejected

    webhook, error = _parse(WhatsAppWebhook, body)
    if error is not None:
        return error
    if webhook.object not in WHATSAPP_OBJECTS:
        return {"status": "ignored"}

    intake = CaseIntakeService(db, automation, SlaScheduler(db, delivery))
    results = []
    for entry in webhook.entry:
        for change in entry.changes:
            names = {
                c.wa_id: c.profile.name
                for c in change.value.contacts
                if c.profile is not None and c.profile.name
            }
            for msg in change.value.messages:
                if msg.type != "text" or msg.text is None or not msg.text.body.strip():
                    logger.debug("Skipping non-text WhatsApp message %s (%s)", msg.id, msg.type)
                    continue
                sender = SenderIdentity(
                    whatsapp_id=msg.from_,
                    phone=f"+{msg.from_.lstrip('+')}",
                    full_name=names.get(msg.from_),
                )
                results.append(await _ingest_one(
                    db, intake, "whatsapp", sender, msg.text.body, msg.id,
                    {"provider": "whatsapp", "timestamp": msg.timestamp},
                ))

    return {"status": "ok", "results": [r.model_dump() for r in results]}


# ── Instagram (relayed by the automation platform) ──────────────────────────

@router.post("/instagram")
async def instagram_inbound(
    request: Request,
    db: AsyncSession = Depends(get_db),
    automation: AutomationClient = Depends(get_automation),
    delivery: DelayedDelivery = Depends(get_delayed_delivery),
):
    body = await request.body()
    rejected = await _reject_unsigned(request, db, SIGNATURE_HEADER, settings.automation_hmac_secret, body)
    if rejected is not None:
        return rejected

    inbound, error = _parse(InstagramInbound, body)
    if error is not None:
        return error

    sender = SenderIdentity(
        instagram_user_id=inbound.instagram_user_id,
        instagram_username=inbound.instagram_username,
    )
    intake = CaseIntakeService(db, automation, SlaScheduler(db, delivery))
    result = await _ingest_one(
        db, intake, "instagram", sender, inbound.text, inbound.external_message_id,
        {"provider": "instagram"},
    )
    return result.model_dump()


# ── Agent results ────────────────────────────────────────────────────────────

@router.post("/automation/agent-result")
async def agent_result(
    request: Request,
    db: AsyncSession = Depends(get_db),
    automation: AutomationClient = Depends(get_automation),
    outbound: OutboundSender = Depends(get_outbound),
    delivery: DelayedDelivery = Depends(get_delayed_delivery),
):
    body = await request.body()
    rejected = await _reject_unsigned(request, db, SIGNATURE_HEADER, settings.automation_hmac_secret, body)
    if rejected is not None:
        return rejected

    payload, error = _parse(AgentResultPayload, body)
    if error is not None:
        return error

    manager = build_case_manager(db, RequestContext.system("agent"), outbound, delivery)
    run, result = await AgentRunService(db, automation, manager).apply_result(payload)
    return {
        "agent_run_id": run.id,
        "status": run.status,
        "applied": result.applied,
        "dropped": [d.model_dump() for d in result.dropped],
        "needs_human": result.needs_human,
    }
