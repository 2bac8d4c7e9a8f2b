"""
Case Intake Pipeline

Turns one inbound citizen message into a case, inside the caller's
transaction:

    1. resolve the citizen identity for the channel
    2. allocate a protocol and create the case in `new`
    3. store the inbound message (with the provider's message id)
    4. record the contact fields still missing for the channel
    5. route on the message text
    6a. routed to a queue → `assigned`, SLA armed
    6b. not routed → stays `new`, automation platform notified
    7. audit `created`

A delivery whose provider message id is already stored is reported as
deduplicated and nothing is written. A duplicate racing past that check
fails the message insert with DuplicateDeliveryError; the webhook handler
rolls back and reports it as deduplicated too.
"""

import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ouvidoria.auth.context import RequestContext
from ouvidoria.database import insert_or_ignore
from ouvidoria.errors import DuplicateDeliveryError
from ouvidoria.middleware.metrics import cases_ingested_total, deduplicated_deliveries_total
from ouvidoria.models import Case, Message, MissingField
from ouvidoria.schemas.schemas import IntakeResult, SenderIdentity
from ouvidoria.services.audit_service import AuditService
from ouvidoria.services.automation import AutomationClient, notify_quietly
from ouvidoria.services.citizens import CitizenResolver, mirror_onto_case, missing_fields_for
from ouvidoria.services.protocol import generate_unique_protocol
from ouvidoria.services.routing_engine import RoutingEngine
from ouvidoria.services.sla_engine import SlaScheduler

logger = logging.getLogger(__name__)

# Where a channel's cases originate, as shown to staff
_SOURCE_BY_CHANNEL = {"web": "web", "whatsapp": "whatsapp", "instagram": "web", "phone": "phone"}


class CaseIntakeService:
    def __init__(self, session: AsyncSession, automation: AutomationClient, sla: SlaScheduler):
        self.session = session
        self.automation = automation
        self.sla = sla
        self.ctx = RequestContext.system("intake")

    async def ingest(
        self,
        channel: str,
        sender: SenderIdentity,
        text: str,
        provider_message_id: str | None,
        metadata: dict | None = None,
    ) -> IntakeResult:
        if provider_message_id:
            existing = await self.session.scalar(
                select(Message).where(Message.external_message_id == provider_message_id)
            )
            if existing is not None:
                deduplicated_deliveries_total.labels(channel=channel).inc()
                logger.info("Delivery %s already ingested; skipping", provider_message_id)
                case = await self.session.get(Case, existing.case_id)
                return IntakeResult(
                    case_id=existing.case_id,
                    protocol=case.protocol if case else None,
                    deduplicated=True,
                )

        # 1. identity
        profile, conflict = await CitizenResolver(self.session).find_or_create(channel, sender)

        # 2. case
        protocol = await generate_unique_protocol(self.session)
        case_metadata = {"source": channel}
        if conflict:
            case_metadata["identity_conflict"] = True
        case = Case(
            protocol=protocol,
            status="new",
            priority="normal",
            source=_SOURCE_BY_CHANNEL.get(channel, channel),
            channel=channel,
            metadata_=case_metadata,
        )
        mirror_onto_case(case, profile)
        self.session.add(case)
        await self.session.flush()

        # 3. inbound message
        message = Message(
            case_id=case.id,
            external_message_id=provider_message_id,
            direction="inbound",
            content=text,
            delivery_status="sent",
            metadata_=metadata or {},
        )
        self.session.add(message)
        try:
            await self.session.flush()
        except IntegrityError as exc:
            deduplicated_deliveries_total.labels(channel=channel).inc()
            raise DuplicateDeliveryError(provider_message_id or "") from exc

        # 4. missing contact fields
        for field_name in missing_fields_for(channel, profile):
            await insert_or_ignore(
                self.session, MissingField, case_id=case.id, field_name=field_name, is_provided=False,
            )

        # 5. routing
        outcome = await RoutingEngine(self.session).route(case, text)
        routed = outcome.queue_id is not None

        if routed:
            # 6a.
            case.queue_id = outcome.queue_id
            case.status = "assigned"
            await self.session.flush()
            await self.sla.arm(case.id, outcome.queue_id, hours=outcome.sla_hours)
        else:
            # 6b.
            await notify_quietly(
                self.automation,
                "inbound_message_received",
                {
                    "case_id": case.id,
                    "protocol": protocol,
                    "channel": channel,
                    "message_id": message.id,
                    "message": text,
                },
            )

        # 7. audit
        await AuditService(self.session).record(
            "case", case.id, "created", self.ctx,
            new={"protocol": protocol, "channel": channel, "routed": routed},
        )
        cases_ingested_total.labels(channel=channel, routed=str(routed).lower()).inc()
        logger.info(
            "Case %s created via %s (routed=%s)", protocol, channel, routed,
            extra={"case_id": case.id, "protocol": protocol, "channel": channel},
        )
        return IntakeResult(case_id=case.id, protocol=protocol, routed=routed, deduplicated=False)
