"""
Case Manager Service

Staff-facing case mutations, shared by the staff API and the agent policy so
audit and delivery behave the same whoever the actor is:
- Status transitions with validation
- Priority, queue transfer (re-arms the SLA), assignment, tags
- Outbound replies, internal notes and resending failed deliveries

Authorization is decided by the caller (API layer) before these run; the
RequestContext passed in is what gets written to the audit trail.
"""

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ouvidoria.auth.context import RequestContext
from ouvidoria.database import insert_or_ignore
from ouvidoria.errors import InvalidTransitionError, NotFoundError
from ouvidoria.models import Case, CaseTag, Message, Queue, Tag
from ouvidoria.models.case import CASE_PRIORITIES, CASE_STATUSES
from ouvidoria.services.audit_service import AuditService
from ouvidoria.services.outbound import OutboundSender
from ouvidoria.services.sla_engine import SlaScheduler

logger = logging.getLogger(__name__)

# Valid status transitions
VALID_TRANSITIONS: dict[str, set[str]] = {
    "new": {"routing", "assigned", "triage_human"},
    "routing": {"assigned", "triage_human"},
    "assigned": {"in_progress", "waiting_citizen", "resolved", "triage_human"},
    "in_progress": {"waiting_citizen", "resolved", "triage_human", "assigned"},
    "waiting_citizen": {"in_progress", "resolved", "triage_human"},
    "triage_human": {"assigned", "in_progress", "resolved", "closed"},
    "resolved": {"closed", "in_progress", "triage_human"},
    "closed": set(),  # terminal
}


def check_transition(current: str, new_status: str) -> None:
    if new_status not in CASE_STATUSES:
        raise ValueError(f"Unknown status: {new_status}")
    allowed = VALID_TRANSITIONS.get(current, set())
    if new_status not in allowed:
        raise InvalidTransitionError(
            f"Invalid transition: {current} -> {new_status}. "
            f"Allowed: {sorted(allowed) if allowed else 'none (terminal)'}"
        )


class CaseManager:
    def __init__(
        self,
        session: AsyncSession,
        ctx: RequestContext,
        outbound: OutboundSender | None = None,
        sla: SlaScheduler | None = None,
    ):
        self.session = session
        self.ctx = ctx
        self.outbound = outbound
        self.sla = sla
        self.audit = AuditService(session)

    async def get_case(self, case_id: str) -> Case:
        case = await self.session.get(Case, case_id)
        if case is None:
            raise NotFoundError("Case", case_id)
        return case

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def set_status(self, case_id: str, new_status: str) -> Case:
        case = await self.get_case(case_id)
        if case.status == new_status:
            return case
        check_transition(case.status, new_status)

        old_status = case.status
        case.status = new_status
        now = datetime.utcnow()
        if new_status == "resolved":
            case.resolved_at = now
        elif new_status == "closed":
            case.closed_at = now
        if new_status == "triage_human":
            case.needs_human = True

        await self.session.flush()
        await self.audit.record(
            "case", case.id, "cases.set_status", self.ctx,
            old={"status": old_status}, new={"status": new_status},
        )
        return case

    async def set_priority(self, case_id: str, priority: str) -> Case:
        if priority not in CASE_PRIORITIES:
            raise ValueError(f"Invalid priority: {priority}. Valid: {list(CASE_PRIORITIES)}")
        case = await self.get_case(case_id)
        if case.priority == priority:
            return case

        old = case.priority
        case.priority = priority
        await self.session.flush()
        await self.audit.record(
            "case", case.id, "cases.set_priority", self.ctx,
            old={"priority": old}, new={"priority": priority},
        )
        return case

    async def transfer_queue(self, case_id: str, queue_id: str) -> Case:
        """Move a case to another queue; its department follows and the SLA is re-armed."""
        case = await self.get_case(case_id)
        queue = await self.session.get(Queue, queue_id)
        if queue is None:
            raise NotFoundError("Queue", queue_id)
        if case.queue_id == queue_id:
            return case

        old_queue_id = case.queue_id
        old_secretariat_id = None
        if old_queue_id:
            old_secretariat_id = await self.session.scalar(
                select(Queue.secretariat_id).where(Queue.id == old_queue_id)
            )

        case.queue_id = queue_id
        if case.status in ("new", "routing"):
            case.status = "assigned"
        await self.session.flush()

        if self.sla is not None and case.status not in ("resolved", "closed"):
            await self.sla.arm(case.id, queue_id)

        await self.audit.record(
            "case", case.id, "cases.transfer_queue", self.ctx,
            old={"queue_id": old_queue_id}, new={"queue_id": queue_id},
        )
        if old_secretariat_id != queue.secretariat_id:
            await self.audit.record(
                "case", case.id, "cases.transfer_secretariat", self.ctx,
                old={"secretariat_id": old_secretariat_id}, new={"secretariat_id": queue.secretariat_id},
            )
        return case

    async def assign(self, case_id: str, user_id: str | None) -> Case:
        case = await self.get_case(case_id)
        if case.assigned_to == user_id:
            return case

        old = case.assigned_to
        case.assigned_to = user_id
        await self.session.flush()
        await self.audit.record(
            "case", case.id, "cases.assign_user", self.ctx,
            old={"assigned_to": old}, new={"assigned_to": user_id},
        )
        return case

    async def add_tags(self, case_id: str, tag_names: list[str]) -> list[str]:
        """Attach existing tags by name; unknown names are ignored. Returns the attached names."""
        case = await self.get_case(case_id)
        attached = []
        for name in tag_names:
            tag = await self.session.scalar(select(Tag).where(Tag.name == name))
            if tag is None:
                continue
            await insert_or_ignore(self.session, CaseTag, case_id=case.id, tag_id=tag.id)
            attached.append(name)
        if attached:
            await self.audit.record("case", case.id, "cases.set_tags", self.ctx, new={"tags": attached})
        return attached

    # ── Messages ─────────────────────────────────────────────────────────

    async def _deliver(self, case: Case, message: Message) -> None:
        if self.outbound is None:
            raise RuntimeError("CaseManager needs an OutboundSender to deliver messages")
        result = await self.outbound.send(case, message.content or "")
        if result.ok:
            message.delivery_status = "sent"
            message.last_error = None
            message.sent_at = datetime.utcnow()
        else:
            message.delivery_status = "failed"
            message.last_error = (result.error or "Unknown error")[:1000]
            logger.warning(
                "Outbound delivery failed for case %s: %s", case.id, message.last_error,
                extra={"case_id": case.id},
            )
        await self.session.flush()

    async def send_external(self, case_id: str, text: str, source: str = "staff") -> Message:
        """Persist an outbound message, attempt delivery once and record the result."""
        case = await self.get_case(case_id)
        message = Message(
            case_id=case.id,
            direction="outbound",
            content=text,
            is_internal=False,
            delivery_status="pending",
            metadata_={"source": source},
        )
        self.session.add(message)
        await self.session.flush()

        await self._deliver(case, message)
        await self.audit.record(
            "case", case.id, "messages.send_external", self.ctx,
            new={"message_id": message.id, "delivery_status": message.delivery_status, "source": source},
        )
        return message

    async def add_internal_note(self, case_id: str, text: str, source: str = "staff") -> Message:
        if not text or not text.strip():
            raise ValueError("Internal note cannot be empty")
        case = await self.get_case(case_id)
        message = Message(
            case_id=case.id,
            direction="outbound",
            content=text.strip(),
            is_internal=True,
            delivery_status="sent",
            sent_at=datetime.utcnow(),
            metadata_={"source": source},
        )
        self.session.add(message)
        await self.session.flush()
        await self.audit.record(
            "case", case.id, "messages.add_internal_note", self.ctx,
            new={"message_id": message.id, "source": source},
        )
        return message

    async def resend(self, message_id: str) -> Message:
        """Retry a failed outbound message. Only failed, non-internal outbound messages qualify."""
        message = await self.session.get(Message, message_id)
        if message is None:
            raise NotFoundError("Message", message_id)
        if message.direction != "outbound" or message.is_internal or message.delivery_status != "failed":
            raise ValueError("Only failed outbound messages can be resent")

        case = await self.get_case(message.case_id)
        old_error = message.last_error
        await self._deliver(case, message)
        await self.audit.record(
            "case", case.id, "messages.resend", self.ctx,
            old={"delivery_status": "failed", "last_error": old_error},
            new={"message_id": message.id, "delivery_status": message.delivery_status},
        )
        return message
