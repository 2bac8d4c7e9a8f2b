"""
SLA Scheduler

`arm()` derives a case's due time and hands a timer to the delayed-delivery
collaborator; `check_breach()` is what the timer eventually triggers.

Hours precedence: an explicit SLA-rule figure from routing, then the queue's
`sla_hours`, then the configured default (48h). Timers are keyed by case id,
so re-arming after a queue transfer replaces the pending one; a timer that
still fires for an old deadline finds `sla_due_at` in the future and does
nothing.
"""

import logging
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from ouvidoria.auth.context import RequestContext
from ouvidoria.config import settings
from ouvidoria.middleware.metrics import sla_breaches_total, sla_timer_failures_total
from ouvidoria.models import Case, Queue
from ouvidoria.services.audit_service import AuditService
from ouvidoria.services.job_queue import DelayedDelivery

logger = logging.getLogger(__name__)

CLOSED_STATUSES = frozenset({"resolved", "closed"})

# check_breach outcomes
BREACHED = "breached"
SKIPPED = "skipped"
NOT_DUE = "not_due"


class SlaScheduler:
    def __init__(self, session: AsyncSession, delivery: DelayedDelivery):
        self.session = session
        self.delivery = delivery

    async def hours_for(self, queue_id: str | None, hours: int | None = None) -> int:
        if hours is not None:
            return hours
        if queue_id:
            queue = await self.session.get(Queue, queue_id)
            if queue is not None and queue.sla_hours:
                return queue.sla_hours
        return settings.default_sla_hours

    async def arm(
        self,
        case_id: str,
        queue_id: str | None,
        hours: int | None = None,
        now: datetime | None = None,
    ) -> datetime:
        """Persist `sla_due_at` and schedule the breach check. Returns the due time."""
        case = await self.session.get(Case, case_id)
        if case is None:
            raise ValueError(f"Case {case_id} not found")

        sla_hours = await self.hours_for(queue_id, hours)
        due = (now or datetime.utcnow()) + timedelta(hours=sla_hours)
        case.sla_due_at = due
        case.sla_breached = False
        await self.session.flush()

        try:
            await self.delivery.schedule_at(
                case_id, due, {"case_id": case_id, "due_at": due.isoformat(), "queue_id": queue_id},
            )
        except Exception as exc:
            # sla_due_at is already persisted
            sla_timer_failures_total.inc()
            logger.error(
                "Could not schedule SLA timer for case %s: %s", case_id, exc,
                exc_info=True, extra={"case_id": case_id},
            )
            return due
        logger.info("SLA armed for case %s: %dh, due %s", case_id, sla_hours, due.isoformat(), extra={"case_id": case_id})
        return due

    async def check_breach(self, case_id: str, due: datetime | None = None, now: datetime | None = None) -> str:
        """
        Flag the case as breached if its deadline has really passed.

        Safe to deliver more than once. Returns BREACHED, SKIPPED (missing,
        finished or already flagged) or NOT_DUE (deadline still ahead, e.g.
        after a re-arm).
        """
        now = now or datetime.utcnow()
        case = await self.session.get(Case, case_id)
        if case is None or case.status in CLOSED_STATUSES or case.sla_breached:
            return SKIPPED
        if case.sla_due_at is None:
            return SKIPPED
        if case.sla_due_at > now or (due is not None and due > now):
            return NOT_DUE

        case.sla_breached = True
        await self.session.flush()
        sla_breaches_total.inc()
        await AuditService(self.session).record(
            "case", case_id, "sla_breached", RequestContext.system(),
            new={"sla_due_at": case.sla_due_at.isoformat()},
        )
        logger.warning("SLA breached for case %s (due %s)", case_id, case.sla_due_at.isoformat(), extra={"case_id": case_id})
        return BREACHED
