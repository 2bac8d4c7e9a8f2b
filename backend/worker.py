"""
SLA worker entrypoint — drains due SLA timers from Redis and runs the breach check.

Run with: python worker.py
"""

import asyncio
import logging
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from ouvidoria.config import settings
from ouvidoria.middleware.logging_config import configure_logging
from ouvidoria.models import Case
from ouvidoria.services.job_queue import DelayedDelivery, RedisDelayedDelivery
from ouvidoria.services.sla_engine import NOT_DUE, SlaScheduler

logger = logging.getLogger("worker")


def _parse_due(value) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except (TypeError, ValueError):
        logger.warning("Ignoring unparseable due_at %r on SLA timer", value)
        return None


async def process_timer(payload: dict, SessionMaker, delivery: DelayedDelivery, now: datetime | None = None) -> str | None:
    """Run one breach check in its own transaction. A timer that fires early is put back."""
    case_id = payload.get("case_id")
    if not case_id:
        logger.warning("SLA timer without case_id dropped: %s", payload)
        return None

    async with SessionMaker() as db:
        try:
            scheduler = SlaScheduler(db, delivery)
            outcome = await scheduler.check_breach(case_id, due=_parse_due(payload.get("due_at")), now=now)
            if outcome == NOT_DUE:
                case = await db.get(Case, case_id)
                if case is not None and case.sla_due_at is not None:
                    await delivery.schedule_at(
                        case_id, case.sla_due_at,
                        {"case_id": case_id, "due_at": case.sla_due_at.isoformat(), "queue_id": case.queue_id},
                    )
            await db.commit()
        except Exception as exc:
            logger.error("SLA check for case %s failed: %s", case_id, exc, exc_info=True)
            await db.rollback()
            raise
    logger.info("SLA timer for case %s: %s", case_id, outcome, extra={"case_id": case_id})
    return outcome


async def retry_later(payload: dict, delivery: DelayedDelivery, now: datetime | None = None) -> datetime:
    """Reschedule a failed timer one poll interval from now."""
    when = (now or datetime.utcnow()) + timedelta(seconds=settings.sla_poll_interval_seconds)
    await delivery.schedule_at(payload["case_id"], when, payload)
    logger.warning(
        "SLA timer for case %s failed; retrying at %s", payload["case_id"], when.isoformat(),
        extra={"case_id": payload["case_id"]},
    )
    return when


async def main():
    """Main worker loop — polls the Redis timer set for due SLA checks."""
    configure_logging(settings.log_level, settings.json_logs)

    engine = create_async_engine(settings.database_url, echo=False)
    SessionMaker = async_sessionmaker(engine, expire_on_commit=False)

    delivery = RedisDelayedDelivery()
    logger.info("SLA worker started, polling every %.0fs", settings.sla_poll_interval_seconds)

    while True:
        try:
            due = await delivery.pop_due(datetime.utcnow())
            for payload in due:
                try:
                    await process_timer(payload, SessionMaker, delivery)
                except Exception:
                    await retry_later(payload, delivery)
            if not due:
                await asyncio.sleep(settings.sla_poll_interval_seconds)
        except Exception as exc:
            logger.error("Worker loop error: %s", exc, exc_info=True)
            await asyncio.sleep(1)


if __name__ == "__main__":
    asyncio.run(main())
