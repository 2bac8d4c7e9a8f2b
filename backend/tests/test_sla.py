"""Tests for SLA arming, breach checks and the worker's timer handling."""

from contextlib import asynccontextmanager
from datetime import datetime, timedelta

import pytest
from sqlalchemy import func, select

from ouvidoria.config import settings
from ouvidoria.models import AuditLog
from ouvidoria.services.sla_engine import BREACHED, NOT_DUE, SKIPPED, SlaScheduler
from tests.factories import make_case, make_queue, make_secretariat
from tests.fakes import FailingDelivery
from worker import process_timer, retry_later

T0 = datetime(2026, 3, 2, 9, 0, 0)


@pytest.mark.asyncio
class TestArm:
    async def test_queue_hours_set_due_and_schedule_timer(self, db_session, delivery):
        queue = await make_queue(db_session, await make_secretariat(db_session), sla_hours=48)
        case = await make_case(db_session, queue=queue)

        due = await SlaScheduler(db_session, delivery).arm(case.id, queue.id, now=T0)

        assert due == T0 + timedelta(hours=48)
        assert case.sla_due_at == due
        when, payload = delivery.scheduled[case.id]
        assert when == due
        assert payload["case_id"] == case.id

    async def test_hours_precedence(self, db_session, delivery):
        queue = await make_queue(db_session, await make_secretariat(db_session), sla_hours=24)
        scheduler = SlaScheduler(db_session, delivery)

        assert await scheduler.hours_for(queue.id, hours=4) == 4
        assert await scheduler.hours_for(queue.id) == 24
        assert await scheduler.hours_for(None) == 48

    async def test_rearm_replaces_timer(self, db_session, delivery):
        secretariat = await make_secretariat(db_session)
        q1 = await make_queue(db_session, secretariat, slug="a", sla_hours=48)
        q2 = await make_queue(db_session, secretariat, slug="b", sla_hours=8)
        case = await make_case(db_session, queue=q1)
        scheduler = SlaScheduler(db_session, delivery)

        await scheduler.arm(case.id, q1.id, now=T0)
        await scheduler.arm(case.id, q2.id, now=T0)

        assert len(delivery.scheduled) == 1
        assert delivery.scheduled[case.id][0] == T0 + timedelta(hours=8)

    async def test_arm_unknown_case(self, db_session, delivery):
        with pytest.raises(ValueError):
            await SlaScheduler(db_session, delivery).arm("missing", None)


@pytest.mark.asyncio
class TestBreach:
    async def test_duplicate_delivery_breaches_once(self, db_session, delivery):
        queue = await make_queue(db_session, await make_secretariat(db_session), sla_hours=48)
        case = await make_case(db_session, queue=queue)
        scheduler = SlaScheduler(db_session, delivery)
        due = await scheduler.arm(case.id, queue.id, now=T0)

        later = T0 + timedelta(hours=49)
        assert await scheduler.check_breach(case.id, due=due, now=later) == BREACHED
        assert await scheduler.check_breach(case.id, due=due, now=later) == SKIPPED

        assert case.sla_breached is True
        rows = await db_session.scalar(
            select(func.count()).select_from(AuditLog)
            .where(AuditLog.entity_id == case.id, AuditLog.action == "sla_breached")
        )
        assert rows == 1

    async def test_not_due_yet(self, db_session, delivery):
        case = await make_case(db_session)
        scheduler = SlaScheduler(db_session, delivery)
        await scheduler.arm(case.id, None, now=T0)

        assert await scheduler.check_breach(case.id, now=T0 + timedelta(hours=47)) == NOT_DUE
        assert case.sla_breached is False

    async def test_finished_cases_are_skipped(self, db_session, delivery):
        case = await make_case(db_session, status="resolved")
        scheduler = SlaScheduler(db_session, delivery)
        await scheduler.arm(case.id, None, now=T0)

        assert await scheduler.check_breach(case.id, now=T0 + timedelta(days=5)) == SKIPPED
        assert await scheduler.check_breach("missing", now=T0) == SKIPPED


@pytest.mark.asyncio
class TestWorkerTimer:
    async def test_early_timer_is_rescheduled(self, db_session, delivery):
        case = await make_case(db_session)
        await SlaScheduler(db_session, delivery).arm(case.id, None, now=T0)
        delivery.scheduled.clear()

        @asynccontextmanager
        async def same_session():
            yield db_session

        payload = {"case_id": case.id, "due_at": (T0 - timedelta(hours=1)).isoformat()}
        outcome = await process_timer(payload, same_session, delivery, now=T0 + timedelta(hours=1))

        assert outcome == NOT_DUE
        assert delivery.scheduled[case.id][0] == case.sla_due_at

    async def test_due_timer_breaches(self, db_session, delivery):
        case = await make_case(db_session)
        due = await SlaScheduler(db_session, delivery).arm(case.id, None, now=T0)

        @asynccontextmanager
        async def same_session():
            yield db_session

        payload = {"case_id": case.id, "due_at": due.isoformat()}
        outcome = await process_timer(payload, same_session, delivery, now=due + timedelta(minutes=1))

        assert outcome == BREACHED
        assert case.sla_breached is True

    async def test_payload_without_case_is_dropped(self, delivery):
        assert await process_timer({}, None, delivery) is None

    async def test_failed_timer_is_retried_one_interval_later(self, delivery):
        payload = {"case_id": "c-1", "due_at": T0.isoformat()}

        when = await retry_later(payload, delivery, now=T0)

        assert when == T0 + timedelta(seconds=settings.sla_poll_interval_seconds)
        assert when > T0
        assert delivery.scheduled["c-1"] == (when, payload)


@pytest.mark.asyncio
class TestArmFailure:
    async def test_unreachable_timer_store_keeps_due_time(self, db_session):
        queue = await make_queue(db_session, await make_secretariat(db_session), sla_hours=48)
        case = await make_case(db_session, queue=queue)

        due = await SlaScheduler(db_session, FailingDelivery()).arm(case.id, queue.id, now=T0)

        assert due == T0 + timedelta(hours=48)
        assert case.sla_due_at == due
