"""Tests for staff case mutations: lifecycle, transfers and messages."""

import pytest
from sqlalchemy import select

from ouvidoria.auth.context import RequestContext
from ouvidoria.auth.roles import Role
from ouvidoria.errors import InvalidTransitionError, NotFoundError
from ouvidoria.models import AuditLog
from ouvidoria.services.audit_service import parse_snapshot
from ouvidoria.services.case_manager import CaseManager, check_transition
from ouvidoria.services.outbound import CHANNEL_NOT_CONFIGURED
from ouvidoria.services.sla_engine import SlaScheduler
from tests.fakes import FailingDelivery, FakeOutbound
from tests.factories import make_case, make_queue, make_secretariat


def staff_manager(db_session, outbound, delivery) -> CaseManager:
    ctx = RequestContext.for_role("staff-1", Role.STAFF)
    return CaseManager(db_session, ctx, outbound=outbound, sla=SlaScheduler(db_session, delivery))


async def _actions(db_session, case_id) -> list[str]:
    rows = await db_session.execute(
        select(AuditLog.action).where(AuditLog.entity_id == case_id).order_by(AuditLog.id)
    )
    return list(rows.scalars())


class TestTransitions:
    def test_valid(self):
        check_transition("new", "assigned")
        check_transition("assigned", "in_progress")
        check_transition("resolved", "closed")

    def test_invalid(self):
        with pytest.raises(InvalidTransitionError):
            check_transition("new", "resolved")
        with pytest.raises(InvalidTransitionError):
            check_transition("closed", "in_progress")

    def test_unknown_status(self):
        with pytest.raises(ValueError):
            check_transition("new", "archived")


@pytest.mark.asyncio
class TestLifecycle:
    async def test_resolve_stamps_time_and_audits(self, db_session, outbound, delivery):
        case = await make_case(db_session, status="in_progress")
        manager = staff_manager(db_session, outbound, delivery)

        await manager.set_status(case.id, "resolved")

        assert case.status == "resolved"
        assert case.resolved_at is not None
        entry = await db_session.scalar(select(AuditLog).where(AuditLog.action == "cases.set_status"))
        assert entry.user_id == "staff-1"
        assert parse_snapshot(entry.old_value) == {"status": "in_progress"}

    async def test_same_status_is_a_no_op(self, db_session, outbound, delivery):
        case = await make_case(db_session)
        await staff_manager(db_session, outbound, delivery).set_status(case.id, "assigned")
        assert await _actions(db_session, case.id) == []

    async def test_invalid_priority(self, db_session, outbound, delivery):
        case = await make_case(db_session)
        with pytest.raises(ValueError):
            await staff_manager(db_session, outbound, delivery).set_priority(case.id, "critical")

    async def test_unknown_case(self, db_session, outbound, delivery):
        with pytest.raises(NotFoundError):
            await staff_manager(db_session, outbound, delivery).set_priority("missing", "high")

    async def test_assign_and_unassign(self, db_session, outbound, delivery):
        case = await make_case(db_session)
        manager = staff_manager(db_session, outbound, delivery)

        await manager.assign(case.id, "u-9")
        await manager.assign(case.id, None)

        assert case.assigned_to is None
        assert await _actions(db_session, case.id) == ["cases.assign_user", "cases.assign_user"]


@pytest.mark.asyncio
class TestTransfer:
    async def test_transfer_across_departments_rearms_sla(self, db_session, outbound, delivery):
        obras = await make_secretariat(db_session, "OBRAS", "Obras")
        saude = await make_secretariat(db_session, "SAUDE", "Saúde")
        q_obras = await make_queue(db_session, obras, slug="iluminacao", sla_hours=48)
        q_saude = await make_queue(db_session, saude, slug="ubs", sla_hours=12)
        case = await make_case(db_session, queue=q_obras)

        await staff_manager(db_session, outbound, delivery).transfer_queue(case.id, q_saude.id)

        assert case.queue_id == q_saude.id
        assert case.id in delivery.scheduled
        assert await _actions(db_session, case.id) == ["cases.transfer_queue", "cases.transfer_secretariat"]

    async def test_transfer_survives_unreachable_timer_store(self, db_session, outbound):
        obras = await make_secretariat(db_session)
        q1 = await make_queue(db_session, obras, slug="iluminacao")
        q2 = await make_queue(db_session, obras, slug="buracos", sla_hours=24)
        case = await make_case(db_session, queue=q1)

        await staff_manager(db_session, outbound, FailingDelivery()).transfer_queue(case.id, q2.id)

        assert case.queue_id == q2.id
        assert case.sla_due_at is not None
        assert await _actions(db_session, case.id) == ["cases.transfer_queue"]

    async def test_transfer_within_department_and_from_new(self, db_session, outbound, delivery):
        obras = await make_secretariat(db_session)
        q1 = await make_queue(db_session, obras, slug="a")
        q2 = await make_queue(db_session, obras, slug="b")
        case = await make_case(db_session, queue=q1, status="new")

        await staff_manager(db_session, outbound, delivery).transfer_queue(case.id, q2.id)

        assert case.status == "assigned"
        assert await _actions(db_session, case.id) == ["cases.transfer_queue"]

    async def test_unknown_queue(self, db_session, outbound, delivery):
        case = await make_case(db_session)
        with pytest.raises(NotFoundError):
            await staff_manager(db_session, outbound, delivery).transfer_queue(case.id, "missing")


@pytest.mark.asyncio
class TestMessages:
    async def test_failed_delivery_then_resend(self, db_session, delivery):
        case = await make_case(db_session)
        failing = FakeOutbound(ok=False, error=CHANNEL_NOT_CONFIGURED)

        message = await staff_manager(db_session, failing, delivery).send_external(case.id, "Olá")
        assert message.delivery_status == "failed"
        assert message.last_error == CHANNEL_NOT_CONFIGURED

        working = FakeOutbound()
        resent = await staff_manager(db_session, working, delivery).resend(message.id)
        assert resent.delivery_status == "sent"
        assert resent.last_error is None
        assert resent.sent_at is not None
        assert working.sent == [(case.id, "Olá")]
        assert await _actions(db_session, case.id) == ["messages.send_external", "messages.resend"]

    async def test_only_failed_outbound_can_be_resent(self, db_session, outbound, delivery):
        case = await make_case(db_session)
        manager = staff_manager(db_session, outbound, delivery)
        sent = await manager.send_external(case.id, "Olá")
        note = await manager.add_internal_note(case.id, "interno")

        with pytest.raises(ValueError):
            await manager.resend(sent.id)
        with pytest.raises(ValueError):
            await manager.resend(note.id)

    async def test_empty_internal_note(self, db_session, outbound, delivery):
        case = await make_case(db_session)
        with pytest.raises(ValueError):
            await staff_manager(db_session, outbound, delivery).add_internal_note(case.id, "   ")
