"""Tests for the case intake pipeline."""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import func, select

from ouvidoria.models import AuditLog, Case, CitizenProfile, Message, MissingField
from ouvidoria.schemas.schemas import SenderIdentity
from ouvidoria.services.case_intake import CaseIntakeService
from ouvidoria.services.protocol import is_valid_protocol
from ouvidoria.services.sla_engine import SlaScheduler
from tests.factories import make_queue, make_rule, make_secretariat
from tests.fakes import FailingAutomation, FailingDelivery


def whatsapp_sender(wa_id="5586999990001", name="Maria da Silva"):
    return SenderIdentity(whatsapp_id=wa_id, phone=f"+{wa_id}", full_name=name)


@pytest.fixture
def intake(db_session, automation, delivery):
    return CaseIntakeService(db_session, automation, SlaScheduler(db_session, delivery))


@pytest.mark.asyncio
class TestIngest:
    async def test_routed_whatsapp_complaint(self, db_session, intake, delivery, automation):
        obras = await make_secretariat(db_session)
        iluminacao = await make_queue(db_session, obras, slug="iluminacao", sla_hours=72)
        await make_rule(
            db_session, "iluminacao", 20,
            {"field": "message.text", "op": "contains", "value": "poste"},
            [{"type": "set_queue_by_meta", "target_queue_slug": "iluminacao"}],
        )

        before = datetime.utcnow()
        result = await intake.ingest("whatsapp", whatsapp_sender(), "poste de luz quebrado", "wamid.1")

        assert result.routed is True
        assert result.deduplicated is False
        assert is_valid_protocol(result.protocol)

        case = await db_session.get(Case, result.case_id)
        assert case.status == "assigned"
        assert case.queue_id == iluminacao.id
        assert before + timedelta(hours=72) <= case.sla_due_at <= datetime.utcnow() + timedelta(hours=72)
        assert result.case_id in delivery.scheduled
        assert automation.events == []

        created = await db_session.scalar(
            select(func.count()).select_from(AuditLog)
            .where(AuditLog.entity_id == case.id, AuditLog.action == "created")
        )
        assert created == 1

    async def test_unrouted_case_notifies_automation(self, db_session, intake, automation, delivery):
        result = await intake.ingest("whatsapp", whatsapp_sender(name=None), "bom dia", "wamid.2")

        assert result.routed is False
        case = await db_session.get(Case, result.case_id)
        assert case.status == "new"
        assert case.sla_due_at is None
        assert delivery.scheduled == {}
        assert [e for e, _ in automation.events] == ["inbound_message_received"]
        assert automation.events[0][1]["protocol"] == result.protocol

        missing = set((await db_session.execute(
            select(MissingField.field_name).where(MissingField.case_id == case.id)
        )).scalars())
        assert missing == {"full_name", "email"}

    async def test_redelivery_is_deduplicated(self, db_session, intake):
        first = await intake.ingest("whatsapp", whatsapp_sender(), "buraco na rua", "wamid.dup")
        second = await intake.ingest("whatsapp", whatsapp_sender(), "buraco na rua", "wamid.dup")

        assert second.deduplicated is True
        assert second.case_id == first.case_id
        assert second.protocol == first.protocol
        assert await db_session.scalar(select(func.count()).select_from(Case)) == 1
        assert await db_session.scalar(select(func.count()).select_from(Message)) == 1

    async def test_same_sender_reuses_profile(self, db_session, intake):
        a = await intake.ingest("whatsapp", whatsapp_sender(), "primeira", "wamid.a")
        b = await intake.ingest("whatsapp", whatsapp_sender(), "segunda", "wamid.b")

        case_a = await db_session.get(Case, a.case_id)
        case_b = await db_session.get(Case, b.case_id)
        assert case_a.citizen_id == case_b.citizen_id
        assert case_a.protocol != case_b.protocol
        assert await db_session.scalar(select(func.count()).select_from(CitizenProfile)) == 1

    async def test_web_intake_mirrors_contact_onto_case(self, db_session, intake):
        sender = SenderIdentity(full_name="João", email="Joao@Example.com", phone="+5586988887777")
        result = await intake.ingest("web", sender, "elogio ao atendimento", "web_1")

        case = await db_session.get(Case, result.case_id)
        assert case.channel == "web"
        assert case.citizen_email == "joao@example.com"
        assert case.citizen_phone == "+5586988887777"
        assert case.citizen_name == "João"

    async def test_instagram_requires_phone(self, db_session, intake):
        sender = SenderIdentity(instagram_user_id="178400", instagram_username="maria.ig")
        result = await intake.ingest("instagram", sender, "lixo acumulado", "ig.1")

        case = await db_session.get(Case, result.case_id)
        assert case.citizen_phone == "ig:178400"
        missing = set((await db_session.execute(
            select(MissingField.field_name).where(MissingField.case_id == case.id)
        )).scalars())
        assert missing == {"full_name", "email", "phone_e164"}

    async def test_missing_native_id_is_rejected(self, intake):
        with pytest.raises(ValueError):
            await intake.ingest("whatsapp", SenderIdentity(full_name="Sem id"), "oi", "wamid.x")


@pytest.mark.asyncio
class TestCollaboratorFailures:
    async def test_case_survives_unreachable_timer_store(self, db_session, automation):
        intake = CaseIntakeService(db_session, automation, SlaScheduler(db_session, FailingDelivery()))
        obras = await make_secretariat(db_session)
        iluminacao = await make_queue(db_session, obras, slug="iluminacao", sla_hours=48)
        await make_rule(
            db_session, "iluminacao", 20,
            {"field": "message.text", "op": "contains", "value": "poste"},
            [{"type": "set_queue_by_meta", "target_queue_slug": "iluminacao"}],
        )

        result = await intake.ingest("whatsapp", whatsapp_sender(), "poste de luz quebrado", "wamid.timer")

        assert result.routed is True
        case = await db_session.get(Case, result.case_id)
        assert case.status == "assigned"
        assert case.queue_id == iluminacao.id
        assert case.sla_due_at is not None
        created = await db_session.scalar(
            select(func.count()).select_from(AuditLog)
            .where(AuditLog.entity_id == case.id, AuditLog.action == "created")
        )
        assert created == 1

    async def test_case_survives_raising_automation(self, db_session, delivery):
        intake = CaseIntakeService(db_session, FailingAutomation(), SlaScheduler(db_session, delivery))

        result = await intake.ingest("whatsapp", whatsapp_sender(), "bom dia", "wamid.auto")

        assert result.routed is False
        case = await db_session.get(Case, result.case_id)
        assert case.status == "new"
        assert await db_session.scalar(select(func.count()).select_from(Message)) == 1
