"""Tests that list filtering and single-case checks agree for every role."""

import pytest
import pytest_asyncio
from sqlalchemy import select

from ouvidoria.auth.context import RequestContext
from ouvidoria.auth.roles import Role
from ouvidoria.auth.visibility import (
    DepartmentOnly,
    NoAccess,
    OwnerOnly,
    QueueSet,
    Unrestricted,
    can_access,
    ownership_of,
    resolve_scope,
    scope_query,
)
from ouvidoria.config import settings
from ouvidoria.models import Case, UserQueue
from tests.factories import make_case, make_queue, make_secretariat


@pytest_asyncio.fixture
async def world(db_session):
    """Two departments, one queue each, a legacy global department and four cases."""
    obras = await make_secretariat(db_session, "OBRAS", "Obras")
    saude = await make_secretariat(db_session, "SAUDE", "Saúde")
    gabinete = await make_secretariat(db_session, "GABINETE_PREFEITO", "Gabinete")
    q_obras = await make_queue(db_session, obras, slug="iluminacao")
    q_saude = await make_queue(db_session, saude, slug="ubs", name="UBS")

    cases = {
        "obras": await make_case(db_session, queue=q_obras),
        "saude": await make_case(db_session, queue=q_saude, assigned_to="op-2"),
        "unqueued": await make_case(db_session, status="new", assigned_to="op-1"),
        "obras_op2": await make_case(db_session, queue=q_obras, assigned_to="op-2"),
    }
    db_session.add(UserQueue(user_id="op-1", queue_id=q_obras.id))
    await db_session.flush()
    return {"obras": obras, "saude": saude, "gabinete": gabinete, "cases": cases}


def _contexts(world):
    return {
        "admin": RequestContext.for_role("a", Role.ADMIN),
        "manager": RequestContext.for_role("m", Role.MANAGER),
        "viewer": RequestContext.for_role("v", Role.VIEWER),
        "global_viewer": RequestContext.for_role("g", Role.GLOBAL_VIEWER),
        "global_manager": RequestContext.for_role("gm", Role.GLOBAL_MANAGER),
        "operator_with_queue": RequestContext.for_role("op-1", Role.OPERATOR),
        "operator_without_queue": RequestContext.for_role("op-2", Role.OPERATOR),
        "staff_obras": RequestContext.for_role("s1", Role.STAFF, secretariat_id=world["obras"].id),
        "staff_saude": RequestContext.for_role("s2", Role.STAFF, secretariat_id=world["saude"].id),
        "staff_no_department": RequestContext.for_role("s3", Role.STAFF),
        "staff_legacy_global": RequestContext.for_role("s4", Role.STAFF, secretariat_id=world["gabinete"].id),
    }


EXPECTED = {
    "admin": {"obras", "saude", "unqueued", "obras_op2"},
    "manager": {"obras", "saude", "unqueued", "obras_op2"},
    "viewer": set(),
    "global_viewer": {"obras", "saude", "unqueued", "obras_op2"},
    "global_manager": {"obras", "saude", "unqueued", "obras_op2"},
    "operator_with_queue": {"obras", "obras_op2"},
    "operator_without_queue": {"saude", "obras_op2"},
    "staff_obras": {"obras", "obras_op2"},
    "staff_saude": {"saude"},
    "staff_no_department": set(),
    "staff_legacy_global": {"obras", "saude", "unqueued", "obras_op2"},
}


@pytest.mark.asyncio
@pytest.mark.parametrize("who", sorted(EXPECTED))
async def test_listing_and_single_checks_agree(db_session, world, who):
    ctx = _contexts(world)[who]
    names = {case.id: name for name, case in world["cases"].items()}

    listed = set((await db_session.execute(await scope_query(db_session, ctx, select(Case.id)))).scalars())
    checked = set()
    for case in world["cases"].values():
        if await can_access(db_session, ctx, await ownership_of(db_session, case)):
            checked.add(case.id)

    assert listed == checked
    assert {names[i] for i in listed} == EXPECTED[who]


@pytest.mark.asyncio
class TestScopeResolution:
    async def test_scope_variants(self, db_session, world):
        ctxs = _contexts(world)
        assert isinstance(await resolve_scope(db_session, ctxs["admin"]), Unrestricted)
        assert isinstance(await resolve_scope(db_session, ctxs["viewer"]), NoAccess)
        assert isinstance(await resolve_scope(db_session, ctxs["operator_with_queue"]), QueueSet)
        assert await resolve_scope(db_session, ctxs["operator_without_queue"]) == OwnerOnly("op-2")
        assert await resolve_scope(db_session, ctxs["staff_obras"]) == DepartmentOnly(world["obras"].id)

    async def test_legacy_global_department_can_be_switched_off(self, db_session, world, monkeypatch):
        monkeypatch.setattr(settings, "legacy_global_department_access", False)
        scope = await resolve_scope(db_session, _contexts(world)["staff_legacy_global"])
        assert scope == DepartmentOnly(world["gabinete"].id)
