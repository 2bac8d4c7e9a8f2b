"""Row builders and request helpers shared by the test modules."""

import hashlib
import hmac
import json

from sqlalchemy.ext.asyncio import AsyncSession

from ouvidoria.auth.jwt import create_access_token
from ouvidoria.models import Case, CitizenProfile, Queue, RoutingRule, Secretariat, Tag
from ouvidoria.services.protocol import random_protocol


def auth_header(role: str, user_id: str = "user-1", secretariat_id: str | None = None) -> dict:
    """Create an Authorization header with a valid JWT."""
    return {"Authorization": f"Bearer {create_access_token(user_id, role, secretariat_id)}"}


def signed(payload: dict, secret: str, prefix: str = "") -> tuple[bytes, str]:
    body = json.dumps(payload).encode()
    return body, prefix + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


async def make_secretariat(session: AsyncSession, code: str = "OBRAS", name: str = "Secretaria de Obras") -> Secretariat:
    secretariat = Secretariat(code=code, name=name)
    session.add(secretariat)
    await session.flush()
    return secretariat


async def make_queue(
    session: AsyncSession,
    secretariat: Secretariat,
    slug: str = "iluminacao",
    name: str = "Iluminação Pública",
    sla_hours: int = 48,
    priority: int = 0,
) -> Queue:
    queue = Queue(secretariat_id=secretariat.id, slug=slug, name=name, sla_hours=sla_hours, priority=priority)
    session.add(queue)
    await session.flush()
    return queue


async def make_rule(
    session: AsyncSession,
    name: str,
    priority: int,
    conditions: dict,
    actions: list,
    is_fallback: bool = False,
    enabled: bool = True,
) -> RoutingRule:
    rule = RoutingRule(
        name=name,
        priority=priority,
        conditions=conditions,
        actions=actions,
        is_fallback=is_fallback,
        enabled=enabled,
    )
    session.add(rule)
    await session.flush()
    return rule


async def make_tag(session: AsyncSession, name: str) -> Tag:
    tag = Tag(name=name)
    session.add(tag)
    await session.flush()
    return tag


async def make_citizen(session: AsyncSession, **fields) -> CitizenProfile:
    profile = CitizenProfile(**fields)
    session.add(profile)
    await session.flush()
    return profile


async def make_case(
    session: AsyncSession,
    queue: Queue | None = None,
    status: str = "assigned",
    channel: str = "whatsapp",
    assigned_to: str | None = None,
    citizen: CitizenProfile | None = None,
    citizen_phone: str | None = "+5586999990000",
) -> Case:
    case = Case(
        protocol=random_protocol(),
        status=status,
        priority="normal",
        source=channel,
        channel=channel,
        queue_id=queue.id if queue else None,
        assigned_to=assigned_to,
        citizen_id=citizen.id if citizen else None,
        citizen_phone=citizen_phone,
        metadata_={},
    )
    session.add(case)
    await session.flush()
    return case
