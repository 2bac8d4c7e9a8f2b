"""
Audit Service

Append-only action log with before/after snapshots, the human-readable case
timeline built from it, and the security-event log.

Writes happen inside a SAVEPOINT so a failing audit insert never poisons the
caller's transaction; failures are logged and counted, never raised.
"""

import json
import logging
from datetime import datetime

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ouvidoria.auth.context import RequestContext
from ouvidoria.middleware.metrics import audit_write_failures_total
from ouvidoria.middleware.request_context import get_client_ip
from ouvidoria.models import AuditLog, SecurityEvent

logger = logging.getLogger(__name__)


def _encode(value) -> str | None:
    if value is None:
        return None
    return json.dumps(value, default=str, ensure_ascii=False)


def parse_snapshot(value) -> dict:
    """Decode a stored snapshot; anything that is not a JSON object becomes {}."""
    if not value:
        return {}
    if isinstance(value, dict):
        return value
    if isinstance(value, str):
        try:
            decoded = json.loads(value)
        except ValueError:
            return {}
        return decoded if isinstance(decoded, dict) else {}
    return {}


def encode_cursor(row: AuditLog) -> str:
    return f"{row.created_at.isoformat()}|{row.id}"


def decode_cursor(value: str) -> tuple[datetime, int]:
    """Split a `<created_at>|<id>` page cursor. Raises ValueError if malformed."""
    created_at, sep, row_id = value.rpartition("|")
    if not sep:
        raise ValueError(f"Invalid audit cursor: {value!r}")
    try:
        return datetime.fromisoformat(created_at), int(row_id)
    except ValueError:
        raise ValueError(f"Invalid audit cursor: {value!r}") from None


def summarize(action: str, old_value=None, new_value=None) -> str:
    """Render one audit row as a timeline sentence. Total: never raises."""
    before = parse_snapshot(old_value)
    after = parse_snapshot(new_value)

    def _pair(key: str, empty: str = "-") -> str:
        b = before.get(key)
        a = after.get(key)
        return f"{b if b is not None else empty} → {a if a is not None else empty}"

    if action == "cases.assign_user":
        return f"Responsável alterado: {_pair('assigned_to', 'nenhum')}"
    if action == "cases.transfer_queue":
        return f"Fila alterada: {_pair('queue_id')}"
    if action == "cases.transfer_secretariat":
        return f"Secretaria alterada: {_pair('secretariat_id')}"
    if action == "cases.set_status":
        return f"Status: {_pair('status')}"
    if action == "cases.set_priority":
        return f"Prioridade: {_pair('priority')}"
    if action == "messages.send_external":
        return "Mensagem enviada ao cidadão"
    if action == "messages.add_internal_note":
        return "Nota interna adicionada"
    if action == "messages.resend":
        return "Mensagem reenviada"
    return action


class AuditService:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def record(
        self,
        entity_type: str,
        entity_id: str,
        action: str,
        ctx: RequestContext | None = None,
        old=None,
        new=None,
    ) -> AuditLog | None:
        """
        Append one audit row.

        Args:
            entity_type: "case", "citizen", "agent_run", "integration", ...
            entity_id: id of the affected entity
            action: dotted action name, e.g. "cases.set_status"
            ctx: caller context; system actors are stored with user_id NULL
            old / new: JSON-serialisable snapshots

        Returns the row, or None when the write failed.
        """
        entry = AuditLog(
            entity_type=entity_type,
            entity_id=str(entity_id),
            action=action,
            user_id=ctx.audit_user_id if ctx else None,
            old_value=_encode(old),
            new_value=_encode(new),
            ip_address=(ctx.ip if ctx and ctx.ip else get_client_ip()),
            user_agent=ctx.user_agent if ctx else None,
        )
        try:
            async with self.session.begin_nested():
                self.session.add(entry)
                await self.session.flush()
        except Exception:
            audit_write_failures_total.labels(kind="audit").inc()
            logger.exception("Audit write failed for %s %s action=%s", entity_type, entity_id, action)
            return None
        return entry

    async def trail(
        self,
        entity_type: str,
        entity_id: str,
        cursor: str | None = None,
        limit: int = 50,
    ) -> tuple[list[AuditLog], str | None]:
        """
        Newest-first page of an entity's history and the cursor for the next page.

        The cursor carries `(created_at, id)` of the last row, so rows sharing
        a timestamp are split across pages in id order without gaps.
        """
        query = (
            select(AuditLog)
            .where(AuditLog.entity_type == entity_type, AuditLog.entity_id == str(entity_id))
            .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
            .limit(limit)
        )
        if cursor is not None:
            created_at, row_id = decode_cursor(cursor)
            query = query.where(or_(
                AuditLog.created_at < created_at,
                and_(AuditLog.created_at == created_at, AuditLog.id < row_id),
            ))

        rows = list((await self.session.execute(query)).scalars())
        next_cursor = encode_cursor(rows[-1]) if len(rows) == limit else None
        return rows, next_cursor

    async def log_security_event(
        self,
        event_type: str,
        *,
        user_id: str | None = None,
        ip: str | None = None,
        path: str | None = None,
        user_agent: str | None = None,
        details: dict | None = None,
    ) -> None:
        event = SecurityEvent(
            type=event_type,
            user_id=user_id,
            ip=ip or get_client_ip(),
            path=path,
            user_agent=user_agent,
            details=details,
        )
        try:
            async with self.session.begin_nested():
                self.session.add(event)
                await self.session.flush()
        except Exception:
            audit_write_failures_total.labels(kind="security_event").inc()
            logger.exception("Security event write failed: %s", event_type)
            return
        logger.warning("Security event %s ip=%s path=%s", event_type, event.ip, path)
