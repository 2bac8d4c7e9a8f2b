"""
Agent Action Policy

The automation agent proposes actions; this module decides which of them
actually run. Rules, in order:

1. Handoff: `risk_level == "high"` or confidence below the threshold forces
   a route to the escalation queue and `set_status(triage_human)`. Forced
   actions are not subject to the allow-list.
2. A proposed action is dropped (and reported, not raised) when it is outside
   a non-empty allow-list, when it is `reply_external` with auto-send
   disabled, or `reply_external` during a handoff.
3. Everything else runs through the CaseManager primitives, so the audit
   trail and delivery bookkeeping match a staff action.

AgentRunService wraps this with the dispatch/result round trip to the
automation platform.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ouvidoria.auth.context import RequestContext
from ouvidoria.auth.roles import AGENT_DISPATCH_ROLES
from ouvidoria.config import settings
from ouvidoria.errors import AccessDeniedError, InvalidTransitionError, NotFoundError
from ouvidoria.middleware.metrics import agent_actions_total, agent_handoffs_total
from ouvidoria.models import AgentRun, Case, Message, Queue, Secretariat
from ouvidoria.schemas.schemas import (
    AddInternalNote,
    AgentResultPayload,
    DroppedAction,
    PolicyResult,
    ReplyExternal,
    RequestInfo,
    SetPriority,
    SetStatus,
    SetTags,
    SuggestRoute,
)
from ouvidoria.services.audit_service import AuditService
from ouvidoria.services.automation import AutomationClient, notify_quietly
from ouvidoria.services.case_manager import CaseManager

logger = logging.getLogger(__name__)

FIELD_LABELS = {
    "full_name": "Nome completo",
    "email": "E-mail",
    "phone_e164": "Telefone",
}
INSTAGRAM_PHONE_LABEL = "Telefone no formato +55DDXXXXXXXXX (ex.: +5586999999999)"


@dataclass
class PolicyConfig:
    allowed_actions: list[str] = field(default_factory=list)
    auto_send_enabled: bool = False
    handoff_threshold: float = 0.6
    escalation_secretariat_code: str = "OUVIDORIA_CENTRAL"
    escalation_queue_slug: str = "denuncias_sensiveis"

    @classmethod
    def from_settings(cls) -> "PolicyConfig":
        return cls(
            allowed_actions=settings.agent_allowed_action_list,
            auto_send_enabled=settings.agent_auto_send_enabled,
            handoff_threshold=settings.agent_handoff_threshold,
            escalation_secretariat_code=settings.escalation_secretariat_code,
            escalation_queue_slug=settings.escalation_queue_slug,
        )


def needs_handoff(confidence: float | None, risk_level: str | None, threshold: float) -> bool:
    return risk_level == "high" or (confidence is not None and confidence < threshold)


def drop_reason(action, config: PolicyConfig, handoff: bool) -> str | None:
    """Why a proposed (non-forced) action may not run, or None if it may."""
    if config.allowed_actions and action.type not in config.allowed_actions:
        return "not_in_allow_list"
    if isinstance(action, ReplyExternal):
        if not config.auto_send_enabled:
            return "auto_send_disabled"
        if handoff:
            return "handoff_active"
    return None


def render_request_info(fields: list[str], channel: str | None) -> str:
    labels = []
    for name in fields:
        if name == "phone_e164" and channel == "instagram":
            labels.append(INSTAGRAM_PHONE_LABEL)
        else:
            labels.append(FIELD_LABELS.get(name, name))
    if not labels:
        return "Preciso de mais informações para seguir com o atendimento."
    return "Preciso das seguintes informações:\n" + "\n".join(labels)


class AgentPolicy:
    def __init__(self, session: AsyncSession, case_manager: CaseManager, config: PolicyConfig | None = None):
        self.session = session
        self.cases = case_manager
        self.config = config or PolicyConfig.from_settings()

    async def apply(
        self,
        case_id: str,
        actions: list,
        confidence: float | None = None,
        risk_level: str | None = None,
    ) -> PolicyResult:
        case = await self.cases.get_case(case_id)
        handoff = needs_handoff(confidence, risk_level, self.config.handoff_threshold)
        result = PolicyResult(needs_human=handoff)

        planned: list[tuple[object, bool]] = []
        if handoff:
            agent_handoffs_total.inc()
            planned.append((SuggestRoute(
                type="suggest_route",
                secretariat_code=self.config.escalation_secretariat_code,
                queue_code=self.config.escalation_queue_slug,
            ), True))
            planned.append((SetStatus(type="set_status", status="triage_human"), True))
        planned.extend((action, False) for action in actions)

        for action, forced in planned:
            reason = None if forced else drop_reason(action, self.config, handoff)
            if reason is None:
                reason = await self._run(case, action)
            if reason is None:
                result.applied.append(action.type)
                agent_actions_total.labels(type=action.type, outcome="applied").inc()
            else:
                result.dropped.append(DroppedAction(type=action.type, reason=reason))
                agent_actions_total.labels(type=action.type, outcome="dropped").inc()

        if result.dropped:
            await self.cases.audit.record(
                "case", case.id, "agent.actions_dropped", self.cases.ctx,
                new={"dropped": [d.model_dump() for d in result.dropped]},
            )
        return result

    async def _run(self, case: Case, action) -> str | None:
        """Execute one action. Returns a drop reason if it could not be applied."""
        try:
            if isinstance(action, ReplyExternal):
                await self.cases.send_external(case.id, action.text, source="agent")
            elif isinstance(action, AddInternalNote):
                await self.cases.add_internal_note(case.id, action.text, source="agent")
            elif isinstance(action, SetTags):
                await self.cases.add_tags(case.id, action.tags)
            elif isinstance(action, SetPriority):
                await self.cases.set_priority(case.id, action.priority)
            elif isinstance(action, SetStatus):
                await self.cases.set_status(case.id, action.status)
            elif isinstance(action, SuggestRoute):
                queue_id = await self.resolve_route(action.secretariat_code, action.queue_code)
                if queue_id is None:
                    return "no_matching_queue"
                await self.cases.transfer_queue(case.id, queue_id)
            elif isinstance(action, RequestInfo):
                await self.cases.send_external(
                    case.id, render_request_info(action.fields, case.channel), source="agent",
                )
        except (InvalidTransitionError, NotFoundError, ValueError) as exc:
            logger.warning("Agent action %s failed on case %s: %s", action.type, case.id, exc, extra={"case_id": case.id})
            return f"failed: {exc}"
        return None

    async def resolve_route(self, secretariat_code: str | None, queue_code: str | None) -> str | None:
        """Queue by slug/name, else the first queue of the secretariat, else the triage queue."""
        if queue_code:
            queue_id = await self.session.scalar(
                select(Queue.id)
                .where((Queue.slug == queue_code) | (Queue.name == queue_code), Queue.is_active.is_(True))
                .order_by(Queue.priority.desc())
                .limit(1)
            )
            if queue_id:
                return queue_id
        if secretariat_code:
            queue_id = await self.session.scalar(
                select(Queue.id)
                .join(Secretariat, Queue.secretariat_id == Secretariat.id)
                .where(
                    (Secretariat.code == secretariat_code) | (Secretariat.name == secretariat_code),
                    Queue.is_active.is_(True),
                )
                .order_by(Queue.priority.desc(), Queue.created_at.asc())
                .limit(1)
            )
            if queue_id:
                return queue_id
        return await self.session.scalar(
            select(Queue.id).where(Queue.slug == settings.triage_queue_slug).limit(1)
        )


class AgentRunService:
    def __init__(
        self,
        session: AsyncSession,
        automation: AutomationClient,
        case_manager: CaseManager,
        config: PolicyConfig | None = None,
    ):
        self.session = session
        self.automation = automation
        self.case_manager = case_manager
        self.config = config

    async def dispatch_run(self, ctx: RequestContext, case_id: str, message_id: str | None = None) -> AgentRun:
        if ctx.role not in AGENT_DISPATCH_ROLES:
            raise AccessDeniedError("Only admins and managers may dispatch the agent")

        case = await self.session.get(Case, case_id)
        if case is None:
            raise NotFoundError("Case", case_id)

        content = None
        if message_id:
            message = await self.session.get(Message, message_id)
            if message is None or message.case_id != case.id:
                raise NotFoundError("Message", message_id)
            content = message.content

        request_payload = {
            "case_id": case.id,
            "message_id": message_id,
            "channel": case.channel,
            "protocol": case.protocol,
            "message": content,
        }
        run = AgentRun(case_id=case.id, message_id=message_id, status="pending", request_json=request_payload)
        self.session.add(run)
        await self.session.flush()

        await notify_quietly(self.automation, "agent_run", {"agent_run_id": run.id, **request_payload})
        await AuditService(self.session).record(
            "agent_run", run.id, "agent.dispatch", ctx, new={"case_id": case.id, "message_id": message_id},
        )
        return run

    async def _find_run(self, payload: AgentResultPayload) -> AgentRun:
        if payload.agent_run_id:
            run = await self.session.get(AgentRun, payload.agent_run_id)
            if run is None:
                raise NotFoundError("AgentRun", payload.agent_run_id)
            return run
        if not payload.case_id:
            raise ValueError("agent_run_id or case_id is required")

        run = await self.session.scalar(
            select(AgentRun)
            .where(AgentRun.case_id == payload.case_id, AgentRun.status == "pending")
            .order_by(AgentRun.created_at.desc())
            .limit(1)
        )
        if run is not None:
            return run
        if await self.session.get(Case, payload.case_id) is None:
            raise NotFoundError("Case", payload.case_id)
        # Unsolicited result: record a run for it so the outcome stays traceable
        run = AgentRun(case_id=payload.case_id, status="pending", request_json={"unsolicited": True})
        self.session.add(run)
        await self.session.flush()
        return run

    async def apply_result(self, payload: AgentResultPayload) -> tuple[AgentRun, PolicyResult]:
        run = await self._find_run(payload)
        if run.status == "completed":
            logger.info("Agent run %s already completed; ignoring repeated result", run.id)
            return run, PolicyResult(applied=list(run.actions_applied or []), needs_human=run.needs_human)

        policy = AgentPolicy(self.session, self.case_manager, self.config)
        result = await policy.apply(run.case_id, payload.actions, payload.confidence, payload.risk_level)

        run.response_json = payload.model_dump(mode="json")
        run.confidence = payload.confidence
        run.risk_level = payload.risk_level
        run.actions_applied = result.applied
        run.needs_human = result.needs_human
        run.status = "completed"
        run.completed_at = datetime.utcnow()
        await self.session.flush()

        await AuditService(self.session).record(
            "agent_run", run.id, "agent.result", self.case_manager.ctx,
            new={"applied": result.applied, "dropped": len(result.dropped), "needs_human": result.needs_human},
        )
        return run, result
