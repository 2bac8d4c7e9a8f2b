"""
Routing Rule Engine

Loads the enabled routing rules, evaluates them in priority order against an
inbound message and applies the first match's actions. When nothing matches
the enabled fallback rule (`is_fallback`) is applied unconditionally; when
there is none the case stays unrouted.

Rules are read fresh on every evaluation, so edits take effect immediately.
Actions are decoded into the closed `RoutingAction` union first; a rule whose
actions do not decode is skipped, never half-applied.
"""

import logging
from dataclasses import dataclass

from pydantic import ValidationError
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ouvidoria.config import settings
from ouvidoria.database import insert_or_ignore
from ouvidoria.middleware.metrics import routing_rule_matches_total
from ouvidoria.models import Case, CaseTag, MissingField, Queue, RoutingRule, Secretariat, SlaRule, Tag
from ouvidoria.models.case import CASE_PRIORITIES
from ouvidoria.routing.conditions import build_facts, evaluate
from ouvidoria.schemas.schemas import (
    AddTagAction,
    RequireFieldsAction,
    RoutingOutcome,
    SetPriorityAction,
    SetQueueAction,
    SetQueueByMetaAction,
    SetSecretariatAction,
    SetSlaRuleAction,
    routing_actions_adapter,
)

logger = logging.getLogger(__name__)


@dataclass
class DecodedRule:
    rule: RoutingRule
    actions: list


class RoutingEngine:
    def __init__(self, session: AsyncSession):
        self.session = session

    # ── Rule loading ──

    def _decode(self, rule: RoutingRule) -> DecodedRule | None:
        try:
            actions = routing_actions_adapter.validate_python(rule.actions or [])
        except ValidationError as exc:
            logger.error(
                "Routing rule %s (%s) has undecodable actions, skipping: %s",
                rule.id, rule.name, exc.errors(include_url=False),
                extra={"rule_id": rule.id},
            )
            return None
        return DecodedRule(rule=rule, actions=actions)

    async def load_rules(self) -> tuple[list[RoutingRule], RoutingRule | None]:
        """Return (ordered candidate rules, fallback rule)."""
        result = await self.session.execute(
            select(RoutingRule)
            .where(RoutingRule.enabled.is_(True))
            .order_by(RoutingRule.priority.desc(), RoutingRule.name.asc())
        )
        rules = list(result.scalars())
        candidates = [r for r in rules if not r.is_fallback]
        fallback = next((r for r in rules if r.is_fallback), None)
        return candidates, fallback

    async def select_rule(self, text: str | None, channel: str | None) -> tuple[DecodedRule | None, bool]:
        """Find the rule to apply. Returns (rule, is_fallback)."""
        candidates, fallback = await self.load_rules()
        facts = build_facts(text, channel)

        for rule in candidates:
            if not evaluate(rule.conditions, facts):
                continue
            decoded = self._decode(rule)
            if decoded is not None:
                return decoded, False

        if fallback is not None:
            decoded = self._decode(fallback)
            if decoded is not None:
                return decoded, True
        return None, False

    # ── Evaluation ──

    async def route(self, case: Case, text: str | None) -> RoutingOutcome:
        """Route a persisted case; tag, priority and required-field effects are written."""
        decoded, is_fallback = await self.select_rule(text, case.channel)
        if decoded is None:
            logger.info("No routing rule matched case %s", case.id, extra={"case_id": case.id})
            return RoutingOutcome()

        await self.session.execute(
            update(RoutingRule)
            .where(RoutingRule.id == decoded.rule.id)
            .values(match_count=RoutingRule.match_count + 1)
        )
        routing_rule_matches_total.labels(rule=decoded.rule.name).inc()
        logger.info(
            "Case %s matched routing rule %s%s",
            case.id, decoded.rule.name, " (fallback)" if is_fallback else "",
            extra={"case_id": case.id, "rule_id": decoded.rule.id},
        )
        return await self._apply_actions(decoded, case)

    async def simulate(self, text: str, channel: str = "whatsapp") -> tuple[RoutingRule | None, RoutingOutcome]:
        """Same matching and action resolution as `route`, without writing anything."""
        decoded, _ = await self.select_rule(text, channel)
        if decoded is None:
            return None, RoutingOutcome()
        return decoded.rule, await self._apply_actions(decoded, None)

    # ── Actions ──

    async def _apply_actions(self, decoded: DecodedRule, case: Case | None) -> RoutingOutcome:
        outcome = RoutingOutcome(routed=True, rule_applied=decoded.rule.id)

        for action in decoded.actions:
            if isinstance(action, AddTagAction):
                await self._add_tag(outcome, action.value, case)
            elif isinstance(action, SetPriorityAction):
                if action.value in CASE_PRIORITIES:
                    outcome.priority = action.value
                    if case is not None:
                        case.priority = action.value
            elif isinstance(action, SetSecretariatAction):
                outcome.secretariat_id = action.value or None
            elif isinstance(action, SetQueueAction):
                if await self.session.get(Queue, action.value) is not None:
                    outcome.queue_id = action.value
                else:
                    logger.warning("Routing rule %s points at unknown queue %s", decoded.rule.id, action.value)
            elif isinstance(action, SetQueueByMetaAction):
                outcome.queue_id = await self.resolve_queue_by_meta(
                    action.target_queue_slug, action.fallback_queue_id
                )
            elif isinstance(action, SetSlaRuleAction):
                outcome.sla_hours = await self.resolve_sla_hours(action.value)
            elif isinstance(action, RequireFieldsAction):
                for field_name in action.fields:
                    if field_name not in outcome.missing_fields:
                        outcome.missing_fields.append(field_name)
                    if case is not None:
                        await insert_or_ignore(
                            self.session, MissingField,
                            case_id=case.id, field_name=field_name, is_provided=False,
                        )

        if outcome.queue_id:
            queue = await self.session.get(Queue, outcome.queue_id)
            if queue is not None:
                outcome.secretariat_id = queue.secretariat_id

        if case is not None:
            await self.session.flush()
        return outcome

    async def _add_tag(self, outcome: RoutingOutcome, name: str, case: Case | None) -> None:
        tag = await self.session.scalar(select(Tag).where(Tag.name == name))
        if tag is None:
            logger.debug("Routing tag %s does not exist, ignored", name)
            return
        if name not in outcome.tags:
            outcome.tags.append(name)
        if case is not None:
            await insert_or_ignore(self.session, CaseTag, case_id=case.id, tag_id=tag.id)

    async def resolve_queue_by_meta(self, slug: str, fallback_queue_id: str | None = None) -> str | None:
        """Highest-priority active queue with `slug` in an active secretariat, else fallback, else triage."""
        queue_id = await self.session.scalar(
            select(Queue.id)
            .join(Secretariat, Queue.secretariat_id == Secretariat.id)
            .where(Queue.slug == slug, Queue.is_active.is_(True), Secretariat.is_active.is_(True))
            .order_by(Queue.priority.desc())
            .limit(1)
        )
        if queue_id:
            return queue_id
        if fallback_queue_id and await self.session.get(Queue, fallback_queue_id) is not None:
            return fallback_queue_id
        return await self.session.scalar(
            select(Queue.id).where(Queue.slug == settings.triage_queue_slug).limit(1)
        )

    async def resolve_sla_hours(self, rule_ref: str) -> int:
        """Hours of the active SLA rule with this id or name, else the default rule, else 48."""
        hours = await self.session.scalar(
            select(SlaRule.hours)
            .where((SlaRule.id == rule_ref) | (SlaRule.name == rule_ref), SlaRule.is_active.is_(True))
            .limit(1)
        )
        if hours is not None:
            return hours
        hours = await self.session.scalar(
            select(SlaRule.hours)
            .where(SlaRule.is_default.is_(True), SlaRule.is_active.is_(True))
            .limit(1)
        )
        return hours if hours is not None else settings.default_sla_hours
