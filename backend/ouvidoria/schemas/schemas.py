"""
Pydantic schemas for API request/response models and the closed action unions.

Routing-rule actions and agent-proposed actions are discriminated unions on
their `type` field: they are decoded once at the boundary and an unknown
kind fails validation instead of being ignored at apply time.
"""

from datetime import datetime
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

CaseStatus = Literal[
    "new", "routing", "assigned", "in_progress",
    "waiting_citizen", "triage_human", "resolved", "closed",
]
CasePriority = Literal["low", "normal", "high", "urgent"]
Channel = Literal["web", "whatsapp", "instagram", "phone"]


# ── Citizen identity ──

class SenderIdentity(BaseModel):
    """Identity hints an inbound channel carries about its sender."""
    full_name: str | None = None
    email: str | None = None
    phone: str | None = None
    whatsapp_id: str | None = None
    instagram_user_id: str | None = None
    instagram_username: str | None = None
    consent_at: datetime | None = None
    consent_source: str | None = None


class CitizenUpdate(BaseModel):
    full_name: str | None = Field(None, min_length=1, max_length=200)
    email: str | None = None
    phone_e164: str | None = None


class CitizenOut(BaseModel):
    id: str
    full_name: str | None = None
    email: str | None = None
    phone_e164: str | None = None
    whatsapp_id: str | None = None
    instagram_user_id: str | None = None
    instagram_username: str | None = None
    consent_at: datetime | None = None
    consent_source: str | None = None

    model_config = {"from_attributes": True}


# ── Routing rule actions ──

class AddTagAction(BaseModel):
    type: Literal["add_tag"]
    value: str


class SetPriorityAction(BaseModel):
    type: Literal["set_priority"]
    value: str  # invalid priorities are ignored when applied, not rejected


class SetSecretariatAction(BaseModel):
    type: Literal["set_secretariat"]
    value: str


class SetQueueAction(BaseModel):
    type: Literal["set_queue"]
    value: str


class SetQueueByMetaAction(BaseModel):
    type: Literal["set_queue_by_meta"]
    target_queue_slug: str
    fallback_queue_id: str | None = None


class SetSlaRuleAction(BaseModel):
    type: Literal["set_sla_rule"]
    value: str


class RequireFieldsAction(BaseModel):
    type: Literal["require_fields"]
    fields: list[str] = []


RoutingAction = Annotated[
    Union[
        AddTagAction, SetPriorityAction, SetSecretariatAction, SetQueueAction,
        SetQueueByMetaAction, SetSlaRuleAction, RequireFieldsAction,
    ],
    Field(discriminator="type"),
]

routing_actions_adapter = TypeAdapter(list[RoutingAction])


class RoutingOutcome(BaseModel):
    routed: bool = False
    queue_id: str | None = None
    secretariat_id: str | None = None
    priority: CasePriority | None = None
    tags: list[str] = []
    sla_hours: int | None = None
    missing_fields: list[str] = []
    rule_applied: str | None = None


class RoutingSimulateRequest(BaseModel):
    text: str
    channel: Channel = "whatsapp"


class RoutingSimulateResponse(BaseModel):
    matched: bool
    rule_id: str | None = None
    rule_name: str | None = None
    outcome: RoutingOutcome


# ── Agent actions ──

class ReplyExternal(BaseModel):
    type: Literal["reply_external"]
    text: str


class AddInternalNote(BaseModel):
    type: Literal["add_internal_note"]
    text: str


class SetTags(BaseModel):
    type: Literal["set_tags"]
    tags: list[str] = []


class SetPriority(BaseModel):
    type: Literal["set_priority"]
    priority: CasePriority


class SetStatus(BaseModel):
    type: Literal["set_status"]
    status: CaseStatus


class SuggestRoute(BaseModel):
    type: Literal["suggest_route"]
    secretariat_code: str | None = None
    queue_code: str | None = None


class RequestInfo(BaseModel):
    type: Literal["request_info"]
    fields: list[str] = []


AgentAction = Annotated[
    Union[ReplyExternal, AddInternalNote, SetTags, SetPriority, SetStatus, SuggestRoute, RequestInfo],
    Field(discriminator="type"),
]


class DroppedAction(BaseModel):
    type: str
    reason: str


class PolicyResult(BaseModel):
    applied: list[str] = []
    dropped: list[DroppedAction] = []
    needs_human: bool = False


class AgentRunRequest(BaseModel):
    case_id: str
    message_id: str | None = None


class AgentRunResponse(BaseModel):
    agent_run_id: str
    status: str


class AgentResultPayload(BaseModel):
    """Callback body posted by the automation platform."""
    agent_run_id: str | None = None
    case_id: str | None = None
    actions: list[AgentAction] = []
    confidence: float | None = Field(None, ge=0.0, le=1.0)
    risk_level: Literal["low", "medium", "high"] | None = None


# ── Intake ──

class IntakeResult(BaseModel):
    case_id: str | None = None
    protocol: str | None = None
    routed: bool = False
    deduplicated: bool = False


class PublicCaseCreate(BaseModel):
    full_name: str = Field(..., min_length=1, max_length=200)
    description: str = Field(..., min_length=1, max_length=5000)
    email: str
    phone_e164: str
    consent: bool = False


class PublicCaseCreated(BaseModel):
    protocol: str
    case_id: str
    status: str


class PublicCaseStatus(BaseModel):
    protocol: str
    status: str
    priority: str
    created_at: datetime | None = None
    sla_due_at: datetime | None = None
    sla_breached: bool = False
    queue_name: str | None = None
    secretariat_name: str | None = None


class InstagramInbound(BaseModel):
    """Instagram DM relayed by the automation platform."""
    instagram_user_id: str = Field(..., min_length=1)
    instagram_username: str | None = None
    text: str = Field(..., min_length=1)
    external_message_id: str = Field(..., min_length=1)


# WhatsApp Cloud API webhook envelope (only the parts intake reads)

class WhatsAppText(BaseModel):
    body: str = ""


class WhatsAppMessage(BaseModel):
    id: str
    from_: str = Field(..., alias="from")
    type: str = "text"
    timestamp: str | None = None
    text: WhatsAppText | None = None


class WhatsAppProfile(BaseModel):
    name: str | None = None


class WhatsAppContact(BaseModel):
    wa_id: str
    profile: WhatsAppProfile | None = None


class WhatsAppValue(BaseModel):
    contacts: list[WhatsAppContact] = []
    messages: list[WhatsAppMessage] = []


class WhatsAppChange(BaseModel):
    field: str
    value: WhatsAppValue


class WhatsAppEntry(BaseModel):
    id: str | None = None
    changes: list[WhatsAppChange] = []


class WhatsAppWebhook(BaseModel):
    object: str
    entry: list[WhatsAppEntry] = []


# ── Cases ──

class PaginatedResponse(BaseModel):
    total: int
    page: int
    size: int
    pages: int


class CaseSummary(BaseModel):
    id: str
    protocol: str
    citizen_name: str | None = None
    status: str
    priority: str
    channel: str
    queue_id: str | None = None
    assigned_to: str | None = None
    sla_due_at: datetime | None = None
    sla_breached: bool = False
    needs_human: bool = False
    created_at: datetime | None = None

    model_config = {"from_attributes": True}


class CaseListResponse(PaginatedResponse):
    items: list[CaseSummary]


class MessageOut(BaseModel):
    id: str
    direction: str
    content: str | None = None
    is_internal: bool = False
    delivery_status: str
    last_error: str | None = None
    sent_at: datetime | None = None
    created_at: datetime | None = None

    model_config = {"from_attributes": True}


class CaseDetail(CaseSummary):
    citizen_id: str | None = None
    citizen_email: str | None = None
    citizen_phone: str | None = None
    source: str
    resolved_at: datetime | None = None
    closed_at: datetime | None = None
    updated_at: datetime | None = None
    tags: list[str] = []
    missing_fields: list[str] = []
    messages: list[MessageOut] = []


class CaseUpdate(BaseModel):
    status: CaseStatus | None = None
    priority: CasePriority | None = None
    queue_id: str | None = None
    assigned_to: str | None = None


class MessageCreate(BaseModel):
    content: str = Field(..., min_length=1, max_length=4096)
    is_internal: bool = False


# ── Audit ──

class AuditEntry(BaseModel):
    id: int
    action: str
    user_id: str | None = None
    summary: str
    old_value: dict = {}
    new_value: dict = {}
    created_at: datetime | None = None


class AuditTrailResponse(BaseModel):
    items: list[AuditEntry]
    next_cursor: str | None = None
