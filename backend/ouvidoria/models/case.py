from datetime import datetime
from uuid import uuid4

from sqlalchemy import String, Boolean, DateTime, Text, ForeignKey, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ouvidoria.database import Base, JSONType

CASE_STATUSES = (
    "new", "routing", "assigned", "in_progress",
    "waiting_citizen", "triage_human", "resolved", "closed",
)
CASE_PRIORITIES = ("low", "normal", "high", "urgent")


class Case(Base):
    __tablename__ = "cases"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    protocol: Mapped[str] = mapped_column(String(14), unique=True, index=True)
    citizen_id: Mapped[str | None] = mapped_column(ForeignKey("citizen_profiles.id"), nullable=True, index=True)
    citizen_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    citizen_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    citizen_phone: Mapped[str | None] = mapped_column(String(80), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="new", index=True)
    priority: Mapped[str] = mapped_column(String(10), default="normal", index=True)
    source: Mapped[str] = mapped_column(String(20))
    channel: Mapped[str] = mapped_column(String(20), index=True)
    queue_id: Mapped[str | None] = mapped_column(ForeignKey("queues.id"), nullable=True, index=True)
    assigned_to: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    sla_due_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    sla_breached: Mapped[bool] = mapped_column(Boolean, default=False)
    needs_human: Mapped[bool] = mapped_column(Boolean, default=False)
    metadata_: Mapped[dict] = mapped_column("metadata", JSONType, default=dict)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    messages: Mapped[list["Message"]] = relationship(back_populates="case", order_by="Message.created_at")


class Message(Base):
    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    case_id: Mapped[str] = mapped_column(ForeignKey("cases.id"), index=True)
    external_message_id: Mapped[str | None] = mapped_column(String(200), unique=True, nullable=True)
    direction: Mapped[str] = mapped_column(String(10))  # "inbound" | "outbound"
    content: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_internal: Mapped[bool] = mapped_column(Boolean, default=False)
    delivery_status: Mapped[str] = mapped_column(String(10), default="pending")  # "pending" | "sent" | "failed"
    last_error: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    is_processed: Mapped[bool] = mapped_column(Boolean, default=False)
    metadata_: Mapped[dict] = mapped_column("metadata", JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    case: Mapped["Case"] = relationship(back_populates="messages")


class MissingField(Base):
    __tablename__ = "missing_fields"
    __table_args__ = (UniqueConstraint("case_id", "field_name", name="uq_missing_fields_case_field"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    case_id: Mapped[str] = mapped_column(ForeignKey("cases.id"), index=True)
    field_name: Mapped[str] = mapped_column(String(50))
    is_provided: Mapped[bool] = mapped_column(Boolean, default=False)


class CaseTag(Base):
    __tablename__ = "case_tags"

    case_id: Mapped[str] = mapped_column(ForeignKey("cases.id"), primary_key=True)
    tag_id: Mapped[str] = mapped_column(ForeignKey("tags.id"), primary_key=True)
