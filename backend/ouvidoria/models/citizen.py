from datetime import datetime
from uuid import uuid4

from sqlalchemy import String, DateTime
from sqlalchemy.orm import Mapped, mapped_column

from ouvidoria.database import Base


class CitizenProfile(Base):
    __tablename__ = "citizen_profiles"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    full_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    phone_e164: Mapped[str | None] = mapped_column(String(16), unique=True, nullable=True)
    whatsapp_id: Mapped[str | None] = mapped_column(String(64), unique=True, nullable=True)
    instagram_user_id: Mapped[str | None] = mapped_column(String(64), unique=True, nullable=True)
    instagram_username: Mapped[str | None] = mapped_column(String(100), nullable=True)
    consent_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    consent_source: Mapped[str | None] = mapped_column(String(30), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
