"""
Citizen Identity Resolver

Finds or creates the CitizenProfile behind an inbound sender:

    whatsapp   → keyed by whatsapp_id only
    instagram  → keyed by instagram_user_id only
    web/phone  → keyed by phone_e164, falling back to email

Merging only fills fields that are still empty. A profile found by email
that already carries a *different* phone is never attached; a new profile
is created instead (without the colliding email) and the lookup reports a
conflict. Staff edits go through `update_fields`, which may overwrite.
"""

import logging
import re

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ouvidoria.auth.context import RequestContext
from ouvidoria.errors import NotFoundError
from ouvidoria.models import Case, CitizenProfile, MissingField
from ouvidoria.schemas.schemas import SenderIdentity
from ouvidoria.services.audit_service import AuditService

logger = logging.getLogger(__name__)

PHONE_RE = re.compile(r"^\+[1-9]\d{1,14}$")
EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_PHONE_NOISE = re.compile(r"[()\s-]")

_MERGEABLE = ("full_name", "email", "phone_e164", "instagram_username", "consent_at", "consent_source")
_EDITABLE = ("full_name", "email", "phone_e164")


def normalize_phone_e164(value: str | None) -> str | None:
    if not value:
        return None
    cleaned = _PHONE_NOISE.sub("", value.strip())
    if not cleaned.startswith("+"):
        return None
    return cleaned if PHONE_RE.match(cleaned) else None


def normalize_email(value: str | None) -> str | None:
    if not value:
        return None
    cleaned = value.strip().lower()
    return cleaned if EMAIL_RE.match(cleaned) else None


def missing_fields_for(channel: str, profile: CitizenProfile | None) -> list[str]:
    """Contact fields still worth asking the citizen for on this channel."""
    if channel == "web":
        return []
    missing = []
    if profile is None or not profile.full_name:
        missing.append("full_name")
    if profile is None or not profile.email:
        missing.append("email")
    if channel == "instagram" and (profile is None or not profile.phone_e164):
        missing.append("phone_e164")
    return missing


def contact_for_channel(profile: CitizenProfile, channel: str) -> str:
    """Value mirrored into `Case.citizen_phone`; outbound delivery addresses it."""
    if profile.phone_e164:
        return profile.phone_e164
    if channel == "whatsapp" and profile.whatsapp_id:
        return profile.whatsapp_id
    if channel == "instagram" and profile.instagram_user_id:
        return f"ig:{profile.instagram_user_id}"
    return "web"


def mirror_onto_case(case: Case, profile: CitizenProfile) -> None:
    case.citizen_id = profile.id
    case.citizen_name = profile.full_name
    case.citizen_email = profile.email
    case.citizen_phone = contact_for_channel(profile, case.channel)


class CitizenResolver:
    def __init__(self, session: AsyncSession):
        self.session = session

    # ── Lookups ──

    async def _one_by(self, column, value) -> CitizenProfile | None:
        if value is None:
            return None
        result = await self.session.execute(select(CitizenProfile).where(column == value).limit(1))
        return result.scalar_one_or_none()

    async def _is_taken(self, column, value, exclude_id: str | None = None) -> bool:
        query = select(CitizenProfile.id).where(column == value)
        if exclude_id:
            query = query.where(CitizenProfile.id != exclude_id)
        return (await self.session.execute(query.limit(1))).first() is not None

    # ── Resolution ──

    async def find_or_create(self, channel: str, hints: SenderIdentity) -> tuple[CitizenProfile, bool]:
        """Return (profile, conflict)."""
        email = normalize_email(hints.email)
        phone = normalize_phone_e164(hints.phone)
        fields = {
            "full_name": (hints.full_name or "").strip() or None,
            "email": email,
            "phone_e164": phone,
            "instagram_username": hints.instagram_username,
            "consent_at": hints.consent_at,
            "consent_source": hints.consent_source or channel,
        }

        if channel == "whatsapp":
            return await self._by_native_id(CitizenProfile.whatsapp_id, "whatsapp_id", hints.whatsapp_id, fields), False
        if channel == "instagram":
            return await self._by_native_id(
                CitizenProfile.instagram_user_id, "instagram_user_id", hints.instagram_user_id, fields
            ), False
        return await self._by_phone_or_email(phone, email, fields)

    async def _by_native_id(self, column, key: str, native_id: str | None, fields: dict) -> CitizenProfile:
        if not native_id:
            raise ValueError(f"{key} is required for this channel")

        existing = await self._one_by(column, native_id)
        if existing is not None:
            await self._merge(existing, fields)
            return existing

        # Unique contact values that already belong to someone else stay off the new profile
        if fields["phone_e164"] and await self._is_taken(CitizenProfile.phone_e164, fields["phone_e164"]):
            fields = {**fields, "phone_e164": None}
        if fields["email"] and await self._is_taken(CitizenProfile.email, fields["email"]):
            fields = {**fields, "email": None}
        return await self._create(**{key: native_id}, **fields)

    async def _by_phone_or_email(self, phone: str | None, email: str | None, fields: dict) -> tuple[CitizenProfile, bool]:
        existing = await self._one_by(CitizenProfile.phone_e164, phone)
        conflict = False

        if existing is None and email:
            by_email = await self._one_by(CitizenProfile.email, email)
            if by_email is not None:
                if phone and by_email.phone_e164 and by_email.phone_e164 != phone:
                    conflict = True
                    logger.warning(
                        "Citizen identity conflict: email matches profile %s with a different phone",
                        by_email.id,
                    )
                    return await self._create(**{**fields, "email": None}), conflict
                existing = by_email

        if existing is None:
            return await self._create(**fields), conflict

        await self._merge(existing, fields)
        return existing, conflict

    async def _create(self, **values) -> CitizenProfile:
        profile = CitizenProfile(**values)
        self.session.add(profile)
        await self.session.flush()
        logger.info("Created citizen profile %s via %s", profile.id, profile.consent_source)
        return profile

    async def _merge(self, profile: CitizenProfile, fields: dict) -> None:
        """Backfill empty fields only; set values are never overwritten."""
        changed = False
        for name in _MERGEABLE:
            value = fields.get(name)
            if value is None or getattr(profile, name) is not None:
                continue
            if name == "email" and await self._is_taken(CitizenProfile.email, value, profile.id):
                continue
            if name == "phone_e164" and await self._is_taken(CitizenProfile.phone_e164, value, profile.id):
                continue
            setattr(profile, name, value)
            changed = True
        if changed:
            await self.session.flush()

    # ── Staff edits ──

    async def update_fields(self, citizen_id: str, ctx: RequestContext, **updates) -> CitizenProfile:
        """
        Overwrite contact fields on a profile and re-mirror them onto its cases.

        Raises:
            NotFoundError: unknown citizen
            ValueError: invalid email/phone, or a value owned by another profile
        """
        profile = await self.session.get(CitizenProfile, citizen_id)
        if profile is None:
            raise NotFoundError("Citizen", citizen_id)

        clean: dict = {}
        for name in _EDITABLE:
            if name not in updates or updates[name] is None:
                continue
            value = updates[name]
            if name == "email":
                value = normalize_email(value)
                if value is None:
                    raise ValueError("Invalid email")
                if await self._is_taken(CitizenProfile.email, value, profile.id):
                    raise ValueError("Email already belongs to another citizen")
            elif name == "phone_e164":
                value = normalize_phone_e164(value)
                if value is None:
                    raise ValueError("Invalid phone; expected E.164 such as +5586999999999")
                if await self._is_taken(CitizenProfile.phone_e164, value, profile.id):
                    raise ValueError("Phone already belongs to another citizen")
            else:
                value = value.strip()
            clean[name] = value

        old = {name: getattr(profile, name) for name in clean}
        for name, value in clean.items():
            setattr(profile, name, value)
        await self.session.flush()

        cases = list((await self.session.execute(select(Case).where(Case.citizen_id == profile.id))).scalars())
        for case in cases:
            mirror_onto_case(case, profile)
        if cases and clean:
            await self.session.execute(
                update(MissingField)
                .where(
                    MissingField.case_id.in_([c.id for c in cases]),
                    MissingField.field_name.in_(list(clean)),
                )
                .values(is_provided=True)
            )
        await self.session.flush()

        if clean:
            await AuditService(self.session).record("citizen", profile.id, "citizens.update", ctx, old=old, new=clean)
        return profile

