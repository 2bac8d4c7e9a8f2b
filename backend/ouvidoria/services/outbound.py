"""
Outbound delivery to citizens.

Only WhatsApp (Meta Cloud API) is wired; other channels report a failed
delivery that staff can see and resend once a channel is configured. A send
never raises: the result says whether it went out and, if not, why.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

import httpx

from ouvidoria.config import settings
from ouvidoria.models import Case

logger = logging.getLogger(__name__)

CHANNEL_NOT_CONFIGURED = "Channel not configured for outbound"


@dataclass
class DeliveryResult:
    ok: bool
    error: str | None = None


class OutboundSender(ABC):
    @abstractmethod
    async def send(self, case: Case, text: str) -> DeliveryResult:
        ...


class MetaWhatsAppSender(OutboundSender):
    async def send(self, case: Case, text: str) -> DeliveryResult:
        if case.channel != "whatsapp":
            return DeliveryResult(ok=False, error=CHANNEL_NOT_CONFIGURED)
        if not settings.meta_phone_number_id or not settings.meta_access_token:
            return DeliveryResult(ok=False, error="Meta integration missing credentials")

        to = (case.citizen_phone or "").lstrip("+")
        try:
            async with httpx.AsyncClient(timeout=settings.outbound_timeout_seconds) as client:
                resp = await client.post(
                    f"{settings.meta_api_url}/{settings.meta_phone_number_id}/messages",
                    headers={"Authorization": f"Bearer {settings.meta_access_token}"},
                    json={
                        "messaging_product": "whatsapp",
                        "to": to,
                        "type": "text",
                        "text": {"body": text},
                    },
                )
        except httpx.HTTPError as exc:
            logger.warning("WhatsApp send failed for case %s: %s", case.id, exc, extra={"case_id": case.id})
            return DeliveryResult(ok=False, error=str(exc) or exc.__class__.__name__)

        if resp.status_code >= 400:
            return DeliveryResult(ok=False, error=resp.text[:1000])
        return DeliveryResult(ok=True)
