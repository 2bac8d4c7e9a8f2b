"""
Automation platform (n8n) collaborator.

Outbound events are JSON bodies signed with HMAC-SHA256 over the raw body
and sent in the `x-n8n-signature` header; inbound callbacks are verified the
same way. Delivery is best-effort: a failing or slow endpoint is logged and
never breaks the intake or routing that emitted the event.
"""

import hashlib
import hmac
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone

import httpx

from ouvidoria.config import settings
from ouvidoria.middleware.metrics import automation_notify_failures_total

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-n8n-signature"


def sign_payload(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: str | None, secret: str) -> bool:
    if not secret or not signature:
        return False
    provided = signature.removeprefix("sha256=")
    return hmac.compare_digest(sign_payload(body, secret), provided)


class AutomationClient(ABC):
    @abstractmethod
    async def notify(self, event_type: str, payload: dict) -> bool:
        """Emit an event. Returns False when it could not be delivered."""


class HttpAutomationClient(AutomationClient):
    def __init__(self, endpoint_url: str | None = None, secret: str | None = None, timeout: float | None = None):
        self.endpoint_url = endpoint_url if endpoint_url is not None else settings.automation_endpoint_url
        self.secret = secret if secret is not None else settings.automation_hmac_secret
        self.timeout = timeout or settings.automation_timeout_seconds

    async def notify(self, event_type: str, payload: dict) -> bool:
        if not self.endpoint_url:
            logger.debug("Automation endpoint not configured; dropping %s", event_type)
            return False

        body = json.dumps(
            {
                "event_type": event_type,
                "payload": payload,
                "created_at": datetime.now(timezone.utc).isoformat(),
            },
            default=str,
        ).encode()
        headers = {"Content-Type": "application/json", SIGNATURE_HEADER: sign_payload(body, self.secret)}

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(self.endpoint_url, content=body, headers=headers)
            if resp.status_code >= 400:
                logger.warning("Automation endpoint rejected %s: HTTP %s", event_type, resp.status_code)
                return False
        except httpx.HTTPError as exc:
            logger.warning("Automation notify failed for %s: %s", event_type, exc)
            return False
        return True


async def notify_quietly(client: AutomationClient, event_type: str, payload: dict) -> bool:
    """`client.notify` that logs and counts a raising client instead of propagating."""
    try:
        return await client.notify(event_type, payload)
    except Exception as exc:
        automation_notify_failures_total.labels(event_type=event_type).inc()
        logger.error(
            "Automation notify raised for %s: %s", event_type, exc,
            exc_info=True, extra={"case_id": payload.get("case_id")},
        )
        return False
