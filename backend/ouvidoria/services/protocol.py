"""
Case protocol numbers.

A protocol is the reference a citizen quotes back to us: 12 characters from
an alphabet without look-alikes (no I, O, 0, 1), drawn from the `secrets`
CSPRNG and shown as XXXX-XXXX-XXXX. Uniqueness is confirmed against the
cases table before use.
"""

import logging
import re
import secrets

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ouvidoria.errors import ProtocolExhaustedError
from ouvidoria.models import Case

logger = logging.getLogger(__name__)

PROTOCOL_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
PROTOCOL_LENGTH = 12
GROUP_SIZE = 4
MAX_ATTEMPTS = 10

_PROTOCOL_RE = re.compile(rf"^[{PROTOCOL_ALPHABET}]{{4}}-[{PROTOCOL_ALPHABET}]{{4}}-[{PROTOCOL_ALPHABET}]{{4}}$")


def format_protocol(raw: str) -> str:
    return "-".join(raw[i:i + GROUP_SIZE] for i in range(0, len(raw), GROUP_SIZE))


def random_protocol() -> str:
    raw = "".join(secrets.choice(PROTOCOL_ALPHABET) for _ in range(PROTOCOL_LENGTH))
    return format_protocol(raw)


def parse_protocol(value: str | None) -> str | None:
    """Canonicalise user input ("abcd efgh-jkmn" → "ABCD-EFGH-JKMN"); None if not a protocol."""
    if not value:
        return None
    compact = re.sub(r"[\s-]", "", value).upper()
    if len(compact) != PROTOCOL_LENGTH or any(ch not in PROTOCOL_ALPHABET for ch in compact):
        return None
    return format_protocol(compact)


def is_valid_protocol(value: str | None) -> bool:
    return bool(value) and _PROTOCOL_RE.match(value) is not None


async def generate_unique_protocol(session: AsyncSession, max_attempts: int = MAX_ATTEMPTS, generator=random_protocol) -> str:
    for attempt in range(1, max_attempts + 1):
        candidate = generator()
        taken = await session.scalar(select(Case.id).where(Case.protocol == candidate))
        if taken is None:
            return candidate
        logger.warning("Protocol collision on attempt %d", attempt)
    raise ProtocolExhaustedError(f"No unique protocol after {max_attempts} attempts")
