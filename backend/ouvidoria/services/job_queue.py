"""
Delayed delivery backed by Redis.

SLA timers live in one sorted set scored by due time (epoch seconds) and
keyed by case id, with the payload in a side hash. Scheduling the same key
again overwrites the pending timer, which is what re-arming needs. The
worker (`worker.py`) drains due keys; delivery is at-least-once, so
consumers must be idempotent.
"""

import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone

import redis.asyncio as aioredis

from ouvidoria.config import settings

logger = logging.getLogger(__name__)

TIMER_ZSET = "ouvidoria:sla:timers"
PAYLOAD_KEY_PREFIX = "ouvidoria:sla:timer:"


def _epoch(when: datetime) -> float:
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return when.timestamp()


async def get_redis() -> aioredis.Redis:
    return aioredis.from_url(settings.redis_url, decode_responses=True)


class DelayedDelivery(ABC):
    """Schedules a payload for delivery at (or after) a point in time."""

    @abstractmethod
    async def schedule_at(self, key: str, when: datetime, payload: dict) -> None:
        ...


class RedisDelayedDelivery(DelayedDelivery):
    async def schedule_at(self, key: str, when: datetime, payload: dict) -> None:
        r = await get_redis()
        try:
            pipe = r.pipeline()
            pipe.set(f"{PAYLOAD_KEY_PREFIX}{key}", json.dumps(payload, default=str))
            pipe.zadd(TIMER_ZSET, {key: _epoch(when)})
            await pipe.execute()
        finally:
            await r.aclose()

    async def pop_due(self, now: datetime, batch_size: int = 100) -> list[dict]:
        """Claim up to `batch_size` due timers. A key removed by another worker is skipped."""
        r = await get_redis()
        claimed: list[dict] = []
        try:
            keys = await r.zrangebyscore(TIMER_ZSET, 0, _epoch(now), start=0, num=batch_size)
            for key in keys:
                if not await r.zrem(TIMER_ZSET, key):
                    continue
                raw = await r.getdel(f"{PAYLOAD_KEY_PREFIX}{key}")
                payload = json.loads(raw) if raw else {"case_id": key}
                claimed.append(payload)
        finally:
            await r.aclose()
        return claimed
