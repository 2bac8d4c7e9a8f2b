"""In-memory stand-ins for the external collaborators."""

from ouvidoria.services.automation import AutomationClient
from ouvidoria.services.job_queue import DelayedDelivery
from ouvidoria.services.outbound import DeliveryResult, OutboundSender


class FakeAutomation(AutomationClient):
    def __init__(self):
        self.events: list[tuple[str, dict]] = []

    async def notify(self, event_type: str, payload: dict) -> bool:
        self.events.append((event_type, payload))
        return True


class FakeOutbound(OutboundSender):
    def __init__(self, ok: bool = True, error: str = "provider unavailable"):
        self.ok = ok
        self.error = error
        self.sent: list[tuple[str, str]] = []

    async def send(self, case, text: str) -> DeliveryResult:
        self.sent.append((case.id, text))
        if self.ok:
            return DeliveryResult(ok=True)
        return DeliveryResult(ok=False, error=self.error)


class FakeDelivery(DelayedDelivery):
    def __init__(self):
        self.scheduled: dict[str, tuple] = {}

    async def schedule_at(self, key, when, payload) -> None:
        self.scheduled[key] = (when, payload)


class FakeLimiter:
    def __init__(self, limit: int = 10, window: int = 3600):
        self.limit = limit
        self.window = window
        self.hits: dict[str, int] = {}

    async def hit(self, key: str) -> tuple[bool, int]:
        self.hits[key] = self.hits.get(key, 0) + 1
        return self.hits[key] <= self.limit, self.hits[key]


class FailingDelivery(DelayedDelivery):
    async def schedule_at(self, key, when, payload) -> None:
        raise ConnectionError("redis unreachable")


class FailingAutomation(AutomationClient):
    async def notify(self, event_type: str, payload: dict) -> bool:
        raise RuntimeError("automation client misconfigured")
