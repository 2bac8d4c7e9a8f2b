"""
Prometheus metrics.

HTTP request counters/histograms collected by `PrometheusMiddleware`, plus
the domain counters incremented by the intake, routing, SLA, audit and
agent services.
"""

import re
import time

from prometheus_client import Counter, Histogram
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

# ── HTTP metrics ─────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status_code"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── Intake & routing ─────────────────────────────────────────────────────────

cases_ingested_total = Counter(
    "cases_ingested_total",
    "Cases created by the intake pipeline",
    ["channel", "routed"],
)

deduplicated_deliveries_total = Counter(
    "deduplicated_deliveries_total",
    "Inbound provider deliveries dropped as duplicates",
    ["channel"],
)

routing_rule_matches_total = Counter(
    "routing_rule_matches_total",
    "Routing rule matches (fallback applications included)",
    ["rule"],
)

# ── SLA ──────────────────────────────────────────────────────────────────────

sla_breaches_total = Counter(
    "sla_breaches_total",
    "Cases flagged as SLA-breached",
)

sla_timer_failures_total = Counter(
    "sla_timer_failures_total",
    "SLA timers that could not be handed to the delayed-delivery store",
)

# ── Audit ────────────────────────────────────────────────────────────────────

audit_write_failures_total = Counter(
    "audit_write_failures_total",
    "Audit or security-event rows that could not be written",
    ["kind"],
)

# ── Automation ───────────────────────────────────────────────────────────────

automation_notify_failures_total = Counter(
    "automation_notify_failures_total",
    "Automation events that raised instead of being delivered",
    ["event_type"],
)

# ── Agent ────────────────────────────────────────────────────────────────────

agent_actions_total = Counter(
    "agent_actions_total",
    "Agent-proposed actions by outcome",
    ["type", "outcome"],
)

agent_handoffs_total = Counter(
    "agent_handoffs_total",
    "Agent results forced into human triage",
)


_ID_SEGMENT = re.compile(r"^([0-9a-f-]{32,36}|[A-Z0-9]{4}-[A-Z0-9]{4}-[A-Z0-9]{4}|\d+)$")


def _normalize_path(path: str) -> str:
    """Collapse ids and protocols to keep label cardinality bounded.

    e.g. /api/cases/3f2a...c1/audit → /api/cases/{id}/audit
    """
    parts = path.strip("/").split("/")
    return "/" + "/".join("{id}" if _ID_SEGMENT.match(p) else p for p in parts)


class PrometheusMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        if request.url.path == "/metrics":
            return await call_next(request)

        method = request.method
        path = _normalize_path(request.url.path)

        start = time.time()
        response = await call_next(request)
        duration = time.time() - start

        http_requests_total.labels(method=method, path=path, status_code=response.status_code).inc()
        http_request_duration_seconds.labels(method=method, path=path).observe(duration)
        return response
