"""
Request context middleware.

Assigns every request an id (propagating an inbound X-Request-ID, which
provider webhooks and the automation platform send) and keeps it in a
ContextVar, together with the client address, so log lines and audit rows
written deep inside a service call can be correlated with the request.
"""

import time
import logging
from contextvars import ContextVar
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

logger = logging.getLogger(__name__)

_request_id_var: ContextVar[str] = ContextVar("request_id", default="")
_client_ip_var: ContextVar[str | None] = ContextVar("client_ip", default=None)


def get_request_id() -> str:
    return _request_id_var.get()


def get_client_ip() -> str | None:
    return _client_ip_var.get()


def client_ip_of(request: Request) -> str | None:
    """First hop of X-Forwarded-For when behind the proxy, else the socket peer."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    return request.client.host if request.client else None


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or uuid4().hex
        id_token = _request_id_var.set(request_id)
        ip_token = _client_ip_var.set(client_ip_of(request))

        start_time = time.time()
        try:
            response = await call_next(request)
        finally:
            duration_ms = round((time.time() - start_time) * 1000, 2)
            _client_ip_var.reset(ip_token)
            _request_id_var.reset(id_token)

        response.headers["X-Request-ID"] = request_id

        logger.info(
            "%s %s %s %.0fms",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            extra={"duration_ms": duration_ms},
        )
        return response
