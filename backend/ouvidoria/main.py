import logging
import time
import traceback
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from ouvidoria.config import settings
from ouvidoria.database import engine
from ouvidoria.errors import (
    AccessDeniedError,
    InvalidTransitionError,
    NotFoundError,
    ProtocolExhaustedError,
)
from ouvidoria.middleware.logging_config import configure_logging

configure_logging(settings.log_level, settings.json_logs)

from ouvidoria.api.agent import router as agent_router  # noqa: E402
from ouvidoria.api.cases import router as cases_router  # noqa: E402
from ouvidoria.api.citizens import router as citizens_router  # noqa: E402
from ouvidoria.api.metrics import router as metrics_router  # noqa: E402
from ouvidoria.api.public import router as public_router  # noqa: E402
from ouvidoria.api.routing_rules import router as routing_rules_router  # noqa: E402
from ouvidoria.api.webhooks import router as webhooks_router  # noqa: E402

logger = logging.getLogger("ouvidoria")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: verify DB connection
    async with engine.begin() as conn:
        await conn.execute(text("SELECT 1"))
    logger.info("Ouvidoria API started (environment=%s)", settings.environment)
    yield
    # Shutdown
    await engine.dispose()


app = FastAPI(
    title="Ouvidoria Municipal",
    description="Citizen complaint intake, routing and case handling",
    version="0.1.0",
    lifespan=lifespan,
)

# ── CORS ─────────────────────────────────────────────────────────────────────
origins = [o.strip() for o in settings.allowed_origins.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
)

# ── Security headers middleware ──────────────────────────────────────────────
from ouvidoria.middleware.security_headers import SecurityHeadersMiddleware  # noqa: E402

app.add_middleware(SecurityHeadersMiddleware)

# ── Rate limiting middleware ─────────────────────────────────────────────────
from ouvidoria.middleware.rate_limit import RateLimitMiddleware  # noqa: E402

app.add_middleware(RateLimitMiddleware)

# ── Request context middleware (request ID + timing) ─────────────────────────
from ouvidoria.middleware.request_context import RequestContextMiddleware  # noqa: E402

app.add_middleware(RequestContextMiddleware)

# ── Prometheus metrics middleware ────────────────────────────────────────────
from ouvidoria.middleware.metrics import PrometheusMiddleware  # noqa: E402

app.add_middleware(PrometheusMiddleware)


# ── Domain error mapping ─────────────────────────────────────────────────────

@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(AccessDeniedError)
async def access_denied_handler(request: Request, exc: AccessDeniedError):
    return JSONResponse(status_code=403, content={"detail": str(exc)})


@app.exception_handler(InvalidTransitionError)
async def invalid_transition_handler(request: Request, exc: InvalidTransitionError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(ProtocolExhaustedError)
async def protocol_exhausted_handler(request: Request, exc: ProtocolExhaustedError):
    logger.error("Protocol space exhausted on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=503,
        content={"detail": "Could not allocate a protocol, please retry"},
        headers={"Retry-After": "1"},
    )


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Return detailed error info in development mode so 500s are debuggable."""
    tb = traceback.format_exc()
    logger.error(
        "Unhandled %s on %s %s: %s\n%s",
        type(exc).__name__, request.method, request.url.path, exc, tb,
    )
    detail = f"{type(exc).__name__}: {exc}"
    if settings.environment == "development":
        return JSONResponse(
            status_code=500,
            content={"detail": detail, "traceback": tb.splitlines()[-5:]},
        )
    return JSONResponse(status_code=500, content={"detail": "Internal Server Error"})


# Register API routers
app.include_router(webhooks_router)
app.include_router(public_router)
app.include_router(cases_router)
app.include_router(citizens_router)
app.include_router(routing_rules_router)
app.include_router(agent_router)
app.include_router(metrics_router)


# ── Health check ─────────────────────────────────────────────────────────────

_health_cache: dict = {}
_health_cache_ts: float = 0.0
HEALTH_CACHE_TTL = 10.0  # seconds


@app.get("/api/health")
async def health_check():
    global _health_cache, _health_cache_ts

    now = time.time()
    if _health_cache and (now - _health_cache_ts) < HEALTH_CACHE_TTL:
        return _health_cache

    components: dict = {}

    # Database
    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
        components["database"] = {"status": "connected"}
    except Exception as exc:
        components["database"] = {"status": "disconnected", "error": str(exc)}

    # Redis (rate limits and SLA timers)
    try:
        r = aioredis.from_url(settings.redis_url, decode_responses=True)
        await r.ping()
        await r.aclose()
        components["redis"] = {"status": "connected"}
    except Exception as exc:
        components["redis"] = {"status": "disconnected", "error": str(exc)}

    db_ok = components["database"]["status"] == "connected"
    redis_ok = components["redis"]["status"] == "connected"

    if db_ok and redis_ok:
        overall = "healthy"
    elif not db_ok:
        overall = "unhealthy"
    else:
        overall = "degraded"

    result = {
        "status": overall,
        "environment": settings.environment,
        "components": components,
    }

    _health_cache = result
    _health_cache_ts = now
    return result
