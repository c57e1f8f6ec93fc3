"""
api/main.py -- FastAPI application entry point for NetPulse.

Exposes device management, ticket listing and poller control over HTTP, and
the real-time event stream over WebSocket.

Run with:      python main.py serve
               uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces rate limits from api.limiter

Lifespan handles startup (stores, hub, poller) and shutdown (stop the poller,
close the stores) symmetrically.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.devices import router as devices_router
from api.routes.v1.monitoring import router as monitoring_router
from api.routes.v1.realtime import router as realtime_router
from api.routes.v1.realtime import ws_router
from api.routes.v1.tickets import router as tickets_router
from core.config import get_settings
from core.poller import create_poller
from inventory.store import DeviceStore
from realtime.hub import NotificationHub
from tickets.store import TicketStore

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("netpulse.api")

settings = get_settings()


def open_stores() -> tuple[DeviceStore, TicketStore]:
    """Open both stores on DATABASE_URL, or on their per-module SQLite files."""
    if settings.database_url:
        return DeviceStore(settings.database_url), TicketStore(settings.database_url)
    return DeviceStore(), TicketStore()


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Stores first -- the poller reads and writes them.
      2. Hub second -- the reconciler and ticketer publish through it.
      3. Poller last -- depends on both, and may start polling immediately.
    Shutdown runs in reverse: the poller is stopped before the stores close
    so no in-flight poll writes to a disposed engine.
    """
    logger.info("NetPulse API starting up")
    app.state.devices, app.state.tickets = open_stores()
    app.state.hub = NotificationHub(queue_size=settings.subscriber_queue_size)
    app.state.poller = create_poller(settings, app.state.devices, app.state.tickets, app.state.hub)
    if settings.monitoring_autostart:
        app.state.poller.start()
    else:
        logger.info("Monitoring autostart disabled; POST /api/v1/monitoring/start to begin")

    yield

    await app.state.poller.stop()
    app.state.devices.close()
    app.state.tickets.close()
    logger.info("NetPulse API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="NetPulse API",
    description="SNMP device polling, health classification and real-time alerting.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(devices_router, prefix="/api/v1", tags=["Devices"])
app.include_router(tickets_router, prefix="/api/v1", tags=["Tickets"])
app.include_router(monitoring_router, prefix="/api/v1", tags=["Monitoring"])
app.include_router(realtime_router, prefix="/api/v1", tags=["Realtime"])
app.include_router(ws_router)

# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error and a Retry-After header."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise HTTPException with detail=ErrorDetail(...).model_dump()
    (a dict). A dict detail is used as the error field directly.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py so it is always reachable. No authentication:
# load balancers and uptime checks must be able to call it.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version, and the state of the database and poller."""
    db_ok = request.app.state.devices.ping()
    components = {
        "app": "ok",
        "database": "ok" if db_ok else "unavailable",
        "poller": "running" if request.app.state.poller.running else "stopped",
    }
    return HealthResponse(status="healthy" if db_ok else "degraded", version=VERSION, components=components)
