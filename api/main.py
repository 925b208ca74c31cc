"""
api/main.py -- FastAPI application entry point for CampusGuard.

Exposes the account security subsystem (credentials, tokens, rate limits,
device lock) over HTTP under /api/v1.

Run with:      uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. log_requests          -- one log line per request, including rejections
  2. global_rate_limit     -- "global" rate class on every non-GET request
  3. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  4. CORSMiddleware        -- adds CORS headers for allowed browser origins

Per-route rate classes, authentication, roles and the device gate are not
middleware; they run in the guard() dependency (api/guards.py).

Lifespan builds the stores and services from Settings, publishes them on
app.state, and tears them down symmetrically. Tests swap the lifespan and
call install_services() with their own stores.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from limits.storage import Storage
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.envelope import deny_error, error_body, error_response, ok, rate_limit_headers
from api.guards import client_ip
from api.models import Envelope, HealthData
from api.routes.v1.auth import router as auth_router
from api.routes.v1.devices import router as devices_router
from auth.credentials import CredentialAuthenticator
from auth.issuer import TokenIssuer
from auth.store import AuthStore
from core.clock import Clock, utc_now
from core.config import Settings, get_settings
from core.outcomes import AuthError, Deny
from devices.policy import DeviceLockPolicy
from devices.store import DeviceStore
from ratelimit.limiter import RateLimiter
from ratelimit.policies import GLOBAL, policies_from_settings
from ratelimit.store import build_counter_store
from services.notifications import LoggingNotifier, NotificationsService
from services.subscriptions import InMemorySubscriptions, SubscriptionsService

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("campusguard.api")

_settings = get_settings()

# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def install_services(
    app: FastAPI,
    settings: Settings,
    *,
    auth_store: AuthStore,
    device_store: DeviceStore,
    counter_store: Storage,
    subscriptions: SubscriptionsService,
    notifier: NotificationsService,
    clock: Clock = utc_now,
) -> None:
    """Build the four security components and publish everything on app.state.

    Route handlers and guards only ever read from app.state; nothing else
    holds a reference to a store.
    """
    app.state.settings = settings
    app.state.auth_store = auth_store
    app.state.device_store = device_store
    app.state.counter_store = counter_store
    app.state.subscriptions = subscriptions
    app.state.notifier = notifier
    app.state.rate_limiter = RateLimiter(counter_store, policies_from_settings(settings))
    app.state.authenticator = CredentialAuthenticator(
        auth_store,
        notifier,
        max_failed_logins=settings.max_failed_logins,
        lockout_seconds=settings.lockout_seconds,
        clock=clock,
    )
    app.state.issuer = TokenIssuer(
        auth_store,
        access_ttl_seconds=settings.access_token_ttl_seconds,
        refresh_ttl_seconds=settings.refresh_token_ttl_seconds,
        clock=clock,
    )
    app.state.device_policy = DeviceLockPolicy(
        device_store,
        subscriptions,
        notifier,
        warn_at=settings.device_warn_at,
        lock_at=settings.device_lock_at,
    )


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage stores and services across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown.
    """
    settings = get_settings()
    logger.info("CampusGuard API starting up")
    install_services(
        app,
        settings,
        auth_store=AuthStore(settings.database_url),
        device_store=DeviceStore(settings.database_url),
        counter_store=build_counter_store(settings.redis_url),
        subscriptions=InMemorySubscriptions(),
        notifier=LoggingNotifier(),
    )

    yield

    app.state.device_store.close()
    app.state.auth_store.close()
    logger.info("CampusGuard API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="CampusGuard API",
    description="Account security and session management: login, token rotation, rate limits and device lock.",
    version=VERSION,
    lifespan=lifespan,
    docs_url="/docs" if _settings.debug else None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() and @app.middleware both insert at the outside of the
# stack, so the last one registered sees the request first.
# ---------------------------------------------------------------------------

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization", "X-Device-Fingerprint"],
    expose_headers=["Retry-After", "RateLimit-Limit", "RateLimit-Remaining", "RateLimit-Reset", "X-Device-Warning"],
    max_age=3600,
)

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)


@app.middleware("http")
async def global_rate_limit(request: Request, call_next):
    """Apply the "global" rate class to every state-changing request.

    Runs before routing, so even a request to an unknown path counts. GET,
    HEAD and OPTIONS are exempt.
    """
    if request.method in ("GET", "HEAD", "OPTIONS"):
        return await call_next(request)
    decision = await run_in_threadpool(request.app.state.rate_limiter.check, client_ip(request), GLOBAL)
    if isinstance(decision, Deny):
        error, headers, data = deny_error(decision)
        return error_response(error, headers=headers, data=data)
    response = await call_next(request)
    # A route-level rate class already set its own, tighter headers.
    for name, value in rate_limit_headers(decision).items():
        if name not in response.headers:
            response.headers[name] = value
    return response


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

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(devices_router, prefix="/api/v1", tags=["Devices"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# Every handler renders the same Envelope so clients parse errors uniformly.
# ---------------------------------------------------------------------------


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Render HTTPException as an error envelope, keeping its headers.

    Routes and guards raise api.envelope.http_error(), whose detail is a
    {"code", "message", "data"?} dict. Anything else (Starlette's own 404/405)
    gets a generic http_<status> code.
    """
    if isinstance(exc.detail, dict):
        body = error_body(exc.status_code, exc.detail["code"], exc.detail["message"], exc.detail.get("data"))
    else:
        body = error_body(exc.status_code, f"http_{exc.status_code}", str(exc.detail))
    return JSONResponse(status_code=exc.status_code, content=body, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with field locations and messages only.

    The submitted values are left out: a login body carries a password.
    """
    errors = [{"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg", "")} for err in exc.errors()]
    return JSONResponse(
        status_code=422,
        content=error_body(422, "validation_error", "Request validation failed.", errors),
    )


@app.exception_handler(OperationalError)
async def database_error_handler(request: Request, exc: OperationalError) -> JSONResponse:
    """Database unreachable or locked: refuse the request (503) rather than guess."""
    logger.error("Database error on %s %s: %s", request.method, request.url.path, type(exc).__name__)
    return error_response(AuthError.SERVICE_UNAVAILABLE, headers={"Retry-After": "30"})


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=error_body(500, "internal_error", "An unexpected error occurred."),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable.
# GET, so the global rate class never applies.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", response_model=Envelope, response_model_by_alias=True, tags=["Health"])
def health(request: Request, response: Response) -> Envelope:
    """Return liveness, version and database reachability."""
    components = {"app": "ok"}
    try:
        request.app.state.auth_store.ping()
        request.app.state.device_store.ping()
        components["database"] = "ok"
    except SQLAlchemyError:
        logger.warning("Health check: database unreachable")
        components["database"] = "unavailable"

    if components["database"] != "ok":
        response.status_code = 503
        envelope = ok(HealthData(status="degraded", version=VERSION, components=components), status_code=503)
        return envelope.model_copy(update={"success": False, "message": "Degraded"})
    return ok(HealthData(version=VERSION, components=components))
