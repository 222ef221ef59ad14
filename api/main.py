"""
api/main.py -- FastAPI application entry point for Staffwise.

Exposes the identity subsystem over HTTP: the JSON API under /api/v1 and,
once asgi.py mounts it, the browser-facing form routes from web/.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter
  4. SessionMiddleware     -- signed cookie for OAuth state, CSRF token, toasts

Lifespan handles startup (store, provider registry, mail transport, purge
task) and shutdown (cancel purge task, close DB connection) symmetrically.

Exception handlers turn auth.errors into responses in one place:
  Unauthenticated      -> 302 to the login URL (401 JSON under /api/)
  AlreadyAuthenticated -> 302 to /
  Forbidden            -> 403
  CsrfMismatch,
  BotSuspected         -> 400, generic message
  NotFound             -> 404
  anything else        -> 500, generic message, full traceback in the log
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse, RedirectResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.sessions import SessionMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.dependencies import require_user_id
from auth.errors import AlreadyAuthenticated, BotSuspected, CsrfMismatch, Forbidden, NotFound, Unauthenticated
from auth.providers import build_registry
from auth.service import IdentityService
from auth.store import UserStore
from core.config import get_settings
from core.mailer import build_transport

_VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("staffwise.api")

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Purge expired sessions, codes and verification sessions every hour.

    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(60 * 60)
        purged = app.state.identity.sessions.purge_expired()
        if purged:
            logger.info("Purged %d expired session/verification rows", purged)


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown. The purge task is created last because it reads
    app.state.identity.
    """
    logger.info("Staffwise starting up")
    store = UserStore()
    registry = build_registry()
    app.state.user_store = store
    app.state.identity = IdentityService(store, registry, build_transport())
    logger.info("Identity initialized (providers: %s)", ", ".join(p["name"] for p in registry.enabled()) or "none")
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    app.state.user_store.close()
    logger.info("Staffwise shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Staffwise API",
    description="Identity, session and authorization service for the Staffwise portal.",
    version=_VERSION,
    lifespan=lifespan,
    # Disable built-in /docs and /redoc so we can add auth protection.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() wraps the current stack, so the LAST call ends up
# outermost. Registered innermost-first: Session -> SlowAPI -> CORS ->
# TrustedHost.
# ---------------------------------------------------------------------------

_settings = get_settings()

# SessionMiddleware stores the OAuth state between the authorization redirect
# and the callback (authlib's CSRF protection for the code flow), plus the
# form CSRF token and pending toasts. Its cookie must not collide with the
# login session cookie.
app.add_middleware(
    SessionMiddleware,
    secret_key=_settings.secret_key,
    session_cookie="staffwise_state",
    same_site="lax",
    https_only=_settings.secure_cookies,
)

app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Content-Type", "Authorization", "X-CSRF-Token"],
    max_age=3600,
)

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

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

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
# Web router is mounted by asgi.py, not here.


# ---------------------------------------------------------------------------
# Auth-protected API documentation
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
async def docs(user_id: int = Depends(require_user_id)):
    """Swagger UI -- requires authentication."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="Staffwise API")


@app.get("/redoc", include_in_schema=False)
async def redoc(user_id: int = Depends(require_user_id)):
    """ReDoc UI -- requires authentication."""
    return get_redoc_html(openapi_url="/openapi.json", title="Staffwise API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# All JSON handlers return the same ErrorResponse envelope so API clients can
# parse errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


def _is_api(request: Request) -> bool:
    return request.url.path.startswith("/api/")


@app.exception_handler(Unauthenticated)
async def unauthenticated_handler(request: Request, exc: Unauthenticated):
    """Browser routes bounce to the login page; API clients get a 401."""
    if _is_api(request):
        return _error(401, "unauthorized", "Authentication required.")
    return RedirectResponse(exc.redirect_to, status_code=302)


@app.exception_handler(AlreadyAuthenticated)
async def already_authenticated_handler(request: Request, exc: AlreadyAuthenticated):
    return RedirectResponse(exc.redirect_to, status_code=302)


@app.exception_handler(Forbidden)
async def forbidden_handler(request: Request, exc: Forbidden) -> JSONResponse:
    logger.info("Forbidden %s %s (required %s)", request.method, request.url.path, exc.required)
    return _error(403, "forbidden", "Unauthorized", detail=f"required {exc.required}")


@app.exception_handler(CsrfMismatch)
@app.exception_handler(BotSuspected)
async def bad_form_handler(request: Request, exc: Exception) -> JSONResponse:
    """Same answer for both so a bot cannot tell which check it tripped."""
    logger.warning("Rejected form post to %s: %s", request.url.path, exc)
    return _error(400, "bad_request", "Form submission failed.")


@app.exception_handler(NotFound)
async def not_found_handler(request: Request, exc: NotFound) -> JSONResponse:
    return _error(404, "not_found", "Not found.")


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded.

    Retry-After tells clients exactly how many seconds to wait before retrying.
    """
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error(429, "rate_limited", "Too many requests.", detail=str(exc))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return _error(422, "validation_error", "Request validation failed.", detail=str(exc.errors()))


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Registered on the Starlette base class so router-level 404/405 use the
    same envelope as HTTPExceptions raised in route handlers.

    When detail is already a structured dict, use it directly as the error
    field rather than stringifying it -- str(dict) produces a Python repr.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# No rate limit applied -- health checks from load balancers and monitoring
# systems must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
async def health() -> HealthResponse:
    """Return API liveness and current version."""
    return HealthResponse(version=_VERSION)
