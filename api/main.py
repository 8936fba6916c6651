"""
api/main.py -- FastAPI application entry point for membergate.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter
  4. SessionMiddleware     -- holds the OAuth state between redirect and callback

Lifespan builds the stores and services once and hangs them on app.state;
route handlers read them from request.app.state. Shutdown cancels the purge
task and closes the stores in reverse order.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.middleware.sessions import SessionMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.members import router as members_router
from auth.delivery import LoggingCodeSender
from auth.errors import AuthError, ErrorKind, StorageError
from auth.oauth import build_oauth_registry
from auth.service import AuthService
from auth.store import MemberStore, VerificationStore
from auth.tokens import TokenConfig, TokenEngine
from auth.verification import VerificationService
from core.config import get_settings

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("membergate.api")

# ---------------------------------------------------------------------------
# Error kind -> HTTP status
# ---------------------------------------------------------------------------

_STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.DUPLICATE_MEMBER: 409,
    ErrorKind.NOT_FOUND_USER: 401,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.NOT_COMPLETE_AUTH: 403,
    ErrorKind.INVALID_AUTH: 400,
    ErrorKind.EXPIRED_AUTH: 410,
    ErrorKind.INVALID_VERIF_CODE: 400,
    ErrorKind.EXPIRED_REFRESH_TOKEN: 401,
    ErrorKind.EXPIRED_TOKEN: 401,
    ErrorKind.MALFORMED_TOKEN: 401,
    ErrorKind.SAME_PASSWORD: 400,
    ErrorKind.DIFFERENT_PASSWORD: 400,
    ErrorKind.SAME_NICKNAME: 409,
    ErrorKind.OAUTH_FAILED: 400,
    ErrorKind.STORAGE_ERROR: 500,
}

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------

_PURGE_INTERVAL_SECONDS = 60 * 60


async def _purge_loop(app: FastAPI, max_age: timedelta) -> None:
    """Delete verification attempts older than max_age once an hour.

    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and ends the loop. A failed purge is logged and retried on
    the next tick; it never takes the server down.
    """
    while True:
        await asyncio.sleep(_PURGE_INTERVAL_SECONDS)
        try:
            removed = await asyncio.to_thread(app.state.verifier.purge_stale, max_age)
        except StorageError:
            logger.exception("Verification purge failed")
            continue
        if removed:
            logger.info("Purged %d stale verification attempts", removed)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build stores and services on startup, tear them down on shutdown.

    Startup order matters:
      1. MemberStore first -- owns the engine and creates the tables.
      2. VerificationStore shares that engine.
      3. Services are composed from the stores and the token engine.
      4. Purge task last -- references app.state.verifier.
    """
    settings = get_settings()
    logger.info("membergate API starting up")

    member_store = MemberStore(settings.database_url, timeout=settings.store_timeout_seconds)
    verification_store = VerificationStore(engine=member_store.engine)
    token_engine = TokenEngine(TokenConfig.from_settings(settings))
    verifier = VerificationService(
        verification_store,
        window=timedelta(seconds=settings.verification_window_seconds),
        code_length=settings.verification_code_length,
    )

    app.state.member_store = member_store
    app.state.verification_store = verification_store
    app.state.token_engine = token_engine
    app.state.verifier = verifier
    app.state.auth_service = AuthService(
        member_store,
        token_engine,
        verifier,
        sender=LoggingCodeSender(reveal_code=settings.debug),
    )
    app.state.oauth = build_oauth_registry(settings)
    logger.info("Auth initialized")

    app.state.purge_task = asyncio.create_task(
        _purge_loop(app, timedelta(hours=settings.verification_purge_hours))
    )

    yield

    app.state.purge_task.cancel()
    verification_store.close()
    member_store.close()
    logger.info("membergate API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="membergate API",
    description="Member registration, email verification, JWT login and OAuth sign-in.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() wraps the existing stack, so the last call is outermost.
# Register innermost first: Session -> SlowAPI -> CORS -> TrustedHost.
# ---------------------------------------------------------------------------

# SessionMiddleware is required by authlib to store the OAuth state value
# between the authorization redirect and the callback [CSRF].
app.add_middleware(
    SessionMiddleware,
    secret_key=get_settings().secret_key,
    https_only=get_settings().secure_cookies,
)

app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://localhost:3000", "http://127.0.0.1"],
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=["localhost", "127.0.0.1", "*.localhost", "testserver"],
)

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
app.include_router(members_router, prefix="/api/v1", tags=["Members"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Map a typed domain failure to its status code and error envelope.

    The kind is the envelope's code, so clients branch on it directly.
    StorageError is reported opaquely; the driver error goes to the log only.
    """
    if isinstance(exc, StorageError):
        logger.error("Storage failure on %s %s: %s", request.method, request.url.path, exc.message)
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(
                error=ErrorDetail(code=exc.kind.value, message="A storage error occurred.")
            ).model_dump(),
        )
    return JSONResponse(
        status_code=_STATUS_BY_KIND.get(exc.kind, 400),
        content=ErrorResponse(error=ErrorDetail(code=exc.kind.value, message=exc.message)).model_dump(),
    )


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
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

    get_current_member raises HTTPException with a {"code", "message"} dict as
    detail; that dict is used directly as the error field.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=getattr(exc, "headers", None),
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

    The raw exception is written to the log only, never to the response body.
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
# Defined directly in main.py so it is reachable regardless of router
# registration state. Not rate limited.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"], response_model=HealthResponse)
def health(request: Request) -> HealthResponse:
    """Return API liveness, version and database reachability."""
    store: MemberStore = request.app.state.member_store
    db_ok = store.ping()
    return HealthResponse(
        status="healthy" if db_ok else "degraded",
        version=VERSION,
        components={"database": "ok" if db_ok else "unavailable"},
    )
