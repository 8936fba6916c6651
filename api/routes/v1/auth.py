"""
api/routes/v1/auth.py -- Registration, login, token refresh and email verification endpoints.

Routes:
  POST /api/v1/auth/login                    -- password login; returns token pair
  POST /api/v1/auth/join                     -- register a verified email
  POST /api/v1/auth/token                    -- refresh: trade the current refresh token for a new pair
  POST /api/v1/auth/email/request            -- issue a verification code
  POST /api/v1/auth/email/verify             -- check a verification code
  GET  /api/v1/auth/email/status             -- current verification status
  GET  /api/v1/auth/exists                   -- is this email registered
  GET  /api/v1/auth/providers                -- enabled OAuth providers (public)
  GET  /api/v1/auth/oauth/{provider}         -- redirect to provider
  GET  /api/v1/auth/oauth/{provider}/callback -- code exchange, OAuth login

Errors:
  Handlers do not catch AuthError. The app-level handler in api/main.py turns
  each ErrorKind into its status code and the {"error": {...}} envelope, so
  every failure reaches the client with its specific code.

Security:
  [H2] POST /login and POST /email/request are rate-limited per IP.
  [M5] Cache-Control: no-store on every response that carries tokens.
"""

from __future__ import annotations

import logging

from authlib.integrations.starlette_client import OAuthError
from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse
from pydantic import EmailStr

from api.limiter import LOGIN_LIMIT, VERIFICATION_LIMIT, limiter
from api.models import (
    AuthResponse,
    EmailRequest,
    EmailVerifyRequest,
    ExistsResponse,
    JoinRequest,
    LoginRequest,
    OAuthProviderInfo,
    RefreshRequest,
    TokenResponse,
    VerificationIssuedResponse,
    VerificationStatusResponse,
)
from auth.errors import OAuthFailed
from auth.models import PasswordCredential
from auth.oauth import get_enabled_providers, get_oauth_user_info
from auth.service import AuthService
from core.config import get_settings

logger = logging.getLogger("membergate.api.auth")

# Auth policy: every route in this module is public. Member-scoped routes live
# in api/routes/v1/members.py behind get_current_member.
router = APIRouter()


def _no_store(status_code: int, content: dict) -> JSONResponse:
    resp = JSONResponse(status_code=status_code, content=content)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Login, join, refresh
# ---------------------------------------------------------------------------


@limiter.limit(LOGIN_LIMIT)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=AuthResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password and return a fresh token pair.

    The same not_found_user error is returned for an unknown email and a wrong
    password, so the response does not reveal which emails are registered.
    """
    service: AuthService = request.app.state.auth_service
    result = service.login(body.email, body.password)
    return _no_store(200, AuthResponse.from_result(result).model_dump(mode="json"))


@router.post("/auth/join", response_model=AuthResponse, status_code=201)
def join(request: Request, body: JoinRequest) -> JSONResponse:
    """Register a member whose email has completed verification.

    Fails with duplicate_member if the email is registered (checked first),
    then not_complete_auth if the email is not verified.
    """
    service: AuthService = request.app.state.auth_service
    result = service.register(PasswordCredential(email=body.email, password=body.password), body.to_profile())
    return _no_store(201, AuthResponse.from_result(result).model_dump(mode="json"))


@router.post("/auth/token", response_model=TokenResponse)
def refresh_token(request: Request, body: RefreshRequest) -> JSONResponse:
    """Trade the member's current refresh token for a new pair.

    expired_refresh_token means the client must log in again. There is no
    automatic re-login.
    """
    service: AuthService = request.app.state.auth_service
    pair = service.refresh_access_token(body.member_id, body.refresh_token)
    return _no_store(200, TokenResponse.from_pair(pair).model_dump(mode="json"))


# ---------------------------------------------------------------------------
# Email verification
# ---------------------------------------------------------------------------


@limiter.limit(VERIFICATION_LIMIT)  # [H2] every call overwrites the pending code
@router.post("/auth/email/request", response_model=VerificationIssuedResponse, status_code=201)
def request_email_code(request: Request, body: EmailRequest) -> VerificationIssuedResponse:
    """Issue a verification code for an unregistered email.

    The code goes out through the configured CodeSender and is never included
    in the response. A new request supersedes any earlier code for the email.
    """
    service: AuthService = request.app.state.auth_service
    attempt = service.request_verification(body.email)
    return VerificationIssuedResponse(email=attempt.email, expires_at=attempt.issued_at + service.verifier.window)


@router.post("/auth/email/verify", response_model=VerificationStatusResponse)
def verify_email_code(request: Request, body: EmailVerifyRequest) -> VerificationStatusResponse:
    """Check a verification code.

    expired_auth is returned once the window has passed; the attempt is
    recorded as expired even though the request fails.
    """
    service: AuthService = request.app.state.auth_service
    service.verify_email(body.email, body.code)
    return VerificationStatusResponse(email=body.email, status="verified")


@router.get("/auth/email/status", response_model=VerificationStatusResponse)
def email_status(request: Request, email: EmailStr = Query(...)) -> VerificationStatusResponse:
    """Report the verification status for an email (null if no code was ever issued)."""
    service: AuthService = request.app.state.auth_service
    status = service.verification_status(email)
    return VerificationStatusResponse(email=email, status=status.value if status else None)


@router.get("/auth/exists", response_model=ExistsResponse)
def email_exists(request: Request, email: EmailStr = Query(...)) -> ExistsResponse:
    """Return whether a member is registered under the email."""
    service: AuthService = request.app.state.auth_service
    return ExistsResponse(email=email, exists=service.is_member(email))


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
async def list_providers() -> list[OAuthProviderInfo]:
    """Return the configured OAuth providers. Empty if no provider env vars are set."""
    return [OAuthProviderInfo(**p) for p in get_enabled_providers(get_settings())]


def _require_provider(provider: str) -> None:
    enabled = {p["name"] for p in get_enabled_providers(get_settings())}
    if provider not in enabled:
        raise OAuthFailed(f"OAuth provider {provider!r} is not enabled.")


@router.get("/auth/oauth/{provider}")
async def oauth_redirect(request: Request, provider: str):
    """Redirect the browser to the provider's authorization page.

    The provider name is validated against the enabled list first, so a
    spoofed name can never select an unregistered client.
    """
    _require_provider(provider)
    client = request.app.state.oauth.create_client(provider)
    redirect_uri = str(request.url_for("oauth_callback", provider=provider))
    return await client.authorize_redirect(request, redirect_uri)


@router.get("/auth/oauth/{provider}/callback", response_model=AuthResponse, name="oauth_callback")
async def oauth_callback(request: Request, provider: str) -> JSONResponse:
    """Exchange the authorization code and log the member in.

    Flow:
      1. Exchange code for token (authlib checks the session state for CSRF).
      2. Extract a verified identity -- ValueError means unverified/missing email [H1].
      3. AuthService.oauth_login(): reuse the member for the email or create it.
      4. Return the token pair; created=True sends the client to profile completion.
    """
    _require_provider(provider)
    client = request.app.state.oauth.create_client(provider)

    try:
        token = await client.authorize_access_token(request)
    except OAuthError as exc:
        logger.exception("OAuth token exchange failed for provider %r", provider)
        raise OAuthFailed() from exc

    try:
        identity = await get_oauth_user_info(client, provider, token)
    except ValueError as exc:
        logger.warning("OAuth login rejected for %r: %s", provider, exc)
        raise OAuthFailed(str(exc)) from exc

    service: AuthService = request.app.state.auth_service
    result = service.oauth_login(identity.provider, identity.subject, identity.email, identity.nickname)
    resp = _no_store(200, AuthResponse.from_result(result).model_dump(mode="json"))
    resp.set_cookie(
        "access_token",
        value=result.tokens.access_token,
        httponly=True,
        samesite="lax",
        secure=get_settings().secure_cookies,
        max_age=int(service.tokens.access_ttl.total_seconds()),
    )
    return resp
