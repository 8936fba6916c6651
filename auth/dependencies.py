"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two token sources are checked in priority order:
  1. Authorization: Bearer <token> header -- API clients and mobile apps.
  2. "access_token" cookie -- set by the OAuth callback for browser clients.

Only access tokens are accepted. A refresh token presented here is rejected as
malformed; refresh tokens are good for POST /auth/token and nothing else.

get_current_member() raises HTTP 401 with the specific token
error code (expired_token / malformed_token) if unauthenticated.

Layer rule: auth/dependencies.py may import from fastapi because it is part of
the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.errors import AuthError, NotFound, StorageError
from auth.models import Member
from auth.tokens import ACCESS


def _extract_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:]
    return request.cookies.get("access_token")


def _authenticate(request: Request) -> Member:
    """Resolve the request's access token to a Member, raising AuthError on failure."""
    claims = request.app.state.token_engine.validate(_extract_token(request), expected_type=ACCESS)
    member = request.app.state.member_store.find_by_id(claims["member_id"])
    if member is None:
        raise NotFound()
    return member


def get_current_member(request: Request) -> Member:
    """Require a valid access token. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/members/me")
        def route(member: Member = Depends(get_current_member)): ...
    """
    try:
        return _authenticate(request)
    except StorageError:
        raise
    except AuthError as exc:
        raise HTTPException(
            status_code=401,
            detail={"code": exc.kind.value, "message": exc.message},
        ) from exc
