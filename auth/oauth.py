"""
auth/oauth.py -- Authlib OAuth/OIDC provider configuration and identity extraction.

build_oauth_registry() registers every provider whose client ID and secret are
configured. The HTTP layer drives the authorization-code exchange through the
registry; this module then reduces the provider's token response to an
OAuthIdentity (stable subject, email, nickname) for AuthService.oauth_login().

Security notes:
  [H1] Email verification is mandatory. get_oauth_user_info() raises ValueError
       if the provider does not confirm the email is verified. The email is
       the member's identity key here, so an unverified address from the
       provider could take over an existing member.

  OAuth state parameter (CSRF protection) is handled by authlib automatically
  via Starlette SessionMiddleware.

Supported providers:
  kakao  -- Authorization code flow; static endpoints, client_secret_post.
  google -- Authorization code flow; OIDC discovery.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from authlib.integrations.starlette_client import OAuth

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("membergate.auth.oauth")


@dataclass(frozen=True)
class OAuthIdentity:
    """What a provider tells us about the user after the code exchange."""

    provider: str
    subject: str  # provider's stable user ID
    email: str
    nickname: str | None = None


# ---------------------------------------------------------------------------
# Authlib OAuth registry
# ---------------------------------------------------------------------------


def build_oauth_registry(settings: Settings) -> OAuth:
    """Return an Authlib registry with every configured provider registered."""
    oauth = OAuth()
    timeout = settings.oauth_timeout_seconds

    # Kakao -- static endpoints (no OIDC discovery for the REST API flow)
    if settings.kakao_client_id and settings.kakao_client_secret:
        oauth.register(
            name="kakao",
            client_id=settings.kakao_client_id,
            client_secret=settings.kakao_client_secret,
            access_token_url="https://kauth.kakao.com/oauth/token",  # noqa: S106 -- URL, not a password
            authorize_url="https://kauth.kakao.com/oauth/authorize",
            api_base_url="https://kapi.kakao.com/",
            client_kwargs={
                "scope": "profile_nickname account_email",
                "token_endpoint_auth_method": "client_secret_post",
                "timeout": timeout,
            },
        )
        logger.info("Kakao OAuth provider registered")

    # Google -- OIDC discovery
    if settings.google_client_id and settings.google_client_secret:
        oauth.register(
            name="google",
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
            client_kwargs={"scope": "openid email profile", "timeout": timeout},
        )
        logger.info("Google OAuth provider registered")

    return oauth


# ---------------------------------------------------------------------------
# Provider metadata
# ---------------------------------------------------------------------------


def get_enabled_providers(settings: Settings) -> list[dict]:
    """Return {"name", "label"} for every provider with credentials configured."""
    providers: list[dict] = []
    if settings.kakao_client_id and settings.kakao_client_secret:
        providers.append({"name": "kakao", "label": "Kakao"})
    if settings.google_client_id and settings.google_client_secret:
        providers.append({"name": "google", "label": "Google"})
    return providers


# ---------------------------------------------------------------------------
# Identity extraction -- provider-specific normalization [H1]
# ---------------------------------------------------------------------------


async def get_oauth_user_info(client, provider: str, token: dict) -> OAuthIdentity:
    """Reduce a provider token response to an OAuthIdentity.

    Args:
        client:   The authlib OAuth client for this provider.
        provider: "kakao" or "google".
        token:    The token dict returned by authlib after code exchange.

    Raises:
        ValueError: If a verified email cannot be confirmed, or the provider
            is unknown.
    """
    if provider == "kakao":
        return await _get_kakao_user_info(client, token)
    elif provider == "google":
        return _get_oidc_user_info(token, provider)
    else:
        raise ValueError(f"Unknown OAuth provider: {provider!r}")


async def _get_kakao_user_info(client, token: dict) -> OAuthIdentity:
    """Fetch GET /v2/user/me and pull id, email and nickname out of it.

    Kakao nests the email under kakao_account and the nickname under either
    kakao_account.profile (current API) or properties (legacy apps).
    [H1] The email is accepted only when is_email_valid and is_email_verified
    are both true.
    """
    resp = await client.get("v2/user/me", token=token)
    resp.raise_for_status()
    data = resp.json()

    subject = data.get("id")
    account = data.get("kakao_account") or {}
    email = account.get("email")
    if subject is None or not email:
        raise ValueError("Kakao OAuth: response is missing the user id or email")
    if not (account.get("is_email_valid") and account.get("is_email_verified")):
        raise ValueError("Kakao OAuth: email is not verified")

    profile = account.get("profile") or {}
    properties = data.get("properties") or {}
    nickname = profile.get("nickname") or properties.get("nickname")
    return OAuthIdentity(provider="kakao", subject=str(subject), email=email, nickname=nickname)


def _get_oidc_user_info(token: dict, provider: str) -> OAuthIdentity:
    """Extract the identity from a Google/OIDC id_token.

    [H1] The email claim is only accepted when email_verified is True.
    Some OIDC providers omit email_verified entirely -- we treat that as
    unverified and raise ValueError.
    """
    userinfo = token.get("userinfo")
    if not userinfo:
        raise ValueError(f"{provider} OAuth: no userinfo in token response")

    if not userinfo.get("email_verified", False):
        raise ValueError(
            f"{provider} OAuth: email is not verified. "
            "The provider must confirm email ownership before login is allowed."
        )

    email = userinfo.get("email")
    subject = userinfo.get("sub")
    if not email or not subject:
        raise ValueError(f"{provider} OAuth: missing email or sub claim in userinfo")

    return OAuthIdentity(provider=provider, subject=subject, email=email, nickname=userinfo.get("name"))
