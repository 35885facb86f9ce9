"""
auth/oauth.py -- OAuth provider registry and profile normalization.

Two halves:
  1. build_oauth_registry() / fetch_provider_profile() talk to the outside
     world through authlib. They run only at the HTTP boundary.
  2. normalize_profile() is a pure mapping from a provider's raw profile plus
     its granted tokens to the canonical OAuthProfile AuthService consumes.
     Every provider-shape quirk lives here.

Providers form a closed set. Adding one means adding a registry entry, a
fetch branch, and one normalizer in _NORMALIZERS -- no subclassing.

Security notes:
  [H1] Email is the merge key between providers, so only a provider-verified
       address is passed on. Google's email counts only with
       email_verified=true; GitHub's only when the /user/emails entry is both
       primary and verified. Anything else becomes "", which AuthService
       never uses to find an existing account.

  OAuth state parameter (CSRF protection) is handled by authlib automatically
  via Starlette SessionMiddleware.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from authlib.integrations.starlette_client import OAuth

from auth.models import OAuthProfile
from core.config import Settings

logger = logging.getLogger("marketplace.auth.oauth")

_PROVIDER_LABELS = {"google": "Google", "github": "GitHub"}

# ---------------------------------------------------------------------------
# Authlib OAuth registry
# ---------------------------------------------------------------------------


def build_oauth_registry(settings: Settings) -> OAuth:
    """Register every provider whose client id and secret are both configured."""
    oauth = OAuth()

    # Google -- OIDC discovery
    if settings.google_client_id and settings.google_client_secret:
        oauth.register(
            name="google",
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
            client_kwargs={"scope": "openid email profile"},
        )
        logger.info("Google OAuth provider registered")

    # GitHub -- static endpoints (no OIDC discovery document)
    if settings.github_client_id and settings.github_client_secret:
        oauth.register(
            name="github",
            client_id=settings.github_client_id,
            client_secret=settings.github_client_secret,
            access_token_url="https://github.com/login/oauth/access_token",  # noqa: S106 -- URL, not a password
            authorize_url="https://github.com/login/oauth/authorize",
            api_base_url="https://api.github.com/",
            client_kwargs={"scope": "read:user user:email"},
        )
        logger.info("GitHub OAuth provider registered")

    return oauth


def get_enabled_providers(settings: Settings) -> list[dict]:
    """Return {"name", "label"} for every configured provider, in display order."""
    providers: list[dict] = []
    if settings.google_client_id and settings.google_client_secret:
        providers.append({"name": "google", "label": _PROVIDER_LABELS["google"]})
    if settings.github_client_id and settings.github_client_secret:
        providers.append({"name": "github", "label": _PROVIDER_LABELS["github"]})
    return providers


# ---------------------------------------------------------------------------
# Raw profile fetching (network)
# ---------------------------------------------------------------------------


async def fetch_provider_profile(client, provider: str, token: dict) -> dict:
    """Return the provider's raw profile payload for normalize_profile().

    Google/OIDC: the id_token claims authlib already parsed into
        token["userinfo"].
    GitHub: GET /user plus GET /user/emails, merged as {**user, "emails": [...]}.
        GitHub does not include the email in the access token.

    Raises ValueError for an unknown provider or a token response without
    the data needed to identify the account.
    """
    if provider == "google":
        userinfo = token.get("userinfo")
        if not userinfo:
            raise ValueError("google OAuth: no userinfo in token response")
        return dict(userinfo)
    if provider == "github":
        resp = await client.get("user", token=token)
        resp.raise_for_status()
        profile = resp.json()
        emails_resp = await client.get("user/emails", token=token)
        emails_resp.raise_for_status()
        return {**profile, "emails": emails_resp.json()}
    raise ValueError(f"Unknown OAuth provider: {provider!r}")


# ---------------------------------------------------------------------------
# Normalization (pure)
# ---------------------------------------------------------------------------


def _split_name(display_name: str) -> tuple[str, str]:
    parts = (display_name or "").split()
    if not parts:
        return "", ""
    return parts[0], " ".join(parts[1:])


def _normalize_google(raw: dict, tokens: dict) -> OAuthProfile:
    sub = raw.get("sub")
    if not sub:
        raise ValueError("google OAuth: missing sub claim")
    email = raw.get("email") or ""
    if not raw.get("email_verified", False):
        email = ""
    first_name = raw.get("given_name") or ""
    last_name = raw.get("family_name") or ""
    if not first_name and not last_name:
        first_name, last_name = _split_name(raw.get("name") or "")
    return OAuthProfile(
        provider="google",
        external_account_id=str(sub),
        email=email,
        first_name=first_name,
        last_name=last_name,
        avatar=raw.get("picture") or None,
        access_token=tokens.get("access_token") or "",
        refresh_token=tokens.get("refresh_token") or None,
    )


def _normalize_github(raw: dict, tokens: dict) -> OAuthProfile:
    account_id = raw.get("id")
    if account_id is None:
        raise ValueError("github OAuth: missing account id")
    email = ""
    for entry in raw.get("emails") or []:
        if entry.get("primary") and entry.get("verified"):
            email = entry.get("email") or ""
            break
    first_name, last_name = _split_name(raw.get("name") or "")
    return OAuthProfile(
        provider="github",
        external_account_id=str(account_id),
        email=email,
        first_name=first_name,
        last_name=last_name,
        avatar=raw.get("avatar_url") or None,
        access_token=tokens.get("access_token") or "",
        refresh_token=tokens.get("refresh_token") or None,
    )


_NORMALIZERS: dict[str, Callable[[dict, dict], OAuthProfile]] = {
    "google": _normalize_google,
    "github": _normalize_github,
}


def supported_providers() -> tuple[str, ...]:
    return tuple(_NORMALIZERS)


def normalize_profile(provider: str, raw: dict[str, Any], tokens: dict[str, Any]) -> OAuthProfile:
    """Map a provider payload and its token response onto OAuthProfile.

    Missing name parts become "". A missing or unverified email becomes ""
    rather than an error; AuthService then creates a fresh account instead
    of merging.

    Raises ValueError for an unknown provider or a payload without a stable
    account id.
    """
    normalizer = _NORMALIZERS.get(provider)
    if normalizer is None:
        raise ValueError(f"Unknown OAuth provider: {provider!r}")
    return normalizer(raw, tokens)
