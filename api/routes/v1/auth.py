"""
api/routes/v1/auth.py -- Authentication REST endpoints.

Routes:
  POST /api/v1/auth/register            -- create account; sets session cookie; 201
  POST /api/v1/auth/login               -- password login; sets session cookie
  POST /api/v1/auth/logout              -- deletes the session; clears cookie
  GET  /api/v1/auth/me                  -- current user (requires session)
  GET  /api/v1/auth/seller-profile      -- store details (requires seller session)
  POST /api/v1/auth/forgot-password     -- emails a reset link; always generic 200
  POST /api/v1/auth/reset-password      -- consumes a reset token
  GET  /api/v1/auth/providers           -- list enabled OAuth providers
  GET  /api/v1/auth/{provider}          -- redirect to the provider's consent page
  GET  /api/v1/auth/{provider}/callback -- finish OAuth; sets cookie; redirects to frontend

Security:
  [C1] Timing equalization for unknown emails lives in AuthService.login().
  [M5] Cache-Control: no-store on every response that sets a session cookie.
  Enumeration: forgot-password answers identically whether or not the email
  exists; the mail is sent from a background task so timing does not leak it
  either.
"""

from __future__ import annotations

import logging

import httpx
from authlib.integrations.starlette_client import OAuthError
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.concurrency import run_in_threadpool

from api.models import (
    AuthResponse,
    AuthUserResponse,
    ForgotPasswordRequest,
    LoginRequest,
    MessageResponse,
    OAuthProviderInfo,
    RegisterRequest,
    ResetPasswordRequest,
    SellerProfileResponse,
)
from auth.dependencies import enforce_route_policy, get_current_user, require_seller
from auth.models import Access, AccountKind, AuthResult, RequestContext, User
from auth.oauth import fetch_provider_profile, get_enabled_providers, normalize_profile
from auth.service import AuthService
from auth.tokens import clear_session_cookie, set_session_cookie

logger = logging.getLogger("marketplace.api.auth")

_FORGOT_MESSAGE = "If this email exists, a reset link has been sent."

# Route policy, keyed by route name (the handler function name). SessionGate
# reads this table through enforce_route_policy(); anything not listed here
# is protected.
ROUTE_POLICY: dict[str, Access] = {
    "register": Access.public,
    "login": Access.public,
    # clearing a cookie needs no prior auth; a stale cookie must still be clearable
    "logout": Access.public,
    "forgot_password": Access.public,
    "reset_password": Access.public,
    "list_providers": Access.public,
    "oauth_redirect": Access.public,
    "oauth_callback": Access.public,
    "me": Access.protected,
    "seller_profile": Access.protected,
}

router = APIRouter(dependencies=[Depends(enforce_route_policy)])


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _request_context(request: Request) -> RequestContext:
    return RequestContext(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent", ""),
    )


def _attach_session(request: Request, response, session_id: str) -> None:
    settings = request.app.state.settings
    set_session_cookie(
        response,
        session_id,
        name=settings.session_cookie_name,
        max_age=settings.session_ttl_seconds,
        secure=settings.secure_cookies,
    )
    response.headers["Cache-Control"] = "no-store"  # [M5]


def _session_response(request: Request, result: AuthResult, status_code: int = 200) -> JSONResponse:
    body = AuthResponse(user=AuthUserResponse(**result.user))
    resp = JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))
    _attach_session(request, resp, result.session_id)
    return resp


def _oauth_failure(request: Request) -> RedirectResponse:
    frontend = request.app.state.settings.frontend_url.rstrip("/")
    return RedirectResponse(f"{frontend}/login?error=oauth_failed", status_code=302)


def _provider_enabled(request: Request, provider: str) -> bool:
    return provider in {p["name"] for p in get_enabled_providers(request.app.state.settings)}


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=AuthResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create a buyer or seller account and log it in.

    409 duplicate_account when the email is already registered.
    """
    service: AuthService = request.app.state.auth_service
    result = service.register(
        body.email,
        body.password,
        body.name,
        AccountKind(body.userType.value),
        _request_context(request),
    )
    return _session_response(request, result, status_code=201)


@router.post("/auth/login", response_model=AuthResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; set the session cookie.

    Returns the same 401 invalid_credentials for unknown email and wrong
    password to avoid leaking account existence.
    """
    service: AuthService = request.app.state.auth_service
    result = service.login(body.email, body.password, _request_context(request))
    return _session_response(request, result)


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request) -> JSONResponse:
    """Delete the presented session (if any) and clear the cookie."""
    service: AuthService = request.app.state.auth_service
    cookie_name = request.app.state.settings.session_cookie_name
    service.logout(request.cookies.get(cookie_name))
    resp = JSONResponse(content=MessageResponse(message="Logged out successfully").model_dump())
    clear_session_cookie(resp, name=cookie_name)
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=AuthResponse)
def me(current_user: User = Depends(get_current_user)) -> AuthResponse:
    """Return the public view of the session owner."""
    return AuthResponse(user=AuthUserResponse(**AuthService.build_user_response(current_user)))


@router.get("/auth/seller-profile", response_model=SellerProfileResponse)
def seller_profile(request: Request, current_user: User = Depends(require_seller)) -> SellerProfileResponse:
    """Return the store created at seller registration. 403 for buyers."""
    service: AuthService = request.app.state.auth_service
    profile = service.users.get_seller_profile(current_user.id)
    if profile is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Seller profile not found."},
        )
    return SellerProfileResponse(store_name=profile.store_name, store_slug=profile.store_slug)


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


@router.post("/auth/forgot-password", response_model=MessageResponse)
def forgot_password(request: Request, body: ForgotPasswordRequest, background_tasks: BackgroundTasks) -> MessageResponse:
    """Email a reset link if the account exists. The answer is identical either way."""
    service: AuthService = request.app.state.auth_service
    raw_token = service.forgot_password(body.email)
    if raw_token is not None:
        background_tasks.add_task(request.app.state.mailer.send_password_reset_email, body.email, raw_token)
    return MessageResponse(message=_FORGOT_MESSAGE)


@router.post("/auth/reset-password", response_model=MessageResponse)
def reset_password(request: Request, body: ResetPasswordRequest) -> MessageResponse:
    """Set a new password with a reset token. Signs the account out everywhere.

    400 invalid_or_expired_token for unknown, used, or expired tokens.
    """
    service: AuthService = request.app.state.auth_service
    service.reset_password(body.token, body.password)
    return MessageResponse(message="Password reset successfully")


# ---------------------------------------------------------------------------
# OAuth
#
# Route registration order: the static GET /auth/* routes above must come
# before GET /auth/{provider} so FastAPI doesn't treat "me" or "providers"
# as a provider name.
# ---------------------------------------------------------------------------


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
def list_providers(request: Request) -> list[OAuthProviderInfo]:
    """Return the configured OAuth providers. Empty when none are set up."""
    return [OAuthProviderInfo(**p) for p in get_enabled_providers(request.app.state.settings)]


@router.get("/auth/{provider}")
async def oauth_redirect(request: Request, provider: str):
    """Redirect the browser to the provider's authorization page.

    The provider name is checked against the enabled list so a crafted path
    cannot reach an unregistered client.
    """
    if not _provider_enabled(request, provider):
        return _oauth_failure(request)
    client = request.app.state.oauth.create_client(provider)
    redirect_uri = str(request.url_for("oauth_callback", provider=provider))
    return await client.authorize_redirect(request, redirect_uri)


@router.get("/auth/{provider}/callback", name="oauth_callback")
async def oauth_callback(request: Request, provider: str) -> RedirectResponse:
    """Finish the OAuth flow, open a session, and redirect to the frontend.

    Flow:
      1. Exchange the authorization code (authlib verifies the state value).
      2. Fetch and normalize the provider profile.
      3. AuthService links or creates the local account and opens a session.
    """
    if not _provider_enabled(request, provider):
        return _oauth_failure(request)

    client = request.app.state.oauth.create_client(provider)
    try:
        token = await client.authorize_access_token(request)
    except OAuthError:
        logger.exception("OAuth token exchange failed for provider %r", provider)
        return _oauth_failure(request)

    try:
        raw_profile = await fetch_provider_profile(client, provider, token)
        profile = normalize_profile(provider, raw_profile, token)
    except (ValueError, httpx.HTTPError):
        logger.warning("OAuth profile from %r could not be read", provider, exc_info=True)
        return _oauth_failure(request)

    service: AuthService = request.app.state.auth_service
    result = await run_in_threadpool(service.handle_oauth_callback, profile, _request_context(request))

    frontend = request.app.state.settings.frontend_url.rstrip("/")
    resp = RedirectResponse(f"{frontend}/", status_code=302)
    _attach_session(request, resp, result.session_id)
    return resp
