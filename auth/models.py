"""
auth/models.py -- Domain dataclasses for the authentication subsystem.

Pure data containers. Persistence lives in auth/store.py, orchestration in
auth/service.py. Timestamps are timezone-aware UTC datetimes; the store
converts them to and from fixed-width ISO strings at the boundary.

id is None before a record is written to the database.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class AccountKind(str, Enum):
    buyer = "buyer"
    seller = "seller"


class Access(str, Enum):
    """Per-operation capability descriptor consumed by SessionGate."""

    public = "public"
    protected = "protected"


@dataclass
class User:
    """A marketplace account.

    hashed_password is None for accounts created by an OAuth callback; they
    cannot log in with a password until a reset is completed. email is None
    only for OAuth accounts whose provider did not supply a verified address.
    """

    email: Optional[str]
    first_name: str
    last_name: str
    account_kind: AccountKind = AccountKind.buyer
    id: Optional[str] = None
    hashed_password: Optional[str] = None  # None = OAuth-only user
    avatar: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class SellerProfile:
    user_id: str
    store_name: str
    store_slug: str
    id: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class Session:
    """One authenticated browser/device. The id is the bearer secret.

    Usable only while is_active is True and now < expires_at.
    """

    user_id: str
    device_name: str
    expires_at: datetime
    id: Optional[str] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    is_active: bool = True
    created_at: Optional[datetime] = None

    def is_valid(self, now: datetime) -> bool:
        return self.is_active and now < self.expires_at


@dataclass
class ResetToken:
    """Single-use password reset grant.

    token_hash is HMAC-SHA256(SECRET_KEY, raw_token). The raw value exists
    only in the email sent to the user.
    """

    user_id: str
    token_hash: str
    expires_at: datetime
    id: Optional[str] = None
    used: bool = False
    created_at: Optional[datetime] = None

    def is_usable(self, now: datetime) -> bool:
        return not self.used and now < self.expires_at


@dataclass
class ExternalIdentity:
    """Link between a local user and one provider account.

    (provider, external_account_id) is unique across the table.
    """

    provider: str
    external_account_id: str
    user_id: str
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    id: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class RequestContext:
    """Per-request facts used only to label sessions, never to authorize."""

    ip_address: Optional[str] = None
    user_agent: str = ""


@dataclass(frozen=True)
class OAuthProfile:
    """Canonical provider profile produced by auth.oauth.normalize_profile()."""

    provider: str
    external_account_id: str
    email: str  # "" when the provider gave no verified address
    first_name: str
    last_name: str
    access_token: str
    avatar: Optional[str] = None
    refresh_token: Optional[str] = None


@dataclass(frozen=True)
class AuthResult:
    """Outcome of register/login/OAuth callback.

    user is the public view from AuthService.build_user_response(); the
    boundary layer transports session_id back to the client.
    """

    user: dict
    user_id: str
    session_id: str
