"""
auth/service.py -- Registration, login, sessions, password reset, and OAuth linking.

AuthService is the only component that spans several stores. It holds no
mutable state of its own: everything shared lives in the database, so one
instance serves every request thread concurrently.

Atomicity:
  register       -- user row + optional seller profile in one transaction.
  reset_password -- token consumption + password change + session wipe in
                    one transaction; the conditional consume runs first so
                    a concurrent caller with the same token loses cleanly.
  OAuth linking  -- user lookup/creation + identity insert in one transaction.

Races are settled by UNIQUE constraints, not by in-process locks. The
prior existence checks are fast paths; IntegrityError from the store is the
authority and is mapped to the domain outcome here.

Usage:
    service = AuthService(db, users, sessions, reset_tokens, identities, hasher, secret_key=key)
    result = service.register("alice@example.com", "secret1", "Alice Buyer", AccountKind.buyer, ctx)
    gate.authorize(result.session_id, Access.protected)
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.exc import IntegrityError

from auth.db import AuthDatabase, utcnow
from auth.errors import DataIntegrityError, DuplicateAccount, InvalidCredentials, InvalidOrExpiredToken
from auth.models import (
    AccountKind,
    AuthResult,
    ExternalIdentity,
    OAuthProfile,
    RequestContext,
    ResetToken,
    SellerProfile,
    Session,
    User,
)
from auth.store import IdentityStore, ResetTokenStore, SessionStore, UserStore
from auth.tokens import PasswordHasher, device_label, generate_reset_token, hash_reset_token

logger = logging.getLogger("marketplace.auth")

SESSION_TTL = timedelta(days=7)
RESET_TOKEN_TTL = timedelta(hours=1)

_SLUG_BASE_MAX = 30
_SLUG_SUFFIX_LEN = 8
_USER_AGENT_MAX = 255


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def split_display_name(display_name: str) -> tuple[str, str]:
    """First whitespace token is the first name; the rest, re-joined, the last name."""
    parts = (display_name or "").split()
    if not parts:
        return "", ""
    return parts[0], " ".join(parts[1:])


def seller_slug(display_name: str, user_id: str) -> str:
    """URL-safe store slug: lowercased, alphanumeric runs joined by "-", plus an id suffix.

    The suffix comes from the new user's id, so two sellers with the same
    display name still get distinct slugs.
    """
    base = re.sub(r"[^a-z0-9]+", "-", display_name.lower()).strip("-")[:_SLUG_BASE_MAX]
    suffix = user_id[-_SLUG_SUFFIX_LEN:]
    return f"{base}-{suffix}" if base else suffix


def build_user_response(user: User) -> dict:
    """Public view of a user: {email, name, userType}. No I/O."""
    return {
        "email": user.email or "",
        "name": f"{user.first_name} {user.last_name}".strip(),
        "userType": "seller" if user.account_kind is AccountKind.seller else "buyer",
    }


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class AuthService:
    def __init__(
        self,
        database: AuthDatabase,
        users: UserStore,
        sessions: SessionStore,
        reset_tokens: ResetTokenStore,
        identities: IdentityStore,
        hasher: PasswordHasher,
        *,
        secret_key: str,
        session_ttl: timedelta = SESSION_TTL,
        reset_token_ttl: timedelta = RESET_TOKEN_TTL,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = database
        self.users = users
        self.sessions = sessions
        self.reset_tokens = reset_tokens
        self.identities = identities
        self.hasher = hasher
        self._secret_key = secret_key
        self.session_ttl = session_ttl
        self.reset_token_ttl = reset_token_ttl
        self.clock = clock

    build_user_response = staticmethod(build_user_response)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, user_id: str, context: RequestContext) -> str:
        """Persist a fresh 7-day session for user_id and return its id (the bearer secret)."""
        user_agent = context.user_agent or ""
        session = self.sessions.create(
            Session(
                user_id=user_id,
                device_name=device_label(user_agent),
                user_agent=user_agent[:_USER_AGENT_MAX] or None,
                ip_address=context.ip_address,
                expires_at=self.clock() + self.session_ttl,
                is_active=True,
            )
        )
        return session.id

    def logout(self, session_id: Optional[str]) -> None:
        """Delete the session. Unknown or empty ids are ignored (idempotent)."""
        if session_id:
            self.sessions.delete(session_id)

    # ------------------------------------------------------------------
    # Registration and login
    # ------------------------------------------------------------------

    def register(
        self,
        email: str,
        password: str,
        display_name: str,
        account_kind: AccountKind,
        context: RequestContext,
    ) -> AuthResult:
        """Create a password account (plus seller profile for sellers) and log it in.

        Raises DuplicateAccount if the email is taken, including when a
        concurrent registration wins the race after our existence check.
        Raises ValueError for a blank display name.
        """
        if not (display_name or "").strip():
            raise ValueError("display_name must not be blank")
        email = normalize_email(email)
        if self.users.get_by_email(email) is not None:
            raise DuplicateAccount()

        hashed = self.hasher.hash(password)
        first_name, last_name = split_display_name(display_name)
        try:
            with self.db.transaction() as conn:
                user = self.users.create_user(
                    User(
                        email=email,
                        hashed_password=hashed,
                        first_name=first_name,
                        last_name=last_name,
                        account_kind=account_kind,
                    ),
                    conn=conn,
                )
                if account_kind is AccountKind.seller:
                    store_name = " ".join(display_name.split())
                    self.users.create_seller_profile(
                        SellerProfile(
                            user_id=user.id,
                            store_name=f"{store_name}'s Store",
                            store_slug=seller_slug(display_name, user.id),
                        ),
                        conn=conn,
                    )
        except IntegrityError as exc:
            # Only a lost race on users.email is a duplicate account. Any other
            # constraint (store slug, profile owner) is a fault and propagates.
            if self.users.get_by_email(email) is not None:
                raise DuplicateAccount() from exc
            raise

        logger.info("Registered %s account %s", account_kind.value, user.id)
        return self._authenticated(user, context)

    def login(self, email: str, password: str, context: RequestContext) -> AuthResult:
        """Verify a password login with timing equalization [C1].

        Unknown email, password-less (OAuth-only) account, and wrong password
        all raise the same InvalidCredentials, and all three cost one bcrypt
        check, so neither the error nor the response time reveals which.
        """
        user = self.users.get_by_email(normalize_email(email))
        if user is None or user.hashed_password is None:
            self.hasher.dummy_verify(password)
            raise InvalidCredentials()
        if not self.hasher.verify(password, user.hashed_password):
            raise InvalidCredentials()
        return self._authenticated(user, context)

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    def forgot_password(self, email: str) -> Optional[str]:
        """Issue a reset token and return the raw value, or None for an unknown email.

        The caller must report the same generic success either way. Only the
        HMAC of the token is stored.
        """
        user = self.users.get_by_email(normalize_email(email))
        if user is None:
            return None
        raw_token = generate_reset_token()
        self.reset_tokens.create(
            ResetToken(
                user_id=user.id,
                token_hash=hash_reset_token(raw_token, self._secret_key),
                expires_at=self.clock() + self.reset_token_ttl,
            )
        )
        logger.info("Issued password reset token for user %s", user.id)
        return raw_token

    def reset_password(self, token: str, new_password: str) -> None:
        """Consume a reset token, set the new password, and revoke every session of its owner.

        All three writes commit together. Of several concurrent calls with the
        same token, only the one whose conditional consume updates a row
        proceeds; the others raise InvalidOrExpiredToken.
        """
        now = self.clock()
        record = self.reset_tokens.get_by_hash(hash_reset_token(token or "", self._secret_key))
        if record is None or not record.is_usable(now):
            raise InvalidOrExpiredToken()

        hashed = self.hasher.hash(new_password)
        with self.db.transaction() as conn:
            if not self.reset_tokens.consume(record.id, now, conn=conn):
                raise InvalidOrExpiredToken()
            if not self.users.update_password(record.user_id, hashed, conn=conn):
                raise DataIntegrityError(f"reset token {record.id} references missing user {record.user_id}")
            revoked = self.sessions.delete_for_user(record.user_id, conn=conn)

        logger.info("Password reset for user %s; %d session(s) revoked", record.user_id, revoked)

    # ------------------------------------------------------------------
    # External identities
    # ------------------------------------------------------------------

    def handle_oauth_callback(self, profile: OAuthProfile, context: RequestContext) -> AuthResult:
        """Resolve (or create) the local account behind a provider login and open a session.

        Returning identity: refresh its stored tokens, use its owner.
        New identity: link to the account with the same email, or create a
        buyer account without a password, in one transaction. Email is the
        merge key, so two providers with one address land on one account.
        """
        user = self._resolve_identity_owner(profile)
        return self._authenticated(user, context)

    def _resolve_identity_owner(self, profile: OAuthProfile) -> User:
        # Two attempts: a concurrent callback may insert the identity (or the
        # user for this email) between our lookup and our insert. The UNIQUE
        # constraint rejects us, and the second lookup sees the winner's rows.
        for attempt in range(2):
            found = self.identities.find_by_provider(profile.provider, profile.external_account_id)
            if found is not None:
                identity, owner = found
                self.identities.update_tokens(identity.id, profile.access_token, profile.refresh_token)
                return owner
            try:
                return self._link_new_identity(profile)
            except IntegrityError:
                if attempt:
                    raise
                logger.info("Concurrent %s link detected; re-reading identity", profile.provider)
        raise AssertionError("unreachable")

    def _link_new_identity(self, profile: OAuthProfile) -> User:
        email = normalize_email(profile.email)
        with self.db.transaction() as conn:
            # An empty email is never a merge key: that would hand every
            # email-less provider account the same local user.
            user = self.users.get_by_email(email, conn=conn) if email else None
            if user is None:
                user = self.users.create_user(
                    User(
                        email=email or None,
                        first_name=profile.first_name or "User",
                        last_name=profile.last_name or "",
                        account_kind=AccountKind.buyer,
                        avatar=profile.avatar,
                    ),
                    conn=conn,
                )
                logger.info("Created %s account %s", profile.provider, user.id)
            self.identities.create(
                ExternalIdentity(
                    provider=profile.provider,
                    external_account_id=profile.external_account_id,
                    user_id=user.id,
                    access_token=profile.access_token,
                    refresh_token=profile.refresh_token,
                ),
                conn=conn,
            )
        logger.info("Linked %s identity to user %s", profile.provider, user.id)
        return user

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def purge_expired(self) -> tuple[int, int]:
        """Delete dead sessions and spent reset tokens. Returns (sessions, tokens) removed."""
        now = self.clock()
        return self.sessions.purge_expired(now), self.reset_tokens.purge_expired(now)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _authenticated(self, user: User, context: RequestContext) -> AuthResult:
        session_id = self.create_session(user.id, context)
        return AuthResult(user=build_user_response(user), user_id=user.id, session_id=session_id)
