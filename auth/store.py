"""
auth/store.py -- SQLAlchemy Core repositories for auth entities.

Pattern: Repository + Data Mapper. One small store per entity; the
_row_to_* functions are the mappers. Service and route code never touches
SQL directly.

Every method takes an optional `conn`. When given, the method joins that
transaction (see AuthDatabase.transaction()); when omitted, it runs in its
own short transaction. Point lookups return None for a missing key.

Security:
  All queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import or_, select
from sqlalchemy.engine import Connection

from auth import db as schema
from auth.db import AuthDatabase, from_iso, to_iso, utcnow
from auth.errors import DataIntegrityError
from auth.models import AccountKind, ExternalIdentity, ResetToken, SellerProfile, Session, User
from auth.tokens import generate_session_id


def _new_id() -> str:
    return uuid.uuid4().hex


# ---------------------------------------------------------------------------
# Users (CredentialStore)
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User and SellerProfile records."""

    def __init__(self, database: AuthDatabase) -> None:
        self.db = database

    def create_user(self, user: User, conn: Optional[Connection] = None) -> User:
        """Insert a new user and return it with id and created_at assigned.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        AuthService maps that to DuplicateAccount; it is the real guard
        against two concurrent registrations, not the prior lookup.
        """
        user.id = _new_id()
        user.created_at = utcnow()
        with self.db.scope(conn) as c:
            c.execute(
                schema.users.insert().values(
                    id=user.id,
                    email=user.email,
                    hashed_password=user.hashed_password,
                    first_name=user.first_name,
                    last_name=user.last_name,
                    account_kind=user.account_kind.value,
                    avatar=user.avatar,
                    created_at=to_iso(user.created_at),
                )
            )
        return user

    def get_by_id(self, user_id: str, conn: Optional[Connection] = None) -> Optional[User]:
        with self.db.scope(conn) as c:
            row = c.execute(schema.users.select().where(schema.users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str, conn: Optional[Connection] = None) -> Optional[User]:
        """Look up a user by exact email. Returns None if not found."""
        with self.db.scope(conn) as c:
            row = c.execute(schema.users.select().where(schema.users.c.email == email)).fetchone()
        return _row_to_user(row) if row is not None else None

    def update_password(self, user_id: str, hashed_password: str, conn: Optional[Connection] = None) -> bool:
        """Replace the password hash. Returns False if user_id was not found."""
        with self.db.scope(conn) as c:
            result = c.execute(
                schema.users.update().where(schema.users.c.id == user_id).values(hashed_password=hashed_password)
            )
        return result.rowcount > 0

    def create_seller_profile(self, profile: SellerProfile, conn: Optional[Connection] = None) -> SellerProfile:
        profile.id = _new_id()
        profile.created_at = utcnow()
        with self.db.scope(conn) as c:
            c.execute(
                schema.seller_profiles.insert().values(
                    id=profile.id,
                    user_id=profile.user_id,
                    store_name=profile.store_name,
                    store_slug=profile.store_slug,
                    created_at=to_iso(profile.created_at),
                )
            )
        return profile

    def get_seller_profile(self, user_id: str, conn: Optional[Connection] = None) -> Optional[SellerProfile]:
        with self.db.scope(conn) as c:
            row = c.execute(
                schema.seller_profiles.select().where(schema.seller_profiles.c.user_id == user_id)
            ).fetchone()
        return _row_to_seller_profile(row) if row is not None else None


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


class SessionStore:
    """Repository for server-side sessions."""

    def __init__(self, database: AuthDatabase) -> None:
        self.db = database

    def create(self, session: Session, conn: Optional[Connection] = None) -> Session:
        """Persist a session; its id is drawn from a CSPRNG here, never by the caller."""
        session.id = generate_session_id()
        session.created_at = utcnow()
        with self.db.scope(conn) as c:
            c.execute(
                schema.sessions.insert().values(
                    id=session.id,
                    user_id=session.user_id,
                    device_name=session.device_name,
                    user_agent=session.user_agent,
                    ip_address=session.ip_address,
                    expires_at=to_iso(session.expires_at),
                    is_active=1 if session.is_active else 0,
                    created_at=to_iso(session.created_at),
                )
            )
        return session

    def get(self, session_id: str, conn: Optional[Connection] = None) -> Optional[Session]:
        with self.db.scope(conn) as c:
            row = c.execute(schema.sessions.select().where(schema.sessions.c.id == session_id)).fetchone()
        return _row_to_session(row) if row is not None else None

    def get_with_user(self, session_id: str, conn: Optional[Connection] = None) -> Optional[tuple[Session, User]]:
        """Return (session, owner) in one query, or None if either is missing.

        A session whose owner vanished is treated as not found: the gate
        rejects it either way and there is nothing to attach to the request.
        """
        s, u = schema.sessions, schema.users
        stmt = (
            select(
                s,
                u.c.email,
                u.c.hashed_password,
                u.c.first_name,
                u.c.last_name,
                u.c.account_kind,
                u.c.avatar,
                u.c.created_at.label("user_created_at"),
            )
            .select_from(s.join(u, s.c.user_id == u.c.id))
            .where(s.c.id == session_id)
        )
        with self.db.scope(conn) as c:
            row = c.execute(stmt).fetchone()
        if row is None:
            return None
        owner = User(
            id=row.user_id,
            email=row.email,
            hashed_password=row.hashed_password,
            first_name=row.first_name,
            last_name=row.last_name,
            account_kind=AccountKind(row.account_kind),
            avatar=row.avatar,
            created_at=from_iso(row.user_created_at),
        )
        return _row_to_session(row), owner

    def list_for_user(self, user_id: str, conn: Optional[Connection] = None) -> list[Session]:
        """Return every stored session for a user, newest first."""
        with self.db.scope(conn) as c:
            rows = c.execute(
                schema.sessions.select()
                .where(schema.sessions.c.user_id == user_id)
                .order_by(schema.sessions.c.created_at.desc())
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def delete(self, session_id: str, conn: Optional[Connection] = None) -> bool:
        """Hard-delete one session. Returns False if it did not exist."""
        with self.db.scope(conn) as c:
            result = c.execute(schema.sessions.delete().where(schema.sessions.c.id == session_id))
        return result.rowcount > 0

    def delete_for_user(self, user_id: str, conn: Optional[Connection] = None) -> int:
        """Invalidate every session owned by user_id. Returns how many were removed."""
        with self.db.scope(conn) as c:
            result = c.execute(schema.sessions.delete().where(schema.sessions.c.user_id == user_id))
        return result.rowcount

    def purge_expired(self, now: datetime, conn: Optional[Connection] = None) -> int:
        """Delete sessions that can never pass the gate again."""
        with self.db.scope(conn) as c:
            result = c.execute(
                schema.sessions.delete().where(
                    or_(schema.sessions.c.expires_at <= to_iso(now), schema.sessions.c.is_active == 0)
                )
            )
        return result.rowcount


# ---------------------------------------------------------------------------
# Reset tokens
# ---------------------------------------------------------------------------


class ResetTokenStore:
    """Repository for password reset grants, keyed by token hash."""

    def __init__(self, database: AuthDatabase) -> None:
        self.db = database

    def create(self, token: ResetToken, conn: Optional[Connection] = None) -> ResetToken:
        token.id = _new_id()
        token.created_at = utcnow()
        with self.db.scope(conn) as c:
            c.execute(
                schema.reset_tokens.insert().values(
                    id=token.id,
                    user_id=token.user_id,
                    token_hash=token.token_hash,
                    expires_at=to_iso(token.expires_at),
                    used=1 if token.used else 0,
                    created_at=to_iso(token.created_at),
                )
            )
        return token

    def get_by_hash(self, token_hash: str, conn: Optional[Connection] = None) -> Optional[ResetToken]:
        """Look up a token by its HMAC hash. O(1) via UNIQUE index."""
        with self.db.scope(conn) as c:
            row = c.execute(
                schema.reset_tokens.select().where(schema.reset_tokens.c.token_hash == token_hash)
            ).fetchone()
        return _row_to_reset_token(row) if row is not None else None

    def consume(self, token_id: str, now: datetime, conn: Optional[Connection] = None) -> bool:
        """Flip used=1 only if the token is still unused and unexpired.

        Returns True for exactly one caller per token; every concurrent or
        later caller sees rowcount 0. Run this as the first statement of the
        reset transaction so it also takes the write lock.
        """
        rt = schema.reset_tokens
        with self.db.scope(conn) as c:
            result = c.execute(
                rt.update()
                .where((rt.c.id == token_id) & (rt.c.used == 0) & (rt.c.expires_at > to_iso(now)))
                .values(used=1)
            )
        return result.rowcount == 1

    def purge_expired(self, now: datetime, conn: Optional[Connection] = None) -> int:
        """Delete used or expired tokens; neither can authorize anything again."""
        rt = schema.reset_tokens
        with self.db.scope(conn) as c:
            result = c.execute(rt.delete().where(or_(rt.c.expires_at <= to_iso(now), rt.c.used == 1)))
        return result.rowcount


# ---------------------------------------------------------------------------
# External identities
# ---------------------------------------------------------------------------


class IdentityStore:
    """Repository for provider accounts linked to local users."""

    def __init__(self, database: AuthDatabase) -> None:
        self.db = database

    def find_by_provider(
        self, provider: str, external_account_id: str, conn: Optional[Connection] = None
    ) -> Optional[tuple[ExternalIdentity, User]]:
        """Return (identity, owner) for a provider account, or None if unlinked.

        The owner is fetched with an outer join in the same query. An identity
        row without a user row is a data-integrity fault and raises
        DataIntegrityError rather than looking like "not found".
        """
        i, u = schema.external_identities, schema.users
        stmt = (
            select(
                i,
                u.c.id.label("owner_id"),
                u.c.email,
                u.c.hashed_password,
                u.c.first_name,
                u.c.last_name,
                u.c.account_kind,
                u.c.avatar,
                u.c.created_at.label("user_created_at"),
            )
            .select_from(i.outerjoin(u, i.c.user_id == u.c.id))
            .where((i.c.provider == provider) & (i.c.external_account_id == external_account_id))
        )
        with self.db.scope(conn) as c:
            row = c.execute(stmt).fetchone()
        if row is None:
            return None
        if row.owner_id is None:
            raise DataIntegrityError(f"external identity {row.id} references missing user {row.user_id}")
        owner = User(
            id=row.owner_id,
            email=row.email,
            hashed_password=row.hashed_password,
            first_name=row.first_name,
            last_name=row.last_name,
            account_kind=AccountKind(row.account_kind),
            avatar=row.avatar,
            created_at=from_iso(row.user_created_at),
        )
        return _row_to_identity(row), owner

    def create(self, identity: ExternalIdentity, conn: Optional[Connection] = None) -> ExternalIdentity:
        """Insert a link. Raises IntegrityError if (provider, external_account_id) is taken."""
        identity.id = _new_id()
        identity.created_at = utcnow()
        with self.db.scope(conn) as c:
            c.execute(
                schema.external_identities.insert().values(
                    id=identity.id,
                    provider=identity.provider,
                    external_account_id=identity.external_account_id,
                    user_id=identity.user_id,
                    access_token=identity.access_token,
                    refresh_token=identity.refresh_token,
                    created_at=to_iso(identity.created_at),
                )
            )
        return identity

    def update_tokens(
        self,
        identity_id: str,
        access_token: Optional[str],
        refresh_token: Optional[str],
        conn: Optional[Connection] = None,
    ) -> bool:
        with self.db.scope(conn) as c:
            result = c.execute(
                schema.external_identities.update()
                .where(schema.external_identities.c.id == identity_id)
                .values(access_token=access_token, refresh_token=refresh_token)
            )
        return result.rowcount > 0

    def list_for_user(self, user_id: str, conn: Optional[Connection] = None) -> list[ExternalIdentity]:
        with self.db.scope(conn) as c:
            rows = c.execute(
                schema.external_identities.select()
                .where(schema.external_identities.c.user_id == user_id)
                .order_by(schema.external_identities.c.created_at)
            ).fetchall()
        return [_row_to_identity(r) for r in rows]


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        hashed_password=row.hashed_password,
        first_name=row.first_name,
        last_name=row.last_name,
        account_kind=AccountKind(row.account_kind),
        avatar=row.avatar,
        created_at=from_iso(row.created_at),
    )


def _row_to_seller_profile(row) -> SellerProfile:
    return SellerProfile(
        id=row.id,
        user_id=row.user_id,
        store_name=row.store_name,
        store_slug=row.store_slug,
        created_at=from_iso(row.created_at),
    )


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        user_id=row.user_id,
        device_name=row.device_name,
        user_agent=row.user_agent,
        ip_address=row.ip_address,
        expires_at=from_iso(row.expires_at),
        is_active=bool(row.is_active),
        created_at=from_iso(row.created_at),
    )


def _row_to_reset_token(row) -> ResetToken:
    return ResetToken(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        expires_at=from_iso(row.expires_at),
        used=bool(row.used),
        created_at=from_iso(row.created_at),
    )


def _row_to_identity(row) -> ExternalIdentity:
    return ExternalIdentity(
        id=row.id,
        provider=row.provider,
        external_account_id=row.external_account_id,
        user_id=row.user_id,
        access_token=row.access_token,
        refresh_token=row.refresh_token,
        created_at=from_iso(row.created_at),
    )
