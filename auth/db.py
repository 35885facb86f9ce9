"""
auth/db.py -- SQLAlchemy Core schema, engine, and transaction scope for auth entities.

One AuthDatabase is built at process start and shared by every store in
auth/store.py. Stores never open a transaction on their own when the caller
hands them a connection: that is how AuthService makes register and
resetPassword all-or-nothing.

    db = AuthDatabase("sqlite:///auth.db")
    with db.transaction() as conn:
        users.update_password(user_id, hashed, conn=conn)
        tokens.consume(token_id, now, conn=conn)
        sessions.delete_for_user(user_id, conn=conn)

Uniqueness is enforced by the database, not by prior lookups:
  users.email, seller_profiles.store_slug, reset_tokens.token_hash and
  external_identities(provider, external_account_id) are UNIQUE, and the
  resulting IntegrityError is what AuthService maps to domain errors.

SQLite specifics:
  WAL mode lets readers proceed during writes. BEGIN IMMEDIATE takes the
  write lock at the start of every transaction so two concurrent writers
  queue on the busy timeout instead of one of them failing with
  "database is locked" when it upgrades a read lock mid-transaction.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
)
from sqlalchemy.engine import Connection, Engine

_SQLITE_BUSY_TIMEOUT_SECONDS = 30

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", String(32), primary_key=True),
    # NULL only for OAuth accounts without a verified email; NULLs never collide.
    Column("email", String(255), unique=True),
    Column("hashed_password", Text),  # NULL for OAuth-only users
    Column("first_name", String(100), nullable=False, server_default=""),
    Column("last_name", String(100), nullable=False, server_default=""),
    Column("account_kind", String(10), nullable=False, server_default="buyer"),
    Column("avatar", Text),
    Column("created_at", String(32), nullable=False),
)

seller_profiles = Table(
    "seller_profiles",
    metadata,
    Column("id", String(32), primary_key=True),
    Column("user_id", String(32), nullable=False, unique=True),
    Column("store_name", String(255), nullable=False),
    Column("store_slug", String(64), nullable=False, unique=True),
    Column("created_at", String(32), nullable=False),
)

sessions = Table(
    "sessions",
    metadata,
    Column("id", String(64), primary_key=True),  # bearer secret
    Column("user_id", String(32), nullable=False, index=True),
    Column("device_name", String(100), nullable=False),
    Column("user_agent", String(255)),
    Column("ip_address", String(45)),
    Column("expires_at", String(32), nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
)

reset_tokens = Table(
    "reset_tokens",
    metadata,
    Column("id", String(32), primary_key=True),
    Column("user_id", String(32), nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("expires_at", String(32), nullable=False),
    Column("used", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
)

external_identities = Table(
    "external_identities",
    metadata,
    Column("id", String(32), primary_key=True),
    Column("provider", String(30), nullable=False),
    Column("external_account_id", String(255), nullable=False),
    Column("user_id", String(32), nullable=False, index=True),
    Column("access_token", Text),
    Column("refresh_token", Text),
    Column("created_at", String(32), nullable=False),
    UniqueConstraint("provider", "external_account_id", name="uq_identity_provider_account"),
)


# ---------------------------------------------------------------------------
# Timestamp helpers
# ---------------------------------------------------------------------------


def to_iso(value: datetime) -> str:
    """Fixed-width UTC ISO string: lexical order equals time order in SQL."""
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# SQLite connection hooks
# ---------------------------------------------------------------------------


def _sqlite_on_connect(dbapi_conn, connection_record) -> None:
    """Hand transaction control to SQLAlchemy and enable WAL.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.isolation_level = None
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _sqlite_on_begin(conn) -> None:
    conn.exec_driver_sql("BEGIN IMMEDIATE")


# ---------------------------------------------------------------------------
# Database handle
# ---------------------------------------------------------------------------


class AuthDatabase:
    """Engine owner and transaction-scope provider for the auth stores."""

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        is_sqlite = db_url.startswith("sqlite")
        if is_sqlite:
            connect_args["check_same_thread"] = False
            connect_args["timeout"] = _SQLITE_BUSY_TIMEOUT_SECONDS
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if is_sqlite:
            event.listen(self.engine, "connect", _sqlite_on_connect)
            event.listen(self.engine, "begin", _sqlite_on_begin)
        metadata.create_all(self.engine)

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        """Yield a connection whose writes commit together or not at all."""
        with self.engine.begin() as conn:
            yield conn

    @contextmanager
    def scope(self, conn: Optional[Connection] = None) -> Iterator[Connection]:
        """Join the caller's transaction when given one, else run in a fresh one."""
        if conn is not None:
            yield conn
            return
        with self.engine.begin() as own:
            yield own

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        with self.engine.connect() as conn:
            conn.exec_driver_sql("SELECT 1")
        return True

    def close(self) -> None:
        self.engine.dispose()
