"""
auth/gate.py -- Request-time session check.

Per request: unauthenticated -> authenticated (owner attached) or rejected.
Public operations bypass the lookup entirely. Every rejection is the same
Unauthorized, whether the id was absent, unknown, deactivated, or expired.

The gate is stateless; it reads the SessionStore on every call, so a
session deleted by logout or a password reset is refused on the very next
request.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from typing import Optional

from auth.db import utcnow
from auth.errors import Unauthorized
from auth.models import Access, User
from auth.store import SessionStore


class SessionGate:
    def __init__(self, sessions: SessionStore, clock: Callable[[], datetime] = utcnow) -> None:
        self.sessions = sessions
        self.clock = clock

    def authorize(self, session_id: Optional[str], access: Access) -> Optional[User]:
        """Return the session owner, or None for a public operation.

        Raises Unauthorized for a protected operation without a valid session.
        """
        if access is Access.public:
            return None
        if not session_id:
            raise Unauthorized()
        found = self.sessions.get_with_user(session_id)
        if found is None:
            raise Unauthorized()
        session, owner = found
        if not session.is_valid(self.clock()):
            raise Unauthorized()
        return owner
