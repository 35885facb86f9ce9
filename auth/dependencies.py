"""
auth/dependencies.py -- FastAPI Depends() helpers that put SessionGate in front of routes.

enforce_route_policy() is mounted once as a router-level dependency. It
reads the matched route's name, looks up its Access marking in the policy
table on app.state.route_policy, and runs SessionGate exactly once before
the handler. Routes missing from the table are treated as protected, so a
new route without a marking fails closed.

get_current_user() and require_seller() then read the owner the gate
attached to request.state -- they never hit the store again.

Layer rule: auth/dependencies.py may import from fastapi (for Request)
because this module is part of the FastAPI dependency injection system.
It does not import from api/.
"""

from __future__ import annotations

from fastapi import Request

from auth.errors import AccessDenied, Unauthorized
from auth.gate import SessionGate
from auth.models import Access, AccountKind, User


def route_access(request: Request) -> Access:
    """Return the Access marking for the route that matched this request."""
    route = request.scope.get("route")
    name = getattr(route, "name", None)
    policy: dict[str, Access] = getattr(request.app.state, "route_policy", {})
    return policy.get(name, Access.protected)


def enforce_route_policy(request: Request) -> None:
    """Admit or reject the request before any handler logic runs.

    Raises Unauthorized (rendered as 401 by api/main.py) for a protected
    route without a valid session cookie.
    """
    gate: SessionGate = request.app.state.session_gate
    cookie_name: str = request.app.state.settings.session_cookie_name
    user = gate.authorize(request.cookies.get(cookie_name), route_access(request))
    request.state.user = user


def get_current_user(request: Request) -> User:
    """Return the user attached by the gate. Use only on protected routes.

        @router.get("/protected")
        def route(user: User = Depends(get_current_user)): ...
    """
    user = getattr(request.state, "user", None)
    if user is None:
        raise Unauthorized()
    return user


def require_seller(request: Request) -> User:
    """Require a seller account. Raises Unauthorized if unauthenticated, AccessDenied if a buyer."""
    user = get_current_user(request)
    if user.account_kind is not AccountKind.seller:
        raise AccessDenied()
    return user
