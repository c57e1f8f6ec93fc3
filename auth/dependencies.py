"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Tokens are accepted from the Authorization: Bearer header. The WebSocket
handshake additionally accepts a ?token= query parameter, because browsers
cannot set headers on a WebSocket upgrade.

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() wraps it and raises HTTP 401 if unauthenticated.
require_staff() / require_admin() add HTTP 403 role checks.

Layer rule: no imports from api/, core/, inventory/, tickets/, or realtime/
other than the config read done by auth.tokens.
"""

from __future__ import annotations

from fastapi import HTTPException, Request, WebSocket

from auth.models import Principal
from auth.tokens import principal_from_token


def _bearer(header: str) -> str | None:
    if header.startswith("Bearer "):
        return header[7:]
    return None


def try_get_current_user(request: Request) -> Principal | None:
    """Authenticate the request via its Bearer header. Never raises."""
    return principal_from_token(_bearer(request.headers.get("Authorization", "")))


def authenticate_websocket(websocket: WebSocket) -> Principal | None:
    """Authenticate a WebSocket upgrade via Bearer header or ?token= parameter."""
    token = _bearer(websocket.headers.get("Authorization", "")) or websocket.query_params.get("token")
    return principal_from_token(token)


def get_current_user(request: Request) -> Principal:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user: Principal = Depends(get_current_user)): ...
    """
    user = try_get_current_user(request)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return user


def require_staff(request: Request) -> Principal:
    """Require the admin or agent role (device configuration)."""
    user = get_current_user(request)
    if not user.is_staff:
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Admin or agent access required."},
        )
    return user


def require_admin(request: Request) -> Principal:
    """Require admin role. Raises HTTP 401 if unauthenticated, HTTP 403 if not admin."""
    user = get_current_user(request)
    if user.role != "admin":
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Admin access required."},
        )
    return user
