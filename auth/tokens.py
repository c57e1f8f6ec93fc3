"""
auth/tokens.py -- JWT issue and verification.

Security design decisions:
  JWT: python-jose with HS256. Tokens are signed with SECRET_KEY and carry
       user_id, username (sub), role, and expiry. Verification returns None on
       any failure -- the HTTP layer turns that into a 401, the WebSocket
       layer into a 1008 close before accept.

  SECRET_KEY: sourced from core.config.get_settings(). The Settings class
       validates the key at startup: dev mode (DEBUG=true) auto-generates a
       random key with a warning; production mode refuses to start without one.

Users and roles are managed by the surrounding ticketing system. NetPulse only
verifies the tokens it is handed and reads identity from the claims.

Layer rule: no imports from api/, inventory/, tickets/, or realtime/. Import
from core/ is allowed.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt

from auth.models import ROLES, Principal
from core.config import get_settings

logger = logging.getLogger("netpulse.auth")

_settings = get_settings()

_ALGORITHM = "HS256"


def create_access_token(user_id: int, username: str, role: str, expire_seconds: int = 0) -> str:
    """Encode a signed JWT with user identity and configurable expiry.

    Args:
        user_id:        Numeric user ID in the ticketing system.
        username:       Stored as the JWT subject claim.
        role:           One of auth.models.ROLES.
        expire_seconds: Token lifetime. If 0 (default), uses
                        Settings.token_expire_seconds.
    """
    if role not in ROLES:
        raise ValueError(f"Unknown role: {role}")
    duration = expire_seconds if expire_seconds > 0 else _settings.token_expire_seconds
    expire = datetime.now(timezone.utc) + timedelta(seconds=duration)
    payload = {
        "sub": username,
        "user_id": user_id,
        "role": role,
        "exp": expire,
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def decode_access_token(token: str) -> dict | None:
    """Decode and verify a JWT. Returns the payload dict or None on any failure."""
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
        if "user_id" not in payload or "role" not in payload:
            return None
        return payload
    except JWTError:
        return None


def principal_from_token(token: Optional[str]) -> Principal | None:
    """Verify a bearer token and return the identity it carries, or None."""
    if not token:
        return None
    payload = decode_access_token(token)
    if payload is None or payload["role"] not in ROLES:
        return None
    return Principal(
        user_id=payload["user_id"],
        username=payload.get("sub", ""),
        role=payload["role"],
    )
