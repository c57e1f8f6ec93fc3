"""
auth/models.py -- Identity carried by a verified access token.

Pattern: Data class (pure data container, zero logic), like inventory/models.py
and tickets/models.py.

Layer rule: no imports from api/, core/, inventory/, tickets/, or realtime/.
"""

from __future__ import annotations

from dataclasses import dataclass

ROLES = ("admin", "agent", "user")


@dataclass(frozen=True)
class Principal:
    """The caller behind an HTTP request or WebSocket connection."""

    user_id: int
    username: str
    role: str  # "admin" | "agent" | "user"

    @property
    def is_staff(self) -> bool:
        return self.role in ("admin", "agent")
