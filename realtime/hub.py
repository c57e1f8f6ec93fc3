"""
realtime/hub.py -- Topic-scoped, best-effort fan-out to live subscribers.

Each authenticated WebSocket connection registers a Connection holding a
bounded asyncio.Queue. Publishing only ever calls put_nowait(): a subscriber
whose queue is full loses that message, and publishing to a topic nobody
listens on is a no-op. The poll cycle therefore never waits on a slow client.

Topics:
  role_<role>   -- joined on connect (e.g. role_admin, role_agent)
  user_<id>     -- joined on connect, personal delivery
  ticket_<id>   -- joined/left on client request

Presence is tracked per user id for as long as at least one of that user's
connections is open.

All methods run on the event loop thread; none of them await.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

logger = logging.getLogger("netpulse.realtime")

DEVICE_UPDATED = "device_updated"
TICKET_UPDATED = "ticket_updated"
TICKET_NOTIFICATION = "ticket_notification"
SYSTEM_ALERT = "system_alert"

# Roles that receive ticket notifications and system alerts.
STAFF_ROLES = ("admin", "agent")


def role_topic(role: str) -> str:
    return f"role_{role}"


def user_topic(user_id: Any) -> str:
    return f"user_{user_id}"


def ticket_topic(ticket_id: Any) -> str:
    return f"ticket_{ticket_id}"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(eq=False)
class Connection:
    """One live transport connection and the topics it listens on."""

    id: int
    user_id: int
    role: str
    queue: asyncio.Queue
    connected_at: str
    topics: set[str] = field(default_factory=set)


class NotificationHub:
    def __init__(self, queue_size: int = 100) -> None:
        self.queue_size = queue_size
        self.dropped = 0
        self._connections: dict[int, Connection] = {}
        self._presence: dict[int, dict] = {}
        self._ids = itertools.count(1)

    # ------------------------------------------------------------------
    # Connection bookkeeping
    # ------------------------------------------------------------------

    def connect(self, user_id: int, role: str) -> Connection:
        conn = Connection(
            id=next(self._ids),
            user_id=user_id,
            role=role,
            queue=asyncio.Queue(maxsize=self.queue_size),
            connected_at=_now_iso(),
            topics={role_topic(role), user_topic(user_id)},
        )
        self._connections[conn.id] = conn
        presence = self._presence.setdefault(
            user_id,
            {"user_id": user_id, "role": role, "connected_at": conn.connected_at, "connections": 0},
        )
        presence["connections"] += 1
        logger.info("User %s connected (%d open connection(s))", user_id, presence["connections"])
        return conn

    def disconnect(self, conn: Connection) -> None:
        if self._connections.pop(conn.id, None) is None:
            return
        presence = self._presence.get(conn.user_id)
        if presence is not None:
            presence["connections"] -= 1
            if presence["connections"] <= 0:
                del self._presence[conn.user_id]
        logger.info("User %s disconnected", conn.user_id)

    def join(self, conn: Connection, topic: str) -> None:
        conn.topics.add(topic)

    def leave(self, conn: Connection, topic: str) -> None:
        conn.topics.discard(topic)

    def connected_users(self) -> list[dict]:
        return [dict(entry) for entry in self._presence.values()]

    def is_user_online(self, user_id: int) -> bool:
        return user_id in self._presence

    def __len__(self) -> int:
        return len(self._connections)

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def _deliver(self, conn: Connection, message: dict) -> bool:
        try:
            conn.queue.put_nowait(message)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("Dropped %s for user %s: subscriber queue full", message["event"], conn.user_id)
            return False
        return True

    def send(self, conn: Connection, event: str, data: Any) -> bool:
        """Deliver directly to one connection (acks, welcome message)."""
        return self._deliver(conn, {"event": event, "data": data})

    def publish(
        self,
        topics: Iterable[str],
        event: str,
        data: Any,
        exclude: Optional[Connection] = None,
    ) -> int:
        """Deliver to every connection subscribed to any of the topics, once each.

        Returns the number of connections the message was queued for.
        """
        wanted = set(topics)
        message = {"event": event, "data": data}
        delivered = 0
        for conn in list(self._connections.values()):
            if conn is exclude or not (conn.topics & wanted):
                continue
            if self._deliver(conn, message):
                delivered += 1
        return delivered

    def broadcast(self, event: str, data: Any) -> int:
        message = {"event": event, "data": data}
        delivered = 0
        for conn in list(self._connections.values()):
            if self._deliver(conn, message):
                delivered += 1
        return delivered

    # ------------------------------------------------------------------
    # Domain events
    # ------------------------------------------------------------------

    def emit_device_update(self, device_id: int, update: dict) -> int:
        """Every connected client sees every device update."""
        return self.broadcast(DEVICE_UPDATED, {"deviceId": device_id, **update})

    def emit_ticket_update(self, ticket: Any) -> int:
        """Ticket topic and assignee get ticket_updated; staff roles get ticket_notification."""
        payload = ticket.to_dict() if hasattr(ticket, "to_dict") else dict(ticket)
        topics = [ticket_topic(payload.get("id"))]
        if payload.get("assigned_to") is not None:
            topics.append(user_topic(payload["assigned_to"]))
        delivered = self.publish(topics, TICKET_UPDATED, payload)
        delivered += self.publish([role_topic(role) for role in STAFF_ROLES], TICKET_NOTIFICATION, payload)
        return delivered

    def emit_system_alert(self, alert: dict) -> int:
        return self.publish([role_topic(role) for role in STAFF_ROLES], SYSTEM_ALERT, alert)
