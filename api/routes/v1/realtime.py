"""
api/routes/v1/realtime.py -- WebSocket endpoint and presence listing.

WS /ws
  Handshake: the JWT comes from "Authorization: Bearer <token>" or, for
  browsers, from ?token=. A missing or invalid token closes the socket with
  1008 (policy violation) before it is accepted.

  After registration the server sends {"event": "connected", ...}. Every
  server message has the shape {"event": <name>, "data": <payload>}.

  Client -> server messages are JSON objects with an "action":
    {"action": "join_ticket",  "ticket_id": 7}   -> "joined"
    {"action": "leave_ticket", "ticket_id": 7}   -> "left"
    {"action": "typing", "ticket_id": 7, "is_typing": true}
        relayed as "user_typing" to everyone else in ticket_7

  Outgoing messages are drained from the connection's bounded hub queue by a
  sender task, so a slow client never blocks the publisher.

GET /api/v1/realtime/presence (admin)
  Users with at least one open connection.
"""

import asyncio
import logging

from fastapi import APIRouter, Depends, Request, WebSocket, WebSocketDisconnect, status

from api.models import PresenceEntry
from auth.dependencies import authenticate_websocket, require_admin
from auth.models import Principal
from realtime.hub import Connection, NotificationHub, ticket_topic

logger = logging.getLogger("netpulse.realtime")

router = APIRouter(prefix="/realtime", dependencies=[Depends(require_admin)])
ws_router = APIRouter()


@router.get("/presence", response_model=list[PresenceEntry])
def presence(request: Request) -> list[PresenceEntry]:
    hub: NotificationHub = request.app.state.hub
    return [PresenceEntry(**entry) for entry in hub.connected_users()]


async def _forward(websocket: WebSocket, conn: Connection) -> None:
    while True:
        message = await conn.queue.get()
        await websocket.send_json(message)


def _handle_client_message(hub: NotificationHub, conn: Connection, user: Principal, message: dict) -> None:
    action = message.get("action") if isinstance(message, dict) else None
    ticket_id = message.get("ticket_id") if isinstance(message, dict) else None

    if action in ("join_ticket", "leave_ticket", "typing") and ticket_id is None:
        hub.send(conn, "error", {"message": f"{action} requires ticket_id"})
        return

    if action == "join_ticket":
        hub.join(conn, ticket_topic(ticket_id))
        hub.send(conn, "joined", {"ticketId": ticket_id})
    elif action == "leave_ticket":
        hub.leave(conn, ticket_topic(ticket_id))
        hub.send(conn, "left", {"ticketId": ticket_id})
    elif action == "typing":
        hub.publish(
            [ticket_topic(ticket_id)],
            "user_typing",
            {
                "userId": user.user_id,
                "username": user.username,
                "ticketId": ticket_id,
                "isTyping": bool(message.get("is_typing", True)),
            },
            exclude=conn,
        )
    else:
        hub.send(conn, "error", {"message": f"Unknown action: {action}"})


@ws_router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    user = authenticate_websocket(websocket)
    if user is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    hub: NotificationHub = websocket.app.state.hub
    await websocket.accept()
    conn = hub.connect(user.user_id, user.role)
    sender = asyncio.create_task(_forward(websocket, conn))
    hub.send(conn, "connected", {"userId": user.user_id, "role": user.role, "connectedAt": conn.connected_at})
    try:
        while True:
            try:
                message = await websocket.receive_json()
            except ValueError:
                hub.send(conn, "error", {"message": "Messages must be JSON objects."})
                continue
            _handle_client_message(hub, conn, user, message)
    except WebSocketDisconnect:
        pass
    finally:
        sender.cancel()
        try:
            await sender
        except (asyncio.CancelledError, WebSocketDisconnect, RuntimeError):
            pass
        hub.disconnect(conn)
