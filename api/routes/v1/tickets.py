"""
api/routes/v1/tickets.py -- Read-only ticket listing.

Tickets are created by the incident ticketer when a device goes critical.
Ticket lifecycle management (assignment, comments, SLA) is out of scope for
this service; clients only need to see what alerting opened.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from api.models import TicketPriorityEnum, TicketResponse, TicketTypeEnum
from auth.dependencies import get_current_user
from tickets.store import TicketStore

router = APIRouter(dependencies=[Depends(get_current_user)])


@router.get("/tickets", response_model=list[TicketResponse])
def list_tickets(
    request: Request,
    type: Optional[TicketTypeEnum] = None,
    priority: Optional[TicketPriorityEnum] = None,
    limit: int = Query(default=100, ge=1, le=500),
) -> list[TicketResponse]:
    """Return tickets newest first, optionally filtered by type and priority."""
    store: TicketStore = request.app.state.tickets
    tickets = store.list_tickets(
        type=type.value if type else None,
        priority=priority.value if priority else None,
        limit=limit,
    )
    return [TicketResponse.from_ticket(t) for t in tickets]
