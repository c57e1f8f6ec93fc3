"""
tickets/models.py -- Domain dataclass for a ticket record.

Only the fields the poller needs to open an incident, plus the assignment
field the real-time fan-out routes on. Ticket workflow lives elsewhere.
"""

from dataclasses import asdict, dataclass
from typing import Optional


@dataclass
class Ticket:
    """A trackable work item.

    ticket_number is assigned by the store on insert (TKT-<epoch ms>-<NNNN>).
    id is None before the record is written to the database.
    """

    title: str
    description: str
    type: str  # "incident" | "problem" | "change" | "service_request"
    priority: str  # "low" | "medium" | "high" | "critical"
    category: str
    requester: str
    status: str = "new"
    assigned_to: Optional[int] = None
    ticket_number: str = ""
    id: Optional[int] = None
    created_at: str = ""

    def to_dict(self) -> dict:
        return asdict(self)
