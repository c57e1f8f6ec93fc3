"""
core/incidents.py -- Turns warning/critical poll outcomes into alerts and tickets.

  warning  -> system_alert to staff roles
  critical -> system_alert to staff roles, plus a new incident ticket that is
              broadcast through the hub

De-duplication is off by default (dedup_seconds=0): every critical poll opens
a fresh ticket. With a positive window, an open incident for the same device
created inside the window suppresses the new one.

A ticket that cannot be created is logged and dropped. It never undoes the
status update that triggered it.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from sqlalchemy.exc import SQLAlchemyError

from core.errors import TicketCreationFailure
from core.models import CRITICAL, WARNING, MetricSnapshot

if TYPE_CHECKING:
    from inventory.models import Device
    from realtime.hub import NotificationHub
    from tickets.models import Ticket
    from tickets.store import TicketStore

logger = logging.getLogger("netpulse.incidents")

INCIDENT_CATEGORY = "Infrastructure"


def incident_title(device: Device) -> str:
    return f"Critical Alert: {device.name}"


def incident_description(device: Device, snapshot: MetricSnapshot) -> str:
    return (
        f"Device {device.name} has critical metrics:\n"
        f"CPU: {snapshot.cpu_usage or 0}%\n"
        f"Memory: {snapshot.memory_usage or 0}%"
    )


class IncidentTicketer:
    def __init__(
        self,
        tickets: TicketStore,
        hub: NotificationHub,
        requester: str = "system",
        dedup_seconds: int = 0,
    ) -> None:
        self.tickets = tickets
        self.hub = hub
        self.requester = requester
        self.dedup_seconds = dedup_seconds

    def raise_alert(self, device: Device, snapshot: MetricSnapshot, status: str) -> Optional[Ticket]:
        """Alert staff about a threshold breach; open an incident when critical.

        Returns the created ticket, or None when no ticket was opened.
        """
        if status not in (WARNING, CRITICAL):
            return None
        self.hub.emit_system_alert(
            {
                "type": "device_threshold",
                "severity": status,
                "deviceId": device.id,
                "deviceName": device.name,
                "metrics": snapshot.to_dict(),
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        )
        if status != CRITICAL:
            return None
        try:
            ticket = self.open_incident(device, snapshot)
        except TicketCreationFailure as exc:
            logger.error("Incident for %s not created: %s", device.name, exc)
            return None
        if ticket is not None:
            self.hub.emit_ticket_update(ticket)
        return ticket

    def open_incident(self, device: Device, snapshot: MetricSnapshot) -> Optional[Ticket]:
        """Create the incident ticket, or return None if de-duplication suppressed it.

        Raises TicketCreationFailure when the ticket store rejects the write.
        """
        title = incident_title(device)
        try:
            if self.dedup_seconds > 0:
                existing = self.tickets.find_open_incident(title, self.dedup_seconds)
                if existing is not None:
                    logger.info(
                        "Incident for %s suppressed: %s still open", device.name, existing.ticket_number
                    )
                    return None
            ticket = self.tickets.create(
                title=title,
                description=incident_description(device, snapshot),
                type="incident",
                priority="critical",
                category=INCIDENT_CATEGORY,
                requester=self.requester,
            )
        except (SQLAlchemyError, ValueError) as exc:
            raise TicketCreationFailure(str(exc)) from exc
        logger.warning("Opened incident %s for %s", ticket.ticket_number, device.name)
        return ticket
