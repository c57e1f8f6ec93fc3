"""
core/reconciler.py -- Makes a poll outcome durable, then fans it out.

Per device the order is fixed: registry write, then device_updated event,
then alerting/ticketing. If the write fails nothing else happens for that
device, so the live feed never shows a state the database does not hold.

Successful poll:  status, last_seen=now and metrics are written.
Unreachable poll: only status=offline is written. last_seen and metrics keep
                  their previous values because the device was not observed.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from core.classifier import classify_unreachable
from core.errors import RegistryWriteFailure
from core.models import CRITICAL, WARNING, MetricSnapshot

if TYPE_CHECKING:
    from core.incidents import IncidentTicketer
    from inventory.models import Device
    from inventory.store import DeviceStore
    from realtime.hub import NotificationHub

logger = logging.getLogger("netpulse.reconciler")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class StateReconciler:
    def __init__(self, registry: DeviceStore, hub: NotificationHub, incidents: IncidentTicketer) -> None:
        self.registry = registry
        self.hub = hub
        self.incidents = incidents

    def reconcile(self, device: Device, status: str, snapshot: MetricSnapshot) -> bool:
        """Persist a successful poll and trigger its side effects.

        Returns False when the state could not be saved (write failure or the
        device was removed mid-cycle); no event or ticket follows in that case.
        """
        last_seen = snapshot.collected_at or _now_iso()
        try:
            saved = self.registry.update_status(device.id, status, last_seen, snapshot)
        except RegistryWriteFailure as exc:
            logger.error("State for %s not saved: %s", device.name, exc)
            return False
        if not saved:
            logger.info("Device %s no longer registered; result discarded", device.name)
            return False

        self.hub.emit_device_update(
            device.id,
            {
                "status": status,
                "lastSeen": last_seen,
                "timestamp": last_seen,
                "metrics": snapshot.to_dict(),
            },
        )
        if device.status != status:
            logger.info("Device %s: %s -> %s", device.name, device.status, status)

        if status in (WARNING, CRITICAL):
            self.incidents.raise_alert(device, snapshot, status)
        return True

    def reconcile_unreachable(self, device: Device, reason: Optional[str] = None) -> bool:
        """Persist an unreachable poll as offline without advancing last_seen."""
        status = classify_unreachable()
        try:
            saved = self.registry.mark_offline(device.id)
        except RegistryWriteFailure as exc:
            logger.error("Offline state for %s not saved: %s", device.name, exc)
            return False
        if not saved:
            logger.info("Device %s no longer registered; result discarded", device.name)
            return False

        self.hub.emit_device_update(
            device.id,
            {
                "status": status,
                "lastSeen": device.last_seen,
                "timestamp": _now_iso(),
            },
        )
        if device.status != status:
            logger.warning("Device %s: %s -> offline (%s)", device.name, device.status, reason or "unreachable")
        return True
