"""
inventory/models.py -- Domain dataclass for a monitored device.

Pure data container with zero logic. Persistence lives in inventory/store.py,
health classification in core/classifier.py.
"""

from dataclasses import dataclass, field
from typing import Optional

from core.models import OFFLINE, MetricSnapshot, Thresholds


@dataclass
class Device:
    """A network device tracked by the poller.

    status, last_seen and metrics are observed state: only the reconciler
    writes them (see DeviceStore.update_status / mark_offline). Everything
    else is configuration owned by device management.

    id is None before the record is written to the database.
    """

    name: str
    ip_address: str
    device_type: str  # "router" | "switch" | "server" | "printer" | "firewall" | "other"
    location: str
    department: str
    snmp_community: str = "public"
    snmp_version: str = "2c"  # "1" | "2c"
    thresholds: Thresholds = field(default_factory=Thresholds)
    is_monitored: bool = True
    id: Optional[int] = None
    status: str = OFFLINE  # "online" | "offline" | "warning" | "critical"
    last_seen: Optional[str] = None  # ISO 8601, None until first successful poll
    metrics: Optional[MetricSnapshot] = None
    created_at: str = ""
    updated_at: str = ""
