"""
API request and response models for NetPulse REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in inventory/, tickets/
and core/models.py, which own the internal domain representation. Route
handlers map between the two.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from core.models import Thresholds
from inventory.models import Device
from tickets.models import Ticket

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class DeviceTypeEnum(str, Enum):
    router = "router"
    switch = "switch"
    server = "server"
    printer = "printer"
    firewall = "firewall"
    other = "other"


class SnmpVersionEnum(str, Enum):
    v1 = "1"
    v2c = "2c"


class TicketTypeEnum(str, Enum):
    incident = "incident"
    problem = "problem"
    change = "change"
    service_request = "service_request"


class TicketPriorityEnum(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"
    critical = "critical"


# ---------------------------------------------------------------------------
# Thresholds
# ---------------------------------------------------------------------------


class ThresholdPairModel(BaseModel):
    warning: float = Field(ge=0, le=100)
    critical: float = Field(ge=0, le=100)

    @model_validator(mode="after")
    def warning_below_critical(self) -> "ThresholdPairModel":
        if self.warning > self.critical:
            raise ValueError("warning threshold must not exceed critical threshold")
        return self


class ThresholdsModel(BaseModel):
    """Per-metric limits. Omitted metrics take the documented defaults."""

    cpu: ThresholdPairModel = Field(default_factory=lambda: ThresholdPairModel(warning=70, critical=90))
    memory: ThresholdPairModel = Field(default_factory=lambda: ThresholdPairModel(warning=80, critical=95))
    disk: ThresholdPairModel = Field(default_factory=lambda: ThresholdPairModel(warning=85, critical=95))

    def to_domain(self) -> Thresholds:
        return Thresholds.from_dict(self.model_dump())


# ---------------------------------------------------------------------------
# Devices
# ---------------------------------------------------------------------------


class DeviceCreate(BaseModel):
    """Request body for POST /api/v1/devices.

    status, last_seen and metrics are not accepted: they only ever come from
    polling.
    """

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    name: str = Field(min_length=1, max_length=255)
    ip_address: str = Field(min_length=1, max_length=45)
    snmp_community: str = Field(default="public", min_length=1, max_length=255)
    snmp_version: SnmpVersionEnum = SnmpVersionEnum.v2c
    device_type: DeviceTypeEnum
    location: str = Field(min_length=1, max_length=255)
    department: str = Field(min_length=1, max_length=255)
    thresholds: ThresholdsModel = Field(default_factory=ThresholdsModel)
    is_monitored: bool = True


class DevicePatch(BaseModel):
    """Request body for PATCH /api/v1/devices/{device_id}. Configuration fields only."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    ip_address: Optional[str] = Field(default=None, min_length=1, max_length=45)
    snmp_community: Optional[str] = Field(default=None, min_length=1, max_length=255)
    snmp_version: Optional[SnmpVersionEnum] = None
    device_type: Optional[DeviceTypeEnum] = None
    location: Optional[str] = Field(default=None, min_length=1, max_length=255)
    department: Optional[str] = Field(default=None, min_length=1, max_length=255)
    thresholds: Optional[ThresholdsModel] = None
    is_monitored: Optional[bool] = None


class MetricsModel(BaseModel):
    model_config = ConfigDict(frozen=True)

    collected_at: Optional[str] = None
    uptime: Optional[int] = None
    cpu_usage: Optional[int] = None
    memory_usage: Optional[int] = None
    disk_usage: Optional[int] = None
    network_in: Optional[int] = None
    network_out: Optional[int] = None


class DeviceResponse(BaseModel):
    """A device with its configuration and last observed state."""

    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    ip_address: str
    snmp_version: str
    device_type: str
    location: str
    department: str
    thresholds: ThresholdsModel
    is_monitored: bool
    status: str
    last_seen: Optional[str]
    metrics: Optional[MetricsModel]
    created_at: str
    updated_at: str

    @classmethod
    def from_device(cls, device: Device) -> "DeviceResponse":
        """Map a domain Device to the API shape. The community string is never returned."""
        return cls(
            id=device.id,
            name=device.name,
            ip_address=device.ip_address,
            snmp_version=device.snmp_version,
            device_type=device.device_type,
            location=device.location,
            department=device.department,
            thresholds=ThresholdsModel.model_validate(device.thresholds.to_dict()),
            is_monitored=device.is_monitored,
            status=device.status,
            last_seen=device.last_seen,
            metrics=MetricsModel(**device.metrics.to_dict()) if device.metrics else None,
            created_at=device.created_at,
            updated_at=device.updated_at,
        )


# ---------------------------------------------------------------------------
# Tickets
# ---------------------------------------------------------------------------


class TicketResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    ticket_number: str
    title: str
    description: str
    type: str
    priority: str
    status: str
    category: str
    requester: str
    assigned_to: Optional[int]
    created_at: str

    @classmethod
    def from_ticket(cls, ticket: Ticket) -> "TicketResponse":
        return cls(**ticket.to_dict())


# ---------------------------------------------------------------------------
# Monitoring
# ---------------------------------------------------------------------------


class CycleReportModel(BaseModel):
    model_config = ConfigDict(frozen=True)

    started_at: str
    finished_at: str
    polled: int
    counts: dict[str, int]
    discarded: int
    failed: int


class MonitoringStatusResponse(BaseModel):
    """Response for GET /api/v1/monitoring/status."""

    model_config = ConfigDict(frozen=True)

    running: bool
    interval_seconds: float
    max_concurrency: int
    cycle_in_progress: bool
    cycles_skipped: int
    sessions: int
    last_cycle: Optional[CycleReportModel]
    device_counts: dict[str, int]


class PresenceEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: int
    role: str
    connected_at: str
    connections: int


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
