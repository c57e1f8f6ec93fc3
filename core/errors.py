"""
core/errors.py -- Error taxonomy for the polling and alerting engine.

Transport- and storage-specific exceptions (pysnmp, SQLAlchemy) are caught at
the boundary that owns them and re-raised as one of these types, so the
poller only ever reasons about the categories below.

  DeviceUnreachable          -- query timed out or failed at the transport.
                                Recovered by marking the device offline.
  ClassificationInputMissing -- a metric value was absent from the response.
                                The metric is treated as absent, never fatal.
  RegistryWriteFailure       -- device state could not be persisted.
  TicketCreationFailure      -- an incident ticket could not be created.
  SchedulerFatal             -- the cycle driver itself failed (e.g. the
                                registry could not be read). Logged; the next
                                tick still fires.
"""

from __future__ import annotations


class MonitoringError(Exception):
    """Base class for all polling engine errors."""


class DeviceUnreachable(MonitoringError):
    def __init__(self, device_id: int | None, reason: str) -> None:
        super().__init__(f"device {device_id} unreachable: {reason}")
        self.device_id = device_id
        self.reason = reason


class ClassificationInputMissing(MonitoringError):
    def __init__(self, metric: str) -> None:
        super().__init__(f"metric {metric!r} missing from response")
        self.metric = metric


class RegistryWriteFailure(MonitoringError):
    pass


class TicketCreationFailure(MonitoringError):
    pass


class SchedulerFatal(MonitoringError):
    pass
