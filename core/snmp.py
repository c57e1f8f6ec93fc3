"""
core/snmp.py -- SNMP session pool: one reusable query channel per device.

Async GET via pysnmp's v3arch asyncio high-level API (get_cmd, SnmpEngine,
CommunityData, UdpTransportTarget). Each SNMPSession owns its own SnmpEngine
and transport target; the SessionPool is their only owner.

Failure translation: every timeout, transport error, error-indication and
error-status is raised as core.errors.DeviceUnreachable. No pysnmp or
pyasn1 exception leaves this module.

Usage:
    pool = SessionPool(timeout=5.0, retries=1)
    values = await pool.query(device)   # [uptime, cpu, storage, in, out, disk]
    await pool.discard(device.id)       # device removed or reconfigured
    await pool.close_all()              # monitoring stopped
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Optional

from pyasn1.error import PyAsn1Error
from pysnmp.error import PySnmpError
from pysnmp.hlapi.v3arch.asyncio import (
    CommunityData,
    ContextData,
    ObjectIdentity,
    ObjectType,
    SnmpEngine,
    UdpTransportTarget,
    get_cmd,
)
from pysnmp.proto.rfc1905 import EndOfMibView, NoSuchInstance, NoSuchObject

from core.errors import DeviceUnreachable

if TYPE_CHECKING:
    from inventory.models import Device

logger = logging.getLogger("netpulse.snmp")

# Fixed, ordered query set. Table columns are read at instance 1, except the
# disk reading, which is a second hrStorageUsed row.
METRIC_OIDS: tuple[str, ...] = (
    "1.3.6.1.2.1.1.3.0",  # sysUpTime
    "1.3.6.1.2.1.25.3.3.1.2.1",  # hrProcessorLoad
    "1.3.6.1.2.1.25.2.3.1.6.1",  # hrStorageUsed
    "1.3.6.1.2.1.2.2.1.10.1",  # ifInOctets
    "1.3.6.1.2.1.2.2.1.16.1",  # ifOutOctets
    "1.3.6.1.2.1.25.2.3.1.6.31",  # hrStorageUsed, first fixed disk in Net-SNMP's storage table
)

_EMPTY_VALUES = (NoSuchObject, NoSuchInstance, EndOfMibView)

_TRANSPORT_ERRORS = (asyncio.TimeoutError, OSError, PySnmpError, PyAsn1Error)


def _mp_model(version: str) -> int:
    """Map the stored protocol version to pysnmp's message processing model."""
    if version == "1":
        return 0
    if version == "2c":
        return 1
    raise ValueError(f"Unsupported SNMP version: {version}")


def _plain(value: Any) -> Optional[int]:
    if isinstance(value, _EMPTY_VALUES):
        return None
    try:
        return int(value)
    except (TypeError, ValueError, PyAsn1Error):
        return None


class SNMPSession:
    """A query channel bound to one device's address and credentials."""

    def __init__(
        self,
        device_id: Optional[int],
        address: str,
        community: str,
        version: str = "2c",
        port: int = 161,
        timeout: float = 5.0,
        retries: int = 1,
    ) -> None:
        self.device_id = device_id
        self.address = address
        self.community = community
        self.version = version
        self.port = port
        self.timeout = timeout
        self.retries = retries
        self.closed = False
        self._auth = CommunityData(community, mpModel=_mp_model(version))
        self._engine = SnmpEngine()
        self._transport: Optional[UdpTransportTarget] = None

    def matches(self, device: Device) -> bool:
        """True if the session was built from the device's current settings."""
        return (
            self.address == device.ip_address
            and self.community == device.snmp_community
            and self.version == device.snmp_version
        )

    async def query(self) -> list[Optional[int]]:
        """GET METRIC_OIDS and return their values in request order.

        Values the agent reports as absent come back as None. Raises
        DeviceUnreachable on any failure.
        """
        if self.closed:
            raise DeviceUnreachable(self.device_id, "session closed")
        try:
            if self._transport is None:
                self._transport = await UdpTransportTarget.create(
                    (self.address, self.port),
                    timeout=self.timeout,
                    retries=self.retries,
                )
            error_indication, error_status, error_index, var_binds = await asyncio.wait_for(
                get_cmd(
                    self._engine,
                    self._auth,
                    self._transport,
                    ContextData(),
                    *[ObjectType(ObjectIdentity(oid)) for oid in METRIC_OIDS],
                ),
                # pysnmp enforces timeout/retries itself; this is a backstop.
                timeout=self.timeout * (self.retries + 1) + 2,
            )
        except _TRANSPORT_ERRORS as exc:
            raise DeviceUnreachable(self.device_id, f"{type(exc).__name__}: {exc}") from exc

        if error_indication:
            raise DeviceUnreachable(self.device_id, str(error_indication))
        if error_status:
            raise DeviceUnreachable(self.device_id, f"{error_status.prettyPrint()} at index {error_index}")
        return [_plain(var_bind[1]) for var_bind in var_binds]

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            self._engine.close_dispatcher()
        except PySnmpError as exc:
            logger.debug("Closing SNMP engine for device %s: %s", self.device_id, exc)


class SessionPool:
    """Owns exactly one live SNMPSession per device id.

    The session map is only touched under an asyncio.Lock, so concurrent
    polls for the same device never create two sessions.
    """

    def __init__(self, port: int = 161, timeout: float = 5.0, retries: int = 1, session_factory=SNMPSession) -> None:
        self.port = port
        self.timeout = timeout
        self.retries = retries
        self._session_factory = session_factory
        self._sessions: dict[int, SNMPSession] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    async def get_session(self, device: Device) -> SNMPSession:
        """Return the device's session, creating it on first use.

        A session whose address, community or version no longer matches the
        device is replaced.
        """
        async with self._lock:
            session = self._sessions.get(device.id)
            if session is not None and session.matches(device):
                return session
            if session is not None:
                session.close()
            try:
                session = self._session_factory(
                    device.id,
                    device.ip_address,
                    device.snmp_community,
                    version=device.snmp_version,
                    port=self.port,
                    timeout=self.timeout,
                    retries=self.retries,
                )
            except (ValueError, PySnmpError) as exc:
                raise DeviceUnreachable(device.id, f"cannot open session: {exc}") from exc
            self._sessions[device.id] = session
            logger.debug("Opened SNMP session for %s (%s)", device.name, device.ip_address)
            return session

    async def query(self, device: Device) -> list[Optional[int]]:
        session = await self.get_session(device)
        return await session.query()

    async def discard(self, device_id: int) -> bool:
        """Close and forget one device's session. Returns False if there was none."""
        async with self._lock:
            session = self._sessions.pop(device_id, None)
        if session is None:
            return False
        session.close()
        return True

    async def close_all(self) -> int:
        """Close every session. Returns how many were closed."""
        async with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            session.close()
        if sessions:
            logger.info("Closed %d SNMP session(s)", len(sessions))
        return len(sessions)
