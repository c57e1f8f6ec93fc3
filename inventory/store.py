"""
inventory/store.py -- SQLAlchemy-backed Device Registry.

Uses SQLAlchemy Core (not ORM) so the Device dataclass in inventory/models.py
remains the authoritative domain representation. Swapping SQLite for
PostgreSQL is a connection string change.

Pattern: Repository + Data Mapper. DeviceStore is the repository;
_row_to_device is the mapper. Neither the poller nor the route handlers touch
SQL directly.

Write ownership:
  Configuration columns are written by device management (create_device,
  update_device). Observed-state columns (status, last_seen, metrics) are
  written only through update_status() and mark_offline(), which the
  reconciler calls after each poll. update_device() refuses them.

Usage:
    store = DeviceStore()                                # SQLite default
    store = DeviceStore("postgresql://user:pw@host/db")  # PostgreSQL
    device_id = store.create_device(device)
    for device in store.list_monitored(): ...
    store.update_status(device_id, "online", last_seen, snapshot)
    store.close()
"""

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from core.errors import RegistryWriteFailure
from core.models import OFFLINE, STATUSES, MetricSnapshot, Thresholds
from inventory.models import Device

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'netpulse_inventory.db'}"

# Columns device management may change. status/last_seen/metrics are absent on
# purpose: they belong to the reconciler.
_CONFIG_FIELDS = frozenset(
    {
        "name",
        "ip_address",
        "snmp_community",
        "snmp_version",
        "device_type",
        "location",
        "department",
        "thresholds",
        "is_monitored",
    }
)

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_devices = Table(
    "devices",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False, unique=True),
    Column("ip_address", String(45), nullable=False, unique=True),
    Column("snmp_community", String(255), nullable=False, server_default="public"),
    Column("snmp_version", String(4), nullable=False, server_default="2c"),
    Column("device_type", String(30), nullable=False),
    Column("location", String(255), nullable=False),
    Column("department", String(255), nullable=False),
    Column("thresholds", Text, nullable=False),  # JSON object serialized as text
    Column("is_monitored", Integer, nullable=False, server_default="1"),  # boolean stored as 0/1
    Column("status", String(20), nullable=False, server_default=OFFLINE),
    Column("last_seen", String(32)),
    Column("metrics", Text),  # JSON object, NULL until first successful poll
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so API reads do not block poller writes.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class DeviceStore:
    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            # The poller writes from the event loop thread while sync route
            # handlers read from the threadpool.
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Device management (configuration)
    # ------------------------------------------------------------------

    def create_device(self, device: Device) -> int:
        """Insert a new device and return its assigned database ID.

        Observed state always starts as offline with no last_seen, whatever
        the passed dataclass holds.
        Raises sqlalchemy.exc.IntegrityError if the name or address is taken.
        """
        now = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(
                _devices.insert().values(
                    name=device.name,
                    ip_address=device.ip_address,
                    snmp_community=device.snmp_community,
                    snmp_version=device.snmp_version,
                    device_type=device.device_type,
                    location=device.location,
                    department=device.department,
                    thresholds=json.dumps(device.thresholds.to_dict()),
                    is_monitored=1 if device.is_monitored else 0,
                    status=OFFLINE,
                    created_at=now,
                    updated_at=now,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def update_device(self, device_id: int, **fields) -> bool:
        """Update configuration fields on an existing device.

        Accepts any subset of _CONFIG_FIELDS. thresholds may be a Thresholds
        instance or a nested dict. Raises ValueError for any other field,
        including status/last_seen/metrics.

        Returns True if a row was updated, False if device_id was not found.
        """
        unknown = set(fields) - _CONFIG_FIELDS
        if unknown:
            raise ValueError(f"Fields not writable through device management: {', '.join(sorted(unknown))}")
        if "thresholds" in fields:
            thresholds = fields["thresholds"]
            if not isinstance(thresholds, Thresholds):
                thresholds = Thresholds.from_dict(thresholds)
            fields["thresholds"] = json.dumps(thresholds.to_dict())
        if "is_monitored" in fields:
            fields["is_monitored"] = 1 if fields["is_monitored"] else 0
        fields["updated_at"] = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(_devices.update().where(_devices.c.id == device_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def delete_device(self, device_id: int) -> bool:
        """Remove a device. Returns False if it did not exist."""
        with self.engine.connect() as conn:
            result = conn.execute(_devices.delete().where(_devices.c.id == device_id))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, device_id: int) -> Optional[Device]:
        """Fetch a single device by ID. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_devices.select().where(_devices.c.id == device_id)).fetchone()
        return _row_to_device(row) if row is not None else None

    def get_by_name(self, name: str) -> Optional[Device]:
        with self.engine.connect() as conn:
            row = conn.execute(_devices.select().where(_devices.c.name == name)).fetchone()
        return _row_to_device(row) if row is not None else None

    def list_devices(self) -> list[Device]:
        """Return all devices ordered by name."""
        with self.engine.connect() as conn:
            rows = conn.execute(_devices.select().order_by(_devices.c.name)).fetchall()
        return [_row_to_device(r) for r in rows]

    def list_monitored(self) -> list[Device]:
        """Return devices with monitoring enabled, ordered by name.

        Read fresh on every poll cycle so additions and removals take effect
        without restarting the poller.
        """
        with self.engine.connect() as conn:
            rows = conn.execute(
                _devices.select().where(_devices.c.is_monitored == 1).order_by(_devices.c.name)
            ).fetchall()
        return [_row_to_device(r) for r in rows]

    def status_counts(self) -> dict[str, int]:
        """Return the number of devices per health status."""
        counts = {status: 0 for status in STATUSES}
        with self.engine.connect() as conn:
            rows = conn.execute(select(_devices.c.status)).fetchall()
        for row in rows:
            if row.status in counts:
                counts[row.status] += 1
        return counts

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                conn.execute(select(1))
        except SQLAlchemyError:
            return False
        return True

    # ------------------------------------------------------------------
    # Observed state (reconciler only)
    # ------------------------------------------------------------------

    def update_status(
        self,
        device_id: int,
        status: str,
        last_seen: str,
        metrics: Optional[MetricSnapshot],
    ) -> bool:
        """Persist the outcome of a successful poll.

        Writes status, last_seen and the metric snapshot in one statement.
        Returns False if the device no longer exists (removed mid-cycle).
        Raises RegistryWriteFailure on any database error.
        """
        if status not in STATUSES:
            raise ValueError(f"Unknown device status: {status}")
        values = {
            "status": status,
            "last_seen": last_seen,
            "metrics": json.dumps(metrics.to_dict()) if metrics is not None else None,
        }
        return self._write_state(device_id, values)

    def mark_offline(self, device_id: int) -> bool:
        """Persist an unreachable poll: status only.

        last_seen and metrics are left as they were -- the device was not
        actually observed.
        """
        return self._write_state(device_id, {"status": OFFLINE})

    def _write_state(self, device_id: int, values: dict) -> bool:
        try:
            with self.engine.connect() as conn:
                result = conn.execute(_devices.update().where(_devices.c.id == device_id).values(**values))
                conn.commit()
        except SQLAlchemyError as exc:
            raise RegistryWriteFailure(f"could not save state for device {device_id}: {exc}") from exc
        return result.rowcount > 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern -- DB row -> domain dataclass)
# ---------------------------------------------------------------------------


def _row_to_device(row) -> Device:
    metrics = MetricSnapshot.from_dict(json.loads(row.metrics)) if row.metrics else None
    return Device(
        id=row.id,
        name=row.name,
        ip_address=row.ip_address,
        snmp_community=row.snmp_community,
        snmp_version=row.snmp_version,
        device_type=row.device_type,
        location=row.location,
        department=row.department,
        thresholds=Thresholds.from_dict(json.loads(row.thresholds)),
        is_monitored=bool(row.is_monitored),
        status=row.status,
        last_seen=row.last_seen,
        metrics=metrics,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )
