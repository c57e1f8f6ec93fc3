"""
tickets/store.py -- SQLAlchemy Core persistence for tickets.

Pattern: Repository + Data Mapper (same as inventory/store.py).

The poller only creates tickets. Listing and lookup exist so operators can see
what the poller opened, and so incident de-duplication can ask whether an
equivalent incident is already open.

Security: all queries use bound parameters. No f-strings in SQL.
"""

import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, func, select
from sqlalchemy.engine import Engine

from tickets.models import Ticket

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'netpulse_tickets.db'}"

TICKET_TYPES = ("incident", "problem", "change", "service_request")
TICKET_PRIORITIES = ("low", "medium", "high", "critical")

# Statuses after which a ticket no longer counts as an open incident.
_CLOSED_STATUSES = ("resolved", "closed", "cancelled", "archived")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_tickets = Table(
    "tickets",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("ticket_number", String(40), nullable=False, unique=True),
    Column("title", String(255), nullable=False),
    Column("description", Text, nullable=False),
    Column("type", String(30), nullable=False),
    Column("priority", String(20), nullable=False, server_default="medium"),
    Column("status", String(20), nullable=False, server_default="new"),
    Column("category", String(100), nullable=False),
    Column("requester", String(255), nullable=False),
    Column("assigned_to", Integer),
    Column("created_at", String(32), nullable=False),
)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class TicketStore:
    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        metadata.create_all(self.engine)

    def create(
        self,
        title: str,
        description: str,
        type: str,
        priority: str,
        category: str,
        requester: str,
        assigned_to: Optional[int] = None,
    ) -> Ticket:
        """Insert a ticket and return it with id, number and timestamp filled in.

        Raises ValueError for an unknown type or priority.
        """
        if type not in TICKET_TYPES:
            raise ValueError(f"Unknown ticket type: {type}")
        if priority not in TICKET_PRIORITIES:
            raise ValueError(f"Unknown ticket priority: {priority}")
        created_at = _now_iso()
        with self.engine.connect() as conn:
            count = conn.execute(select(func.count()).select_from(_tickets)).scalar() or 0
            ticket_number = f"TKT-{int(time.time() * 1000)}-{count + 1:04d}"
            result = conn.execute(
                _tickets.insert().values(
                    ticket_number=ticket_number,
                    title=title,
                    description=description,
                    type=type,
                    priority=priority,
                    category=category,
                    requester=requester,
                    assigned_to=assigned_to,
                    created_at=created_at,
                )
            )
            conn.commit()
            ticket_id = result.inserted_primary_key[0]
        return Ticket(
            id=ticket_id,
            ticket_number=ticket_number,
            title=title,
            description=description,
            type=type,
            priority=priority,
            category=category,
            requester=requester,
            assigned_to=assigned_to,
            created_at=created_at,
        )

    def get(self, ticket_id: int) -> Optional[Ticket]:
        with self.engine.connect() as conn:
            row = conn.execute(_tickets.select().where(_tickets.c.id == ticket_id)).fetchone()
        return _row_to_ticket(row) if row is not None else None

    def list_tickets(
        self,
        type: Optional[str] = None,
        priority: Optional[str] = None,
        limit: int = 100,
    ) -> list[Ticket]:
        """Return tickets newest first, optionally filtered by type and priority."""
        stmt = _tickets.select()
        if type is not None:
            stmt = stmt.where(_tickets.c.type == type)
        if priority is not None:
            stmt = stmt.where(_tickets.c.priority == priority)
        stmt = stmt.order_by(_tickets.c.id.desc()).limit(limit)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_ticket(r) for r in rows]

    def find_open_incident(self, title: str, within_seconds: int) -> Optional[Ticket]:
        """Return the newest still-open incident with this title created in the window.

        ISO 8601 UTC strings sort chronologically, so the window check is a
        plain string comparison.
        """
        since = (datetime.now(timezone.utc) - timedelta(seconds=within_seconds)).isoformat()
        stmt = (
            _tickets.select()
            .where(
                (_tickets.c.type == "incident")
                & (_tickets.c.title == title)
                & (_tickets.c.status.not_in(_CLOSED_STATUSES))
                & (_tickets.c.created_at >= since)
            )
            .order_by(_tickets.c.id.desc())
            .limit(1)
        )
        with self.engine.connect() as conn:
            row = conn.execute(stmt).fetchone()
        return _row_to_ticket(row) if row is not None else None

    def close(self) -> None:
        self.engine.dispose()


def _row_to_ticket(row) -> Ticket:
    return Ticket(
        id=row.id,
        ticket_number=row.ticket_number,
        title=row.title,
        description=row.description,
        type=row.type,
        priority=row.priority,
        status=row.status,
        category=row.category,
        requester=row.requester,
        assigned_to=row.assigned_to,
        created_at=row.created_at,
    )
