"""SQLAlchemy ORM models — single source of truth for the database schema.

Learn: Declarative ORM mapping with SQLAlchemy 2.0 style (Mapped[] + mapped_column).
Each class = one table. Alembic auto-generates migrations by comparing
these models to the actual DB.

Key concepts:
- UUID primary keys via the portable Uuid type (native UUID on PostgreSQL)
- JSONB on PostgreSQL for the audit log payloads, plain JSON elsewhere
- Python-side timestamps so ordering by created_at is microsecond precise
  (the accept protocol picks the OLDEST pending request)
"""

import enum
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_uuid() -> uuid.UUID:
    return uuid.uuid4()


JsonDocument = JSON().with_variant(JSONB(), "postgresql")
EventId = BigInteger().with_variant(Integer(), "sqlite")


class RequestStatus(str, enum.Enum):
    """Ride request lifecycle states."""

    PENDING = "PENDING"
    ASSIGNED = "ASSIGNED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


TERMINAL_STATUSES = frozenset({RequestStatus.COMPLETED, RequestStatus.CANCELLED})


# ══════════════════════════════════════════════════════════════
# Drivers and ride requests
# ══════════════════════════════════════════════════════════════


class Driver(Base):
    """A registered driver, keyed by normalized phone number.

    Learn: `is_active` is the only eligibility switch for notifications
    and accepts. Drivers are never hard-deleted while they own an
    ASSIGNED ride (enforced in the store, not by a constraint).
    """

    __tablename__ = "drivers"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=new_uuid)
    phone: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(50), nullable=False)
    plate: Mapped[str] = mapped_column(String(10), nullable=False)
    location: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )


class RideRequest(Base):
    """A client's ride request.

    Learn: `status` only moves forward (see services/lifecycle.py).
    `assigned_driver_id` is written exclusively by the assignment
    coordinator's compare-and-swap, which is what makes the accept race
    safe — the table itself has no constraint preventing a second writer.
    """

    __tablename__ = "ride_requests"
    __table_args__ = (
        Index("idx_ride_requests_status_created", "status", "created_at"),
        Index("idx_ride_requests_client_status", "client_phone", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=new_uuid)
    client_phone: Mapped[str] = mapped_column(String(20), nullable=False)
    client_name: Mapped[str] = mapped_column(String(50), nullable=False)
    location: Mapped[str] = mapped_column(String(200), nullable=False)
    sector: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=RequestStatus.PENDING.value
    )
    assigned_driver_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("drivers.id"), nullable=True
    )
    cancel_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    @property
    def display_location(self) -> str:
        """What drivers see: the geocoded sector when we have one."""
        return self.sector or self.location


# ══════════════════════════════════════════════════════════════
# Audit log
# ══════════════════════════════════════════════════════════════


class Event(Base):
    """Immutable event log.

    Learn: Every request/driver state change is recorded as an event.
    Events are append-only (never updated/deleted), which doubles as the
    audit trail for terminal requests the core never deletes.

    stream_id examples: "ride:<uuid>", "driver:<phone>"
    """

    __tablename__ = "events"
    __table_args__ = (
        Index("idx_events_stream", "stream_id", "id"),
        Index("idx_events_type", "type"),
        Index("idx_events_created", "created_at"),
    )

    id: Mapped[int] = mapped_column(EventId, primary_key=True, autoincrement=True)
    stream_id: Mapped[str] = mapped_column(String(200), nullable=False)
    type: Mapped[str] = mapped_column(String(100), nullable=False)
    data: Mapped[dict] = mapped_column(JsonDocument, nullable=False)
    meta: Mapped[dict] = mapped_column(
        "metadata", JsonDocument, nullable=False, default=dict
    )
    # Note: Python attr is "meta" because "metadata" is reserved by SQLAlchemy.
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow
    )
