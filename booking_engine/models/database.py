"""
Database Models

SQLAlchemy ORM models for the multi-tenant appointment booking system.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, List

from sqlalchemy import (
    DDL, Boolean, DateTime, ForeignKey, Index, Integer, Numeric, String, Text,
    Enum as SQLEnum, event, text
)
from sqlalchemy.dialects.postgresql import UUID, JSON
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from booking_engine.core.scheduling.lifecycle import ACTIVE_STATUSES, AppointmentStatus


def _new_id() -> str:
    return str(uuid.uuid4())


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamp columns."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=text("CURRENT_TIMESTAMP"),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=text("CURRENT_TIMESTAMP"),
        nullable=False
    )


class TenantRecord(Base, TimestampMixin):
    """
    Tenant model.

    Each tenant is an isolated business account owning its staff,
    services, clients and appointments. Policy columns left NULL fall
    back to configured defaults.
    """

    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        primary_key=True,
        default=_new_id
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    timezone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    business_hours: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    min_hours_before_reschedule: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(6, 2), nullable=True
    )
    min_hours_before_cancel: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(6, 2), nullable=True
    )

    staff: Mapped[List["StaffRecord"]] = relationship("StaffRecord", back_populates="tenant")
    services: Mapped[List["ServiceRecord"]] = relationship("ServiceRecord", back_populates="tenant")

    def __repr__(self) -> str:
        return f"<Tenant(id={self.id}, name='{self.name}')>"


class StaffRecord(Base, TimestampMixin):
    """
    Staff member model.

    Rows double as the per-staff lock taken (SELECT ... FOR UPDATE) by
    every booking write for that staff member.
    """

    __tablename__ = "staff_members"
    __table_args__ = (
        Index("idx_staff_tenant", "tenant_id"),
    )

    id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        primary_key=True,
        default=_new_id
    )
    tenant_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    working_hours: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    specialties: Mapped[list] = mapped_column(JSON, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    tenant: Mapped["TenantRecord"] = relationship("TenantRecord", back_populates="staff")

    def __repr__(self) -> str:
        return f"<Staff(id={self.id}, name='{self.name}')>"


class ServiceRecord(Base, TimestampMixin):
    """Service model."""

    __tablename__ = "services"
    __table_args__ = (
        Index("idx_service_tenant", "tenant_id"),
    )

    id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        primary_key=True,
        default=_new_id
    )
    tenant_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"))
    category: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    tenant: Mapped["TenantRecord"] = relationship("TenantRecord", back_populates="services")

    def __repr__(self) -> str:
        return f"<Service(id={self.id}, name='{self.name}', duration={self.duration_minutes})>"


class ClientRecord(Base, TimestampMixin):
    """Client model."""

    __tablename__ = "clients"
    __table_args__ = (
        Index("idx_client_tenant", "tenant_id"),
    )

    id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        primary_key=True,
        default=_new_id
    )
    tenant_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    def __repr__(self) -> str:
        return f"<Client(id={self.id}, name='{self.name}')>"


class AppointmentRecord(Base, TimestampMixin):
    """
    Appointment model.

    Never deleted: cancellation is a status change. Active rows of one
    staff member may not overlap (see the exclusion constraint below).
    """

    __tablename__ = "appointments"
    __table_args__ = (
        Index("idx_appointment_tenant", "tenant_id"),
        Index("idx_appointment_staff_start", "tenant_id", "staff_id", "start_time"),
        Index("idx_appointment_status", "tenant_id", "status"),
    )

    id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        primary_key=True,
        default=_new_id
    )
    tenant_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False
    )
    client_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("clients.id", ondelete="CASCADE"),
        nullable=False
    )
    service_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("services.id", ondelete="CASCADE"),
        nullable=False
    )
    staff_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("staff_members.id", ondelete="CASCADE"),
        nullable=False
    )
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[AppointmentStatus] = mapped_column(
        SQLEnum(
            AppointmentStatus,
            name="appointment_status",
            values_callable=_enum_values,
        ),
        default=AppointmentStatus.SCHEDULED,
        nullable=False
    )
    price: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancel_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    canceled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    events: Mapped[List["AppointmentEventRecord"]] = relationship(
        "AppointmentEventRecord",
        back_populates="appointment"
    )

    def __repr__(self) -> str:
        return (
            f"<Appointment(id={self.id}, staff_id={self.staff_id}, "
            f"start={self.start_time}, status={self.status.value})>"
        )


class AppointmentEventRecord(Base):
    """
    Appointment event model.

    Append-only history of lifecycle changes, written in the same
    transaction as the change itself.
    """

    __tablename__ = "appointment_events"
    __table_args__ = (
        Index("idx_event_appointment", "tenant_id", "appointment_id", "occurred_at"),
    )

    id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        primary_key=True,
        default=_new_id
    )
    tenant_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False
    )
    appointment_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("appointments.id", ondelete="CASCADE"),
        nullable=False
    )
    action: Mapped[str] = mapped_column(String(30), nullable=False)
    from_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    to_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    details: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=text("CURRENT_TIMESTAMP"),
        nullable=False
    )

    appointment: Mapped["AppointmentRecord"] = relationship(
        "AppointmentRecord",
        back_populates="events"
    )

    def __repr__(self) -> str:
        return (
            f"<AppointmentEvent(id={self.id}, appointment_id={self.appointment_id}, "
            f"action='{self.action}')>"
        )


NO_OVERLAP_CONSTRAINT = "appointments_no_overlap"

_active_values = ", ".join(
    f"'{status.value}'" for status in sorted(ACTIVE_STATUSES, key=lambda s: s.value)
)

# Storage-level guarantee that active appointments of one staff member
# never overlap; a violating insert/update raises IntegrityError.
event.listen(
    AppointmentRecord.__table__,
    "before_create",
    DDL("CREATE EXTENSION IF NOT EXISTS btree_gist").execute_if(dialect="postgresql"),
)
event.listen(
    AppointmentRecord.__table__,
    "after_create",
    DDL(
        f"ALTER TABLE appointments ADD CONSTRAINT {NO_OVERLAP_CONSTRAINT} "
        "EXCLUDE USING gist ("
        "tenant_id WITH =, "
        "staff_id WITH =, "
        "tstzrange(start_time, end_time, '[)') WITH &&"
        f") WHERE (status IN ({_active_values}))"
    ).execute_if(dialect="postgresql"),
)
