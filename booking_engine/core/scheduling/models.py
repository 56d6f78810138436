"""
Scheduling domain models.

Plain dataclasses shared by the core, the stores and the HTTP layer.
Every entity carries the tenant that owns it.
"""

from dataclasses import dataclass, field, replace
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Any, Optional

from booking_engine.core.scheduling.interval import Interval
from booking_engine.core.scheduling.lifecycle import (
    AppointmentStatus,
    is_active_status,
)

WEEKDAY_NAMES = (
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
    "sunday",
)


def parse_time(value: Any) -> time:
    if isinstance(value, time):
        return value
    return time.fromisoformat(str(value))


def _parse_weekday(key: Any) -> int:
    if isinstance(key, int):
        return key
    key = str(key).strip().lower()
    if key.isdigit():
        return int(key)
    for index, name in enumerate(WEEKDAY_NAMES):
        if name.startswith(key[:3]):
            return index
    raise ValueError(f"Unknown weekday: {key!r}")


@dataclass(frozen=True)
class DayWindow:
    """Opening window for one weekday, wall-clock time."""

    open: time
    close: time

    def on(self, day: date, tz) -> Interval:
        """Anchor the window to a calendar date in timezone `tz`."""
        return Interval(
            datetime.combine(day, self.open, tzinfo=tz),
            datetime.combine(day, self.close, tzinfo=tz),
        )


@dataclass
class WeeklyHours:
    """Per-weekday windows keyed by weekday (0 = Monday).

    A weekday mapped to None is closed; a missing weekday is unset and
    falls back to the next source of hours.
    """

    days: dict[int, Optional[DayWindow]] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional["WeeklyHours"]:
        """Create from stored JSON.

        Accepts weekday names or numbers as keys and either
        {"open": "09:00", "close": "18:00"}, ["09:00", "18:00"] or None
        as values.
        """
        if not data:
            return None

        days: dict[int, Optional[DayWindow]] = {}
        for key, value in data.items():
            weekday = _parse_weekday(key)
            if value is None:
                days[weekday] = None
            elif isinstance(value, dict):
                days[weekday] = DayWindow(
                    parse_time(value["open"]), parse_time(value["close"])
                )
            else:
                opens, closes = value
                days[weekday] = DayWindow(parse_time(opens), parse_time(closes))
        return cls(days)

    def to_dict(self) -> dict:
        """Convert to JSON-friendly dictionary."""
        return {
            WEEKDAY_NAMES[weekday]: (
                None
                if window is None
                else {
                    "open": window.open.strftime("%H:%M"),
                    "close": window.close.strftime("%H:%M"),
                }
            )
            for weekday, window in sorted(self.days.items())
        }

    def defines(self, weekday: int) -> bool:
        return weekday in self.days

    def window_for(self, weekday: int) -> Optional[DayWindow]:
        return self.days.get(weekday)


@dataclass
class TenantPolicy:
    """Tenant-configured scheduling rules (read-only to the core)."""

    tenant_id: str
    min_hours_before_reschedule: Optional[float] = None
    min_hours_before_cancel: Optional[float] = None
    business_hours: Optional[WeeklyHours] = None
    timezone: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "TenantPolicy":
        """Create from cache payload."""
        return cls(
            tenant_id=data["tenant_id"],
            min_hours_before_reschedule=data.get("min_hours_before_reschedule"),
            min_hours_before_cancel=data.get("min_hours_before_cancel"),
            business_hours=WeeklyHours.from_dict(data.get("business_hours")),
            timezone=data.get("timezone"),
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for caching."""
        return {
            "tenant_id": self.tenant_id,
            "min_hours_before_reschedule": self.min_hours_before_reschedule,
            "min_hours_before_cancel": self.min_hours_before_cancel,
            "business_hours": self.business_hours.to_dict() if self.business_hours else None,
            "timezone": self.timezone,
        }


@dataclass
class Service:
    """Bookable service offered by a tenant."""

    id: str
    tenant_id: str
    name: str
    duration_minutes: int
    price: Decimal = Decimal("0")
    category: Optional[str] = None


@dataclass
class StaffMember:
    """Professional whose calendar receives appointments."""

    id: str
    tenant_id: str
    name: str
    working_hours: Optional[WeeklyHours] = None
    specialties: list[str] = field(default_factory=list)
    is_active: bool = True

    def qualifies_for(self, service: Service) -> bool:
        """Check if this staff member can perform `service`.

        Staff without specialties, and services without a category,
        match everything.
        """
        if not self.is_active:
            return False
        if not self.specialties or not service.category:
            return True
        wanted = service.category.lower()
        return any(s.lower() == wanted for s in self.specialties)


@dataclass
class Client:
    """End customer of a tenant."""

    id: str
    tenant_id: str
    name: str


@dataclass
class Appointment:
    """Booked appointment between a client and a staff member."""

    id: str
    tenant_id: str
    client_id: str
    service_id: str
    staff_id: str
    start_time: datetime
    end_time: datetime
    status: AppointmentStatus = AppointmentStatus.SCHEDULED
    price: Optional[Decimal] = None
    notes: Optional[str] = None
    cancel_reason: Optional[str] = None
    canceled_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def interval(self) -> Interval:
        return Interval(self.start_time, self.end_time)

    @property
    def duration(self) -> timedelta:
        """Duration snapshot taken at booking time."""
        return self.interval.duration

    @property
    def duration_minutes(self) -> int:
        return int(self.duration.total_seconds() // 60)

    @property
    def is_active(self) -> bool:
        return is_active_status(self.status)

    def copy(self, **changes: Any) -> "Appointment":
        return replace(self, **changes)

    def to_dict(self) -> dict:
        """Convert to dictionary for API response."""
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "client_id": self.client_id,
            "service_id": self.service_id,
            "staff_id": self.staff_id,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "duration_minutes": self.duration_minutes,
            "status": self.status.value,
            "price": str(self.price) if self.price is not None else None,
            "notes": self.notes,
            "cancel_reason": self.cancel_reason,
            "canceled_at": self.canceled_at.isoformat() if self.canceled_at else None,
            "confirmed_at": self.confirmed_at.isoformat() if self.confirmed_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass
class AppointmentEvent:
    """Append-only record of one lifecycle change."""

    id: str
    tenant_id: str
    appointment_id: str
    action: str
    occurred_at: datetime
    from_status: Optional[AppointmentStatus] = None
    to_status: Optional[AppointmentStatus] = None
    reason: Optional[str] = None
    details: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "appointment_id": self.appointment_id,
            "action": self.action,
            "occurred_at": self.occurred_at.isoformat(),
            "from_status": self.from_status.value if self.from_status else None,
            "to_status": self.to_status.value if self.to_status else None,
            "reason": self.reason,
            "details": self.details,
        }
