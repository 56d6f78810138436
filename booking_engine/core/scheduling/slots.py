"""
Availability Slot Generator.

Turns a working window, a service duration and a staff member's busy
intervals into the ordered list of bookable start times. Conflicting
slots are kept and marked unavailable so callers can render them as
taken; slots already in the past are left out.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Iterable, Optional
from zoneinfo import ZoneInfo

from booking_engine.config import get_settings
from booking_engine.core.scheduling.interval import Interval
from booking_engine.core.scheduling.models import (
    DayWindow,
    StaffMember,
    TenantPolicy,
    parse_time,
)

logger = logging.getLogger(__name__)


@dataclass
class TimeSlot:
    """Candidate start time."""

    time: str  # "HH:MM" in the tenant's timezone
    start: datetime
    end: datetime
    available: bool
    staff_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "time": self.time,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "available": self.available,
            "staff_ids": list(self.staff_ids),
        }


def default_day_window() -> DayWindow:
    settings = get_settings()
    return DayWindow(
        parse_time(settings.default_open_time),
        parse_time(settings.default_close_time),
    )


def resolve_window(
    day: date,
    policy: TenantPolicy,
    staff: Optional[StaffMember] = None,
) -> Optional[Interval]:
    """Working window for `day`, or None when closed.

    Staff working hours win over the tenant's business hours, which win
    over the configured default.
    """
    weekday = day.weekday()

    if staff is not None and staff.working_hours and staff.working_hours.defines(weekday):
        window = staff.working_hours.window_for(weekday)
    elif policy.business_hours and policy.business_hours.defines(weekday):
        window = policy.business_hours.window_for(weekday)
    else:
        window = default_day_window()

    if window is None or window.close <= window.open:
        return None

    tz = ZoneInfo(policy.timezone or get_settings().default_timezone)
    return window.on(day, tz)


def day_bounds(day: date, tz_name: str) -> Interval:
    """Whole calendar day in the given timezone."""
    tz = ZoneInfo(tz_name)
    start = datetime.combine(day, datetime.min.time(), tzinfo=tz)
    end = datetime.combine(day + timedelta(days=1), datetime.min.time(), tzinfo=tz)
    return Interval(start, end)


def generate_slots(
    window: Interval,
    duration_minutes: int,
    busy: Iterable[Interval],
    granularity_minutes: int,
    now: Optional[datetime] = None,
    staff_id: Optional[str] = None,
) -> list[TimeSlot]:
    """Enumerate slots inside `window`.

    Args:
        window: Working window for one day (timezone-aware)
        duration_minutes: Service duration
        busy: Busy intervals of the staff member that day
        granularity_minutes: Step between candidate starts
        now: Current time; earlier candidates are dropped
        staff_id: Staff member reported on available slots

    Returns:
        Slots ordered by start time
    """
    if duration_minutes <= 0 or granularity_minutes <= 0:
        return []

    busy = list(busy)
    tz = window.start.tzinfo
    duration = timedelta(minutes=duration_minutes)
    step = timedelta(minutes=granularity_minutes)

    # Step in UTC so DST days keep a fixed granularity
    cursor = window.start.astimezone(timezone.utc)
    close = window.end.astimezone(timezone.utc)

    slots: list[TimeSlot] = []
    while cursor + duration <= close:
        candidate = Interval(cursor, cursor + duration)
        cursor += step

        if now is not None and candidate.start < now:
            continue

        available = not any(candidate.overlaps(b) for b in busy)
        local_start = candidate.start.astimezone(tz)
        slots.append(
            TimeSlot(
                time=local_start.strftime("%H:%M"),
                start=local_start,
                end=candidate.end.astimezone(tz),
                available=available,
                staff_ids=[staff_id] if (available and staff_id) else [],
            )
        )

    return slots


def merge_staff_slots(per_staff: Iterable[list[TimeSlot]]) -> list[TimeSlot]:
    """Union availability across staff members.

    A start time is available when at least one staff member is free
    then; `staff_ids` lists who is.
    """
    merged: dict[datetime, TimeSlot] = {}
    for slots in per_staff:
        for slot in slots:
            key = slot.start.astimezone(timezone.utc)
            existing = merged.get(key)
            if existing is None:
                merged[key] = TimeSlot(
                    time=slot.time,
                    start=slot.start,
                    end=slot.end,
                    available=slot.available,
                    staff_ids=list(slot.staff_ids),
                )
                continue
            existing.available = existing.available or slot.available
            for staff_id in slot.staff_ids:
                if staff_id not in existing.staff_ids:
                    existing.staff_ids.append(staff_id)

    return [merged[key] for key in sorted(merged)]
