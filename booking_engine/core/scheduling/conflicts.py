"""
Conflict Detector.

Finds active appointments that overlap a candidate interval for one staff
member. The check made inside a staff transaction is authoritative; the
same check made by the slot generator is only a hint and can go stale.
"""

import logging
from typing import Iterable, Optional, Protocol

from booking_engine.core.scheduling.interval import Interval
from booking_engine.core.scheduling.models import Appointment

logger = logging.getLogger(__name__)


class ActiveAppointmentSource(Protocol):
    """Anything that can list a staff member's active appointments."""

    async def list_active(
        self,
        tenant_id: str,
        staff_id: str,
        window: Interval,
    ) -> list[Appointment]:
        ...


def find_conflicts(
    appointments: Iterable[Appointment],
    candidate: Interval,
    exclude_appointment_id: Optional[str] = None,
) -> list[Appointment]:
    """Return active appointments overlapping `candidate`.

    Args:
        appointments: Appointments of a single staff member
        candidate: Interval to test
        exclude_appointment_id: Appointment being moved (never conflicts with itself)
    """
    return [
        appt
        for appt in appointments
        if appt.is_active
        and appt.id != exclude_appointment_id
        and appt.interval.overlaps(candidate)
    ]


class ConflictDetector:
    """Overlap checks against a store or an open staff transaction."""

    async def find(
        self,
        source: ActiveAppointmentSource,
        tenant_id: str,
        staff_id: str,
        candidate: Interval,
        exclude_appointment_id: Optional[str] = None,
    ) -> list[Appointment]:
        """List conflicting appointments.

        Args:
            source: Store or unit of work to read from
            tenant_id: Owning tenant
            staff_id: Staff member whose calendar is checked
            candidate: Interval to test
            exclude_appointment_id: Appointment excluded from the check

        Returns:
            Conflicting active appointments (empty if the slot is free)
        """
        busy = await source.list_active(tenant_id, staff_id, candidate)
        conflicts = find_conflicts(busy, candidate, exclude_appointment_id)
        if conflicts:
            logger.debug(
                f"{len(conflicts)} conflict(s) for staff {staff_id} "
                f"at {candidate.start.isoformat()} (tenant {tenant_id})"
            )
        return conflicts

    async def has_conflict(
        self,
        source: ActiveAppointmentSource,
        tenant_id: str,
        staff_id: str,
        candidate: Interval,
        exclude_appointment_id: Optional[str] = None,
    ) -> bool:
        """Check whether `candidate` overlaps any active appointment."""
        conflicts = await self.find(
            source, tenant_id, staff_id, candidate, exclude_appointment_id
        )
        return bool(conflicts)
