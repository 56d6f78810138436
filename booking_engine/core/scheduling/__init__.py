"""
Scheduling Module

Domain types and pure rules of the appointment engine: intervals,
lifecycle, slot generation, conflict detection, notice policy and the
error taxonomy. The orchestrator composing them over storage lives in
`booking_engine.core.scheduling.engine`.

Usage:
    from booking_engine.core.scheduling.engine import get_booking_orchestrator

    orchestrator = await get_booking_orchestrator()
    slots = await orchestrator.get_available_slots(
        tenant_id="salon-123",
        staff_id="any",
        service_id=service_id,
        day=date(2025, 6, 2),
    )
"""

# Errors
from booking_engine.core.scheduling.errors import (
    ErrorKind,
    BookingError,
    NotFoundError,
    SlotUnavailableError,
    PolicyViolationError,
    InvalidTransitionError,
    InvalidIntervalError,
    DependencyUnavailableError,
)

# Intervals
from booking_engine.core.scheduling.interval import Interval, overlaps

# Lifecycle
from booking_engine.core.scheduling.lifecycle import (
    AppointmentStatus,
    LifecycleAction,
    NotifyKind,
    SyncAction,
    can_transition,
    next_status,
)

# Models
from booking_engine.core.scheduling.models import (
    Appointment,
    AppointmentEvent,
    Client,
    DayWindow,
    Service,
    StaffMember,
    TenantPolicy,
    WeeklyHours,
)

# Rules
from booking_engine.core.scheduling.conflicts import ConflictDetector, find_conflicts
from booking_engine.core.scheduling.policy import PolicyEngine, PolicyProvider
from booking_engine.core.scheduling.slots import (
    TimeSlot,
    generate_slots,
    merge_staff_slots,
    resolve_window,
)

__all__ = [
    # Errors
    "ErrorKind",
    "BookingError",
    "NotFoundError",
    "SlotUnavailableError",
    "PolicyViolationError",
    "InvalidTransitionError",
    "InvalidIntervalError",
    "DependencyUnavailableError",
    # Intervals
    "Interval",
    "overlaps",
    # Lifecycle
    "AppointmentStatus",
    "LifecycleAction",
    "NotifyKind",
    "SyncAction",
    "can_transition",
    "next_status",
    # Models
    "Appointment",
    "AppointmentEvent",
    "Client",
    "DayWindow",
    "Service",
    "StaffMember",
    "TenantPolicy",
    "WeeklyHours",
    # Rules
    "ConflictDetector",
    "find_conflicts",
    "PolicyEngine",
    "PolicyProvider",
    "TimeSlot",
    "generate_slots",
    "merge_staff_slots",
    "resolve_window",
]
