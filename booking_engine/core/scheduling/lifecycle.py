"""Appointment lifecycle state machine."""

from enum import Enum
from typing import Optional, Set

from booking_engine.core.scheduling.errors import InvalidTransitionError


class AppointmentStatus(str, Enum):
    """Appointment status enumeration."""

    # Active (occupy the calendar)
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"

    # Terminal
    COMPLETED = "completed"
    CANCELED = "canceled"
    NO_SHOW = "no_show"


class LifecycleAction(str, Enum):
    """Operations that mutate an appointment."""

    CREATE = "create"
    CONFIRM = "confirm"
    START = "start"
    COMPLETE = "complete"
    CANCEL = "cancel"
    NO_SHOW = "no_show"
    RESCHEDULE = "reschedule"


class NotifyKind(str, Enum):
    """Notification intents sent to the notification collaborator."""

    CONFIRMATION = "confirmation"
    RESCHEDULE = "reschedule"
    CANCELLATION = "cancellation"


class SyncAction(str, Enum):
    """Calendar integration intents."""

    UPSERT = "upsert"
    REMOVE = "remove"


ACTIVE_STATUSES: frozenset[AppointmentStatus] = frozenset({
    AppointmentStatus.SCHEDULED,
    AppointmentStatus.CONFIRMED,
    AppointmentStatus.IN_PROGRESS,
})

TERMINAL_STATUSES: frozenset[AppointmentStatus] = frozenset({
    AppointmentStatus.COMPLETED,
    AppointmentStatus.CANCELED,
    AppointmentStatus.NO_SHOW,
})


# Valid state transitions
VALID_TRANSITIONS: dict[AppointmentStatus, Set[AppointmentStatus]] = {
    AppointmentStatus.SCHEDULED: {
        AppointmentStatus.CONFIRMED,
        AppointmentStatus.IN_PROGRESS,
        AppointmentStatus.COMPLETED,
        AppointmentStatus.CANCELED,
        AppointmentStatus.NO_SHOW,
    },
    AppointmentStatus.CONFIRMED: {
        AppointmentStatus.IN_PROGRESS,
        AppointmentStatus.COMPLETED,
        AppointmentStatus.CANCELED,
        AppointmentStatus.NO_SHOW,
    },
    AppointmentStatus.IN_PROGRESS: {
        AppointmentStatus.COMPLETED,
        AppointmentStatus.NO_SHOW,
    },
    AppointmentStatus.COMPLETED: set(),
    AppointmentStatus.CANCELED: set(),
    AppointmentStatus.NO_SHOW: set(),
}

# Target status of each status-changing action
ACTION_TARGETS: dict[LifecycleAction, AppointmentStatus] = {
    LifecycleAction.CONFIRM: AppointmentStatus.CONFIRMED,
    LifecycleAction.START: AppointmentStatus.IN_PROGRESS,
    LifecycleAction.COMPLETE: AppointmentStatus.COMPLETED,
    LifecycleAction.CANCEL: AppointmentStatus.CANCELED,
    LifecycleAction.NO_SHOW: AppointmentStatus.NO_SHOW,
}

# Statuses from which an appointment can be moved to a new time
RESCHEDULABLE_STATUSES: frozenset[AppointmentStatus] = frozenset({
    AppointmentStatus.SCHEDULED,
    AppointmentStatus.CONFIRMED,
})

# Side effects owed after each successful action
NOTIFY_ON: dict[LifecycleAction, NotifyKind] = {
    LifecycleAction.CREATE: NotifyKind.CONFIRMATION,
    LifecycleAction.CONFIRM: NotifyKind.CONFIRMATION,
    LifecycleAction.RESCHEDULE: NotifyKind.RESCHEDULE,
    LifecycleAction.CANCEL: NotifyKind.CANCELLATION,
}

SYNC_ON: dict[LifecycleAction, SyncAction] = {
    LifecycleAction.RESCHEDULE: SyncAction.UPSERT,
    LifecycleAction.CANCEL: SyncAction.REMOVE,
}


def can_transition(from_status: AppointmentStatus, to_status: AppointmentStatus) -> bool:
    """Check if a status transition is valid."""
    return to_status in VALID_TRANSITIONS.get(from_status, set())


def get_valid_transitions(status: AppointmentStatus) -> Set[AppointmentStatus]:
    """Get all valid transitions from a status."""
    return VALID_TRANSITIONS.get(status, set())


def is_active_status(status: AppointmentStatus) -> bool:
    """Check if status occupies the calendar."""
    return status in ACTIVE_STATUSES


def is_terminal_status(status: AppointmentStatus) -> bool:
    """Check if status is terminal (no further transitions)."""
    return status in TERMINAL_STATUSES


def next_status(action: LifecycleAction, current: AppointmentStatus) -> AppointmentStatus:
    """Resolve the status an action leads to from `current`.

    Rescheduling is not a status change of its own: it keeps the
    appointment active and drops any confirmation, since the client
    confirmed a different time.

    Raises:
        InvalidTransitionError: If the action is not allowed from `current`
    """
    if action == LifecycleAction.RESCHEDULE:
        if current not in RESCHEDULABLE_STATUSES:
            raise InvalidTransitionError(action.value, current.value)
        return AppointmentStatus.SCHEDULED

    target = ACTION_TARGETS.get(action)
    if target is None or not can_transition(current, target):
        raise InvalidTransitionError(action.value, current.value)
    return target


def notify_kind_for(action: LifecycleAction) -> Optional[NotifyKind]:
    """Notification owed after `action`, if any."""
    return NOTIFY_ON.get(action)


def sync_action_for(action: LifecycleAction) -> Optional[SyncAction]:
    """Integration sync owed after `action`, if any."""
    return SYNC_ON.get(action)
