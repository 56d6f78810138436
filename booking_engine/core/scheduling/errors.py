"""
Booking error taxonomy.

Every core operation either returns its result or raises one of these.
Only DependencyUnavailableError is safe to retry automatically; the other
kinds are terminal for the request and carry a message fit for end users.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Error kinds surfaced to callers."""

    NOT_FOUND = "not_found"
    SLOT_UNAVAILABLE = "slot_unavailable"
    POLICY_VIOLATION = "policy_violation"
    INVALID_INTERVAL = "invalid_interval"
    DEPENDENCY_UNAVAILABLE = "dependency_unavailable"


class BookingError(Exception):
    """Base exception for scheduling failures."""

    kind: ErrorKind
    retryable: bool = False

    def __init__(self, message: str, *, cause: Optional[Exception] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause

    def to_dict(self) -> dict:
        """Convert to dictionary for API response."""
        return {
            "error": self.kind.value,
            "message": self.message,
            "retryable": self.retryable,
        }


class NotFoundError(BookingError):
    """Entity does not exist or belongs to another tenant."""

    kind = ErrorKind.NOT_FOUND

    def __init__(self, entity: str, entity_id: str):
        super().__init__(f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id


class SlotUnavailableError(BookingError):
    """Requested interval overlaps an active appointment."""

    kind = ErrorKind.SLOT_UNAVAILABLE

    def __init__(
        self,
        message: str = "The requested time is no longer available",
        *,
        cause: Optional[Exception] = None,
    ):
        super().__init__(message, cause=cause)


class PolicyViolationError(BookingError):
    """Request falls inside the tenant's minimum-notice window."""

    kind = ErrorKind.POLICY_VIOLATION

    def __init__(self, message: str, threshold_hours: Optional[float] = None):
        super().__init__(message)
        self.threshold_hours = threshold_hours


class InvalidTransitionError(PolicyViolationError):
    """Requested status change is not allowed from the current status."""

    def __init__(self, action: str, current_status: str):
        super().__init__(
            f"Cannot {action} an appointment that is {current_status}"
        )
        self.action = action
        self.current_status = current_status


class InvalidIntervalError(BookingError):
    """Interval is empty, in the past, or outside working hours."""

    kind = ErrorKind.INVALID_INTERVAL


class DependencyUnavailableError(BookingError):
    """Storage or lookup failed transiently."""

    kind = ErrorKind.DEPENDENCY_UNAVAILABLE
    retryable = True
