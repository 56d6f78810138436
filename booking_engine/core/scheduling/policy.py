"""
Policy Engine.

Minimum-notice rules for rescheduling and cancelling, evaluated against
"now" and the appointment's current start time, plus the lookup that
resolves a tenant's policy with documented defaults.
"""

import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Optional, Protocol

from booking_engine.config import get_settings
from booking_engine.core.scheduling.errors import (
    DependencyUnavailableError,
    NotFoundError,
    PolicyViolationError,
)
from booking_engine.core.scheduling.models import Appointment, TenantPolicy

logger = logging.getLogger(__name__)


class PolicySource(Protocol):
    """Tenant administration data (read-only to the core)."""

    async def get_policy(self, tenant_id: str) -> Optional[TenantPolicy]:
        ...


class PolicyCache(Protocol):
    """Short-lived per-tenant policy cache."""

    async def get(self, tenant_id: str) -> Optional[TenantPolicy]:
        ...

    async def set(self, policy: TenantPolicy) -> bool:
        ...

    async def invalidate(self, tenant_id: str) -> bool:
        ...


def _hours_label(hours: float) -> str:
    if hours == 1:
        return "1 hour's"
    return f"{hours:g} hours'"


def notice_remaining(appointment: Appointment, now: datetime) -> timedelta:
    """Time left between `now` and the appointment start."""
    return appointment.start_time - now


class PolicyEngine:
    """Pure minimum-notice predicates over (now, appointment, policy)."""

    def check_reschedule(
        self,
        appointment: Appointment,
        policy: TenantPolicy,
        now: datetime,
    ) -> None:
        """Validate a reschedule request.

        Raises:
            PolicyViolationError: If less notice than required remains
        """
        threshold = policy.min_hours_before_reschedule
        if notice_remaining(appointment, now) < timedelta(hours=threshold):
            raise PolicyViolationError(
                f"Rescheduling requires at least {_hours_label(threshold)} notice",
                threshold_hours=threshold,
            )

    def check_cancel(
        self,
        appointment: Appointment,
        policy: TenantPolicy,
        now: datetime,
    ) -> None:
        """Validate a cancellation request.

        Raises:
            PolicyViolationError: If less notice than required remains
        """
        threshold = policy.min_hours_before_cancel
        if notice_remaining(appointment, now) < timedelta(hours=threshold):
            raise PolicyViolationError(
                f"Cancellations require at least {_hours_label(threshold)} notice",
                threshold_hours=threshold,
            )

    def can_reschedule(self, appointment: Appointment, policy: TenantPolicy, now: datetime) -> bool:
        try:
            self.check_reschedule(appointment, policy, now)
        except PolicyViolationError:
            return False
        return True

    def can_cancel(self, appointment: Appointment, policy: TenantPolicy, now: datetime) -> bool:
        try:
            self.check_cancel(appointment, policy, now)
        except PolicyViolationError:
            return False
        return True


class PolicyProvider:
    """
    Resolves tenant policies.

    Reads through an optional cache. Callers enforcing a rule pass
    fresh=True so that a stale cache entry can never relax a policy;
    availability listings may use the cached copy.
    """

    def __init__(
        self,
        source: PolicySource,
        cache: Optional[PolicyCache] = None,
    ):
        self._source = source
        self._cache = cache

    def with_defaults(self, policy: TenantPolicy) -> TenantPolicy:
        """Fill unset policy values from settings."""
        settings = get_settings()
        return replace(
            policy,
            min_hours_before_reschedule=(
                policy.min_hours_before_reschedule
                if policy.min_hours_before_reschedule is not None
                else settings.default_min_hours_before_reschedule
            ),
            min_hours_before_cancel=(
                policy.min_hours_before_cancel
                if policy.min_hours_before_cancel is not None
                else settings.default_min_hours_before_cancel
            ),
            timezone=policy.timezone or settings.default_timezone,
        )

    async def get_policy(self, tenant_id: str, *, fresh: bool = False) -> TenantPolicy:
        """Get a tenant's policy with defaults applied.

        Args:
            tenant_id: Tenant identifier
            fresh: Bypass the cache (still refreshes it)

        Raises:
            NotFoundError: Tenant does not exist
            DependencyUnavailableError: Policy lookup failed
        """
        if not fresh and self._cache is not None:
            cached = await self._cache.get(tenant_id)
            if cached is not None:
                return self.with_defaults(cached)

        try:
            policy = await self._source.get_policy(tenant_id)
        except (OSError, TimeoutError, asyncio.TimeoutError) as e:
            logger.error(f"Policy lookup failed for tenant {tenant_id}: {e}")
            raise DependencyUnavailableError(
                "Scheduling rules are temporarily unavailable", cause=e
            )

        if policy is None:
            raise NotFoundError("Tenant", tenant_id)

        if self._cache is not None:
            await self._cache.set(policy)

        return self.with_defaults(policy)

    async def invalidate(self, tenant_id: str) -> None:
        """Drop a tenant's cached policy."""
        if self._cache is not None:
            await self._cache.invalidate(tenant_id)
