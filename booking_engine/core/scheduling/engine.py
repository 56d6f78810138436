"""
Booking Orchestrator.

Composes the slot generator, conflict detector, policy engine and
lifecycle rules into the public booking operations. Every operation
takes an explicit tenant_id, validates before writing, performs its
check-then-write inside one staff transaction, and only then publishes
notify/sync intents.
"""

import asyncio
import logging
import uuid
from datetime import date, datetime, timezone
from typing import Any, Awaitable, Callable, Optional, TypeVar
from zoneinfo import ZoneInfo

from booking_engine.config import get_settings
from booking_engine.core.scheduling.conflicts import ConflictDetector
from booking_engine.core.scheduling.errors import (
    DependencyUnavailableError,
    InvalidIntervalError,
    NotFoundError,
    PolicyViolationError,
    SlotUnavailableError,
)
from booking_engine.core.scheduling.interval import Interval
from booking_engine.core.scheduling.lifecycle import (
    AppointmentStatus,
    LifecycleAction,
    next_status,
    notify_kind_for,
    sync_action_for,
)
from booking_engine.core.scheduling.models import (
    Appointment,
    AppointmentEvent,
    StaffMember,
    TenantPolicy,
)
from booking_engine.core.scheduling.policy import PolicyEngine, PolicyProvider
from booking_engine.core.scheduling.slots import (
    TimeSlot,
    day_bounds,
    generate_slots,
    merge_staff_slots,
    resolve_window,
)
from booking_engine.core.scheduling.tenancy import ensure_owned, require_tenant_id
from booking_engine.infra.notifications import IntentDispatcher, NotifyIntent, SyncIntent
from booking_engine.infra.store import AppointmentStore, Catalog

logger = logging.getLogger(__name__)

ANY_STAFF = "any"

T = TypeVar("T")


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def _require_aware(value: datetime, field: str) -> datetime:
    if value.tzinfo is None or value.utcoffset() is None:
        raise InvalidIntervalError(f"{field} must include a timezone")
    return value


class BookingOrchestrator:
    """
    Public scheduling operations.

    Coordinates:
    - Availability listing
    - Conflict checks inside per-staff transactions
    - Minimum-notice policy
    - Lifecycle transitions and their history
    - Notify/sync intents
    """

    def __init__(
        self,
        store: AppointmentStore,
        catalog: Catalog,
        policies: PolicyProvider,
        dispatcher: IntentDispatcher,
        conflict_detector: Optional[ConflictDetector] = None,
        policy_engine: Optional[PolicyEngine] = None,
        clock: Optional[Callable[[], datetime]] = None,
        granularity_minutes: Optional[int] = None,
    ):
        """Initialize orchestrator.

        Args:
            store: Shared appointment store
            catalog: Tenant/service/staff/client lookups
            policies: Tenant policy provider
            dispatcher: Notify/sync intent publisher
            conflict_detector: Overlap checker
            policy_engine: Minimum-notice rules
            clock: Returns the current time (timezone-aware)
            granularity_minutes: Step between slot start times
        """
        self._store = store
        self._catalog = catalog
        self._policies = policies
        self._dispatcher = dispatcher
        self._conflicts = conflict_detector or ConflictDetector()
        self._policy_engine = policy_engine or PolicyEngine()
        self._clock = clock or _utcnow
        self._granularity = granularity_minutes or get_settings().slot_granularity_minutes

    @property
    def dispatcher(self) -> IntentDispatcher:
        return self._dispatcher

    # === Lookups ===

    async def _lookup(self, what: str, call: Awaitable[T]) -> T:
        """Await a collaborator lookup, translating connection failures and timeouts.

        Anything else (malformed catalog data, bugs) propagates unchanged.
        """
        try:
            return await call
        except (OSError, TimeoutError, asyncio.TimeoutError) as e:
            logger.error(f"{what} lookup failed: {e}")
            raise DependencyUnavailableError(
                f"{what} information is temporarily unavailable", cause=e
            )

    async def _service(self, tenant_id: str, service_id: str):
        service = await self._lookup("Service", self._catalog.get_service(tenant_id, service_id))
        return ensure_owned(service, tenant_id, "Service", service_id)

    async def _staff(self, tenant_id: str, staff_id: str) -> StaffMember:
        staff = await self._lookup("Staff", self._catalog.get_staff(tenant_id, staff_id))
        return ensure_owned(staff, tenant_id, "Staff", staff_id)

    async def _client(self, tenant_id: str, client_id: str):
        client = await self._lookup("Client", self._catalog.get_client(tenant_id, client_id))
        return ensure_owned(client, tenant_id, "Client", client_id)

    async def _appointment(self, tenant_id: str, appointment_id: str) -> Appointment:
        appt = await self._store.get_appointment(tenant_id, appointment_id)
        return ensure_owned(appt, tenant_id, "Appointment", appointment_id)

    # === Availability ===

    async def get_available_slots(
        self,
        tenant_id: str,
        staff_id: str,
        service_id: str,
        day: date,
    ) -> list[TimeSlot]:
        """List candidate start times for a service on a day.

        Args:
            tenant_id: Owning tenant
            staff_id: Staff member, or "any" for every qualifying staff member
            service_id: Service to book
            day: Calendar date in the tenant's timezone

        Returns:
            Slots ordered by time; taken slots are marked unavailable and
            past slots are omitted
        """
        tenant_id = require_tenant_id(tenant_id)
        policy = await self._policies.get_policy(tenant_id)
        service = await self._service(tenant_id, service_id)

        if staff_id == ANY_STAFF:
            roster = await self._lookup("Staff", self._catalog.list_staff(tenant_id))
            candidates = [
                s for s in roster if s.tenant_id == tenant_id and s.qualifies_for(service)
            ]
        else:
            candidates = [await self._staff(tenant_id, staff_id)]

        now = self._clock()
        per_staff: list[list[TimeSlot]] = []
        for staff in candidates:
            window = resolve_window(day, policy, staff)
            if window is None:
                continue
            busy = await self._store.list_active(tenant_id, staff.id, window)
            per_staff.append(
                generate_slots(
                    window,
                    service.duration_minutes,
                    [appt.interval for appt in busy],
                    self._granularity,
                    now=now,
                    staff_id=staff.id,
                )
            )

        if staff_id != ANY_STAFF:
            return per_staff[0] if per_staff else []
        return merge_staff_slots(per_staff)

    # === Validation ===

    def _validate_interval(
        self,
        interval: Interval,
        policy: TenantPolicy,
        staff: StaffMember,
        now: datetime,
    ) -> None:
        if interval.is_empty:
            raise InvalidIntervalError("Appointment end must be after its start")
        if interval.start < now:
            raise InvalidIntervalError("Appointments cannot start in the past")

        local_day = interval.start.astimezone(ZoneInfo(policy.timezone)).date()
        window = resolve_window(local_day, policy, staff)
        if window is None:
            raise InvalidIntervalError(f"{staff.name} is not working on {local_day.isoformat()}")
        if not window.covers(interval):
            raise InvalidIntervalError(
                f"Requested time is outside working hours "
                f"({window.start.strftime('%H:%M')}-{window.end.strftime('%H:%M')})"
            )

    # === Side effects ===

    def _event(
        self,
        appointment: Appointment,
        action: LifecycleAction,
        from_status: Optional[AppointmentStatus],
        now: datetime,
        reason: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> AppointmentEvent:
        return AppointmentEvent(
            id=str(uuid.uuid4()),
            tenant_id=appointment.tenant_id,
            appointment_id=appointment.id,
            action=action.value,
            occurred_at=now,
            from_status=from_status,
            to_status=appointment.status,
            reason=reason,
            details=details or {},
        )

    def _emit(self, appointment: Appointment, action: LifecycleAction) -> None:
        kind = notify_kind_for(action)
        if kind is not None:
            self._dispatcher.publish(NotifyIntent(appointment.tenant_id, appointment.id, kind))

        sync_action = sync_action_for(action)
        if sync_action is not None:
            self._dispatcher.publish(
                SyncIntent(appointment.tenant_id, appointment.id, sync_action)
            )

    # === Create ===

    async def create_appointment(
        self,
        tenant_id: str,
        client_id: str,
        service_id: str,
        staff_id: str,
        start_time: datetime,
        notes: Optional[str] = None,
    ) -> Appointment:
        """Book a new appointment.

        Raises:
            NotFoundError: Client, service or staff missing in this tenant
            InvalidIntervalError: Past start or outside working hours
            SlotUnavailableError: Staff member already busy
            DependencyUnavailableError: Storage or lookup failure
        """
        tenant_id = require_tenant_id(tenant_id)
        _require_aware(start_time, "start_time")

        service = await self._service(tenant_id, service_id)
        staff = await self._staff(tenant_id, staff_id)
        await self._client(tenant_id, client_id)

        if service.duration_minutes <= 0:
            raise InvalidIntervalError(f"Service {service.name} has no duration")

        interval = Interval.from_duration(start_time, service.duration_minutes)
        policy = await self._policies.get_policy(tenant_id, fresh=True)
        now = self._clock()
        self._validate_interval(interval, policy, staff, now)

        appointment = Appointment(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            client_id=client_id,
            service_id=service.id,
            staff_id=staff.id,
            start_time=interval.start,
            end_time=interval.end,
            status=AppointmentStatus.SCHEDULED,
            price=service.price,
            notes=notes,
            created_at=now,
            updated_at=now,
        )

        async with self._store.staff_transaction(tenant_id, staff.id) as uow:
            if await self._conflicts.has_conflict(uow, tenant_id, staff.id, interval):
                logger.info(
                    f"Slot {interval.start.isoformat()} taken for staff {staff.id} "
                    f"(tenant {tenant_id})"
                )
                raise SlotUnavailableError()
            await uow.add(appointment)
            await uow.add_event(
                self._event(appointment, LifecycleAction.CREATE, None, now, reason=notes)
            )

        logger.info(
            f"Appointment {appointment.id} created for staff {staff.id} "
            f"at {appointment.start_time.isoformat()} (tenant {tenant_id})"
        )
        self._emit(appointment, LifecycleAction.CREATE)
        return appointment

    # === Reschedule ===

    async def reschedule_appointment(
        self,
        tenant_id: str,
        appointment_id: str,
        new_start_time: datetime,
        reason: Optional[str] = None,
    ) -> Appointment:
        """Move an appointment to a new start time, keeping its duration.

        The appointment returns to `scheduled`: a confirmation given for
        the old time does not carry over.

        Raises:
            NotFoundError: Appointment missing in this tenant
            PolicyViolationError: Inside the reschedule notice window, or
                the appointment can no longer be moved
            InvalidIntervalError: Past start or outside working hours
            SlotUnavailableError: New time overlaps another appointment
        """
        tenant_id = require_tenant_id(tenant_id)
        _require_aware(new_start_time, "new_start_time")

        current = await self._appointment(tenant_id, appointment_id)
        staff = await self._staff(tenant_id, current.staff_id)
        policy = await self._policies.get_policy(tenant_id, fresh=True)
        now = self._clock()

        async with self._store.staff_transaction(tenant_id, current.staff_id) as uow:
            appt = ensure_owned(
                await uow.get(tenant_id, appointment_id), tenant_id, "Appointment", appointment_id
            )
            new_status = next_status(LifecycleAction.RESCHEDULE, appt.status)
            self._policy_engine.check_reschedule(appt, policy, now)

            interval = Interval.of_length(new_start_time, appt.duration)
            self._validate_interval(interval, policy, staff, now)

            if await self._conflicts.has_conflict(
                uow, tenant_id, appt.staff_id, interval, exclude_appointment_id=appt.id
            ):
                raise SlotUnavailableError()

            updated = appt.copy(
                start_time=interval.start,
                end_time=interval.end,
                status=new_status,
                confirmed_at=None,
                updated_at=now,
            )
            await uow.save(updated)
            await uow.add_event(
                self._event(
                    updated,
                    LifecycleAction.RESCHEDULE,
                    appt.status,
                    now,
                    reason=reason,
                    details={
                        "previous_start_time": appt.start_time.isoformat(),
                        "previous_end_time": appt.end_time.isoformat(),
                    },
                )
            )

        logger.info(
            f"Appointment {updated.id} rescheduled to {updated.start_time.isoformat()} "
            f"(tenant {tenant_id})"
        )
        self._emit(updated, LifecycleAction.RESCHEDULE)
        return updated

    # === Cancel ===

    async def cancel_appointment(
        self,
        tenant_id: str,
        appointment_id: str,
        reason: str,
    ) -> Appointment:
        """Cancel an appointment (kept for history, freed for booking).

        Raises:
            NotFoundError: Appointment missing in this tenant
            PolicyViolationError: No reason given, inside the cancel notice
                window, or the appointment is not cancellable
        """
        tenant_id = require_tenant_id(tenant_id)
        if not reason or not reason.strip():
            raise PolicyViolationError("A cancellation reason is required")

        current = await self._appointment(tenant_id, appointment_id)
        policy = await self._policies.get_policy(tenant_id, fresh=True)
        now = self._clock()

        async with self._store.staff_transaction(tenant_id, current.staff_id) as uow:
            appt = ensure_owned(
                await uow.get(tenant_id, appointment_id), tenant_id, "Appointment", appointment_id
            )
            new_status = next_status(LifecycleAction.CANCEL, appt.status)
            self._policy_engine.check_cancel(appt, policy, now)

            updated = appt.copy(
                status=new_status,
                cancel_reason=reason.strip(),
                canceled_at=now,
                updated_at=now,
            )
            await uow.save(updated)
            await uow.add_event(
                self._event(updated, LifecycleAction.CANCEL, appt.status, now, reason=updated.cancel_reason)
            )

        logger.info(f"Appointment {updated.id} canceled (tenant {tenant_id})")
        self._emit(updated, LifecycleAction.CANCEL)
        return updated

    # === Externally driven transitions ===

    async def _transition(
        self,
        tenant_id: str,
        appointment_id: str,
        action: LifecycleAction,
        stamp: Optional[str] = None,
    ) -> Appointment:
        tenant_id = require_tenant_id(tenant_id)
        current = await self._appointment(tenant_id, appointment_id)
        now = self._clock()

        async with self._store.staff_transaction(tenant_id, current.staff_id) as uow:
            appt = ensure_owned(
                await uow.get(tenant_id, appointment_id), tenant_id, "Appointment", appointment_id
            )
            new_status = next_status(action, appt.status)
            changes: dict[str, Any] = {"status": new_status, "updated_at": now}
            if stamp is not None:
                changes[stamp] = now
            updated = appt.copy(**changes)
            await uow.save(updated)
            await uow.add_event(self._event(updated, action, appt.status, now))

        logger.info(
            f"Appointment {updated.id} {appt.status.value} -> {updated.status.value} "
            f"(tenant {tenant_id})"
        )
        self._emit(updated, action)
        return updated

    async def confirm_appointment(self, tenant_id: str, appointment_id: str) -> Appointment:
        """Mark a scheduled appointment as confirmed by the client."""
        return await self._transition(
            tenant_id, appointment_id, LifecycleAction.CONFIRM, stamp="confirmed_at"
        )

    async def start_appointment(self, tenant_id: str, appointment_id: str) -> Appointment:
        return await self._transition(tenant_id, appointment_id, LifecycleAction.START)

    async def mark_completed(self, tenant_id: str, appointment_id: str) -> Appointment:
        return await self._transition(
            tenant_id, appointment_id, LifecycleAction.COMPLETE, stamp="completed_at"
        )

    async def mark_no_show(self, tenant_id: str, appointment_id: str) -> Appointment:
        """Record that the client did not attend (not policy-gated)."""
        return await self._transition(tenant_id, appointment_id, LifecycleAction.NO_SHOW)

    # === Queries ===

    async def get_appointment(self, tenant_id: str, appointment_id: str) -> Appointment:
        tenant_id = require_tenant_id(tenant_id)
        return await self._appointment(tenant_id, appointment_id)

    async def list_appointments(
        self,
        tenant_id: str,
        day: date,
        staff_id: Optional[str] = None,
        include_inactive: bool = True,
    ) -> list[Appointment]:
        """List a day's appointments, canceled ones included by default."""
        tenant_id = require_tenant_id(tenant_id)
        policy = await self._policies.get_policy(tenant_id)
        if staff_id is not None:
            await self._staff(tenant_id, staff_id)
        return await self._store.list_appointments(
            tenant_id,
            day_bounds(day, policy.timezone),
            staff_id=staff_id,
            include_inactive=include_inactive,
        )

    async def get_appointment_history(
        self, tenant_id: str, appointment_id: str
    ) -> list[AppointmentEvent]:
        tenant_id = require_tenant_id(tenant_id)
        await self._appointment(tenant_id, appointment_id)
        return await self._store.list_events(tenant_id, appointment_id)


# Singleton
_orchestrator: Optional[BookingOrchestrator] = None


async def get_booking_orchestrator() -> BookingOrchestrator:
    """Get singleton BookingOrchestrator wired to PostgreSQL and Redis."""
    global _orchestrator
    if _orchestrator is None:
        from booking_engine.infra.database import async_session_factory
        from booking_engine.infra.notifications import build_dispatcher
        from booking_engine.infra.redis import get_policy_cache
        from booking_engine.infra.sql_store import SqlAppointmentStore, SqlCatalog

        catalog = SqlCatalog(async_session_factory)
        _orchestrator = BookingOrchestrator(
            store=SqlAppointmentStore(async_session_factory),
            catalog=catalog,
            policies=PolicyProvider(catalog, await get_policy_cache()),
            dispatcher=build_dispatcher(),
        )
    return _orchestrator


async def shutdown_booking_orchestrator() -> None:
    """Flush pending intents and drop the singleton."""
    global _orchestrator
    if _orchestrator is not None:
        await _orchestrator.dispatcher.close(timeout=get_settings().dispatch_timeout)
        _orchestrator = None
