"""
Appointment storage contracts and in-memory implementation.

The appointment store is the only shared mutable resource of the core.
All check-then-write sequences run inside `staff_transaction`, which holds
an exclusive lock per (tenant_id, staff_id) and applies its writes only
when the block exits cleanly.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncContextManager, AsyncGenerator, Optional, Protocol

from booking_engine.core.scheduling.errors import SlotUnavailableError
from booking_engine.core.scheduling.interval import Interval
from booking_engine.core.scheduling.models import (
    Appointment,
    AppointmentEvent,
    Client,
    Service,
    StaffMember,
    TenantPolicy,
)

logger = logging.getLogger(__name__)


class Catalog(Protocol):
    """Tenant, service, staff and client lookups (read-only to the core)."""

    async def get_policy(self, tenant_id: str) -> Optional[TenantPolicy]:
        ...

    async def get_service(self, tenant_id: str, service_id: str) -> Optional[Service]:
        ...

    async def get_staff(self, tenant_id: str, staff_id: str) -> Optional[StaffMember]:
        ...

    async def list_staff(self, tenant_id: str) -> list[StaffMember]:
        ...

    async def get_client(self, tenant_id: str, client_id: str) -> Optional[Client]:
        ...


class StaffUnitOfWork(Protocol):
    """Reads and writes made while holding one staff member's lock."""

    async def get(self, tenant_id: str, appointment_id: str) -> Optional[Appointment]:
        ...

    async def list_active(
        self, tenant_id: str, staff_id: str, window: Interval
    ) -> list[Appointment]:
        ...

    async def add(self, appointment: Appointment) -> Appointment:
        ...

    async def save(self, appointment: Appointment) -> Appointment:
        ...

    async def add_event(self, event: AppointmentEvent) -> None:
        ...


class AppointmentStore(Protocol):
    """Shared appointment store."""

    def staff_transaction(
        self, tenant_id: str, staff_id: str
    ) -> AsyncContextManager[StaffUnitOfWork]:
        ...

    async def get_appointment(
        self, tenant_id: str, appointment_id: str
    ) -> Optional[Appointment]:
        ...

    async def list_active(
        self, tenant_id: str, staff_id: str, window: Interval
    ) -> list[Appointment]:
        ...

    async def list_appointments(
        self,
        tenant_id: str,
        window: Interval,
        staff_id: Optional[str] = None,
        include_inactive: bool = True,
    ) -> list[Appointment]:
        ...

    async def list_events(
        self, tenant_id: str, appointment_id: str
    ) -> list[AppointmentEvent]:
        ...


class MemoryCatalog:
    """Dictionary-backed catalog for development and tests."""

    def __init__(self) -> None:
        self._policies: dict[str, TenantPolicy] = {}
        self._services: dict[str, Service] = {}
        self._staff: dict[str, StaffMember] = {}
        self._clients: dict[str, Client] = {}

    def add_tenant(self, policy: TenantPolicy) -> TenantPolicy:
        self._policies[policy.tenant_id] = policy
        return policy

    def add_service(self, service: Service) -> Service:
        self._services[service.id] = service
        return service

    def add_staff(self, staff: StaffMember) -> StaffMember:
        self._staff[staff.id] = staff
        return staff

    def add_client(self, client: Client) -> Client:
        self._clients[client.id] = client
        return client

    async def get_policy(self, tenant_id: str) -> Optional[TenantPolicy]:
        return self._policies.get(tenant_id)

    async def get_service(self, tenant_id: str, service_id: str) -> Optional[Service]:
        service = self._services.get(service_id)
        return service if service and service.tenant_id == tenant_id else None

    async def get_staff(self, tenant_id: str, staff_id: str) -> Optional[StaffMember]:
        staff = self._staff.get(staff_id)
        return staff if staff and staff.tenant_id == tenant_id else None

    async def list_staff(self, tenant_id: str) -> list[StaffMember]:
        return [s for s in self._staff.values() if s.tenant_id == tenant_id]

    async def get_client(self, tenant_id: str, client_id: str) -> Optional[Client]:
        client = self._clients.get(client_id)
        return client if client and client.tenant_id == tenant_id else None


def _overlapping_active(
    appointments: dict[str, Appointment],
    tenant_id: str,
    staff_id: str,
    window: Interval,
) -> list[Appointment]:
    return sorted(
        (
            appt
            for appt in appointments.values()
            if appt.tenant_id == tenant_id
            and appt.staff_id == staff_id
            and appt.is_active
            and appt.interval.overlaps(window)
        ),
        key=lambda a: a.start_time,
    )


class MemoryUnitOfWork:
    """Staged writes for one staff member, applied on commit."""

    def __init__(self, store: "MemoryAppointmentStore", tenant_id: str, staff_id: str):
        self._store = store
        self.tenant_id = tenant_id
        self.staff_id = staff_id
        self._pending: dict[str, Appointment] = {}
        self._pending_events: list[AppointmentEvent] = []

    def _visible(self) -> dict[str, Appointment]:
        merged = dict(self._store._appointments)
        merged.update(self._pending)
        return merged

    def _check_scope(self, appointment: Appointment) -> None:
        if appointment.tenant_id != self.tenant_id or appointment.staff_id != self.staff_id:
            raise ValueError(
                f"Appointment {appointment.id} is outside this transaction's "
                f"staff scope ({self.tenant_id}/{self.staff_id})"
            )

    async def get(self, tenant_id: str, appointment_id: str) -> Optional[Appointment]:
        appt = self._visible().get(appointment_id)
        if appt is None or appt.tenant_id != tenant_id:
            return None
        return appt.copy()

    async def list_active(
        self, tenant_id: str, staff_id: str, window: Interval
    ) -> list[Appointment]:
        return [
            a.copy()
            for a in _overlapping_active(self._visible(), tenant_id, staff_id, window)
        ]

    async def add(self, appointment: Appointment) -> Appointment:
        self._check_scope(appointment)
        if appointment.id in self._visible():
            raise ValueError(f"Appointment {appointment.id} already exists")
        self._pending[appointment.id] = appointment.copy()
        return appointment

    async def save(self, appointment: Appointment) -> Appointment:
        self._check_scope(appointment)
        self._pending[appointment.id] = appointment.copy()
        return appointment

    async def add_event(self, event: AppointmentEvent) -> None:
        self._pending_events.append(event)

    def commit(self) -> None:
        """Apply staged writes, enforcing the non-overlap invariant."""
        for appt in self._pending.values():
            if not appt.is_active:
                continue
            clashes = [
                other
                for other in _overlapping_active(
                    self._store._appointments, appt.tenant_id, appt.staff_id, appt.interval
                )
                if other.id != appt.id and other.id not in self._pending
            ]
            if clashes:
                raise SlotUnavailableError()

        self._store._appointments.update(self._pending)
        self._store._events.extend(self._pending_events)


class MemoryAppointmentStore:
    """In-process appointment store with per-staff asyncio locks."""

    def __init__(self) -> None:
        self._appointments: dict[str, Appointment] = {}
        self._events: list[AppointmentEvent] = []
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}

    def _lock_for(self, tenant_id: str, staff_id: str) -> asyncio.Lock:
        key = (tenant_id, staff_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def staff_transaction(
        self, tenant_id: str, staff_id: str
    ) -> AsyncGenerator[MemoryUnitOfWork, None]:
        """Lock one staff calendar and yield a unit of work.

        Writes are discarded if the block raises.
        """
        async with self._lock_for(tenant_id, staff_id):
            uow = MemoryUnitOfWork(self, tenant_id, staff_id)
            yield uow
            uow.commit()

    async def get_appointment(
        self, tenant_id: str, appointment_id: str
    ) -> Optional[Appointment]:
        appt = self._appointments.get(appointment_id)
        if appt is None or appt.tenant_id != tenant_id:
            return None
        return appt.copy()

    async def list_active(
        self, tenant_id: str, staff_id: str, window: Interval
    ) -> list[Appointment]:
        return [
            a.copy()
            for a in _overlapping_active(self._appointments, tenant_id, staff_id, window)
        ]

    async def list_appointments(
        self,
        tenant_id: str,
        window: Interval,
        staff_id: Optional[str] = None,
        include_inactive: bool = True,
    ) -> list[Appointment]:
        result = [
            appt.copy()
            for appt in self._appointments.values()
            if appt.tenant_id == tenant_id
            and (staff_id is None or appt.staff_id == staff_id)
            and (include_inactive or appt.is_active)
            and window.start <= appt.start_time < window.end
        ]
        return sorted(result, key=lambda a: a.start_time)

    async def list_events(
        self, tenant_id: str, appointment_id: str
    ) -> list[AppointmentEvent]:
        events = [
            e
            for e in self._events
            if e.tenant_id == tenant_id and e.appointment_id == appointment_id
        ]
        return sorted(events, key=lambda e: e.occurred_at)

    def count(self) -> int:
        return len(self._appointments)
