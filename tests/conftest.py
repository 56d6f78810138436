"""Shared fixtures: an in-memory tenant catalog, store and fixed clock."""

from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal

import pytest

from booking_engine.core.scheduling.engine import BookingOrchestrator
from booking_engine.core.scheduling.models import Client, Service, StaffMember, TenantPolicy
from booking_engine.core.scheduling.policy import PolicyProvider
from booking_engine.infra.notifications import IntentDispatcher
from booking_engine.infra.store import MemoryAppointmentStore, MemoryCatalog

TENANT = "tenant-salon"
OTHER_TENANT = "tenant-spa"

# Sunday noon; DAY is the following Tuesday
NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)
DAY = date(2025, 6, 3)


def at(hour: int, minute: int = 0, day: date = DAY) -> datetime:
    """UTC datetime on `day`."""
    return datetime.combine(day, time(hour, minute), tzinfo=timezone.utc)


class FakeClock:
    """Controllable clock for the orchestrator."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingCollaborator:
    """Notifier/syncer that records deliveries, or fails on demand."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.notified = []
        self.synced = []

    async def notify(self, tenant_id, appointment_id, kind):
        if self.fail:
            raise RuntimeError("notification service down")
        self.notified.append((tenant_id, appointment_id, kind))

    async def sync(self, tenant_id, appointment_id, action):
        if self.fail:
            raise RuntimeError("integration service down")
        self.synced.append((tenant_id, appointment_id, action))


@pytest.fixture
def clock():
    return FakeClock(NOW)


@pytest.fixture
def catalog():
    """Two tenants; the salon has two hair stylists and a nail technician."""
    catalog = MemoryCatalog()
    catalog.add_tenant(TenantPolicy(tenant_id=TENANT))
    catalog.add_tenant(TenantPolicy(tenant_id=OTHER_TENANT))

    catalog.add_service(
        Service(
            id="svc-cut",
            tenant_id=TENANT,
            name="Haircut",
            duration_minutes=60,
            price=Decimal("40.00"),
            category="hair",
        )
    )
    catalog.add_service(
        Service(
            id="svc-nails",
            tenant_id=TENANT,
            name="Manicure",
            duration_minutes=30,
            price=Decimal("25.00"),
            category="nails",
        )
    )
    catalog.add_staff(StaffMember(id="staff-ana", tenant_id=TENANT, name="Ana", specialties=["hair"]))
    catalog.add_staff(
        StaffMember(id="staff-bruno", tenant_id=TENANT, name="Bruno", specialties=["hair", "nails"])
    )
    catalog.add_staff(
        StaffMember(id="staff-carla", tenant_id=TENANT, name="Carla", specialties=["nails"])
    )
    catalog.add_client(Client(id="client-dana", tenant_id=TENANT, name="Dana"))

    catalog.add_service(
        Service(id="svc-massage", tenant_id=OTHER_TENANT, name="Massage", duration_minutes=90)
    )
    catalog.add_staff(StaffMember(id="staff-xavier", tenant_id=OTHER_TENANT, name="Xavier"))
    catalog.add_client(Client(id="client-yara", tenant_id=OTHER_TENANT, name="Yara"))
    return catalog


@pytest.fixture
def store():
    return MemoryAppointmentStore()


@pytest.fixture
def collaborator():
    return RecordingCollaborator()


@pytest.fixture
def dispatcher(collaborator):
    return IntentDispatcher(collaborator, collaborator)


@pytest.fixture
def orchestrator(store, catalog, dispatcher, clock):
    return BookingOrchestrator(
        store=store,
        catalog=catalog,
        policies=PolicyProvider(catalog),
        dispatcher=dispatcher,
        clock=clock,
        granularity_minutes=30,
    )
