"""Tests for the Booking Orchestrator over the in-memory store."""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock
from zoneinfo import ZoneInfo

import pytest

from booking_engine.core.scheduling.engine import BookingOrchestrator
from booking_engine.core.scheduling.errors import (
    DependencyUnavailableError,
    InvalidIntervalError,
    InvalidTransitionError,
    NotFoundError,
    PolicyViolationError,
    SlotUnavailableError,
)
from booking_engine.core.scheduling.interval import overlaps
from booking_engine.core.scheduling.lifecycle import (
    AppointmentStatus,
    NotifyKind,
    SyncAction,
)
from booking_engine.core.scheduling.models import (
    Client,
    Service,
    StaffMember,
    TenantPolicy,
    WeeklyHours,
)
from booking_engine.core.scheduling.policy import PolicyProvider
from booking_engine.core.scheduling.slots import day_bounds
from booking_engine.infra.notifications import IntentDispatcher
from booking_engine.infra.store import MemoryAppointmentStore
from tests.conftest import DAY, OTHER_TENANT, TENANT, RecordingCollaborator, at


async def book(orchestrator, start, staff_id="staff-ana", service_id="svc-cut", **kwargs):
    return await orchestrator.create_appointment(
        tenant_id=kwargs.pop("tenant_id", TENANT),
        client_id=kwargs.pop("client_id", "client-dana"),
        service_id=service_id,
        staff_id=staff_id,
        start_time=start,
        **kwargs,
    )


BERLIN = ZoneInfo("Europe/Berlin")


@pytest.fixture
def berlin_salon(catalog, clock):
    """Berlin tenant open all day on 2025-03-30, when clocks skip 02:00-03:00.

    Returns the booking keyword arguments for that tenant.
    """
    catalog.add_tenant(TenantPolicy(tenant_id="tenant-berlin", timezone="Europe/Berlin"))
    catalog.add_service(
        Service(id="svc-colour", tenant_id="tenant-berlin", name="Colour", duration_minutes=90)
    )
    catalog.add_staff(
        StaffMember(
            id="staff-greta",
            tenant_id="tenant-berlin",
            name="Greta",
            working_hours=WeeklyHours.from_dict({"sunday": ["00:00", "23:00"]}),
        )
    )
    catalog.add_client(Client(id="client-hans", tenant_id="tenant-berlin", name="Hans"))
    clock.now = datetime(2025, 3, 28, 12, 0, tzinfo=timezone.utc)
    return {
        "tenant_id": "tenant-berlin",
        "client_id": "client-hans",
        "service_id": "svc-colour",
        "staff_id": "staff-greta",
    }


class TestCreateAppointment:
    """Test booking new appointments."""

    @pytest.mark.asyncio
    async def test_create(self, orchestrator, store):
        """Test a booking is persisted as scheduled with the service duration."""
        appt = await book(orchestrator, at(10), notes="First visit")

        assert appt.status == AppointmentStatus.SCHEDULED
        assert appt.end_time == at(11)
        assert appt.price == Decimal("40.00")
        assert appt.notes == "First visit"
        assert await store.get_appointment(TENANT, appt.id) == appt

    @pytest.mark.asyncio
    async def test_create_emits_confirmation_only(self, orchestrator, dispatcher, collaborator):
        """Test a booking sends a confirmation and no calendar sync."""
        appt = await book(orchestrator, at(10))
        await dispatcher.drain()

        assert collaborator.notified == [(TENANT, appt.id, NotifyKind.CONFIRMATION)]
        assert collaborator.synced == []

    @pytest.mark.asyncio
    async def test_double_booking_rejected(self, orchestrator, store):
        """Test an overlapping booking for the same staff member fails."""
        await book(orchestrator, at(10))

        with pytest.raises(SlotUnavailableError):
            await book(orchestrator, at(10, 30))

        assert store.count() == 1

    @pytest.mark.asyncio
    async def test_back_to_back_allowed(self, orchestrator):
        """Test touching intervals can both be booked."""
        await book(orchestrator, at(10))
        appt = await book(orchestrator, at(11))

        assert appt.start_time == at(11)

    @pytest.mark.asyncio
    async def test_other_staff_unaffected(self, orchestrator):
        """Test different staff members can be booked at the same time."""
        await book(orchestrator, at(10), staff_id="staff-ana")
        appt = await book(orchestrator, at(10), staff_id="staff-bruno")

        assert appt.staff_id == "staff-bruno"

    @pytest.mark.asyncio
    async def test_concurrent_identical_bookings(self, orchestrator, store):
        """Test exactly one of two simultaneous bookings wins."""
        results = await asyncio.gather(
            book(orchestrator, at(14)),
            book(orchestrator, at(14)),
            return_exceptions=True,
        )

        succeeded = [r for r in results if not isinstance(r, Exception)]
        failed = [r for r in results if isinstance(r, Exception)]
        assert len(succeeded) == 1
        assert len(failed) == 1
        assert isinstance(failed[0], SlotUnavailableError)
        assert store.count() == 1

    @pytest.mark.asyncio
    async def test_many_concurrent_overlapping_bookings(self, orchestrator, store):
        """Test no two active appointments overlap after a burst of writers."""
        starts = [at(9) + timedelta(minutes=15 * i) for i in range(12)]

        await asyncio.gather(
            *(book(orchestrator, start) for start in starts),
            return_exceptions=True,
        )

        booked = await store.list_appointments(TENANT, day_bounds(DAY, "UTC"))
        assert booked
        for i, first in enumerate(booked):
            for second in booked[i + 1:]:
                assert not overlaps(first.interval, second.interval)

    @pytest.mark.asyncio
    async def test_outside_working_hours(self, orchestrator):
        """Test a booking running past closing time is invalid."""
        with pytest.raises(InvalidIntervalError):
            await book(orchestrator, at(17, 30))

    @pytest.mark.asyncio
    async def test_before_opening(self, orchestrator):
        with pytest.raises(InvalidIntervalError):
            await book(orchestrator, at(8, 30))

    @pytest.mark.asyncio
    async def test_in_the_past(self, orchestrator, clock):
        """Test bookings cannot start before now."""
        clock.now = at(12)

        with pytest.raises(InvalidIntervalError, match="past"):
            await book(orchestrator, at(11))

    @pytest.mark.asyncio
    async def test_naive_start_rejected(self, orchestrator):
        """Test start times must carry a timezone."""
        with pytest.raises(InvalidIntervalError):
            await book(orchestrator, datetime(2025, 6, 3, 10, 0))

    @pytest.mark.asyncio
    async def test_closed_staff_day(self, orchestrator, catalog):
        """Test staff working hours can close a weekday."""
        catalog.add_staff(
            StaffMember(
                id="staff-ana",
                tenant_id=TENANT,
                name="Ana",
                working_hours=WeeklyHours.from_dict({"tuesday": None}),
            )
        )

        with pytest.raises(InvalidIntervalError, match="not working"):
            await book(orchestrator, at(10))

    @pytest.mark.asyncio
    async def test_zero_duration_service(self, orchestrator, catalog):
        """Test services without a duration cannot be booked."""
        catalog.add_service(
            Service(id="svc-free", tenant_id=TENANT, name="Chat", duration_minutes=0)
        )

        with pytest.raises(InvalidIntervalError):
            await book(orchestrator, at(10), service_id="svc-free")

    @pytest.mark.asyncio
    async def test_unknown_references(self, orchestrator):
        """Test missing service, staff or client are NotFound."""
        with pytest.raises(NotFoundError):
            await book(orchestrator, at(10), service_id="svc-missing")
        with pytest.raises(NotFoundError):
            await book(orchestrator, at(10), staff_id="staff-missing")
        with pytest.raises(NotFoundError):
            await book(orchestrator, at(10), client_id="client-missing")

    @pytest.mark.asyncio
    async def test_blank_tenant(self, orchestrator):
        with pytest.raises(ValueError):
            await book(orchestrator, at(10), tenant_id=" ")

    @pytest.mark.asyncio
    async def test_catalog_failure_is_retryable(self, orchestrator, catalog):
        """Test a failing lookup surfaces as DependencyUnavailable."""
        catalog.get_service = AsyncMock(side_effect=ConnectionError("catalog down"))

        with pytest.raises(DependencyUnavailableError) as exc_info:
            await book(orchestrator, at(10))

        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_catalog_timeout_is_retryable(self, orchestrator, catalog):
        catalog.get_staff = AsyncMock(side_effect=asyncio.TimeoutError())

        with pytest.raises(DependencyUnavailableError):
            await book(orchestrator, at(10))

    @pytest.mark.asyncio
    async def test_malformed_catalog_data_is_not_retryable(self, orchestrator, catalog, store):
        """Test a bad record propagates instead of asking the caller to retry."""
        catalog.get_staff = AsyncMock(side_effect=ValueError("Invalid time '9am'"))

        with pytest.raises(ValueError, match="9am"):
            await book(orchestrator, at(10))

        assert store.count() == 0

    @pytest.mark.asyncio
    async def test_duration_is_elapsed_time_across_dst(self, orchestrator, berlin_salon):
        """Test a 90 minute booking on the spring-forward night lasts 90 minutes."""
        start = datetime(2025, 3, 30, 1, 30, tzinfo=BERLIN)

        appt = await book(orchestrator, start, **berlin_salon)

        assert appt.start_time == start
        assert (appt.end_time - appt.start_time).total_seconds() == 5400
        assert appt.end_time.astimezone(BERLIN) == datetime(2025, 3, 30, 4, 0, tzinfo=BERLIN)
        assert appt.duration_minutes == 90

    @pytest.mark.asyncio
    async def test_dst_booking_blocks_its_real_span(self, orchestrator, berlin_salon):
        """Test 03:30 CEST still falls inside a booking that started at 01:30 CET."""
        await book(orchestrator, datetime(2025, 3, 30, 1, 30, tzinfo=BERLIN), **berlin_salon)

        with pytest.raises(SlotUnavailableError):
            await book(orchestrator, datetime(2025, 3, 30, 3, 30, tzinfo=BERLIN), **berlin_salon)


class TestAvailableSlots:
    """Test availability listings."""

    @pytest.mark.asyncio
    async def test_empty_day(self, orchestrator):
        """Test 17 hourly-service slots between 09:00 and 17:00."""
        slots = await orchestrator.get_available_slots(TENANT, "staff-ana", "svc-cut", DAY)

        assert len(slots) == 17
        assert slots[0].time == "09:00"
        assert slots[-1].time == "17:00"

    @pytest.mark.asyncio
    async def test_booked_time_marked_taken(self, orchestrator):
        """Test a 10:00-11:00 booking blocks overlapping starts only."""
        await book(orchestrator, at(10))

        slots = {
            s.time: s.available
            for s in await orchestrator.get_available_slots(TENANT, "staff-ana", "svc-cut", DAY)
        }

        assert slots["09:00"] is True
        assert slots["09:30"] is False
        assert slots["10:00"] is False
        assert slots["10:30"] is False
        assert slots["11:00"] is True

    @pytest.mark.asyncio
    async def test_available_slot_can_be_booked(self, orchestrator, catalog, dispatcher, clock):
        """Test every slot marked available is bookable."""
        await book(orchestrator, at(12))
        slots = await orchestrator.get_available_slots(TENANT, "staff-ana", "svc-cut", DAY)
        free = [s for s in slots if s.available]
        assert len(free) == 14

        for slot in free:
            fresh = BookingOrchestrator(
                store=MemoryAppointmentStore(),
                catalog=catalog,
                policies=PolicyProvider(catalog),
                dispatcher=dispatcher,
                clock=clock,
                granularity_minutes=30,
            )
            await book(fresh, at(12))

            appt = await book(fresh, slot.start)

            assert appt.start_time == slot.start

    @pytest.mark.asyncio
    async def test_canceled_appointment_frees_slot(self, orchestrator):
        appt = await book(orchestrator, at(10))
        await orchestrator.cancel_appointment(TENANT, appt.id, "Client is ill")

        slots = {
            s.time: s.available
            for s in await orchestrator.get_available_slots(TENANT, "staff-ana", "svc-cut", DAY)
        }

        assert slots["10:00"] is True

    @pytest.mark.asyncio
    async def test_any_staff_union(self, orchestrator):
        """Test "any" is free while one qualified stylist is free."""
        await book(orchestrator, at(10), staff_id="staff-ana")

        slots = {
            s.time: s
            for s in await orchestrator.get_available_slots(TENANT, "any", "svc-cut", DAY)
        }

        assert slots["10:00"].available is True
        assert slots["10:00"].staff_ids == ["staff-bruno"]

        await book(orchestrator, at(10), staff_id="staff-bruno")
        slots = {
            s.time: s
            for s in await orchestrator.get_available_slots(TENANT, "any", "svc-cut", DAY)
        }

        # Carla does nails only
        assert slots["10:00"].available is False

    @pytest.mark.asyncio
    async def test_any_staff_skips_inactive(self, orchestrator, catalog):
        catalog.add_staff(
            StaffMember(id="staff-bruno", tenant_id=TENANT, name="Bruno", is_active=False)
        )
        await book(orchestrator, at(10), staff_id="staff-ana")

        slots = {
            s.time: s.available
            for s in await orchestrator.get_available_slots(TENANT, "any", "svc-cut", DAY)
        }

        assert slots["10:00"] is False

    @pytest.mark.asyncio
    async def test_today_omits_past(self, orchestrator, clock):
        """Test slots before now are left out."""
        clock.now = at(12, 10)

        slots = await orchestrator.get_available_slots(TENANT, "staff-ana", "svc-cut", DAY)

        assert slots[0].time == "12:30"

    @pytest.mark.asyncio
    async def test_past_day_lists_nothing(self, orchestrator, clock):
        """Test a day that has already gone by has no slots at all."""
        clock.now = at(12)

        last_week = await orchestrator.get_available_slots(
            TENANT, "staff-ana", "svc-cut", DAY - timedelta(days=7)
        )
        any_staff = await orchestrator.get_available_slots(
            TENANT, "any", "svc-cut", DAY - timedelta(days=7)
        )

        assert last_week == []
        assert any_staff == []

    @pytest.mark.asyncio
    async def test_closed_tenant_day(self, orchestrator, catalog):
        catalog.add_tenant(
            TenantPolicy(
                tenant_id=TENANT,
                business_hours=WeeklyHours.from_dict({"tuesday": None}),
            )
        )

        assert await orchestrator.get_available_slots(TENANT, "staff-ana", "svc-cut", DAY) == []

    @pytest.mark.asyncio
    async def test_foreign_service(self, orchestrator):
        with pytest.raises(NotFoundError):
            await orchestrator.get_available_slots(TENANT, "any", "svc-massage", DAY)


class TestRescheduleAppointment:
    """Test moving appointments."""

    @pytest.mark.asyncio
    async def test_reschedule_preserves_identity(self, orchestrator):
        """Test only the interval and status change."""
        appt = await book(orchestrator, at(10))

        moved = await orchestrator.reschedule_appointment(TENANT, appt.id, at(15), "Work meeting")

        assert moved.id == appt.id
        assert moved.client_id == appt.client_id
        assert moved.service_id == appt.service_id
        assert moved.staff_id == appt.staff_id
        assert moved.start_time == at(15)
        assert moved.end_time == at(16)

    @pytest.mark.asyncio
    async def test_duration_snapshot(self, orchestrator, catalog):
        """Test a later service change does not alter the booked duration."""
        appt = await book(orchestrator, at(10))
        catalog.add_service(
            Service(id="svc-cut", tenant_id=TENANT, name="Haircut", duration_minutes=90)
        )

        moved = await orchestrator.reschedule_appointment(TENANT, appt.id, at(14))

        assert moved.end_time - moved.start_time == timedelta(minutes=60)

    @pytest.mark.asyncio
    async def test_overlap_with_itself_allowed(self, orchestrator):
        """Test shifting by half an hour does not conflict with the old time."""
        appt = await book(orchestrator, at(10))

        moved = await orchestrator.reschedule_appointment(TENANT, appt.id, at(10, 30))

        assert moved.start_time == at(10, 30)

    @pytest.mark.asyncio
    async def test_conflict_rejected_without_changes(self, orchestrator, store):
        """Test a conflicting move leaves the appointment untouched."""
        first = await book(orchestrator, at(10))
        await book(orchestrator, at(14))

        with pytest.raises(SlotUnavailableError):
            await orchestrator.reschedule_appointment(TENANT, first.id, at(13, 30))

        assert (await store.get_appointment(TENANT, first.id)).start_time == at(10)

    @pytest.mark.asyncio
    async def test_concurrent_reschedule_and_booking(self, orchestrator, store):
        """Test a move and a new booking racing for one slot cannot both win."""
        moving = await book(orchestrator, at(10))

        results = await asyncio.gather(
            orchestrator.reschedule_appointment(TENANT, moving.id, at(14)),
            book(orchestrator, at(14)),
            return_exceptions=True,
        )

        succeeded = [r for r in results if not isinstance(r, Exception)]
        failed = [r for r in results if isinstance(r, Exception)]
        assert len(succeeded) == 1
        assert len(failed) == 1
        assert isinstance(failed[0], SlotUnavailableError)

        booked = await store.list_appointments(TENANT, day_bounds(DAY, "UTC"))
        at_two = [a for a in booked if a.is_active and a.start_time == at(14)]
        assert len(at_two) == 1
        for i, first in enumerate(booked):
            for second in booked[i + 1:]:
                assert not overlaps(first.interval, second.interval)

    @pytest.mark.asyncio
    async def test_concurrent_reschedules_onto_one_slot(self, orchestrator, store):
        """Test two appointments moved onto the same time: one move fails."""
        first = await book(orchestrator, at(10))
        second = await book(orchestrator, at(11))

        results = await asyncio.gather(
            orchestrator.reschedule_appointment(TENANT, first.id, at(14)),
            orchestrator.reschedule_appointment(TENANT, second.id, at(14)),
            return_exceptions=True,
        )

        failed = [r for r in results if isinstance(r, Exception)]
        assert len(failed) == 1
        assert isinstance(failed[0], SlotUnavailableError)
        starts = sorted(
            [
                (await store.get_appointment(TENANT, first.id)).start_time,
                (await store.get_appointment(TENANT, second.id)).start_time,
            ]
        )
        assert starts in ([at(10), at(14)], [at(11), at(14)])

    @pytest.mark.asyncio
    async def test_reschedule_across_dst_keeps_elapsed_duration(
        self, orchestrator, berlin_salon
    ):
        """Test moving onto the spring-forward night keeps 90 real minutes."""
        appt = await book(orchestrator, datetime(2025, 3, 30, 0, 0, tzinfo=BERLIN), **berlin_salon)

        moved = await orchestrator.reschedule_appointment(
            "tenant-berlin", appt.id, datetime(2025, 3, 30, 1, 30, tzinfo=BERLIN)
        )

        assert moved.end_time - moved.start_time == timedelta(minutes=90)
        assert moved.end_time.astimezone(BERLIN).strftime("%H:%M") == "04:00"

    @pytest.mark.asyncio
    async def test_confirmation_dropped(self, orchestrator):
        """Test a confirmed appointment returns to scheduled."""
        appt = await book(orchestrator, at(10))
        await orchestrator.confirm_appointment(TENANT, appt.id)

        moved = await orchestrator.reschedule_appointment(TENANT, appt.id, at(15))

        assert moved.status == AppointmentStatus.SCHEDULED
        assert moved.confirmed_at is None

    @pytest.mark.asyncio
    async def test_inside_notice_window(self, orchestrator, clock):
        """Test a reschedule 20 hours before start violates the 24 hour policy."""
        appt = await book(orchestrator, at(10))
        clock.now = at(10) - timedelta(hours=20)

        with pytest.raises(PolicyViolationError, match="24 hours' notice"):
            await orchestrator.reschedule_appointment(TENANT, appt.id, at(15))

    @pytest.mark.asyncio
    async def test_completed_cannot_move(self, orchestrator):
        appt = await book(orchestrator, at(10))
        await orchestrator.mark_completed(TENANT, appt.id)

        with pytest.raises(InvalidTransitionError):
            await orchestrator.reschedule_appointment(TENANT, appt.id, at(15))

    @pytest.mark.asyncio
    async def test_outside_hours(self, orchestrator):
        appt = await book(orchestrator, at(10))

        with pytest.raises(InvalidIntervalError):
            await orchestrator.reschedule_appointment(TENANT, appt.id, at(17, 30))

    @pytest.mark.asyncio
    async def test_emits_reschedule_and_sync(self, orchestrator, dispatcher, collaborator):
        appt = await book(orchestrator, at(10))
        await orchestrator.reschedule_appointment(TENANT, appt.id, at(15))
        await dispatcher.drain()

        assert (TENANT, appt.id, NotifyKind.RESCHEDULE) in collaborator.notified
        assert collaborator.synced == [(TENANT, appt.id, SyncAction.UPSERT)]

    @pytest.mark.asyncio
    async def test_reason_recorded_in_history(self, orchestrator):
        appt = await book(orchestrator, at(10))
        await orchestrator.reschedule_appointment(TENANT, appt.id, at(15), "Running late")

        history = await orchestrator.get_appointment_history(TENANT, appt.id)

        assert history[-1].action == "reschedule"
        assert history[-1].reason == "Running late"
        assert history[-1].details["previous_start_time"] == at(10).isoformat()


class TestCancelAppointment:
    """Test cancellations."""

    @pytest.mark.asyncio
    async def test_cancel_is_non_destructive(self, orchestrator):
        """Test canceled appointments stay queryable."""
        appt = await book(orchestrator, at(10))

        canceled = await orchestrator.cancel_appointment(TENANT, appt.id, "Client is ill")
        stored = await orchestrator.get_appointment(TENANT, appt.id)
        listed = await orchestrator.list_appointments(TENANT, DAY)

        assert canceled.status == AppointmentStatus.CANCELED
        assert stored.cancel_reason == "Client is ill"
        assert stored.canceled_at is not None
        assert [a.id for a in listed] == [appt.id]

    @pytest.mark.asyncio
    async def test_canceled_excluded_from_conflicts(self, orchestrator):
        appt = await book(orchestrator, at(10))
        await orchestrator.cancel_appointment(TENANT, appt.id, "Client is ill")

        replacement = await book(orchestrator, at(10))

        assert replacement.id != appt.id

    @pytest.mark.asyncio
    async def test_exactly_at_threshold(self, orchestrator, clock):
        """Test cancelling exactly 2 hours before start succeeds."""
        appt = await book(orchestrator, at(10))
        clock.now = at(8)

        canceled = await orchestrator.cancel_appointment(TENANT, appt.id, "Client is ill")

        assert canceled.status == AppointmentStatus.CANCELED

    @pytest.mark.asyncio
    async def test_one_second_inside_window(self, orchestrator, clock):
        """Test cancelling one second too late fails."""
        appt = await book(orchestrator, at(10))
        clock.now = at(8) + timedelta(seconds=1)

        with pytest.raises(PolicyViolationError, match="2 hours' notice"):
            await orchestrator.cancel_appointment(TENANT, appt.id, "Client is ill")

        stored = await orchestrator.get_appointment(TENANT, appt.id)
        assert stored.status == AppointmentStatus.SCHEDULED

    @pytest.mark.asyncio
    async def test_reason_required(self, orchestrator):
        appt = await book(orchestrator, at(10))

        with pytest.raises(PolicyViolationError, match="reason"):
            await orchestrator.cancel_appointment(TENANT, appt.id, "   ")

    @pytest.mark.asyncio
    async def test_cancel_completed(self, orchestrator):
        """Test cancelling a completed appointment is an invalid transition."""
        appt = await book(orchestrator, at(10))
        await orchestrator.mark_completed(TENANT, appt.id)

        with pytest.raises(InvalidTransitionError) as exc_info:
            await orchestrator.cancel_appointment(TENANT, appt.id, "Changed mind")

        assert isinstance(exc_info.value, PolicyViolationError)

    @pytest.mark.asyncio
    async def test_cancel_twice(self, orchestrator):
        appt = await book(orchestrator, at(10))
        await orchestrator.cancel_appointment(TENANT, appt.id, "Client is ill")

        with pytest.raises(InvalidTransitionError):
            await orchestrator.cancel_appointment(TENANT, appt.id, "Again")

    @pytest.mark.asyncio
    async def test_emits_cancellation_and_removal(self, orchestrator, dispatcher, collaborator):
        appt = await book(orchestrator, at(10))
        await orchestrator.cancel_appointment(TENANT, appt.id, "Client is ill")
        await dispatcher.drain()

        assert collaborator.notified[-1] == (TENANT, appt.id, NotifyKind.CANCELLATION)
        assert collaborator.synced == [(TENANT, appt.id, SyncAction.REMOVE)]


class TestExternalTransitions:
    """Test staff-driven status changes."""

    @pytest.mark.asyncio
    async def test_full_visit(self, orchestrator):
        """Test confirm, start and complete in order."""
        appt = await book(orchestrator, at(10))

        confirmed = await orchestrator.confirm_appointment(TENANT, appt.id)
        started = await orchestrator.start_appointment(TENANT, appt.id)
        completed = await orchestrator.mark_completed(TENANT, appt.id)

        assert confirmed.status == AppointmentStatus.CONFIRMED
        assert confirmed.confirmed_at is not None
        assert started.status == AppointmentStatus.IN_PROGRESS
        assert completed.status == AppointmentStatus.COMPLETED
        assert completed.completed_at is not None

    @pytest.mark.asyncio
    async def test_no_show_not_policy_gated(self, orchestrator, clock):
        """Test no-show can be recorded after the start time."""
        appt = await book(orchestrator, at(10))
        clock.now = at(10, 20)

        marked = await orchestrator.mark_no_show(TENANT, appt.id)

        assert marked.status == AppointmentStatus.NO_SHOW

    @pytest.mark.asyncio
    async def test_no_show_on_terminal(self, orchestrator):
        appt = await book(orchestrator, at(10))
        await orchestrator.cancel_appointment(TENANT, appt.id, "Client is ill")

        with pytest.raises(InvalidTransitionError):
            await orchestrator.mark_no_show(TENANT, appt.id)

    @pytest.mark.asyncio
    async def test_silent_transitions(self, orchestrator, dispatcher, collaborator):
        """Test start, complete and no-show send no notifications."""
        first = await book(orchestrator, at(10))
        second = await book(orchestrator, at(12))
        await orchestrator.start_appointment(TENANT, first.id)
        await orchestrator.mark_completed(TENANT, first.id)
        await orchestrator.mark_no_show(TENANT, second.id)
        await dispatcher.drain()

        kinds = [kind for _, _, kind in collaborator.notified]
        assert kinds == [NotifyKind.CONFIRMATION, NotifyKind.CONFIRMATION]
        assert collaborator.synced == []

    @pytest.mark.asyncio
    async def test_history(self, orchestrator):
        """Test every transition is recorded in order."""
        appt = await book(orchestrator, at(10))
        await orchestrator.confirm_appointment(TENANT, appt.id)
        await orchestrator.reschedule_appointment(TENANT, appt.id, at(15))
        await orchestrator.cancel_appointment(TENANT, appt.id, "Client is ill")

        history = await orchestrator.get_appointment_history(TENANT, appt.id)

        assert [e.action for e in history] == ["create", "confirm", "reschedule", "cancel"]
        assert history[0].from_status is None
        assert history[1].from_status == AppointmentStatus.SCHEDULED
        assert history[1].to_status == AppointmentStatus.CONFIRMED
        assert history[2].to_status == AppointmentStatus.SCHEDULED
        assert history[3].to_status == AppointmentStatus.CANCELED


class TestTenantIsolation:
    """Test tenants never see each other's data."""

    @pytest.mark.asyncio
    async def test_foreign_appointment_not_found(self, orchestrator):
        appt = await book(orchestrator, at(10))

        with pytest.raises(NotFoundError):
            await orchestrator.get_appointment(OTHER_TENANT, appt.id)
        with pytest.raises(NotFoundError):
            await orchestrator.get_appointment_history(OTHER_TENANT, appt.id)

    @pytest.mark.asyncio
    async def test_foreign_cancel_leaves_appointment(self, orchestrator):
        """Test a cross-tenant cancel fails and changes nothing."""
        appt = await book(orchestrator, at(10))

        with pytest.raises(NotFoundError):
            await orchestrator.cancel_appointment(OTHER_TENANT, appt.id, "Not mine")

        stored = await orchestrator.get_appointment(TENANT, appt.id)
        assert stored.status == AppointmentStatus.SCHEDULED

    @pytest.mark.asyncio
    async def test_foreign_staff_and_client(self, orchestrator):
        """Test references owned by another tenant are NotFound."""
        with pytest.raises(NotFoundError):
            await book(orchestrator, at(10), staff_id="staff-xavier")
        with pytest.raises(NotFoundError):
            await book(orchestrator, at(10), client_id="client-yara")

    @pytest.mark.asyncio
    async def test_listing_scoped(self, orchestrator):
        await book(orchestrator, at(10))

        assert await orchestrator.list_appointments(OTHER_TENANT, DAY) == []

    @pytest.mark.asyncio
    async def test_foreign_staff_filter(self, orchestrator):
        with pytest.raises(NotFoundError):
            await orchestrator.list_appointments(TENANT, DAY, staff_id="staff-xavier")


class TestListAppointments:
    @pytest.mark.asyncio
    async def test_active_only(self, orchestrator):
        """Test canceled appointments can be filtered out."""
        kept = await book(orchestrator, at(10))
        dropped = await book(orchestrator, at(12))
        await orchestrator.cancel_appointment(TENANT, dropped.id, "Client is ill")

        everything = await orchestrator.list_appointments(TENANT, DAY)
        active = await orchestrator.list_appointments(TENANT, DAY, include_inactive=False)

        assert [a.id for a in everything] == [kept.id, dropped.id]
        assert [a.id for a in active] == [kept.id]

    @pytest.mark.asyncio
    async def test_staff_filter(self, orchestrator):
        await book(orchestrator, at(10), staff_id="staff-ana")
        bruno = await book(orchestrator, at(10), staff_id="staff-bruno")

        listed = await orchestrator.list_appointments(TENANT, DAY, staff_id="staff-bruno")

        assert [a.id for a in listed] == [bruno.id]


class TestSideEffectFailures:
    """Test notification failures never affect bookings."""

    @pytest.fixture
    def failing_orchestrator(self, store, catalog, clock):
        collaborator = RecordingCollaborator(fail=True)
        return BookingOrchestrator(
            store=store,
            catalog=catalog,
            policies=PolicyProvider(catalog),
            dispatcher=IntentDispatcher(collaborator, collaborator),
            clock=clock,
        )

    @pytest.mark.asyncio
    async def test_failed_notify_keeps_booking(self, failing_orchestrator, store, caplog):
        """Test the booking survives a notification outage."""
        with caplog.at_level(logging.ERROR):
            appt = await book(failing_orchestrator, at(10))
            canceled = await failing_orchestrator.cancel_appointment(
                TENANT, appt.id, "Client is ill"
            )
            await failing_orchestrator.dispatcher.drain()

        assert canceled.status == AppointmentStatus.CANCELED
        stored = await store.get_appointment(TENANT, appt.id)
        assert stored.status == AppointmentStatus.CANCELED
        assert "Failed to deliver" in caplog.text
