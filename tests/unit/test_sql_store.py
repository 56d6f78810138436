"""Tests for the SQLAlchemy appointment store and catalog (mocked sessions)."""

import uuid
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from unittest.mock import AsyncMock, MagicMock
from sqlalchemy.exc import IntegrityError, OperationalError

from booking_engine.core.scheduling.errors import (
    DependencyUnavailableError,
    NotFoundError,
    SlotUnavailableError,
)
from booking_engine.core.scheduling.lifecycle import AppointmentStatus
from booking_engine.core.scheduling.models import Appointment
from booking_engine.infra.sql_store import (
    SqlAppointmentStore,
    SqlCatalog,
    _storage_errors,
    appointment_from_record,
    event_from_record,
)
from booking_engine.models.database import (
    AppointmentEventRecord,
    AppointmentRecord,
    TenantRecord,
)
from tests.conftest import at

TENANT_ID = str(uuid.uuid4())
STAFF_ID = str(uuid.uuid4())


def overlap_violation() -> IntegrityError:
    return IntegrityError(
        "INSERT INTO appointments ...",
        {},
        Exception('conflicting key value violates exclusion constraint "appointments_no_overlap"'),
    )


def make_session(scalar=None):
    """Create mock AsyncSession usable as `async with factory() as session`."""
    session = AsyncMock()
    session.__aenter__.return_value = session
    session.add = MagicMock()
    session.begin = MagicMock(return_value=AsyncMock())

    result = MagicMock()
    result.scalar_one_or_none.return_value = scalar
    result.scalars.return_value.all.return_value = []
    session.execute = AsyncMock(return_value=result)
    return session


def make_appointment() -> Appointment:
    return Appointment(
        id=str(uuid.uuid4()),
        tenant_id=TENANT_ID,
        client_id=str(uuid.uuid4()),
        service_id=str(uuid.uuid4()),
        staff_id=STAFF_ID,
        start_time=at(10),
        end_time=at(11),
        created_at=at(8),
        updated_at=at(8),
    )


class TestStorageErrors:
    """Test translation of driver errors."""

    def test_exclusion_violation_is_slot_unavailable(self):
        with pytest.raises(SlotUnavailableError) as exc_info:
            with _storage_errors("insert"):
                raise overlap_violation()

        assert isinstance(exc_info.value.cause, IntegrityError)

    def test_other_integrity_errors_propagate(self):
        """Test unrelated constraint failures are not mistaken for conflicts."""
        error = IntegrityError("INSERT", {}, Exception("violates foreign key constraint"))

        with pytest.raises(IntegrityError):
            with _storage_errors("insert"):
                raise error

    def test_operational_error_is_retryable(self):
        with pytest.raises(DependencyUnavailableError) as exc_info:
            with _storage_errors("select"):
                raise OperationalError("SELECT 1", {}, Exception("connection refused"))

        assert exc_info.value.retryable

    def test_timeout_is_retryable(self):
        with pytest.raises(DependencyUnavailableError):
            with _storage_errors("select"):
                raise TimeoutError()


class TestRecordConversion:
    """Test ORM row to domain conversion."""

    def test_naive_timestamps_become_utc(self):
        record = AppointmentRecord(
            id=str(uuid.uuid4()),
            tenant_id=TENANT_ID,
            client_id=str(uuid.uuid4()),
            service_id=str(uuid.uuid4()),
            staff_id=STAFF_ID,
            start_time=datetime(2025, 6, 3, 10, 0),
            end_time=datetime(2025, 6, 3, 11, 0),
            status=AppointmentStatus.CONFIRMED,
            price=Decimal("40.00"),
        )

        appt = appointment_from_record(record)

        assert appt.start_time == at(10)
        assert appt.start_time.tzinfo is not None
        assert appt.status == AppointmentStatus.CONFIRMED
        assert appt.duration_minutes == 60

    def test_event(self):
        record = AppointmentEventRecord(
            id=str(uuid.uuid4()),
            tenant_id=TENANT_ID,
            appointment_id=str(uuid.uuid4()),
            action="cancel",
            from_status="scheduled",
            to_status="canceled",
            reason="Client is ill",
            occurred_at=datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc),
        )

        event = event_from_record(record)

        assert event.from_status == AppointmentStatus.SCHEDULED
        assert event.to_status == AppointmentStatus.CANCELED
        assert event.details == {}


class TestSqlAppointmentStore:
    """Test transactions against a mocked session."""

    @pytest.mark.asyncio
    async def test_missing_staff_row(self):
        """Test a transaction for unknown staff is NotFound."""
        session = make_session(scalar=None)
        store = SqlAppointmentStore(MagicMock(return_value=session))

        with pytest.raises(NotFoundError):
            async with store.staff_transaction(TENANT_ID, STAFF_ID):
                pass

    @pytest.mark.asyncio
    async def test_non_uuid_ids_never_hit_the_database(self):
        factory = MagicMock()
        store = SqlAppointmentStore(factory)

        with pytest.raises(NotFoundError):
            async with store.staff_transaction("salon", STAFF_ID):
                pass
        assert await store.get_appointment(TENANT_ID, "not-a-uuid") is None
        assert await store.list_events("salon", str(uuid.uuid4())) == []
        factory.assert_not_called()

    @pytest.mark.asyncio
    async def test_add_inside_locked_transaction(self):
        """Test the staff row is locked and the appointment flushed."""
        session = make_session(scalar=STAFF_ID)
        store = SqlAppointmentStore(MagicMock(return_value=session))
        appt = make_appointment()

        async with store.staff_transaction(TENANT_ID, STAFF_ID) as uow:
            await uow.add(appt)

        lock_query = str(session.execute.call_args_list[0].args[0])
        assert "FOR UPDATE" in lock_query
        record = session.add.call_args.args[0]
        assert isinstance(record, AppointmentRecord)
        assert record.id == appt.id
        assert record.start_time == at(10)
        session.flush.assert_awaited()

    @pytest.mark.asyncio
    async def test_exclusion_violation_on_flush(self):
        """Test the constraint backstop surfaces as SlotUnavailable."""
        session = make_session(scalar=STAFF_ID)
        session.flush = AsyncMock(side_effect=overlap_violation())
        store = SqlAppointmentStore(MagicMock(return_value=session))

        with pytest.raises(SlotUnavailableError):
            async with store.staff_transaction(TENANT_ID, STAFF_ID) as uow:
                await uow.add(make_appointment())

    @pytest.mark.asyncio
    async def test_connection_failure(self):
        session = make_session()
        session.execute = AsyncMock(
            side_effect=OperationalError("SELECT", {}, Exception("connection refused"))
        )
        store = SqlAppointmentStore(MagicMock(return_value=session))

        with pytest.raises(DependencyUnavailableError):
            await store.get_appointment(TENANT_ID, str(uuid.uuid4()))


class TestSqlCatalog:
    """Test catalog lookups."""

    @pytest.mark.asyncio
    async def test_policy(self):
        """Test numeric columns and hours are converted."""
        session = make_session()
        session.get = AsyncMock(
            return_value=TenantRecord(
                id=TENANT_ID,
                name="Salon",
                timezone="Europe/Lisbon",
                business_hours={"monday": {"open": "10:00", "close": "19:00"}},
                min_hours_before_reschedule=Decimal("12.0"),
                min_hours_before_cancel=None,
            )
        )
        catalog = SqlCatalog(MagicMock(return_value=session))

        policy = await catalog.get_policy(TENANT_ID)

        assert policy.min_hours_before_reschedule == 12.0
        assert policy.min_hours_before_cancel is None
        assert policy.timezone == "Europe/Lisbon"
        assert policy.business_hours.defines(0)

    @pytest.mark.asyncio
    async def test_unknown_tenant(self):
        session = make_session()
        session.get = AsyncMock(return_value=None)
        catalog = SqlCatalog(MagicMock(return_value=session))

        assert await catalog.get_policy(TENANT_ID) is None
        assert await catalog.get_policy("not-a-uuid") is None
