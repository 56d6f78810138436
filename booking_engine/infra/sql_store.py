"""
SQLAlchemy appointment store and catalog.

Each staff transaction is one database transaction that first locks the
staff member's row (SELECT ... FOR UPDATE), so concurrent writers for the
same staff member are serialised by PostgreSQL. The appointments
exclusion constraint backs this up; its violation is reported as
SlotUnavailableError.
"""

import logging
import uuid
from contextlib import asynccontextmanager, contextmanager
from datetime import datetime, timezone
from typing import AsyncGenerator, Iterator, Optional

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from booking_engine.core.scheduling.errors import (
    BookingError,
    DependencyUnavailableError,
    NotFoundError,
    SlotUnavailableError,
)
from booking_engine.core.scheduling.interval import Interval
from booking_engine.core.scheduling.lifecycle import ACTIVE_STATUSES, AppointmentStatus
from booking_engine.core.scheduling.models import (
    Appointment,
    AppointmentEvent,
    Client,
    Service,
    StaffMember,
    TenantPolicy,
    WeeklyHours,
)
from booking_engine.models.database import (
    NO_OVERLAP_CONSTRAINT,
    AppointmentEventRecord,
    AppointmentRecord,
    ClientRecord,
    ServiceRecord,
    StaffRecord,
    TenantRecord,
)

logger = logging.getLogger(__name__)

_APPOINTMENT_FIELDS = (
    "id",
    "tenant_id",
    "client_id",
    "service_id",
    "staff_id",
    "start_time",
    "end_time",
    "status",
    "price",
    "notes",
    "cancel_reason",
    "canceled_at",
    "confirmed_at",
    "completed_at",
)


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@contextmanager
def _storage_errors(operation: str) -> Iterator[None]:
    """Translate driver failures into booking errors."""
    try:
        yield
    except BookingError:
        raise
    except IntegrityError as e:
        if NO_OVERLAP_CONSTRAINT in str(e.orig):
            logger.info(f"Exclusion constraint rejected {operation}")
            raise SlotUnavailableError(cause=e)
        raise
    except (OperationalError, DBAPIError, OSError, TimeoutError) as e:
        logger.error(f"Storage failure during {operation}: {e}")
        raise DependencyUnavailableError(
            "Appointment storage is temporarily unavailable", cause=e
        )


def appointment_from_record(record: AppointmentRecord) -> Appointment:
    """Convert ORM row to domain object."""
    return Appointment(
        id=str(record.id),
        tenant_id=str(record.tenant_id),
        client_id=str(record.client_id),
        service_id=str(record.service_id),
        staff_id=str(record.staff_id),
        start_time=_aware(record.start_time),
        end_time=_aware(record.end_time),
        status=AppointmentStatus(record.status),
        price=record.price,
        notes=record.notes,
        cancel_reason=record.cancel_reason,
        canceled_at=_aware(record.canceled_at),
        confirmed_at=_aware(record.confirmed_at),
        completed_at=_aware(record.completed_at),
        created_at=_aware(record.created_at),
        updated_at=_aware(record.updated_at),
    )


def event_from_record(record: AppointmentEventRecord) -> AppointmentEvent:
    return AppointmentEvent(
        id=str(record.id),
        tenant_id=str(record.tenant_id),
        appointment_id=str(record.appointment_id),
        action=record.action,
        occurred_at=_aware(record.occurred_at),
        from_status=AppointmentStatus(record.from_status) if record.from_status else None,
        to_status=AppointmentStatus(record.to_status) if record.to_status else None,
        reason=record.reason,
        details=record.details or {},
    )


def _active_query(tenant_id: str, staff_id: str, window: Interval):
    return (
        select(AppointmentRecord)
        .where(
            AppointmentRecord.tenant_id == tenant_id,
            AppointmentRecord.staff_id == staff_id,
            AppointmentRecord.status.in_(list(ACTIVE_STATUSES)),
            AppointmentRecord.start_time < window.end,
            AppointmentRecord.end_time > window.start,
        )
        .order_by(AppointmentRecord.start_time)
    )


class SqlUnitOfWork:
    """Writes for one locked staff member inside an open transaction."""

    def __init__(self, session: AsyncSession, tenant_id: str, staff_id: str):
        self._session = session
        self.tenant_id = tenant_id
        self.staff_id = staff_id

    async def _record(self, tenant_id: str, appointment_id: str) -> Optional[AppointmentRecord]:
        if not (_is_uuid(tenant_id) and _is_uuid(appointment_id)):
            return None
        result = await self._session.execute(
            select(AppointmentRecord).where(
                AppointmentRecord.id == appointment_id,
                AppointmentRecord.tenant_id == tenant_id,
            )
        )
        return result.scalar_one_or_none()

    async def get(self, tenant_id: str, appointment_id: str) -> Optional[Appointment]:
        record = await self._record(tenant_id, appointment_id)
        return appointment_from_record(record) if record else None

    async def list_active(
        self, tenant_id: str, staff_id: str, window: Interval
    ) -> list[Appointment]:
        result = await self._session.execute(_active_query(tenant_id, staff_id, window))
        return [appointment_from_record(r) for r in result.scalars().all()]

    async def add(self, appointment: Appointment) -> Appointment:
        record = AppointmentRecord(
            **{name: getattr(appointment, name) for name in _APPOINTMENT_FIELDS}
        )
        if appointment.created_at is not None:
            record.created_at = appointment.created_at
            record.updated_at = appointment.updated_at or appointment.created_at
        self._session.add(record)
        await self._session.flush()
        return appointment

    async def save(self, appointment: Appointment) -> Appointment:
        record = await self._record(appointment.tenant_id, appointment.id)
        if record is None:
            raise NotFoundError("Appointment", appointment.id)
        for name in _APPOINTMENT_FIELDS:
            setattr(record, name, getattr(appointment, name))
        if appointment.updated_at is not None:
            record.updated_at = appointment.updated_at
        await self._session.flush()
        return appointment

    async def add_event(self, event: AppointmentEvent) -> None:
        self._session.add(
            AppointmentEventRecord(
                id=event.id,
                tenant_id=event.tenant_id,
                appointment_id=event.appointment_id,
                action=event.action,
                from_status=event.from_status.value if event.from_status else None,
                to_status=event.to_status.value if event.to_status else None,
                reason=event.reason,
                details=event.details or None,
                occurred_at=event.occurred_at,
            )
        )
        await self._session.flush()


class SqlAppointmentStore:
    """PostgreSQL-backed appointment store."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @asynccontextmanager
    async def staff_transaction(
        self, tenant_id: str, staff_id: str
    ) -> AsyncGenerator[SqlUnitOfWork, None]:
        """Open a transaction holding the staff member's row lock.

        Commits when the block exits cleanly, rolls back otherwise.
        """
        if not (_is_uuid(tenant_id) and _is_uuid(staff_id)):
            raise NotFoundError("Staff", staff_id)

        with _storage_errors(f"transaction for staff {staff_id}"):
            async with self._session_factory() as session:
                async with session.begin():
                    locked = await session.execute(
                        select(StaffRecord.id)
                        .where(
                            StaffRecord.id == staff_id,
                            StaffRecord.tenant_id == tenant_id,
                        )
                        .with_for_update()
                    )
                    if locked.scalar_one_or_none() is None:
                        raise NotFoundError("Staff", staff_id)

                    yield SqlUnitOfWork(session, tenant_id, staff_id)

    async def get_appointment(
        self, tenant_id: str, appointment_id: str
    ) -> Optional[Appointment]:
        if not (_is_uuid(tenant_id) and _is_uuid(appointment_id)):
            return None
        with _storage_errors(f"load of appointment {appointment_id}"):
            async with self._session_factory() as session:
                result = await session.execute(
                    select(AppointmentRecord).where(
                        AppointmentRecord.id == appointment_id,
                        AppointmentRecord.tenant_id == tenant_id,
                    )
                )
                record = result.scalar_one_or_none()
                return appointment_from_record(record) if record else None

    async def list_active(
        self, tenant_id: str, staff_id: str, window: Interval
    ) -> list[Appointment]:
        if not (_is_uuid(tenant_id) and _is_uuid(staff_id)):
            return []
        with _storage_errors(f"busy lookup for staff {staff_id}"):
            async with self._session_factory() as session:
                result = await session.execute(_active_query(tenant_id, staff_id, window))
                return [appointment_from_record(r) for r in result.scalars().all()]

    async def list_appointments(
        self,
        tenant_id: str,
        window: Interval,
        staff_id: Optional[str] = None,
        include_inactive: bool = True,
    ) -> list[Appointment]:
        if not _is_uuid(tenant_id):
            return []
        query = select(AppointmentRecord).where(
            AppointmentRecord.tenant_id == tenant_id,
            AppointmentRecord.start_time >= window.start,
            AppointmentRecord.start_time < window.end,
        )
        if staff_id is not None:
            if not _is_uuid(staff_id):
                return []
            query = query.where(AppointmentRecord.staff_id == staff_id)
        if not include_inactive:
            query = query.where(AppointmentRecord.status.in_(list(ACTIVE_STATUSES)))

        with _storage_errors("appointment listing"):
            async with self._session_factory() as session:
                result = await session.execute(query.order_by(AppointmentRecord.start_time))
                return [appointment_from_record(r) for r in result.scalars().all()]

    async def list_events(
        self, tenant_id: str, appointment_id: str
    ) -> list[AppointmentEvent]:
        if not (_is_uuid(tenant_id) and _is_uuid(appointment_id)):
            return []
        with _storage_errors(f"history of appointment {appointment_id}"):
            async with self._session_factory() as session:
                result = await session.execute(
                    select(AppointmentEventRecord)
                    .where(
                        AppointmentEventRecord.tenant_id == tenant_id,
                        AppointmentEventRecord.appointment_id == appointment_id,
                    )
                    .order_by(AppointmentEventRecord.occurred_at)
                )
                return [event_from_record(r) for r in result.scalars().all()]


class SqlCatalog:
    """Tenant, staff, service and client lookups from PostgreSQL."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def _get(self, model, tenant_id: str, entity_id: str):
        if not _is_uuid(entity_id) or not _is_uuid(tenant_id):
            return None
        with _storage_errors(f"{model.__tablename__} lookup"):
            async with self._session_factory() as session:
                result = await session.execute(
                    select(model).where(model.id == entity_id, model.tenant_id == tenant_id)
                )
                return result.scalar_one_or_none()

    async def get_policy(self, tenant_id: str) -> Optional[TenantPolicy]:
        if not _is_uuid(tenant_id):
            return None
        with _storage_errors("tenant policy lookup"):
            async with self._session_factory() as session:
                record = await session.get(TenantRecord, tenant_id)
        if record is None:
            return None
        return TenantPolicy(
            tenant_id=str(record.id),
            min_hours_before_reschedule=(
                float(record.min_hours_before_reschedule)
                if record.min_hours_before_reschedule is not None
                else None
            ),
            min_hours_before_cancel=(
                float(record.min_hours_before_cancel)
                if record.min_hours_before_cancel is not None
                else None
            ),
            business_hours=WeeklyHours.from_dict(record.business_hours),
            timezone=record.timezone,
        )

    async def get_service(self, tenant_id: str, service_id: str) -> Optional[Service]:
        record = await self._get(ServiceRecord, tenant_id, service_id)
        if record is None:
            return None
        return Service(
            id=str(record.id),
            tenant_id=str(record.tenant_id),
            name=record.name,
            duration_minutes=record.duration_minutes,
            price=record.price,
            category=record.category,
        )

    async def get_staff(self, tenant_id: str, staff_id: str) -> Optional[StaffMember]:
        record = await self._get(StaffRecord, tenant_id, staff_id)
        return self._staff_from_record(record) if record else None

    async def list_staff(self, tenant_id: str) -> list[StaffMember]:
        if not _is_uuid(tenant_id):
            return []
        with _storage_errors("staff listing"):
            async with self._session_factory() as session:
                result = await session.execute(
                    select(StaffRecord)
                    .where(StaffRecord.tenant_id == tenant_id)
                    .order_by(StaffRecord.name)
                )
                return [self._staff_from_record(r) for r in result.scalars().all()]

    async def get_client(self, tenant_id: str, client_id: str) -> Optional[Client]:
        record = await self._get(ClientRecord, tenant_id, client_id)
        if record is None:
            return None
        return Client(id=str(record.id), tenant_id=str(record.tenant_id), name=record.name)

    @staticmethod
    def _staff_from_record(record: StaffRecord) -> StaffMember:
        return StaffMember(
            id=str(record.id),
            tenant_id=str(record.tenant_id),
            name=record.name,
            working_hours=WeeklyHours.from_dict(record.working_hours),
            specialties=list(record.specialties or []),
            is_active=record.is_active,
        )
