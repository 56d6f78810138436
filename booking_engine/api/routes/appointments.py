"""
Appointments API Endpoints.

HTTP surface over the Booking Orchestrator. The caller's tenant comes
from the X-Tenant-ID header; authenticating it is the gateway's job.
BookingError subclasses propagate to the application exception handler,
which maps each error kind to a status code.
"""

import logging
from datetime import date, datetime
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, status
from pydantic import BaseModel, Field

from booking_engine.core.scheduling.engine import (
    ANY_STAFF,
    BookingOrchestrator,
    get_booking_orchestrator,
)
from booking_engine.core.scheduling.models import Appointment

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/appointments", tags=["Appointments"])


# === Schemas ===

class CreateAppointmentRequest(BaseModel):
    """New appointment request."""

    client_id: str = Field(..., min_length=1)
    service_id: str = Field(..., min_length=1)
    staff_id: str = Field(..., min_length=1)
    start_time: datetime = Field(
        ...,
        description="Start time with timezone offset",
        examples=["2025-06-02T10:00:00+00:00"],
    )
    notes: Optional[str] = Field(default=None, max_length=2000)


class RescheduleRequest(BaseModel):
    """Move an appointment to a new start time."""

    new_start_time: datetime = Field(..., description="New start time with timezone offset")
    reason: Optional[str] = Field(default=None, max_length=500)


class CancelRequest(BaseModel):
    """Cancel an appointment."""

    reason: str = Field(..., min_length=1, max_length=500)


class AppointmentResponse(BaseModel):
    """Appointment as returned to callers."""

    id: str
    tenant_id: str
    client_id: str
    service_id: str
    staff_id: str
    start_time: datetime
    end_time: datetime
    duration_minutes: int
    status: str
    price: Optional[str] = None
    notes: Optional[str] = None
    cancel_reason: Optional[str] = None
    canceled_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_appointment(cls, appointment: Appointment) -> "AppointmentResponse":
        return cls(**appointment.to_dict())


class SlotResponse(BaseModel):
    """Candidate start time."""

    time: str
    start: datetime
    end: datetime
    available: bool
    staff_ids: list[str] = []


class EventResponse(BaseModel):
    """One entry of an appointment's history."""

    id: str
    appointment_id: str
    action: str
    occurred_at: datetime
    from_status: Optional[str] = None
    to_status: Optional[str] = None
    reason: Optional[str] = None
    details: dict = {}


class ErrorResponse(BaseModel):
    """Error response."""

    error: str
    message: str
    retryable: bool = False


ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Invalid interval"},
    404: {"model": ErrorResponse, "description": "Not found in this tenant"},
    409: {"model": ErrorResponse, "description": "Slot unavailable"},
    422: {"model": ErrorResponse, "description": "Policy violation"},
    503: {"model": ErrorResponse, "description": "Dependency unavailable, retry later"},
}


def tenant_header(
    x_tenant_id: str = Header(
        ...,
        alias="X-Tenant-ID",
        min_length=1,
        description="Tenant identifier",
    ),
) -> str:
    return x_tenant_id


# === Queries ===

@router.get(
    "/slots",
    response_model=list[SlotResponse],
    summary="List available slots",
    responses=ERROR_RESPONSES,
)
async def list_slots(
    service_id: str = Query(...),
    day: date = Query(..., alias="date"),
    staff_id: str = Query(default=ANY_STAFF, description='Staff id or "any"'),
    tenant_id: str = Depends(tenant_header),
    orchestrator: BookingOrchestrator = Depends(get_booking_orchestrator),
) -> list[SlotResponse]:
    slots = await orchestrator.get_available_slots(tenant_id, staff_id, service_id, day)
    return [SlotResponse(**slot.to_dict()) for slot in slots]


@router.get(
    "",
    response_model=list[AppointmentResponse],
    summary="List a day's appointments",
    responses=ERROR_RESPONSES,
)
async def list_appointments(
    day: date = Query(..., alias="date"),
    staff_id: Optional[str] = Query(default=None),
    include_inactive: bool = Query(default=True),
    tenant_id: str = Depends(tenant_header),
    orchestrator: BookingOrchestrator = Depends(get_booking_orchestrator),
) -> list[AppointmentResponse]:
    appointments = await orchestrator.list_appointments(
        tenant_id, day, staff_id=staff_id, include_inactive=include_inactive
    )
    return [AppointmentResponse.from_appointment(a) for a in appointments]


@router.get(
    "/{appointment_id}",
    response_model=AppointmentResponse,
    summary="Get an appointment",
    responses=ERROR_RESPONSES,
)
async def get_appointment(
    appointment_id: str,
    tenant_id: str = Depends(tenant_header),
    orchestrator: BookingOrchestrator = Depends(get_booking_orchestrator),
) -> AppointmentResponse:
    appointment = await orchestrator.get_appointment(tenant_id, appointment_id)
    return AppointmentResponse.from_appointment(appointment)


@router.get(
    "/{appointment_id}/history",
    response_model=list[EventResponse],
    summary="Get an appointment's lifecycle history",
    responses=ERROR_RESPONSES,
)
async def get_history(
    appointment_id: str,
    tenant_id: str = Depends(tenant_header),
    orchestrator: BookingOrchestrator = Depends(get_booking_orchestrator),
) -> list[EventResponse]:
    events = await orchestrator.get_appointment_history(tenant_id, appointment_id)
    return [EventResponse(**event.to_dict()) for event in events]


# === Commands ===

@router.post(
    "",
    response_model=AppointmentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Book an appointment",
    responses=ERROR_RESPONSES,
)
async def create_appointment(
    request: CreateAppointmentRequest,
    tenant_id: str = Depends(tenant_header),
    orchestrator: BookingOrchestrator = Depends(get_booking_orchestrator),
) -> AppointmentResponse:
    appointment = await orchestrator.create_appointment(
        tenant_id=tenant_id,
        client_id=request.client_id,
        service_id=request.service_id,
        staff_id=request.staff_id,
        start_time=request.start_time,
        notes=request.notes,
    )
    return AppointmentResponse.from_appointment(appointment)


@router.post(
    "/{appointment_id}/reschedule",
    response_model=AppointmentResponse,
    summary="Reschedule an appointment",
    responses=ERROR_RESPONSES,
)
async def reschedule_appointment(
    appointment_id: str,
    request: RescheduleRequest,
    tenant_id: str = Depends(tenant_header),
    orchestrator: BookingOrchestrator = Depends(get_booking_orchestrator),
) -> AppointmentResponse:
    appointment = await orchestrator.reschedule_appointment(
        tenant_id, appointment_id, request.new_start_time, request.reason
    )
    return AppointmentResponse.from_appointment(appointment)


@router.post(
    "/{appointment_id}/cancel",
    response_model=AppointmentResponse,
    summary="Cancel an appointment",
    responses=ERROR_RESPONSES,
)
async def cancel_appointment(
    appointment_id: str,
    request: CancelRequest,
    tenant_id: str = Depends(tenant_header),
    orchestrator: BookingOrchestrator = Depends(get_booking_orchestrator),
) -> AppointmentResponse:
    appointment = await orchestrator.cancel_appointment(
        tenant_id, appointment_id, request.reason
    )
    return AppointmentResponse.from_appointment(appointment)


@router.post(
    "/{appointment_id}/confirm",
    response_model=AppointmentResponse,
    summary="Confirm an appointment",
    responses=ERROR_RESPONSES,
)
async def confirm_appointment(
    appointment_id: str,
    tenant_id: str = Depends(tenant_header),
    orchestrator: BookingOrchestrator = Depends(get_booking_orchestrator),
) -> AppointmentResponse:
    appointment = await orchestrator.confirm_appointment(tenant_id, appointment_id)
    return AppointmentResponse.from_appointment(appointment)


@router.post(
    "/{appointment_id}/start",
    response_model=AppointmentResponse,
    summary="Start an appointment",
    responses=ERROR_RESPONSES,
)
async def start_appointment(
    appointment_id: str,
    tenant_id: str = Depends(tenant_header),
    orchestrator: BookingOrchestrator = Depends(get_booking_orchestrator),
) -> AppointmentResponse:
    appointment = await orchestrator.start_appointment(tenant_id, appointment_id)
    return AppointmentResponse.from_appointment(appointment)


@router.post(
    "/{appointment_id}/no-show",
    response_model=AppointmentResponse,
    summary="Mark an appointment as no-show",
    responses=ERROR_RESPONSES,
)
async def mark_no_show(
    appointment_id: str,
    tenant_id: str = Depends(tenant_header),
    orchestrator: BookingOrchestrator = Depends(get_booking_orchestrator),
) -> AppointmentResponse:
    appointment = await orchestrator.mark_no_show(tenant_id, appointment_id)
    return AppointmentResponse.from_appointment(appointment)


@router.post(
    "/{appointment_id}/complete",
    response_model=AppointmentResponse,
    summary="Mark an appointment as completed",
    responses=ERROR_RESPONSES,
)
async def mark_completed(
    appointment_id: str,
    tenant_id: str = Depends(tenant_header),
    orchestrator: BookingOrchestrator = Depends(get_booking_orchestrator),
) -> AppointmentResponse:
    appointment = await orchestrator.mark_completed(tenant_id, appointment_id)
    return AppointmentResponse.from_appointment(appointment)
