"""
Scheduling API Routes

HTTP surface of the scheduling engine. Engine errors propagate to the
application's exception handlers, which map them to status codes.
"""

import logging
from functools import lru_cache
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from appointment_engine.db.session import get_db_session
from appointment_engine.models.schemas import (
    APIResponse,
    AppointmentStatus,
    AppointmentUpdate,
    BlockRequest,
    BookingDetails,
    BookingRequest,
    ConfirmRequest,
    PolicyRequest,
    RescheduleRequest,
    Slot,
    TenantPolicy,
)
from appointment_engine.services.calendar_provider import CalendarProvider, GoogleCalendarProvider
from appointment_engine.services.engine import SchedulingEngine

logger = logging.getLogger(__name__)

router = APIRouter(tags=["scheduling"])


@lru_cache()
def get_calendar_provider() -> CalendarProvider:
    """Shared calendar provider instance."""
    return GoogleCalendarProvider()


def get_scheduling_engine(
    session: AsyncSession = Depends(get_db_session),
    calendar: CalendarProvider = Depends(get_calendar_provider),
) -> SchedulingEngine:
    return SchedulingEngine.from_session(session, calendar)


def _dump(value):
    if isinstance(value, list):
        return [item.model_dump(mode="json") for item in value]
    return value.model_dump(mode="json")


# Tenant policy

@router.get("/tenants/{tenant_id}/policy", response_model=APIResponse)
async def get_policy(
    tenant_id: str,
    engine: SchedulingEngine = Depends(get_scheduling_engine),
) -> APIResponse:
    policy = await engine.get_policy(tenant_id)
    return APIResponse(data=_dump(policy))


@router.put("/tenants/{tenant_id}/policy", response_model=APIResponse)
async def save_policy(
    tenant_id: str,
    body: PolicyRequest,
    engine: SchedulingEngine = Depends(get_scheduling_engine),
) -> APIResponse:
    """Create or replace a tenant's scheduling policy."""
    try:
        policy = TenantPolicy(tenant_id=tenant_id, **body.model_dump())
    except ValidationError as e:
        logger.warning(f"Rejected policy for tenant {tenant_id}: {e.error_count()} error(s)")
        raise HTTPException(
            status_code=422,
            detail=e.errors(include_url=False, include_context=False),
        )

    saved = await engine.save_policy(policy)
    return APIResponse(message="Policy saved", data=_dump(saved))


# Availability

@router.get("/tenants/{tenant_id}/availability", response_model=APIResponse)
async def check_availability(
    tenant_id: str,
    start: str = Query(..., description="Local wall-clock start, e.g. 2024-03-11T10:00:00"),
    duration_minutes: Optional[int] = Query(default=None, gt=0),
    engine: SchedulingEngine = Depends(get_scheduling_engine),
) -> APIResponse:
    result = await engine.check_availability(tenant_id, start, duration_minutes)
    return APIResponse(data=_dump(result))


@router.get("/tenants/{tenant_id}/slots", response_model=APIResponse)
async def find_slots(
    tenant_id: str,
    search_from: str = Query(..., alias="from"),
    count: Optional[int] = Query(default=None, gt=0),
    duration_minutes: Optional[int] = Query(default=None, gt=0),
    engine: SchedulingEngine = Depends(get_scheduling_engine),
) -> APIResponse:
    """
    Find the next free slots at or after a local wall-clock time.

    Example:
        GET /tenants/acme/slots?from=2024-03-11T09:00:00&count=3
    """
    slots = await engine.find_slots(tenant_id, search_from, count, duration_minutes)
    return APIResponse(message=f"Found {len(slots)} slot(s)", data=_dump(slots))


# Appointments

@router.post("/tenants/{tenant_id}/appointments", response_model=APIResponse, status_code=201)
async def book_appointment(
    tenant_id: str,
    body: BookingRequest,
    engine: SchedulingEngine = Depends(get_scheduling_engine),
) -> APIResponse:
    policy = await engine.get_policy(tenant_id)
    start = engine.converter.parse_wall_clock(body.start, policy.zone)
    slot = Slot.starting_at(start, body.duration_minutes or policy.default_duration_minutes)
    details = BookingDetails(
        client_ref=body.client_ref,
        service_descriptor=body.service_descriptor,
        notes=body.notes,
        location=body.location,
        tentative=body.tentative,
    )

    record = await engine.book_appointment(tenant_id, slot, details)
    return APIResponse(message=f"Appointment {record.status.value}", data=_dump(record))


@router.get("/tenants/{tenant_id}/appointments", response_model=APIResponse)
async def list_appointments(
    tenant_id: str,
    status: Optional[AppointmentStatus] = None,
    start: Optional[str] = None,
    end: Optional[str] = None,
    engine: SchedulingEngine = Depends(get_scheduling_engine),
) -> APIResponse:
    records = await engine.list_appointments(tenant_id, status, start, end)
    return APIResponse(data=_dump(records))


@router.get("/appointments/{appointment_id}", response_model=APIResponse)
async def get_appointment(
    appointment_id: str,
    engine: SchedulingEngine = Depends(get_scheduling_engine),
) -> APIResponse:
    record = await engine.get_appointment(appointment_id)
    return APIResponse(data=_dump(record))


@router.patch("/appointments/{appointment_id}", response_model=APIResponse)
async def update_appointment(
    appointment_id: str,
    body: AppointmentUpdate,
    engine: SchedulingEngine = Depends(get_scheduling_engine),
) -> APIResponse:
    record = await engine.update_appointment_details(
        appointment_id, body.service_descriptor, body.notes, body.location
    )
    return APIResponse(message="Appointment updated", data=_dump(record))


@router.post("/appointments/{appointment_id}/confirm", response_model=APIResponse)
async def confirm_appointment(
    appointment_id: str,
    body: Optional[ConfirmRequest] = None,
    engine: SchedulingEngine = Depends(get_scheduling_engine),
) -> APIResponse:
    body = body or ConfirmRequest()
    record = await engine.confirm_appointment(appointment_id, body.start, body.end)
    return APIResponse(message="Appointment confirmed", data=_dump(record))


@router.post("/appointments/{appointment_id}/cancel", response_model=APIResponse)
async def cancel_appointment(
    appointment_id: str,
    engine: SchedulingEngine = Depends(get_scheduling_engine),
) -> APIResponse:
    record = await engine.cancel_appointment(appointment_id)
    return APIResponse(message="Appointment canceled", data=_dump(record))


@router.post("/appointments/{appointment_id}/reschedule", response_model=APIResponse)
async def reschedule_appointment(
    appointment_id: str,
    body: RescheduleRequest,
    engine: SchedulingEngine = Depends(get_scheduling_engine),
) -> APIResponse:
    record = await engine.reschedule_appointment(
        appointment_id, body.new_start, body.duration_minutes, body.reason
    )
    return APIResponse(message="Appointment rescheduled", data=_dump(record))


# Calendar blocks

@router.post("/tenants/{tenant_id}/blocks", response_model=APIResponse, status_code=201)
async def block_period(
    tenant_id: str,
    body: BlockRequest,
    engine: SchedulingEngine = Depends(get_scheduling_engine),
) -> APIResponse:
    block = await engine.block_period(
        tenant_id, body.start, body.end, reason=body.reason, block_type=body.block_type
    )
    return APIResponse(message="Period blocked", data=_dump(block))


@router.get("/tenants/{tenant_id}/blocks", response_model=APIResponse)
async def list_blocks(
    tenant_id: str,
    include_deleted: bool = False,
    engine: SchedulingEngine = Depends(get_scheduling_engine),
) -> APIResponse:
    blocks = await engine.list_blocks(tenant_id, include_deleted=include_deleted)
    return APIResponse(data=_dump(blocks))


@router.delete("/blocks/{block_id}", response_model=APIResponse)
async def unblock_period(
    block_id: str,
    engine: SchedulingEngine = Depends(get_scheduling_engine),
) -> APIResponse:
    await engine.unblock_period(block_id)
    return APIResponse(message="Block removed")
