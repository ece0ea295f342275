"""Availability endpoints."""

from datetime import date
from uuid import UUID

from fastapi import APIRouter, Query, status

from clinic_portal.dependencies import Backend, CurrentActor
from clinic_portal.schemas.appointments import AppointmentType, TimeSlot
from clinic_portal.services.availability_service import AvailabilityQuery

router = APIRouter()


@router.get(
    "",
    response_model=list[TimeSlot],
    status_code=status.HTTP_200_OK,
    summary="List a provider's slots for a day",
)
async def list_slots(
    actor: CurrentActor,
    backend: Backend,
    provider_id: UUID = Query(...),
    day: date = Query(..., alias="date"),
    appointment_type: AppointmentType = Query(...),
) -> list[TimeSlot]:
    """
    List a provider's slots for one day, including unavailable ones.

    Slot boundaries are UTC instants.
    """
    query = AvailabilityQuery(backend)
    return await query.fetch_slots(provider_id, day, appointment_type)
