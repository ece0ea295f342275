"""Appointment endpoints."""

from uuid import UUID

import structlog
from fastapi import APIRouter, status
from pydantic import BaseModel

from clinic_portal.core.exceptions import ForbiddenException
from clinic_portal.dependencies import Appointments, Booking, CurrentActor, StaffActor
from clinic_portal.schemas.appointments import (
    ActorRole,
    Appointment,
    AppointmentCancel,
    AppointmentCreate,
    AppointmentStatusUpdate,
    ReminderRequest,
)

logger = structlog.get_logger(__name__)

router = APIRouter()


class ReminderResponse(BaseModel):
    """Reminder hand-off result."""

    queued: bool


@router.post(
    "/",
    response_model=Appointment,
    status_code=status.HTTP_201_CREATED,
    tags=["Appointments"],
    summary="Book an appointment",
)
async def create_appointment(
    data: AppointmentCreate,
    actor: CurrentActor,
    booking: Booking,
) -> Appointment:
    """
    Book an appointment for the authenticated patient.

    Runs every booking step: a fresh eligibility check, the provider's slots
    for the chosen day, the chosen slot, then creation. Notifications are
    queued and not awaited.

    Args:
        data: Appointment creation data
        actor: Authenticated patient
        booking: Booking flow for the patient

    Returns:
        Created appointment
    """
    if actor.role != ActorRole.PATIENT:
        raise ForbiddenException("Only patients can book appointments")

    result = await booking.book(data)
    if not result.success or result.appointment is None:
        raise result.to_exception()
    return result.appointment


@router.get(
    "/{appointment_id}",
    response_model=Appointment,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="Get appointment details",
)
async def get_appointment(
    appointment_id: UUID,
    actor: CurrentActor,
    appointments: Appointments,
) -> Appointment:
    """Get an appointment the current user may see."""
    return await appointments.get_appointment(appointment_id, actor)


@router.post(
    "/{appointment_id}/cancel",
    response_model=Appointment,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="Cancel appointment",
)
async def cancel_appointment(
    appointment_id: UUID,
    data: AppointmentCancel,
    actor: CurrentActor,
    appointments: Appointments,
) -> Appointment:
    """
    Cancel an appointment with a reason.

    The party who did not cancel is notified.
    """
    return await appointments.cancel_appointment(appointment_id, data.reason, actor)


@router.post(
    "/{appointment_id}/reject",
    response_model=Appointment,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="Reject appointment request",
)
async def reject_appointment(
    appointment_id: UUID,
    data: AppointmentCancel,
    actor: StaffActor,
    appointments: Appointments,
) -> Appointment:
    """Reject a pending appointment request (staff only)."""
    return await appointments.reject_appointment(appointment_id, data.reason, actor)


@router.patch(
    "/{appointment_id}/status",
    response_model=Appointment,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="Update appointment status",
)
async def update_appointment_status(
    appointment_id: UUID,
    data: AppointmentStatusUpdate,
    actor: StaffActor,
    appointments: Appointments,
) -> Appointment:
    """
    Move an appointment along its lifecycle (staff only).

    Args:
        appointment_id: Appointment ID
        data: Target status
        actor: Provider or admin

    Returns:
        Updated appointment
    """
    return await appointments.update_status(appointment_id, data.status, actor)


@router.post(
    "/{appointment_id}/reminders",
    response_model=ReminderResponse,
    status_code=status.HTTP_202_ACCEPTED,
    tags=["Appointments"],
    summary="Queue appointment reminder",
)
async def send_reminder(
    appointment_id: UUID,
    data: ReminderRequest,
    actor: StaffActor,
    appointments: Appointments,
) -> ReminderResponse:
    """Queue a 24h or 1h reminder; called by the reminder scheduler."""
    queued = await appointments.send_reminder(appointment_id, data.variant)
    logger.info(
        "reminder_requested",
        appointment_id=str(appointment_id),
        variant=data.variant,
        queued=queued,
    )
    return ReminderResponse(queued=queued)
