"""Eligibility endpoints."""

from uuid import UUID

from fastapi import APIRouter, status
from pydantic import BaseModel

from clinic_portal.dependencies import CurrentActor, Eligibility, StaffActor
from clinic_portal.schemas.appointments import AppointmentType
from clinic_portal.schemas.eligibility import EligibilityResult

router = APIRouter()


class EligibilityHint(BaseModel):
    """Cache-only eligibility hint for the booking UI."""

    appointment_type: AppointmentType
    eligible: bool


@router.get(
    "/{appointment_type}",
    response_model=EligibilityResult,
    status_code=status.HTTP_200_OK,
    summary="Check eligibility for an appointment type",
)
async def check_eligibility(
    appointment_type: AppointmentType,
    actor: CurrentActor,
    eligibility: Eligibility,
) -> EligibilityResult:
    """
    Check whether the current patient may book an appointment type.

    Served from cache when a verdict was fetched recently.
    """
    return await eligibility.check_eligibility(actor.id, appointment_type)


@router.get(
    "/{appointment_type}/hint",
    response_model=EligibilityHint,
    status_code=status.HTTP_200_OK,
    summary="Optimistic eligibility hint",
)
async def eligibility_hint(
    appointment_type: AppointmentType,
    actor: CurrentActor,
    eligibility: Eligibility,
) -> EligibilityHint:
    """Cached verdict when fresh, otherwise eligible. Never calls the backend."""
    return EligibilityHint(
        appointment_type=appointment_type,
        eligible=eligibility.is_eligible_for(actor.id, appointment_type),
    )


@router.delete(
    "/patients/{patient_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Drop cached eligibility for a patient",
)
async def invalidate_eligibility(
    patient_id: UUID,
    actor: StaffActor,
    eligibility: Eligibility,
    appointment_type: AppointmentType | None = None,
) -> None:
    """Drop cached verdicts so the next check goes to the backend (staff only)."""
    eligibility.invalidate(patient_id, appointment_type)
