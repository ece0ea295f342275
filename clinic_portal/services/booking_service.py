"""Booking flow: type, provider, slot, confirmation."""

import re
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum, IntEnum
from uuid import UUID
from zoneinfo import ZoneInfo

import structlog

from clinic_portal.config import settings
from clinic_portal.core.exceptions import (
    AdvanceNoticeException,
    AppException,
    BookingFailedException,
    BookingStepException,
    RpcTransientError,
    SlotConflictException,
    SlotUnavailableException,
)
from clinic_portal.schemas.appointments import (
    ActorRole,
    Appointment,
    AppointmentCreate,
    AppointmentType,
    Modality,
    TimeSlot,
)
from clinic_portal.schemas.eligibility import EligibilityResult
from clinic_portal.schemas.notifications import NotificationEvent
from clinic_portal.services.appointment_service import AppointmentService, Notifier
from clinic_portal.services.availability_service import AvailabilityQuery
from clinic_portal.services.eligibility_cache import EligibilityCache

logger = structlog.get_logger(__name__)


class BookingStep(IntEnum):
    """Ordered booking steps."""

    TYPE = 1
    PROVIDER = 2
    SLOT = 3
    CONFIRM = 4


class BookingErrorKind(str, Enum):
    """Classified reason a booking was refused."""

    ADVANCE_NOTICE = "advance_notice"
    SLOT_CONFLICT = "slot_conflict"
    SLOT_UNAVAILABLE = "slot_unavailable"
    GENERIC = "generic"


# Checked in order; the first matching kind wins. "24" only counts next to an
# hour unit so dates and clock times in a message are not read as notice rules.
ERROR_PATTERNS: list[tuple[BookingErrorKind, re.Pattern[str]]] = [
    (
        BookingErrorKind.ADVANCE_NOTICE,
        re.compile(r"\b24\s?(?:h|hours?|horas?)\b|advance|antecedência"),
    ),
    (BookingErrorKind.SLOT_CONFLICT, re.compile(r"conflict|already|já existe")),
    (BookingErrorKind.SLOT_UNAVAILABLE, re.compile(r"slot|available|disponível")),
]

BOOKING_EXCEPTIONS: dict[BookingErrorKind, type[AppException]] = {
    BookingErrorKind.ADVANCE_NOTICE: AdvanceNoticeException,
    BookingErrorKind.SLOT_CONFLICT: SlotConflictException,
    BookingErrorKind.SLOT_UNAVAILABLE: SlotUnavailableException,
    BookingErrorKind.GENERIC: BookingFailedException,
}


def classify_booking_error(message: str | None) -> BookingErrorKind:
    """Map a backend error message to a booking error kind."""
    text = (message or "").lower()
    for kind, pattern in ERROR_PATTERNS:
        if pattern.search(text):
            return kind
    return BookingErrorKind.GENERIC


@dataclass
class BookingSession:
    """Choices made so far in one booking flow."""

    patient_id: UUID
    step: BookingStep = BookingStep.TYPE
    appointment_type: AppointmentType | None = None
    eligibility: EligibilityResult | None = None
    provider_id: UUID | None = None
    day: date | None = None
    slot: TimeSlot | None = None


@dataclass
class BookingResult:
    """Outcome of a booking confirmation."""

    success: bool
    appointment: Appointment | None = None
    error_kind: BookingErrorKind | None = None
    message: str | None = None
    details: dict = field(default_factory=dict)

    def to_exception(self) -> AppException:
        """Build the API exception for a failed booking."""
        exc_class = BOOKING_EXCEPTIONS[self.error_kind or BookingErrorKind.GENERIC]
        return exc_class()


class BookingOrchestrator:
    """
    Drives one patient through the booking steps.

    Changing the appointment type drops the provider, slot and slot result.
    Changing the date drops only the slot. The first step only opens on a
    verdict fetched from the backend; the optimistic cache hint is never
    used here.
    """

    def __init__(
        self,
        patient_id: UUID,
        eligibility: EligibilityCache,
        availability: AvailabilityQuery,
        appointments: AppointmentService,
        notifier: Notifier,
    ):
        self.session = BookingSession(patient_id=patient_id)
        self.eligibility = eligibility
        self.availability = availability
        self.appointments = appointments
        self.notifier = notifier

    async def select_type(self, appointment_type: AppointmentType) -> EligibilityResult:
        """Choose the appointment type and fetch eligibility for it."""
        session = self.session
        session.step = BookingStep.TYPE
        session.appointment_type = appointment_type
        session.eligibility = None
        session.provider_id = None
        session.slot = None
        self.availability.clear()

        session.eligibility = await self.eligibility.check_eligibility(
            session.patient_id, appointment_type
        )
        return session.eligibility

    async def select_provider(self, provider_id: UUID) -> list[TimeSlot]:
        """Choose the provider and load slots for the selected date."""
        if self.session.appointment_type is None:
            raise BookingStepException("Select an appointment type first")
        self.session.provider_id = provider_id
        self.session.slot = None
        self.session.step = min(self.session.step, BookingStep.PROVIDER)
        return await self._load_slots()

    async def select_date(self, day: date) -> list[TimeSlot]:
        """Choose the date; only the slot choice is dropped."""
        self.session.day = day
        self.session.slot = None
        self.session.step = min(self.session.step, BookingStep.SLOT)
        return await self._load_slots()

    async def _load_slots(self) -> list[TimeSlot]:
        session = self.session
        if session.provider_id is None or session.day is None or session.appointment_type is None:
            self.availability.clear()
            return []
        return await self.availability.fetch_slots(
            session.provider_id, session.day, session.appointment_type
        )

    def select_slot(self, start: datetime) -> TimeSlot:
        """
        Choose a slot from the current result.

        Raises:
            SlotUnavailableException: Slot not in the result or not available
        """
        slot = self.availability.find_slot(start)
        if slot is None or not slot.available:
            raise SlotUnavailableException()
        self.session.slot = slot
        return slot

    def can_advance(self) -> bool:
        session = self.session
        if session.step == BookingStep.TYPE:
            return (
                session.appointment_type is not None
                and session.eligibility is not None
                and session.eligibility.eligible
            )
        if session.step == BookingStep.PROVIDER:
            return session.provider_id is not None
        if session.step == BookingStep.SLOT:
            return session.slot is not None
        return False

    def advance(self) -> BookingStep:
        """
        Move to the next step.

        Raises:
            BookingStepException: Current step is not complete; for the type
                step the details carry the eligibility reasons
        """
        session = self.session
        if not self.can_advance():
            details: dict = {"step": session.step.name.lower()}
            if session.step == BookingStep.TYPE and session.eligibility is not None:
                details["reasons"] = list(session.eligibility.reasons)
                if session.eligibility.next_eligible_date:
                    details["next_eligible_date"] = session.eligibility.next_eligible_date.isoformat()
                raise BookingStepException("Patient is not eligible for this appointment type", details)
            raise BookingStepException("Complete the current booking step first", details)

        session.step = BookingStep(session.step + 1)
        return session.step

    def back(self) -> BookingStep:
        """Go back one step, keeping every choice."""
        if self.session.step > BookingStep.TYPE:
            self.session.step = BookingStep(self.session.step - 1)
        return self.session.step

    async def confirm(
        self,
        modality: Modality = Modality.IN_PERSON,
        notes: str | None = None,
    ) -> BookingResult:
        """
        Create the appointment.

        Never retried: on failure the session stays on the confirm step and
        the patient resubmits. On success the CREATED notification is queued
        and not awaited.
        """
        session = self.session
        if (
            session.step != BookingStep.CONFIRM
            or session.appointment_type is None
            or session.provider_id is None
            or session.slot is None
        ):
            raise BookingStepException("Complete every booking step before confirming")

        try:
            self.appointments.check_advance_notice(session.slot.start)
        except AdvanceNoticeException as e:
            return BookingResult(
                success=False,
                error_kind=BookingErrorKind.ADVANCE_NOTICE,
                message=e.message,
            )

        request = AppointmentCreate(
            provider_id=session.provider_id,
            type=session.appointment_type,
            scheduled_at=session.slot.start,
            modality=modality,
            notes=notes,
        )

        try:
            appointment = await self.appointments.create_appointment(session.patient_id, request)
        except RpcTransientError as e:
            return self._failure(BookingErrorKind.GENERIC, e)
        except AppException as e:
            return self._failure(classify_booking_error(e.message), e)

        self.notifier.submit(NotificationEvent.CREATED, appointment.id, ActorRole.PATIENT)
        return BookingResult(success=True, appointment=appointment)

    def _failure(self, kind: BookingErrorKind, error: AppException) -> BookingResult:
        logger.warning(
            "booking_failed",
            patient_id=str(self.session.patient_id),
            error_kind=kind.value,
            error=error.message,
        )
        return BookingResult(
            success=False,
            error_kind=kind,
            message=BOOKING_EXCEPTIONS[kind]().message,
            details={"backend_message": error.message},
        )

    async def book(self, request: AppointmentCreate, timezone: str | None = None) -> BookingResult:
        """
        Run every step for a complete booking request.

        The slot date is taken in the clinic timezone, matching how the
        backend groups a provider's day.
        """
        await self.select_type(request.type)
        self.advance()

        await self.select_provider(request.provider_id)
        local_day = request.scheduled_at.astimezone(
            ZoneInfo(timezone or settings.clinic_timezone)
        ).date()
        await self.select_date(local_day)
        self.advance()

        self.select_slot(request.scheduled_at)
        self.advance()

        return await self.confirm(request.modality, request.notes)
