"""Appointment service for business logic."""

from datetime import datetime, timedelta
from typing import Protocol
from uuid import UUID

import structlog

from clinic_portal.core.clock import Clock, utc_now
from clinic_portal.core.exceptions import (
    AdvanceNoticeException,
    ForbiddenException,
    ValidationException,
)
from clinic_portal.core.rpc_client import BackendRpcClient
from clinic_portal.schemas.appointments import (
    Actor,
    ActorRole,
    Appointment,
    AppointmentCreate,
    AppointmentStatus,
)
from clinic_portal.schemas.notifications import NotificationEvent
from clinic_portal.services.appointment_state import (
    PATIENT_CANCELLABLE_STATUSES,
    apply_cancellation,
    validate_transition,
)

logger = structlog.get_logger(__name__)

REMINDER_EVENTS = {
    "24h": NotificationEvent.REMINDER_24H,
    "1h": NotificationEvent.REMINDER_1H,
}


class Notifier(Protocol):
    """Fire-and-forget notification hand-off."""

    def submit(
        self,
        event: NotificationEvent,
        appointment_id: UUID,
        actor_role: ActorRole,
        reason: str | None = None,
    ) -> bool: ...


class AppointmentService:
    """
    Appointment operations with local rule checks before every backend write.

    Invalid changes are rejected here, before the backend is called. Status
    changes that matter to the other party queue a notification; delivery is
    never awaited.
    """

    def __init__(
        self,
        backend: BackendRpcClient,
        notifier: Notifier,
        clock: Clock = utc_now,
        min_notice_hours: int = 24,
    ):
        """Initialize service with the backend client and notification queue."""
        self.backend = backend
        self.notifier = notifier
        self.clock = clock
        self.min_notice = timedelta(hours=min_notice_hours)

    def check_advance_notice(self, scheduled_at: datetime) -> None:
        """
        Reject starts closer than the minimum notice.

        Raises:
            AdvanceNoticeException: Start is earlier than now plus the notice
        """
        if scheduled_at < self.clock() + self.min_notice:
            raise AdvanceNoticeException()

    async def create_appointment(self, patient_id: UUID, data: AppointmentCreate) -> Appointment:
        """
        Create a new appointment.

        Args:
            patient_id: ID of the patient booking
            data: Appointment creation data

        Returns:
            Created appointment
        """
        self.check_advance_notice(data.scheduled_at)

        appointment = await self.backend.create_appointment(
            patient_id=patient_id,
            provider_id=data.provider_id,
            appointment_type=data.type,
            scheduled_at=data.scheduled_at,
            notes=data.notes,
            modality=data.modality,
        )
        logger.info(
            "appointment_created",
            appointment_id=str(appointment.id),
            provider_id=str(appointment.provider_id),
            appointment_type=appointment.type.value,
        )
        return appointment

    async def get_appointment(self, appointment_id: UUID, actor: Actor) -> Appointment:
        """Get an appointment the actor is allowed to see."""
        appointment = await self.backend.get_appointment(appointment_id)
        if actor.role == ActorRole.PATIENT and appointment.patient_id != actor.id:
            raise ForbiddenException("Not authorized to access this appointment")
        return appointment

    async def _store_cancellation(self, appointment: Appointment, reason: str) -> Appointment:
        cancelled = apply_cancellation(appointment, reason, self.clock())
        return await self.backend.update_appointment(
            appointment.id,
            {
                "status": cancelled.status,
                "cancellation_reason": cancelled.cancellation_reason,
                "cancelled_at": cancelled.cancelled_at,
            },
        )

    async def cancel_appointment(
        self,
        appointment_id: UUID,
        reason: str,
        actor: Actor,
    ) -> Appointment:
        """
        Cancel an appointment.

        Patients may cancel only their own pending or confirmed appointments
        and providers only their own. The other party is notified.
        """
        appointment = await self.get_appointment(appointment_id, actor)
        if actor.role == ActorRole.PROVIDER and appointment.provider_id != actor.id:
            raise ForbiddenException("Providers can only cancel their own appointments")

        if (
            actor.role == ActorRole.PATIENT
            and appointment.status not in PATIENT_CANCELLABLE_STATUSES
        ):
            raise ValidationException(
                f"Appointments with status '{appointment.status.value}' cannot be cancelled"
            )

        stored = await self._store_cancellation(appointment, reason)
        self.notifier.submit(
            NotificationEvent.CANCELLED,
            stored.id,
            actor.role,
            stored.cancellation_reason,
        )

        logger.info(
            "appointment_cancelled",
            appointment_id=str(appointment_id),
            actor_role=actor.role.value,
        )
        return stored

    async def reject_appointment(
        self,
        appointment_id: UUID,
        reason: str,
        actor: Actor,
    ) -> Appointment:
        """Reject a pending appointment request (staff only)."""
        if not actor.is_staff:
            raise ForbiddenException("Only providers and admins can reject appointments")

        appointment = await self.backend.get_appointment(appointment_id)
        if appointment.status != AppointmentStatus.PENDING:
            raise ValidationException("Only pending appointments can be rejected")

        stored = await self._store_cancellation(appointment, reason)
        self.notifier.submit(
            NotificationEvent.REJECTED,
            stored.id,
            actor.role,
            stored.cancellation_reason,
        )

        logger.info("appointment_rejected", appointment_id=str(appointment_id))
        return stored

    async def update_status(
        self,
        appointment_id: UUID,
        status: AppointmentStatus,
        actor: Actor,
    ) -> Appointment:
        """
        Move an appointment along its lifecycle (staff only).

        Cancellation needs a reason and goes through ``cancel_appointment``.
        """
        if not actor.is_staff:
            raise ForbiddenException("Only providers and admins can change appointment status")
        if status == AppointmentStatus.CANCELLED:
            raise ValidationException("Use the cancel operation to cancel an appointment")

        appointment = await self.backend.get_appointment(appointment_id)
        validate_transition(appointment.status, status)

        stored = await self.backend.update_appointment(appointment_id, {"status": status})
        if status == AppointmentStatus.CONFIRMED:
            self.notifier.submit(NotificationEvent.CONFIRMED, stored.id, actor.role)

        logger.info(
            "appointment_status_updated",
            appointment_id=str(appointment_id),
            from_status=appointment.status.value,
            to_status=status.value,
        )
        return stored

    async def send_reminder(self, appointment_id: UUID, variant: str) -> bool:
        """
        Queue a reminder for an upcoming appointment.

        Args:
            appointment_id: Appointment ID
            variant: ``24h`` or ``1h``

        Returns:
            True if the reminder was queued
        """
        event = REMINDER_EVENTS.get(variant)
        if event is None:
            raise ValidationException(f"Unknown reminder variant '{variant}'")

        appointment = await self.backend.get_appointment(appointment_id)
        if appointment.status not in PATIENT_CANCELLABLE_STATUSES:
            raise ValidationException("Reminders are only sent for pending or confirmed appointments")

        return self.notifier.submit(event, appointment.id, ActorRole.ADMIN)
