"""Appointment lifecycle state machine."""

from datetime import datetime

from clinic_portal.core.exceptions import InvalidTransitionException, ValidationException
from clinic_portal.schemas.appointments import Appointment, AppointmentStatus

TRANSITIONS: dict[AppointmentStatus, frozenset[AppointmentStatus]] = {
    AppointmentStatus.PENDING: frozenset(
        {AppointmentStatus.CONFIRMED, AppointmentStatus.CANCELLED}
    ),
    AppointmentStatus.CONFIRMED: frozenset(
        {
            AppointmentStatus.CHECKED_IN,
            AppointmentStatus.CANCELLED,
            AppointmentStatus.NO_SHOW,
        }
    ),
    AppointmentStatus.CHECKED_IN: frozenset(
        {AppointmentStatus.IN_PROGRESS, AppointmentStatus.NO_SHOW}
    ),
    AppointmentStatus.IN_PROGRESS: frozenset({AppointmentStatus.COMPLETED}),
    AppointmentStatus.COMPLETED: frozenset(),
    AppointmentStatus.CANCELLED: frozenset(),
    AppointmentStatus.NO_SHOW: frozenset(),
}

TERMINAL_STATUSES = frozenset(status for status, targets in TRANSITIONS.items() if not targets)

PATIENT_CANCELLABLE_STATUSES = frozenset(
    {AppointmentStatus.PENDING, AppointmentStatus.CONFIRMED}
)


def can_transition(current: AppointmentStatus, target: AppointmentStatus) -> bool:
    """Check whether a status change is allowed."""
    return target in TRANSITIONS[current]


def is_terminal(status: AppointmentStatus) -> bool:
    """Check whether no further status change is possible."""
    return status in TERMINAL_STATUSES


def validate_transition(current: AppointmentStatus, target: AppointmentStatus) -> None:
    """
    Reject any status change the lifecycle does not allow.

    Raises:
        InvalidTransitionException: Move out of a terminal state, same-state
            move or a move not in the transition table
    """
    if not can_transition(current, target):
        raise InvalidTransitionException(current.value, target.value)


def apply_cancellation(appointment: Appointment, reason: str, now: datetime) -> Appointment:
    """
    Cancel an appointment locally.

    Args:
        appointment: Current appointment record
        reason: Cancellation reason, required
        now: Cancellation instant

    Returns:
        New appointment with status cancelled, the reason and timestamp set
    """
    reason = (reason or "").strip()
    if not reason:
        raise ValidationException("A cancellation reason is required")

    validate_transition(appointment.status, AppointmentStatus.CANCELLED)

    return appointment.model_validate(
        {
            **appointment.model_dump(),
            "status": AppointmentStatus.CANCELLED,
            "cancellation_reason": reason,
            "cancelled_at": now,
        }
    )
