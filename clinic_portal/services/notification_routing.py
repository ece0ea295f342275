"""Who gets notified for each appointment event."""

from clinic_portal.schemas.appointments import ActorRole
from clinic_portal.schemas.notifications import Audience, NotificationEvent

PATIENT_ONLY = frozenset({Audience.PATIENT})
PROVIDER_ONLY = frozenset({Audience.PROVIDER})
BOTH = frozenset({Audience.PATIENT, Audience.PROVIDER})

# The party who cancelled already knows; the other one is told.
RECIPIENTS: dict[tuple[NotificationEvent, ActorRole], frozenset[Audience]] = {
    **{(NotificationEvent.CREATED, role): BOTH for role in ActorRole},
    (NotificationEvent.CANCELLED, ActorRole.PATIENT): PROVIDER_ONLY,
    (NotificationEvent.CANCELLED, ActorRole.PROVIDER): PATIENT_ONLY,
    (NotificationEvent.CANCELLED, ActorRole.ADMIN): BOTH,
    **{(NotificationEvent.CONFIRMED, role): PATIENT_ONLY for role in ActorRole},
    **{(NotificationEvent.REJECTED, role): PATIENT_ONLY for role in ActorRole},
    **{(NotificationEvent.REMINDER_24H, role): PATIENT_ONLY for role in ActorRole},
    **{(NotificationEvent.REMINDER_1H, role): PATIENT_ONLY for role in ActorRole},
}


def recipients_for(event: NotificationEvent, actor_role: ActorRole) -> frozenset[Audience]:
    """Get the audiences notified when an actor triggers an event."""
    try:
        return RECIPIENTS[(event, actor_role)]
    except KeyError:
        raise ValueError(f"No recipients defined for {event.value} by {actor_role.value}") from None
