"""WhatsApp message templates per event, audience and language."""

from datetime import datetime
from enum import Enum
from zoneinfo import ZoneInfo

from clinic_portal.config import settings
from clinic_portal.schemas.appointments import AppointmentType
from clinic_portal.schemas.notifications import (
    AppointmentNotificationData,
    Audience,
    Language,
    NotificationEvent,
)


class UnknownTemplateError(KeyError):
    """Template name with no registered text."""


class TemplateName(str, Enum):
    """Registered message templates."""

    APPOINTMENT_REQUESTED = "appointment_requested"
    NEW_APPOINTMENT_PROVIDER = "new_appointment_provider"
    APPOINTMENT_CONFIRMED = "appointment_confirmed"
    APPOINTMENT_REJECTED = "appointment_rejected"
    APPOINTMENT_CANCELLED = "appointment_cancelled"
    APPOINTMENT_CANCELLED_PROVIDER = "appointment_cancelled_provider"
    REMINDER_24H = "reminder_24h"
    REMINDER_1H = "reminder_1h"


TEMPLATE_FOR: dict[tuple[NotificationEvent, Audience], TemplateName] = {
    (NotificationEvent.CREATED, Audience.PATIENT): TemplateName.APPOINTMENT_REQUESTED,
    (NotificationEvent.CREATED, Audience.PROVIDER): TemplateName.NEW_APPOINTMENT_PROVIDER,
    (NotificationEvent.CONFIRMED, Audience.PATIENT): TemplateName.APPOINTMENT_CONFIRMED,
    (NotificationEvent.REJECTED, Audience.PATIENT): TemplateName.APPOINTMENT_REJECTED,
    (NotificationEvent.CANCELLED, Audience.PATIENT): TemplateName.APPOINTMENT_CANCELLED,
    (NotificationEvent.CANCELLED, Audience.PROVIDER): TemplateName.APPOINTMENT_CANCELLED_PROVIDER,
    (NotificationEvent.REMINDER_24H, Audience.PATIENT): TemplateName.REMINDER_24H,
    (NotificationEvent.REMINDER_1H, Audience.PATIENT): TemplateName.REMINDER_1H,
}

# Placeholders: patient_name, provider_name, type, date, time, reason
TEMPLATE_TEXT: dict[tuple[TemplateName, Language], str] = {
    (TemplateName.APPOINTMENT_REQUESTED, Language.PT): (
        "Olá {patient_name}! Recebemos sua solicitação de consulta de {type} com "
        "{provider_name} em {date} às {time}. Você receberá uma mensagem assim que "
        "ela for confirmada."
    ),
    (TemplateName.APPOINTMENT_REQUESTED, Language.EN): (
        "Hi {patient_name}! We received your {type} appointment request with "
        "{provider_name} on {date} at {time}. We will message you once it is confirmed."
    ),
    (TemplateName.NEW_APPOINTMENT_PROVIDER, Language.PT): (
        "Nova solicitação de consulta: {patient_name} agendou {type} para {date} às "
        "{time}. Acesse o portal para confirmar."
    ),
    (TemplateName.NEW_APPOINTMENT_PROVIDER, Language.EN): (
        "New appointment request: {patient_name} booked {type} for {date} at {time}. "
        "Open the portal to confirm it."
    ),
    (TemplateName.APPOINTMENT_CONFIRMED, Language.PT): (
        "Olá {patient_name}! Sua consulta de {type} com {provider_name} foi confirmada "
        "para {date} às {time}."
    ),
    (TemplateName.APPOINTMENT_CONFIRMED, Language.EN): (
        "Hi {patient_name}! Your {type} appointment with {provider_name} is confirmed "
        "for {date} at {time}."
    ),
    (TemplateName.APPOINTMENT_REJECTED, Language.PT): (
        "Olá {patient_name}. Infelizmente não foi possível aceitar sua solicitação de "
        "consulta. Motivo: {reason}"
    ),
    (TemplateName.APPOINTMENT_REJECTED, Language.EN): (
        "Hi {patient_name}. Unfortunately we could not accept your appointment "
        "request. Reason: {reason}"
    ),
    (TemplateName.APPOINTMENT_CANCELLED, Language.PT): (
        "Olá {patient_name}. Sua consulta com {provider_name} em {date} às {time} foi "
        "cancelada. Motivo: {reason}"
    ),
    (TemplateName.APPOINTMENT_CANCELLED, Language.EN): (
        "Hi {patient_name}. Your appointment with {provider_name} on {date} at {time} "
        "was cancelled. Reason: {reason}"
    ),
    (TemplateName.APPOINTMENT_CANCELLED_PROVIDER, Language.PT): (
        "A consulta de {type} de {patient_name} em {date} às {time} foi cancelada. "
        "Motivo: {reason}"
    ),
    (TemplateName.APPOINTMENT_CANCELLED_PROVIDER, Language.EN): (
        "{patient_name}'s {type} appointment on {date} at {time} was cancelled. "
        "Reason: {reason}"
    ),
    (TemplateName.REMINDER_24H, Language.PT): (
        "Olá {patient_name}! Lembrete: amanhã você tem consulta de {type} com "
        "{provider_name} em {date} às {time}."
    ),
    (TemplateName.REMINDER_24H, Language.EN): (
        "Hi {patient_name}! Reminder: tomorrow you have a {type} appointment with "
        "{provider_name} on {date} at {time}."
    ),
    (TemplateName.REMINDER_1H, Language.PT): (
        "Sua consulta com {provider_name} começa em 1 hora, às {time}."
    ),
    (TemplateName.REMINDER_1H, Language.EN): (
        "Your appointment with {provider_name} starts in 1 hour, at {time}."
    ),
}

TYPE_LABELS: dict[Language, dict[AppointmentType, str]] = {
    Language.PT: {
        AppointmentType.INITIAL_CONSULTATION: "Consulta Inicial",
        AppointmentType.FOLLOW_UP: "Retorno",
        AppointmentType.FUNCTIONAL_MEDICINE: "Medicina Funcional",
        AppointmentType.BHRT: "Reposição Hormonal Bioidêntica",
        AppointmentType.MALE_HYPERTROPHY: "Hipertrofia Masculina",
        AppointmentType.FEMALE_HYPERTROPHY: "Hipertrofia Feminina",
        AppointmentType.INSULIN_RESISTANCE: "Resistência à Insulina",
        AppointmentType.CHRONIC_INFLAMMATION: "Inflamação Crônica",
        AppointmentType.THYROID_SUPPORT: "Suporte de Tireoide",
        AppointmentType.MORPHEUS8: "Morpheus8",
        AppointmentType.BOTULINUM_TOXIN: "Toxina Botulínica",
        AppointmentType.FILLERS: "Preenchimentos",
        AppointmentType.SKIN_BOOSTERS: "Skin Boosters",
        AppointmentType.IV_PROTOCOLS: "Protocolos Endovenosos",
        AppointmentType.CUSTOMIZED_IV_NUTRITION: "Nutrição Endovenosa Personalizada",
        AppointmentType.NUTRIENT_TESTING: "Teste de Nutrientes",
        AppointmentType.NAD_THERAPY: "Terapia com NAD+",
        AppointmentType.VITAMIN_INJECTIONS: "Injeções de Vitaminas",
        AppointmentType.HORMONE_CHECK: "Avaliação Hormonal",
        AppointmentType.LAB_REVIEW: "Revisão de Exames",
        AppointmentType.NUTRITION: "Nutrição",
        AppointmentType.HEALTH_COACHING: "Health Coaching",
        AppointmentType.THERAPY: "Terapia",
        AppointmentType.PERSONAL_TRAINING: "Personal Training",
    },
    Language.EN: {
        AppointmentType.INITIAL_CONSULTATION: "Initial Consultation",
        AppointmentType.FOLLOW_UP: "Follow-up",
        AppointmentType.FUNCTIONAL_MEDICINE: "Functional Medicine",
        AppointmentType.BHRT: "Bioidentical Hormone Therapy",
        AppointmentType.MALE_HYPERTROPHY: "Male Hypertrophy",
        AppointmentType.FEMALE_HYPERTROPHY: "Female Hypertrophy",
        AppointmentType.INSULIN_RESISTANCE: "Insulin Resistance",
        AppointmentType.CHRONIC_INFLAMMATION: "Chronic Inflammation",
        AppointmentType.THYROID_SUPPORT: "Thyroid Support",
        AppointmentType.MORPHEUS8: "Morpheus8",
        AppointmentType.BOTULINUM_TOXIN: "Botulinum Toxin",
        AppointmentType.FILLERS: "Fillers",
        AppointmentType.SKIN_BOOSTERS: "Skin Boosters",
        AppointmentType.IV_PROTOCOLS: "IV Protocols",
        AppointmentType.CUSTOMIZED_IV_NUTRITION: "Customized IV Nutrition",
        AppointmentType.NUTRIENT_TESTING: "Nutrient Testing",
        AppointmentType.NAD_THERAPY: "NAD+ Therapy",
        AppointmentType.VITAMIN_INJECTIONS: "Vitamin Injections",
        AppointmentType.HORMONE_CHECK: "Hormone Check",
        AppointmentType.LAB_REVIEW: "Lab Review",
        AppointmentType.NUTRITION: "Nutrition",
        AppointmentType.HEALTH_COACHING: "Health Coaching",
        AppointmentType.THERAPY: "Therapy",
        AppointmentType.PERSONAL_TRAINING: "Personal Training",
    },
}

DATE_FORMATS: dict[Language, tuple[str, str]] = {
    Language.PT: ("%d/%m/%Y", "%H:%M"),
    Language.EN: ("%m/%d/%Y", "%I:%M %p"),
}


def _check_tables() -> None:
    """Fail at import when a routed pair has no template or no Portuguese text."""
    missing = [name for name in TEMPLATE_FOR.values() if (name, Language.PT) not in TEMPLATE_TEXT]
    unused = {name for name, _ in TEMPLATE_TEXT} - set(TEMPLATE_FOR.values())
    if missing or unused:
        raise RuntimeError(
            f"Template tables out of sync: missing pt text for {missing}, unused {sorted(unused)}"
        )
    for language in Language:
        if set(TYPE_LABELS[language]) != set(AppointmentType):
            raise RuntimeError(f"Appointment type labels incomplete for '{language.value}'")


_check_tables()


def template_for(event: NotificationEvent, audience: Audience) -> TemplateName:
    """Get the template used for an event and audience."""
    try:
        return TEMPLATE_FOR[(event, audience)]
    except KeyError:
        raise UnknownTemplateError(f"No template for {event.value} to {audience.value}") from None


def format_schedule(
    scheduled_at: datetime,
    language: Language,
    timezone: str | None = None,
) -> tuple[str, str]:
    """Format a UTC instant as clinic-local date and time strings."""
    local = scheduled_at.astimezone(ZoneInfo(timezone or settings.clinic_timezone))
    date_format, time_format = DATE_FORMATS[language]
    time_text = local.strftime(time_format)
    if language == Language.EN:
        time_text = time_text.lstrip("0")
    return local.strftime(date_format), time_text


def render(
    template: TemplateName | str,
    data: AppointmentNotificationData,
    language: Language = Language.PT,
    reason: str | None = None,
    timezone: str | None = None,
) -> str:
    """
    Render a template for one recipient.

    Args:
        template: Template name
        data: Appointment and contact details
        language: Recipient language, falls back to Portuguese when missing
        reason: Cancellation or rejection reason
        timezone: Display timezone, the clinic timezone by default

    Returns:
        Message text

    Raises:
        UnknownTemplateError: Template name is not registered
    """
    try:
        name = TemplateName(template)
    except ValueError:
        raise UnknownTemplateError(f"Unknown template '{template}'") from None

    text = TEMPLATE_TEXT.get((name, language))
    if text is None:
        language = Language.PT
        text = TEMPLATE_TEXT[(name, language)]

    date_text, time_text = format_schedule(data.scheduled_at, language, timezone)
    return text.format(
        patient_name=data.patient_name,
        provider_name=data.provider_name,
        type=TYPE_LABELS[language][data.appointment_type],
        date=date_text,
        time=time_text,
        reason=reason or "-",
    )
