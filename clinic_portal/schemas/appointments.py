"""Appointment schemas for request/response validation."""

from datetime import UTC, datetime
from enum import Enum
from typing import Self
from uuid import UUID

from pydantic import AwareDatetime, BaseModel, Field, field_validator, model_validator


class AppointmentStatus(str, Enum):
    """Appointment status enumeration."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    CHECKED_IN = "checked_in"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


class AppointmentType(str, Enum):
    """Treatment category of an appointment."""

    INITIAL_CONSULTATION = "initial_consultation"
    FOLLOW_UP = "follow_up"
    FUNCTIONAL_MEDICINE = "functional_medicine"
    BHRT = "bhrt"
    MALE_HYPERTROPHY = "male_hypertrophy"
    FEMALE_HYPERTROPHY = "female_hypertrophy"
    INSULIN_RESISTANCE = "insulin_resistance"
    CHRONIC_INFLAMMATION = "chronic_inflammation"
    THYROID_SUPPORT = "thyroid_support"
    MORPHEUS8 = "morpheus8"
    BOTULINUM_TOXIN = "botulinum_toxin"
    FILLERS = "fillers"
    SKIN_BOOSTERS = "skin_boosters"
    IV_PROTOCOLS = "iv_protocols"
    CUSTOMIZED_IV_NUTRITION = "customized_iv_nutrition"
    NUTRIENT_TESTING = "nutrient_testing"
    NAD_THERAPY = "nad_therapy"
    VITAMIN_INJECTIONS = "vitamin_injections"
    # Legacy
    HORMONE_CHECK = "hormone_check"
    LAB_REVIEW = "lab_review"
    NUTRITION = "nutrition"
    HEALTH_COACHING = "health_coaching"
    THERAPY = "therapy"
    PERSONAL_TRAINING = "personal_training"


class Modality(str, Enum):
    """How the consultation takes place."""

    IN_PERSON = "in_person"
    TELEHEALTH = "telehealth"


class ActorRole(str, Enum):
    """Role of the user performing an action."""

    PATIENT = "patient"
    PROVIDER = "provider"
    ADMIN = "admin"


class Actor(BaseModel):
    """Authenticated user performing an action."""

    id: UUID
    role: ActorRole = ActorRole.PATIENT

    @property
    def is_staff(self) -> bool:
        return self.role in (ActorRole.PROVIDER, ActorRole.ADMIN)


def _to_utc(value: datetime | None) -> datetime | None:
    return value.astimezone(UTC) if value is not None else None


class Appointment(BaseModel):
    """Appointment record as returned by the backend."""

    id: UUID
    patient_id: UUID
    provider_id: UUID
    type: AppointmentType
    status: AppointmentStatus
    scheduled_at: AwareDatetime
    duration: int = Field(..., gt=0, description="Duration in minutes")
    modality: Modality = Modality.IN_PERSON
    notes: str | None = None
    cancellation_reason: str | None = None
    cancelled_at: AwareDatetime | None = None
    created_at: AwareDatetime | None = None
    updated_at: AwareDatetime | None = None

    model_config = {"from_attributes": True}

    @field_validator("scheduled_at", "cancelled_at", "created_at", "updated_at")
    @classmethod
    def normalize_utc(cls, v: datetime | None) -> datetime | None:
        """Store every instant in UTC."""
        return _to_utc(v)

    @model_validator(mode="after")
    def check_cancellation_fields(self) -> Self:
        """Cancellation fields are set if and only if the status is cancelled."""
        cancelled = self.status == AppointmentStatus.CANCELLED
        has_fields = bool(self.cancellation_reason) and self.cancelled_at is not None
        has_any = bool(self.cancellation_reason) or self.cancelled_at is not None
        if cancelled and not has_fields:
            raise ValueError("Cancelled appointments need a cancellation reason and timestamp")
        if not cancelled and has_any:
            raise ValueError("Only cancelled appointments may carry cancellation fields")
        return self


class AppointmentCreate(BaseModel):
    """Schema for creating a new appointment."""

    provider_id: UUID
    type: AppointmentType
    scheduled_at: AwareDatetime
    modality: Modality = Modality.IN_PERSON
    notes: str | None = Field(None, max_length=1000)

    @field_validator("scheduled_at")
    @classmethod
    def normalize_utc(cls, v: datetime) -> datetime:
        """Store the start as an absolute UTC instant."""
        return v.astimezone(UTC)


class AppointmentCancel(BaseModel):
    """Schema for cancelling or rejecting an appointment."""

    reason: str = Field(..., max_length=500)


class AppointmentStatusUpdate(BaseModel):
    """Schema for updating appointment status."""

    status: AppointmentStatus


class ReminderRequest(BaseModel):
    """Schema for triggering an appointment reminder."""

    variant: str = Field(..., pattern="^(24h|1h)$")


class TimeSlot(BaseModel):
    """Bookable time window for a provider."""

    start: AwareDatetime
    end: AwareDatetime
    available: bool

    @field_validator("start", "end")
    @classmethod
    def normalize_utc(cls, v: datetime) -> datetime:
        """Slot boundaries are exchanged as UTC instants."""
        return v.astimezone(UTC)

    @model_validator(mode="after")
    def check_order(self) -> Self:
        """Validate end time is after start time."""
        if self.end <= self.start:
            raise ValueError("Slot end must be after start")
        return self
