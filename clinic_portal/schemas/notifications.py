"""WhatsApp notification schemas."""

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import AwareDatetime, BaseModel, Field, computed_field

from clinic_portal.schemas.appointments import AppointmentType

# Entries at or above this count are excluded from automatic retry
MAX_AUTOMATIC_RETRIES = 3


class NotificationEvent(str, Enum):
    """Appointment event that triggers a notification."""

    CREATED = "created"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    REJECTED = "rejected"
    REMINDER_24H = "reminder_24h"
    REMINDER_1H = "reminder_1h"
    CUSTOM = "custom"


class Audience(str, Enum):
    """Party receiving a notification."""

    PATIENT = "patient"
    PROVIDER = "provider"


class Language(str, Enum):
    """Supported message languages."""

    PT = "pt"
    EN = "en"


class MessageStatus(str, Enum):
    """Ledger status of a delivery attempt."""

    FAILED = "failed"
    DELIVERED = "delivered"


class WhatsAppInstance(BaseModel):
    """Connected Evolution API instance."""

    name: str
    state: str | None = None
    phone_number: str | None = None


class SendResult(BaseModel):
    """Result of a single send through the messaging provider."""

    success: bool
    message_id: str | None = None
    error: str | None = None


class AppointmentNotificationData(BaseModel):
    """Everything needed to render appointment messages for both parties."""

    appointment_id: UUID
    patient_id: UUID | None = None
    patient_name: str
    patient_phone: str | None = None
    patient_language: Language = Language.PT
    provider_name: str
    provider_phone: str | None = None
    provider_language: Language = Language.PT
    appointment_type: AppointmentType
    scheduled_at: AwareDatetime


class NotificationAttempt(BaseModel):
    """Failed-delivery ledger entry."""

    id: UUID
    phone_number: str
    message: str
    template_name: str | None = None
    appointment_id: UUID | None = None
    patient_id: UUID | None = None
    error: str | None = None
    retry_count: int = Field(default=0, ge=0)
    status: MessageStatus = MessageStatus.FAILED
    created_at: datetime
    last_retry_at: datetime | None = None
    delivered_at: datetime | None = None

    model_config = {"from_attributes": True}

    @computed_field  # type: ignore[prop-decorator]
    @property
    def exhausted(self) -> bool:
        """Whether automatic retry is no longer allowed."""
        return self.retry_count >= MAX_AUTOMATIC_RETRIES

    @computed_field  # type: ignore[prop-decorator]
    @property
    def retriable(self) -> bool:
        """Whether the automatic retry path may pick this entry."""
        return self.status == MessageStatus.FAILED and not self.exhausted


class DeliveryOutcome(BaseModel):
    """Outcome of delivering one message to one recipient."""

    audience: Audience | None = None
    phone_number: str | None = None
    template_name: str | None = None
    success: bool
    message_id: str | None = None
    error: str | None = None
    attempt_id: UUID | None = None
    skipped: bool = False


class FailedMessagesStats(BaseModel):
    """Counts over a failed-message listing."""

    failed: int
    retriable: int
    exhausted: int


class FailedMessagesResponse(BaseModel):
    """Failed-message listing with counts."""

    items: list[NotificationAttempt]
    stats: FailedMessagesStats


class RetrySweepSummary(BaseModel):
    """Result of one automatic retry sweep."""

    retried: int = 0
    succeeded: int = 0
    failed: int = 0
    errors: int = 0
    skipped_reason: str | None = None


class CustomMessageRequest(BaseModel):
    """Schema for sending a free-text message (admin only)."""

    phone_number: str = Field(..., min_length=7, max_length=20)
    message: str = Field(..., min_length=1, max_length=4000)
    appointment_id: UUID | None = None


class ChannelStatusResponse(BaseModel):
    """WhatsApp channel status."""

    connected: bool
    instance_name: str | None = None
    phone_number: str | None = None
