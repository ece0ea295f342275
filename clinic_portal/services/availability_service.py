"""Availability query over the backend slot function."""

from datetime import date, datetime
from typing import Protocol
from uuid import UUID

import structlog

from clinic_portal.schemas.appointments import AppointmentType, TimeSlot

logger = structlog.get_logger(__name__)


class SlotSource(Protocol):
    """Remote slot lookup."""

    async def get_available_slots(
        self,
        provider_id: UUID,
        day: date,
        appointment_type: AppointmentType,
    ) -> list[TimeSlot]: ...


class AvailabilityQuery:
    """
    Current slot result for one provider, date and appointment type.

    A fetch replaces the previous result; it never merges. A failed fetch
    leaves no slots behind, only the error.
    """

    def __init__(self, source: SlotSource):
        self.source = source
        self.slots: list[TimeSlot] = []
        self.loading = False
        self.error: Exception | None = None

    @property
    def status(self) -> str:
        """One of ``idle``, ``loading``, ``error`` or ``ready``."""
        if self.loading:
            return "loading"
        if self.error is not None:
            return "error"
        return "ready" if self.slots else "idle"

    async def fetch_slots(
        self,
        provider_id: UUID,
        day: date,
        appointment_type: AppointmentType,
    ) -> list[TimeSlot]:
        """
        Fetch the provider's slots and replace the current result.

        Raises:
            Exception: Whatever the backend call raised, after clearing slots
        """
        self.slots = []
        self.error = None
        self.loading = True
        try:
            slots = await self.source.get_available_slots(provider_id, day, appointment_type)
        except Exception as e:
            self.error = e
            logger.warning(
                "availability_fetch_failed",
                provider_id=str(provider_id),
                date=day.isoformat(),
                error=str(e),
            )
            raise
        finally:
            self.loading = False

        self.slots = sorted(slots, key=lambda slot: slot.start)
        logger.debug(
            "availability_fetched",
            provider_id=str(provider_id),
            date=day.isoformat(),
            slots=len(self.slots),
        )
        return self.slots

    def clear(self) -> None:
        """Drop the current result and any error."""
        self.slots = []
        self.error = None

    def has_available_slots(self) -> bool:
        return any(slot.available for slot in self.slots)

    def find_slot(self, start: datetime) -> TimeSlot | None:
        """Find a slot in the current result by its start instant."""
        return next((slot for slot in self.slots if slot.start == start), None)
