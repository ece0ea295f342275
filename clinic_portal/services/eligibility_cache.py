"""Eligibility cache in front of the backend eligibility check."""

from datetime import datetime, timedelta
from typing import Protocol
from uuid import UUID

import structlog
from pydantic import ValidationError

from clinic_portal.core.cache import CacheStore, MemoryCacheStore
from clinic_portal.core.clock import Clock, utc_now
from clinic_portal.schemas.appointments import AppointmentType
from clinic_portal.schemas.eligibility import EligibilityResult

logger = structlog.get_logger(__name__)


class EligibilitySource(Protocol):
    """Remote eligibility check."""

    async def check_patient_eligibility(
        self,
        patient_id: UUID,
        appointment_type: AppointmentType,
    ) -> EligibilityResult: ...


def cache_key(subject_id: UUID, appointment_type: AppointmentType | str) -> str:
    """Build the cache key for a subject and appointment type."""
    value = appointment_type.value if isinstance(appointment_type, AppointmentType) else appointment_type
    return f"eligibility:{subject_id}:{value}"


class EligibilityCache:
    """
    Time-bounded cache of eligibility verdicts.

    Entries hold ``{cached_at, result}`` and are replaced whole on every
    write. Freshness is judged against the injected clock, so the store's own
    expiry only matters for cleanup. Concurrent misses for the same key may
    both reach the backend; the last write wins.
    """

    def __init__(
        self,
        source: EligibilitySource,
        store: CacheStore | None = None,
        clock: Clock = utc_now,
        ttl_seconds: int = 60,
    ):
        """
        Initialize the cache.

        Args:
            source: Remote eligibility check (the backend client)
            store: Cache store, in-process by default
            clock: Time source
            ttl_seconds: Freshness window for cached verdicts
        """
        self.source = source
        self.store: CacheStore = store if store is not None else MemoryCacheStore(clock=clock)
        self.clock = clock
        self.ttl = timedelta(seconds=ttl_seconds)

    def _read_fresh(self, key: str) -> EligibilityResult | None:
        entry = self.store.get_json(key)
        if not entry:
            return None

        try:
            cached_at = datetime.fromisoformat(entry["cached_at"])
            result = EligibilityResult.model_validate(entry["result"])
            age = self.clock() - cached_at
        except (KeyError, TypeError, ValueError, ValidationError):
            logger.warning("eligibility_cache_entry_invalid", key=key)
            return None

        return result if age < self.ttl else None

    async def check_eligibility(
        self,
        subject_id: UUID,
        appointment_type: AppointmentType,
    ) -> EligibilityResult:
        """
        Get the eligibility verdict, from cache when fresh.

        A backend error propagates and leaves the cache untouched, so the
        next call goes to the backend again.
        """
        key = cache_key(subject_id, appointment_type)

        cached = self._read_fresh(key)
        if cached is not None:
            logger.debug("eligibility_cache_hit", key=key)
            return cached

        logger.debug("eligibility_cache_miss", key=key)
        result = await self.source.check_patient_eligibility(subject_id, appointment_type)

        self.store.set_json(
            key,
            {
                "cached_at": self.clock().isoformat(),
                "result": result.model_dump(mode="json"),
            },
            ttl=max(int(self.ttl.total_seconds()), 1),
        )
        logger.info(
            "eligibility_checked",
            subject_id=str(subject_id),
            appointment_type=appointment_type.value,
            eligible=result.eligible,
        )
        return result

    def is_eligible_for(self, subject_id: UUID, appointment_type: AppointmentType) -> bool:
        """
        Cache-only eligibility hint.

        Returns the cached verdict when fresh, otherwise True. Booking always
        re-checks through the backend, so this must never gate anything.
        """
        cached = self._read_fresh(cache_key(subject_id, appointment_type))
        return cached.eligible if cached is not None else True

    def invalidate(self, subject_id: UUID, appointment_type: AppointmentType | None = None) -> int:
        """Drop one cached verdict, or all of a subject's verdicts."""
        if appointment_type is not None:
            return int(self.store.delete(cache_key(subject_id, appointment_type)))
        return self.store.delete_pattern(cache_key(subject_id, "*"))
