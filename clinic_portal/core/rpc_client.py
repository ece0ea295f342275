"""HTTP client for the managed database backend (PostgREST-style RPC and tables)."""

from datetime import date
from typing import Any
from uuid import UUID

import httpx
import structlog
from pydantic_core import to_jsonable_python
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from clinic_portal.core.exceptions import NotFoundException, RpcError, RpcTransientError
from clinic_portal.schemas.appointments import (
    Appointment,
    AppointmentType,
    Modality,
    TimeSlot,
)
from clinic_portal.schemas.eligibility import EligibilityResult
from clinic_portal.schemas.notifications import AppointmentNotificationData

logger = structlog.get_logger(__name__)

# Backend 4xx statuses passed through to API callers; anything else is a bad gateway
PASSTHROUGH_STATUS_CODES = frozenset({400, 404, 409, 422})


def parse_slot(row: dict[str, Any]) -> TimeSlot:
    """Build a TimeSlot from a backend row using either key convention."""
    return TimeSlot(
        start=row.get("start_time") or row["start"],
        end=row.get("end_time") or row["end"],
        available=bool(row.get("available", False)),
    )


def _first_row(data: Any) -> Any:
    if isinstance(data, list):
        return data[0] if data else None
    return data


class BackendRpcClient:
    """
    Client for the managed backend's RPC functions and table endpoints.

    Every request is bounded by a finite timeout. Transport failures, timeouts
    and 5xx responses raise RpcTransientError; other non-2xx responses raise
    RpcError carrying the backend's message, code, details and hint.

    Only calls marked idempotent are retried, with exponential backoff.
    Mutations such as appointment creation are never retried so a slow
    success cannot turn into a duplicate booking.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 15.0,
        max_attempts: int = 3,
        backoff_initial: float = 1.0,
        default_language: str = "pt",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize the client.

        Args:
            base_url: Backend root URL
            api_key: Service API key sent as ``apikey`` and bearer token
            timeout: Per-request timeout in seconds
            max_attempts: Total attempts for idempotent calls
            backoff_initial: First retry delay in seconds, doubled each time
            default_language: Message language for contacts without one on file
            transport: Optional httpx transport (tests use MockTransport)
        """
        self.max_attempts = max_attempts
        self.backoff_initial = backoff_initial
        self.default_language = default_language
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
            headers={
                "apikey": api_key,
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
        )

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        try:
            response = await self._client.request(
                method,
                path,
                json=to_jsonable_python(json) if json is not None else None,
                params=params,
                headers=headers,
            )
        except httpx.TimeoutException as e:
            raise RpcTransientError(f"Backend request timed out: {path}") from e
        except httpx.TransportError as e:
            raise RpcTransientError(f"Backend unreachable: {e}") from e

        if response.status_code >= 500:
            payload = self._error_payload(response)
            raise RpcTransientError(
                payload.get("message") or f"Backend returned HTTP {response.status_code}",
                status_code=502,
            )

        if response.status_code >= 400:
            payload = self._error_payload(response)
            status_code = (
                response.status_code if response.status_code in PASSTHROUGH_STATUS_CODES else 502
            )
            raise RpcError(
                payload.get("message") or f"Backend returned HTTP {response.status_code}",
                status_code=status_code,
                code=payload.get("code"),
                details=payload.get("details"),
                hint=payload.get("hint"),
            )

        if not response.content:
            return None
        return response.json()

    @staticmethod
    def _error_payload(response: httpx.Response) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError:
            return {"message": response.text or None}
        return payload if isinstance(payload, dict) else {}

    def _retrying(self, operation: str) -> AsyncRetrying:
        def log_retry(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            logger.warning(
                "backend_call_retry",
                operation=operation,
                attempt=retry_state.attempt_number,
                error=str(error),
            )

        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_initial, min=self.backoff_initial),
            retry=retry_if_exception_type(RpcTransientError),
            before_sleep=log_retry,
            reraise=True,
        )

    async def call(
        self,
        function_name: str,
        params: dict[str, Any] | None = None,
        *,
        idempotent: bool = False,
    ) -> Any:
        """
        Invoke a backend RPC function.

        Args:
            function_name: RPC function name
            params: Named function arguments
            idempotent: Retry transient failures with backoff

        Returns:
            Decoded JSON result

        Raises:
            RpcError: Backend rejected the call
            RpcTransientError: Backend unreachable after all attempts
        """
        path = f"/rest/v1/rpc/{function_name}"
        if not idempotent:
            return await self._request("POST", path, json=params or {})

        result = None
        async for attempt in self._retrying(function_name):
            with attempt:
                result = await self._request("POST", path, json=params or {})
        return result

    async def select_rows(self, table: str, filters: dict[str, Any]) -> list[dict[str, Any]]:
        """Read rows matching equality filters. Retried like any idempotent read."""
        params = {"select": "*"}
        params.update({column: f"eq.{value}" for column, value in filters.items()})

        rows: Any = None
        async for attempt in self._retrying(f"select:{table}"):
            with attempt:
                rows = await self._request("GET", f"/rest/v1/{table}", params=params)
        return rows or []

    async def update_rows(
        self,
        table: str,
        filters: dict[str, Any],
        values: dict[str, Any],
    ) -> list[dict[str, Any]]:
        """Update rows matching equality filters and return the updated rows."""
        params = {column: f"eq.{value}" for column, value in filters.items()}
        rows = await self._request(
            "PATCH",
            f"/rest/v1/{table}",
            json=values,
            params=params,
            headers={"Prefer": "return=representation"},
        )
        return rows or []

    async def check_patient_eligibility(
        self,
        patient_id: UUID,
        appointment_type: AppointmentType,
    ) -> EligibilityResult:
        """Ask the backend whether a patient may book an appointment type."""
        data = await self.call(
            "check_patient_eligibility",
            {"p_patient_id": patient_id, "p_appointment_type": appointment_type},
            idempotent=True,
        )
        row = _first_row(data)
        if row is None:
            raise RpcError("Eligibility check returned no result")
        return EligibilityResult.model_validate(row)

    async def get_available_slots(
        self,
        provider_id: UUID,
        day: date,
        appointment_type: AppointmentType,
    ) -> list[TimeSlot]:
        """Fetch the provider's slots for one day."""
        rows = await self.call(
            "get_available_slots",
            {
                "p_provider_id": provider_id,
                "p_date": day,
                "p_appointment_type": appointment_type,
            },
            idempotent=True,
        )
        return [parse_slot(row) for row in rows or []]

    async def create_appointment(
        self,
        patient_id: UUID,
        provider_id: UUID,
        appointment_type: AppointmentType,
        scheduled_at: Any,
        notes: str | None = None,
        modality: Modality = Modality.IN_PERSON,
    ) -> Appointment:
        """
        Create an appointment. The backend enforces its own rules and may reject.

        Never retried: a timed-out create may still have succeeded remotely.
        """
        data = await self.call(
            "create_appointment",
            {
                "p_patient_id": patient_id,
                "p_provider_id": provider_id,
                "p_type": appointment_type,
                "p_scheduled_at": scheduled_at,
                "p_notes": notes,
                "p_modality": modality,
            },
        )
        row = _first_row(data)
        if isinstance(row, dict) and "status" in row:
            return Appointment.model_validate(row)
        if isinstance(row, dict) and "id" in row:
            return await self.get_appointment(UUID(str(row["id"])))
        if row:
            # Some backend versions return only the new id
            return await self.get_appointment(UUID(str(row)))
        raise RpcError("Backend did not return the created appointment")

    async def get_appointment(self, appointment_id: UUID) -> Appointment:
        """Get an appointment by id."""
        rows = await self.select_rows("appointments", {"id": appointment_id})
        if not rows:
            raise NotFoundException("Appointment not found")
        return Appointment.model_validate(rows[0])

    async def update_appointment(
        self,
        appointment_id: UUID,
        values: dict[str, Any],
    ) -> Appointment:
        """Update an appointment and return the stored record."""
        rows = await self.update_rows("appointments", {"id": appointment_id}, values)
        if not rows:
            raise NotFoundException("Appointment not found")
        return Appointment.model_validate(rows[0])

    async def get_notification_data(self, appointment_id: UUID) -> AppointmentNotificationData:
        """Get patient and provider contact details for an appointment."""
        data = await self.call(
            "get_appointment_notification_data",
            {"p_appointment_id": appointment_id},
            idempotent=True,
        )
        row = _first_row(data)
        if row is None:
            raise NotFoundException("Appointment not found")
        for field in ("patient_language", "provider_language"):
            if isinstance(row, dict) and not row.get(field):
                row[field] = self.default_language
        return AppointmentNotificationData.model_validate(row)
