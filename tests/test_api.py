"""Tests for the HTTP API."""

from datetime import UTC, datetime
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest
from httpx import AsyncClient

from clinic_portal.api.v1.endpoints import health
from clinic_portal.core.exceptions import RpcError
from clinic_portal.schemas.appointments import ActorRole, AppointmentStatus
from clinic_portal.schemas.eligibility import EligibilityResult
from clinic_portal.schemas.notifications import MessageStatus, NotificationEvent
from conftest import auth_headers

SLOT_START = datetime(2026, 3, 10, 13, 0, tzinfo=UTC)


@pytest.fixture
def booking_request(provider_id) -> dict:
    return {
        "provider_id": str(provider_id),
        "type": "initial_consultation",
        "scheduled_at": "2026-03-10T10:00:00-03:00",
        "modality": "telehealth",
    }


@pytest.mark.asyncio
async def test_ping(client: AsyncClient):
    """Test ping endpoint."""
    response = await client.get("/api/v1/ping")
    assert response.status_code == 200
    assert response.json() == {"message": "pong"}


@pytest.mark.asyncio
async def test_detailed_health(client: AsyncClient, monkeypatch, evolution, channel):
    """Test a disconnected WhatsApp instance degrades the service."""
    monkeypatch.setattr(health, "check_database_connection", AsyncMock(return_value=True))
    monkeypatch.setattr(health, "check_redis_connection", AsyncMock(return_value=None))

    response = await client.get("/api/v1/health/detailed")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["components"]["redis"]["state"] == "not_configured"
    assert data["components"]["whatsapp"] == {"state": "connected", "detail": "clinic"}

    evolution.default_instance = None
    channel.invalidate()
    response = await client.get("/api/v1/health/detailed")

    assert response.json()["status"] == "degraded"


@pytest.mark.asyncio
async def test_book_appointment(
    client: AsyncClient,
    patient_headers: dict,
    booking_request: dict,
    backend,
    notifier,
    patient_id,
    make_slot,
):
    """Test booking returns the created appointment and queues notifications."""
    backend.slots = [make_slot(SLOT_START)]

    response = await client.post("/api/v1/appointments/", json=booking_request, headers=patient_headers)

    assert response.status_code == 201
    data = response.json()
    assert data["status"] == "pending"
    assert data["patient_id"] == str(patient_id)
    assert data["modality"] == "telehealth"
    assert datetime.fromisoformat(data["scheduled_at"]) == SLOT_START
    assert [(event, role) for event, _, role, _ in notifier.submitted] == [
        (NotificationEvent.CREATED, ActorRole.PATIENT)
    ]


@pytest.mark.asyncio
async def test_book_ineligible(client: AsyncClient, patient_headers: dict, booking_request: dict, backend):
    """Test an ineligible patient gets the reasons back."""
    backend.eligibility = EligibilityResult(eligible=False, reasons=["Initial consultation required"])

    response = await client.post("/api/v1/appointments/", json=booking_request, headers=patient_headers)

    assert response.status_code == 422
    body = response.json()
    assert body["error"] == "BookingStepException"
    assert body["details"]["reasons"] == ["Initial consultation required"]
    assert backend.create_calls == []


@pytest.mark.asyncio
async def test_book_conflict(
    client: AsyncClient, patient_headers: dict, booking_request: dict, backend, notifier, make_slot
):
    """Test a backend conflict is reported as a slot conflict."""
    backend.slots = [make_slot(SLOT_START)]
    backend.create_error = RpcError("Provider already has an appointment at this time", status_code=409)

    response = await client.post("/api/v1/appointments/", json=booking_request, headers=patient_headers)

    assert response.status_code == 409
    assert response.json()["error"] == "SlotConflictException"
    assert notifier.submitted == []


@pytest.mark.asyncio
async def test_book_unavailable_slot(
    client: AsyncClient, patient_headers: dict, booking_request: dict, backend, make_slot
):
    backend.slots = [make_slot(SLOT_START, available=False)]

    response = await client.post("/api/v1/appointments/", json=booking_request, headers=patient_headers)

    assert response.status_code == 409
    assert response.json()["error"] == "SlotUnavailableException"


@pytest.mark.asyncio
async def test_provider_cannot_book(client: AsyncClient, provider_headers: dict, booking_request: dict):
    response = await client.post("/api/v1/appointments/", json=booking_request, headers=provider_headers)

    assert response.status_code == 403


@pytest.mark.asyncio
async def test_cancel_appointment(
    client: AsyncClient, patient_headers: dict, make_appointment, notifier
):
    """Test a patient cancels their appointment with a reason."""
    appointment = make_appointment(status=AppointmentStatus.CONFIRMED)

    response = await client.post(
        f"/api/v1/appointments/{appointment.id}/cancel",
        json={"reason": "Travelling"},
        headers=patient_headers,
    )

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "cancelled"
    assert data["cancellation_reason"] == "Travelling"
    assert notifier.submitted == [
        (NotificationEvent.CANCELLED, appointment.id, ActorRole.PATIENT, "Travelling")
    ]


@pytest.mark.asyncio
async def test_cancel_requires_reason(client: AsyncClient, patient_headers: dict, make_appointment):
    appointment = make_appointment()

    response = await client.post(
        f"/api/v1/appointments/{appointment.id}/cancel",
        json={"reason": "   "},
        headers=patient_headers,
    )

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_other_patient_cannot_see_appointment(
    client: AsyncClient, make_appointment, provider_headers: dict
):
    appointment = make_appointment()

    response = await client.get(
        f"/api/v1/appointments/{appointment.id}", headers=auth_headers(uuid4())
    )
    assert response.status_code == 403

    response = await client.get(f"/api/v1/appointments/{appointment.id}", headers=provider_headers)
    assert response.status_code == 200


@pytest.mark.asyncio
async def test_invalid_status_change(client: AsyncClient, admin_headers: dict, make_appointment):
    appointment = make_appointment(status=AppointmentStatus.COMPLETED)

    response = await client.patch(
        f"/api/v1/appointments/{appointment.id}/status",
        json={"status": "confirmed"},
        headers=admin_headers,
    )

    assert response.status_code == 422
    assert response.json()["error"] == "InvalidTransitionException"


@pytest.mark.asyncio
async def test_patient_cannot_change_status(client: AsyncClient, patient_headers: dict, make_appointment):
    appointment = make_appointment()

    response = await client.patch(
        f"/api/v1/appointments/{appointment.id}/status",
        json={"status": "confirmed"},
        headers=patient_headers,
    )

    assert response.status_code == 403


@pytest.mark.asyncio
async def test_queue_reminder(client: AsyncClient, admin_headers: dict, make_appointment, notifier):
    appointment = make_appointment(status=AppointmentStatus.CONFIRMED)

    response = await client.post(
        f"/api/v1/appointments/{appointment.id}/reminders",
        json={"variant": "1h"},
        headers=admin_headers,
    )

    assert response.status_code == 202
    assert response.json() == {"queued": True}
    assert notifier.submitted[0][0] == NotificationEvent.REMINDER_1H


@pytest.mark.asyncio
async def test_eligibility_hint_never_calls_backend(client: AsyncClient, patient_headers: dict, backend):
    response = await client.get("/api/v1/eligibility/bhrt/hint", headers=patient_headers)

    assert response.status_code == 200
    assert response.json() == {"appointment_type": "bhrt", "eligible": True}
    assert backend.eligibility_calls == 0


@pytest.mark.asyncio
async def test_eligibility_check_is_cached(client: AsyncClient, patient_headers: dict, backend):
    for _ in range(2):
        response = await client.get("/api/v1/eligibility/bhrt", headers=patient_headers)
        assert response.status_code == 200
        assert response.json()["eligible"] is True

    assert backend.eligibility_calls == 1


@pytest.mark.asyncio
async def test_list_slots(client: AsyncClient, patient_headers: dict, backend, provider_id, make_slot):
    backend.slots = [make_slot(SLOT_START), make_slot(SLOT_START.replace(hour=14), available=False)]

    response = await client.get(
        "/api/v1/availability",
        params={
            "provider_id": str(provider_id),
            "date": "2026-03-10",
            "appointment_type": "follow_up",
        },
        headers=patient_headers,
    )

    assert response.status_code == 200
    assert [slot["available"] for slot in response.json()] == [True, False]


class TestFailedMessagesApi:
    """Test the admin endpoints over the failed-delivery ledger."""

    @pytest.mark.asyncio
    async def test_list_failed(self, client: AsyncClient, admin_headers: dict, repository):
        await repository.seed(retry_count=0)
        await repository.seed(retry_count=3)

        response = await client.get("/api/v1/notifications/failed", headers=admin_headers)

        assert response.status_code == 200
        data = response.json()
        assert len(data["items"]) == 2
        assert data["stats"] == {"failed": 2, "retriable": 1, "exhausted": 1}
        assert {item["exhausted"] for item in data["items"]} == {True, False}

    @pytest.mark.asyncio
    async def test_non_admin_is_forbidden(self, client: AsyncClient, provider_headers: dict):
        response = await client.get("/api/v1/notifications/failed", headers=provider_headers)

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_manual_retry(self, client: AsyncClient, admin_headers: dict, repository):
        attempt = await repository.seed(retry_count=3)

        response = await client.post(
            f"/api/v1/notifications/failed/{attempt.id}/retry", headers=admin_headers
        )

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert repository.rows[attempt.id].status == MessageStatus.DELIVERED
        assert repository.rows[attempt.id].retry_count == 4

    @pytest.mark.asyncio
    async def test_retry_when_not_connected(
        self, client: AsyncClient, admin_headers: dict, repository, evolution
    ):
        attempt = await repository.seed()
        evolution.default_instance = None

        response = await client.post(
            f"/api/v1/notifications/failed/{attempt.id}/retry", headers=admin_headers
        )

        assert response.status_code == 503
        assert response.json()["message"] == "WhatsApp is not connected"
        assert repository.rows[attempt.id].retry_count == 0

    @pytest.mark.asyncio
    async def test_process_sweep(self, client: AsyncClient, admin_headers: dict, repository):
        await repository.seed()

        response = await client.post(
            "/api/v1/notifications/failed/process",
            params={"batch_size": 5},
            headers=admin_headers,
        )

        assert response.status_code == 200
        assert response.json()["succeeded"] == 1

    @pytest.mark.asyncio
    async def test_channel_status(self, client: AsyncClient, admin_headers: dict):
        response = await client.get("/api/v1/notifications/channel", headers=admin_headers)

        assert response.status_code == 200
        assert response.json() == {
            "connected": True,
            "instance_name": "clinic",
            "phone_number": "5511900000000",
        }
