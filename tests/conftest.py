import os
from collections.abc import AsyncGenerator, Callable
from datetime import UTC, date, datetime, timedelta
from typing import Any
from uuid import UUID, uuid4

import pytest
import pytest_asyncio
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Tests never talk to a real Redis; the eligibility cache uses the memory store
os.environ["REDIS_HOST"] = ""
os.environ.setdefault("JWT_SECRET_KEY", "test-secret")
os.environ.setdefault("LOG_FORMAT", "console")

from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy import text  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402

from clinic_portal.core.exceptions import NotFoundException  # noqa: E402
from clinic_portal.core.security import create_access_token  # noqa: E402
from clinic_portal.database import async_database_url  # noqa: E402
from clinic_portal.main import app  # noqa: E402
from clinic_portal.models.message_logs import metadata as message_logs_metadata  # noqa: E402
from clinic_portal.schemas.appointments import (  # noqa: E402
    ActorRole,
    Appointment,
    AppointmentStatus,
    AppointmentType,
    Modality,
    TimeSlot,
)
from clinic_portal.schemas.eligibility import EligibilityResult  # noqa: E402
from clinic_portal.schemas.notifications import (  # noqa: E402
    AppointmentNotificationData,
    Language,
    MessageStatus,
    NotificationAttempt,
    NotificationEvent,
    SendResult,
    WhatsAppInstance,
)
from clinic_portal.services.appointment_service import AppointmentService  # noqa: E402
from clinic_portal.services.channel_service import WhatsAppChannel  # noqa: E402
from clinic_portal.services.delivery_ledger import FailedDeliveryLedger, SqlMessageLogRepository  # noqa: E402
from clinic_portal.services.eligibility_cache import EligibilityCache  # noqa: E402
from clinic_portal.services.notification_dispatcher import NotificationDispatcher  # noqa: E402

PATIENT_PHONE = "5511988887777"
PROVIDER_PHONE = "5511977776666"


class FakeClock:
    """Controllable clock."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class InMemoryMessageLogRepository:
    """Ledger storage kept in a dict."""

    def __init__(self) -> None:
        self.rows: dict[UUID, NotificationAttempt] = {}

    async def add(self, values: dict[str, Any]) -> NotificationAttempt:
        attempt = NotificationAttempt(id=uuid4(), **values)
        self.rows[attempt.id] = attempt
        return attempt

    async def get(self, attempt_id: UUID) -> NotificationAttempt | None:
        return self.rows.get(attempt_id)

    async def list_failed(
        self,
        limit: int,
        *,
        newest_first: bool = True,
        max_retry_count: int | None = None,
        retried_before: datetime | None = None,
    ) -> list[NotificationAttempt]:
        items = [row for row in self.rows.values() if row.status == MessageStatus.FAILED]
        if max_retry_count is not None:
            items = [row for row in items if row.retry_count < max_retry_count]
        if retried_before is not None:
            items = [
                row
                for row in items
                if row.last_retry_at is None or row.last_retry_at < retried_before
            ]
        items.sort(key=lambda row: row.created_at, reverse=newest_first)
        return items[:limit]

    async def record_retry(
        self,
        attempt_id: UUID,
        *,
        delivered: bool,
        error: str | None,
        at: datetime,
    ) -> NotificationAttempt | None:
        current = self.rows.get(attempt_id)
        if current is None:
            return None
        changes: dict[str, Any] = {"retry_count": current.retry_count + 1, "last_retry_at": at}
        if delivered:
            changes.update(status=MessageStatus.DELIVERED, error=None, delivered_at=at)
        else:
            changes["error"] = error
        updated = current.model_copy(update=changes)
        self.rows[attempt_id] = updated
        return updated

    async def seed(self, **values: Any) -> NotificationAttempt:
        defaults = {
            "phone_number": PATIENT_PHONE,
            "message": "Olá!",
            "template_name": "appointment_confirmed",
            "error": "timeout",
            "retry_count": 0,
            "status": MessageStatus.FAILED,
            "created_at": datetime(2026, 3, 1, 9, 0, tzinfo=UTC),
        }
        defaults.update(values)
        return await self.add(defaults)


class FakeBackend:
    """In-memory stand-in for the managed backend client."""

    def __init__(self) -> None:
        self.eligibility = EligibilityResult(eligible=True)
        self.eligibility_error: Exception | None = None
        self.eligibility_calls = 0
        self.slots: list[TimeSlot] = []
        self.slots_error: Exception | None = None
        self.slot_calls: list[tuple[UUID, date, AppointmentType]] = []
        self.create_error: Exception | None = None
        self.create_calls: list[dict[str, Any]] = []
        self.appointments: dict[UUID, Appointment] = {}
        self.updates: list[tuple[UUID, dict[str, Any]]] = []
        self.notification_data: dict[UUID, AppointmentNotificationData] = {}

    async def check_patient_eligibility(
        self, patient_id: UUID, appointment_type: AppointmentType
    ) -> EligibilityResult:
        self.eligibility_calls += 1
        if self.eligibility_error is not None:
            raise self.eligibility_error
        return self.eligibility

    async def get_available_slots(
        self, provider_id: UUID, day: date, appointment_type: AppointmentType
    ) -> list[TimeSlot]:
        self.slot_calls.append((provider_id, day, appointment_type))
        if self.slots_error is not None:
            raise self.slots_error
        return list(self.slots)

    async def create_appointment(self, **kwargs: Any) -> Appointment:
        self.create_calls.append(kwargs)
        if self.create_error is not None:
            raise self.create_error
        appointment = Appointment(
            id=uuid4(),
            patient_id=kwargs["patient_id"],
            provider_id=kwargs["provider_id"],
            type=kwargs["appointment_type"],
            status=AppointmentStatus.PENDING,
            scheduled_at=kwargs["scheduled_at"],
            duration=60,
            modality=kwargs.get("modality", Modality.IN_PERSON),
            notes=kwargs.get("notes"),
        )
        self.appointments[appointment.id] = appointment
        return appointment

    async def get_appointment(self, appointment_id: UUID) -> Appointment:
        if appointment_id not in self.appointments:
            raise NotFoundException("Appointment not found")
        return self.appointments[appointment_id]

    async def update_appointment(self, appointment_id: UUID, values: dict[str, Any]) -> Appointment:
        current = await self.get_appointment(appointment_id)
        self.updates.append((appointment_id, values))
        updated = Appointment.model_validate({**current.model_dump(), **values})
        self.appointments[appointment_id] = updated
        return updated

    async def get_notification_data(self, appointment_id: UUID) -> AppointmentNotificationData:
        if appointment_id not in self.notification_data:
            raise NotFoundException("Appointment not found")
        return self.notification_data[appointment_id]


class FakeEvolutionClient:
    """WhatsApp provider stand-in with scripted connection checks and sends."""

    def __init__(self) -> None:
        self.connection_results: list[WhatsAppInstance | None] = []
        self.default_instance: WhatsAppInstance | None = WhatsAppInstance(
            name="clinic", state="open", phone_number="5511900000000"
        )
        self.connection_checks = 0
        self.failures: dict[str, str] = {}
        self.raises: dict[str, Exception] = {}
        self.sent: list[tuple[str, str, str]] = []

    async def get_connected_instance(self) -> WhatsAppInstance | None:
        self.connection_checks += 1
        if self.connection_results:
            return self.connection_results.pop(0)
        return self.default_instance

    async def send_text(
        self,
        instance_name: str,
        phone: str,
        text: str,
        correlation_id: str | None = None,
    ) -> SendResult:
        if phone in self.raises:
            raise self.raises[phone]
        self.sent.append((instance_name, phone, text))
        if phone in self.failures:
            return SendResult(success=False, error=self.failures[phone])
        return SendResult(success=True, message_id=f"msg-{len(self.sent)}")


class RecordingNotifier:
    """Notification queue stand-in that records submissions."""

    def __init__(self) -> None:
        self.submitted: list[tuple[NotificationEvent, UUID, ActorRole, str | None]] = []
        self.accept = True
        self.running = True
        self.pending = 0

    def submit(
        self,
        event: NotificationEvent,
        appointment_id: UUID,
        actor_role: ActorRole,
        reason: str | None = None,
    ) -> bool:
        self.submitted.append((event, appointment_id, actor_role, reason))
        return self.accept


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 2, 12, 0, tzinfo=UTC))


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def evolution() -> FakeEvolutionClient:
    return FakeEvolutionClient()


@pytest.fixture
def channel(evolution: FakeEvolutionClient, clock: FakeClock) -> WhatsAppChannel:
    return WhatsAppChannel(evolution, clock=clock, cache_ttl_seconds=60)  # type: ignore[arg-type]


@pytest.fixture
def repository() -> InMemoryMessageLogRepository:
    return InMemoryMessageLogRepository()


@pytest.fixture
def ledger(
    repository: InMemoryMessageLogRepository,
    channel: WhatsAppChannel,
    clock: FakeClock,
) -> FailedDeliveryLedger:
    return FailedDeliveryLedger(repository, channel, clock=clock)


@pytest.fixture
def dispatcher(channel: WhatsAppChannel, ledger: FailedDeliveryLedger) -> NotificationDispatcher:
    return NotificationDispatcher(channel, ledger)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def eligibility_cache(backend: FakeBackend, clock: FakeClock) -> EligibilityCache:
    return EligibilityCache(backend, clock=clock, ttl_seconds=60)


@pytest.fixture
def appointment_service(
    backend: FakeBackend,
    notifier: RecordingNotifier,
    clock: FakeClock,
) -> AppointmentService:
    return AppointmentService(backend, notifier, clock=clock, min_notice_hours=24)  # type: ignore[arg-type]


@pytest.fixture
def patient_id() -> UUID:
    return uuid4()


@pytest.fixture
def provider_id() -> UUID:
    return uuid4()


@pytest.fixture
def make_appointment(
    clock: FakeClock,
    backend: FakeBackend,
    patient_id: UUID,
    provider_id: UUID,
) -> Callable[..., Appointment]:
    """Create an appointment stored in the fake backend."""

    def factory(**overrides: Any) -> Appointment:
        values: dict[str, Any] = {
            "id": uuid4(),
            "patient_id": patient_id,
            "provider_id": provider_id,
            "type": AppointmentType.INITIAL_CONSULTATION,
            "status": AppointmentStatus.PENDING,
            "scheduled_at": clock() + timedelta(days=3),
            "duration": 60,
        }
        values.update(overrides)
        appointment = Appointment(**values)
        backend.appointments[appointment.id] = appointment
        return appointment

    return factory


@pytest.fixture
def notification_data(patient_id: UUID) -> AppointmentNotificationData:
    return AppointmentNotificationData(
        appointment_id=uuid4(),
        patient_id=patient_id,
        patient_name="Maria Silva",
        patient_phone=PATIENT_PHONE,
        patient_language=Language.PT,
        provider_name="Dra. Ana Costa",
        provider_phone=PROVIDER_PHONE,
        provider_language=Language.EN,
        appointment_type=AppointmentType.INITIAL_CONSULTATION,
        scheduled_at=datetime(2026, 3, 10, 13, 30, tzinfo=UTC),
    )


def build_slot(start: datetime, available: bool = True, minutes: int = 60) -> TimeSlot:
    return TimeSlot(start=start, end=start + timedelta(minutes=minutes), available=available)


def auth_headers(user_id: UUID, role: ActorRole = ActorRole.PATIENT) -> dict:
    """Create authentication headers for testing protected endpoints."""
    token_data = {
        "sub": str(user_id),
        "user_role": role.value,
    }
    token = create_access_token(data=token_data, expires_delta=timedelta(minutes=30))
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def patient_headers(patient_id: UUID) -> dict:
    return auth_headers(patient_id, ActorRole.PATIENT)


@pytest.fixture
def provider_headers() -> dict:
    return auth_headers(uuid4(), ActorRole.PROVIDER)


@pytest.fixture
def admin_headers() -> dict:
    return auth_headers(uuid4(), ActorRole.ADMIN)


@pytest_asyncio.fixture
async def client(
    backend: FakeBackend,
    eligibility_cache: EligibilityCache,
    channel: WhatsAppChannel,
    ledger: FailedDeliveryLedger,
    dispatcher: NotificationDispatcher,
    notifier: RecordingNotifier,
    clock: FakeClock,
) -> AsyncGenerator[AsyncClient, None]:
    """Create a test HTTP client wired to in-memory collaborators."""
    previous_clock = app.state.clock
    app.state.clock = clock
    app.state.backend = backend
    app.state.eligibility_cache = eligibility_cache
    app.state.channel = channel
    app.state.ledger = ledger
    app.state.dispatcher = dispatcher
    app.state.notification_queue = notifier

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.state.clock = previous_clock
    app.dependency_overrides.clear()


@pytest.fixture
def make_slot() -> Callable[..., TimeSlot]:
    return build_slot


# Ledger SQL tests need a disposable Postgres database
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")


@pytest_asyncio.fixture
async def sql_repository() -> AsyncGenerator[SqlMessageLogRepository, None]:
    """Create the ledger table in the test database and drop it afterwards."""
    if not TEST_DATABASE_URL:
        pytest.skip("TEST_DATABASE_URL not set")

    # Use NullPool to avoid event loop issues between tests
    engine = create_async_engine(
        async_database_url(TEST_DATABASE_URL), echo=False, poolclass=NullPool
    )
    async with engine.begin() as conn:
        await conn.execute(text('CREATE EXTENSION IF NOT EXISTS "pgcrypto"'))
        await conn.run_sync(message_logs_metadata.drop_all)
        await conn.run_sync(message_logs_metadata.create_all)

    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    yield SqlMessageLogRepository(session_factory)

    async with engine.begin() as conn:
        await conn.run_sync(message_logs_metadata.drop_all)
    await engine.dispose()
