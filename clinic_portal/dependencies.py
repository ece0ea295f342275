"""FastAPI dependencies."""

from typing import Annotated
from uuid import UUID

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from clinic_portal.core.clock import Clock
from clinic_portal.core.rpc_client import BackendRpcClient
from clinic_portal.core.security import decode_access_token, extract_user_role
from clinic_portal.schemas.appointments import Actor, ActorRole
from clinic_portal.services.appointment_service import AppointmentService
from clinic_portal.services.availability_service import AvailabilityQuery
from clinic_portal.services.booking_service import BookingOrchestrator
from clinic_portal.services.channel_service import WhatsAppChannel
from clinic_portal.services.delivery_ledger import FailedDeliveryLedger
from clinic_portal.services.eligibility_cache import EligibilityCache
from clinic_portal.services.notification_dispatcher import (
    NotificationDispatcher,
    NotificationQueue,
)

# Security
security = HTTPBearer()


def _credentials_error(detail: str = "Could not validate credentials") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_actor(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
) -> Actor:
    """
    Extract and validate the acting user from the backend-issued JWT.

    Args:
        credentials: Bearer token credentials

    Returns:
        Actor with the user ID and portal role

    Raises:
        HTTPException: If token is invalid or expired
    """
    payload = decode_access_token(credentials.credentials)
    if payload is None:
        raise _credentials_error()

    user_id_str = payload.get("sub")
    if user_id_str is None or not isinstance(user_id_str, str):
        raise _credentials_error()

    try:
        user_id = UUID(user_id_str)
    except ValueError:
        raise _credentials_error("Invalid user ID format")

    try:
        role = ActorRole(extract_user_role(payload))
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Unknown user role",
        )

    return Actor(id=user_id, role=role)


async def require_staff(actor: Annotated[Actor, Depends(get_current_actor)]) -> Actor:
    """Allow providers and admins only."""
    if not actor.is_staff:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Staff access required",
        )
    return actor


async def require_admin(actor: Annotated[Actor, Depends(get_current_actor)]) -> Actor:
    """Allow admins only."""
    if actor.role != ActorRole.ADMIN:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return actor


# Application-scoped services are created in the lifespan and kept on app.state


def get_clock(request: Request) -> Clock:
    return request.app.state.clock


def get_backend(request: Request) -> BackendRpcClient:
    return request.app.state.backend


def get_eligibility_cache(request: Request) -> EligibilityCache:
    return request.app.state.eligibility_cache


def get_notification_queue(request: Request) -> NotificationQueue:
    return request.app.state.notification_queue


def get_channel(request: Request) -> WhatsAppChannel:
    return request.app.state.channel


def get_dispatcher(request: Request) -> NotificationDispatcher:
    return request.app.state.dispatcher


def get_ledger(request: Request) -> FailedDeliveryLedger:
    return request.app.state.ledger


def get_appointment_service(
    backend: Annotated[BackendRpcClient, Depends(get_backend)],
    queue: Annotated[NotificationQueue, Depends(get_notification_queue)],
    clock: Annotated[Clock, Depends(get_clock)],
    request: Request,
) -> AppointmentService:
    """Build the appointment service for one request."""
    return AppointmentService(
        backend,
        queue,
        clock=clock,
        min_notice_hours=request.app.state.settings.booking_min_notice_hours,
    )


def get_booking_orchestrator(
    actor: Annotated[Actor, Depends(get_current_actor)],
    backend: Annotated[BackendRpcClient, Depends(get_backend)],
    eligibility: Annotated[EligibilityCache, Depends(get_eligibility_cache)],
    appointments: Annotated[AppointmentService, Depends(get_appointment_service)],
    queue: Annotated[NotificationQueue, Depends(get_notification_queue)],
) -> BookingOrchestrator:
    """Build a booking flow for the current patient."""
    return BookingOrchestrator(
        patient_id=actor.id,
        eligibility=eligibility,
        availability=AvailabilityQuery(backend),
        appointments=appointments,
        notifier=queue,
    )


# Type aliases for dependency injection
CurrentActor = Annotated[Actor, Depends(get_current_actor)]
StaffActor = Annotated[Actor, Depends(require_staff)]
AdminActor = Annotated[Actor, Depends(require_admin)]
Backend = Annotated[BackendRpcClient, Depends(get_backend)]
Eligibility = Annotated[EligibilityCache, Depends(get_eligibility_cache)]
Appointments = Annotated[AppointmentService, Depends(get_appointment_service)]
Booking = Annotated[BookingOrchestrator, Depends(get_booking_orchestrator)]
Channel = Annotated[WhatsAppChannel, Depends(get_channel)]
Dispatcher = Annotated[NotificationDispatcher, Depends(get_dispatcher)]
Ledger = Annotated[FailedDeliveryLedger, Depends(get_ledger)]
