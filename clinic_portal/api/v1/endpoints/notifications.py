"""WhatsApp notification admin endpoints."""

from uuid import UUID

from fastapi import APIRouter, Query, status

from clinic_portal.config import settings
from clinic_portal.dependencies import AdminActor, Channel, Dispatcher, Ledger
from clinic_portal.schemas.notifications import (
    ChannelStatusResponse,
    CustomMessageRequest,
    DeliveryOutcome,
    FailedMessagesResponse,
    RetrySweepSummary,
)

router = APIRouter(prefix="/notifications", tags=["Notifications"])


@router.get(
    "/failed",
    response_model=FailedMessagesResponse,
    status_code=status.HTTP_200_OK,
    summary="List failed messages",
)
async def list_failed_messages(
    admin: AdminActor,
    ledger: Ledger,
    limit: int = Query(50, ge=1, le=100),
) -> FailedMessagesResponse:
    """
    List messages that could not be delivered, newest first.

    Delivered entries are not listed, even if they failed before.

    Args:
        admin: Authenticated admin
        ledger: Failed-delivery ledger
        limit: Maximum number of entries

    Returns:
        Failed entries with failed, retriable and exhausted counts
    """
    items = await ledger.list_failed(limit)
    return FailedMessagesResponse(items=items, stats=ledger.stats(items))


@router.post(
    "/failed/{attempt_id}/retry",
    response_model=DeliveryOutcome,
    status_code=status.HTTP_200_OK,
    summary="Retry a failed message",
)
async def retry_failed_message(
    attempt_id: UUID,
    admin: AdminActor,
    ledger: Ledger,
) -> DeliveryOutcome:
    """
    Manually resend one failed message.

    Allowed even after the automatic retry limit. Returns 503 without
    touching the entry when WhatsApp is not connected.
    """
    return await ledger.retry(attempt_id, automatic=False)


@router.post(
    "/failed/process",
    response_model=RetrySweepSummary,
    status_code=status.HTTP_200_OK,
    summary="Run the automatic retry sweep",
)
async def process_failed_messages(
    admin: AdminActor,
    ledger: Ledger,
    batch_size: int | None = Query(None, ge=1, le=100),
) -> RetrySweepSummary:
    """Retry the oldest retriable failures; meant for a periodic scheduler."""
    return await ledger.process_retries(batch_size or settings.ledger_retry_batch_size)


@router.post(
    "/custom",
    response_model=DeliveryOutcome,
    status_code=status.HTTP_200_OK,
    summary="Send a custom message",
)
async def send_custom_message(
    data: CustomMessageRequest,
    admin: AdminActor,
    dispatcher: Dispatcher,
) -> DeliveryOutcome:
    """Send a free-text WhatsApp message. Failures land in the ledger."""
    return await dispatcher.send_custom(data.phone_number, data.message, data.appointment_id)


@router.get(
    "/channel",
    response_model=ChannelStatusResponse,
    status_code=status.HTTP_200_OK,
    summary="WhatsApp channel status",
)
async def channel_status(admin: AdminActor, channel: Channel) -> ChannelStatusResponse:
    """Check the WhatsApp connection, bypassing the cached instance."""
    instance = await channel.check_connection()
    if instance is None:
        return ChannelStatusResponse(connected=False)
    return ChannelStatusResponse(
        connected=True,
        instance_name=instance.name,
        phone_number=instance.phone_number,
    )
