"""Notification dispatch to patients and providers over WhatsApp."""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from uuid import UUID

import structlog

from clinic_portal.schemas.appointments import ActorRole
from clinic_portal.schemas.notifications import (
    AppointmentNotificationData,
    Audience,
    DeliveryOutcome,
    NotificationEvent,
    WhatsAppInstance,
)
from clinic_portal.services.channel_service import WhatsAppChannel
from clinic_portal.services.delivery_ledger import FailedDeliveryLedger
from clinic_portal.services.notification_routing import recipients_for
from clinic_portal.services.notification_templates import render, template_for

logger = structlog.get_logger(__name__)

NOT_CONNECTED_ERROR = "WhatsApp not connected"
MISSING_PHONE_ERROR = "Recipient has no phone number"


class NotificationDispatcher:
    """
    Sends appointment notifications and records failures in the ledger.

    Every recipient is handled in its own coroutine: a failure for one never
    blocks or cancels the others, and nothing raised while sending escapes
    ``dispatch``. Successful sends leave no ledger entry.
    """

    def __init__(self, channel: WhatsAppChannel, ledger: FailedDeliveryLedger):
        """Initialize dispatcher with the outbound channel and the ledger."""
        self.channel = channel
        self.ledger = ledger

    async def dispatch(
        self,
        event: NotificationEvent,
        data: AppointmentNotificationData,
        actor_role: ActorRole,
        reason: str | None = None,
    ) -> list[DeliveryOutcome]:
        """
        Notify everyone the routing table names for this event and actor.

        Args:
            event: Appointment event
            data: Appointment and contact details
            actor_role: Role of whoever triggered the event
            reason: Cancellation or rejection reason

        Returns:
            One outcome per recipient
        """
        audiences = sorted(recipients_for(event, actor_role), key=lambda a: a.value)
        try:
            instance = await self.channel.ensure_connected()
        except Exception:
            logger.exception("whatsapp_connection_check_failed")
            instance = None

        outcomes = await asyncio.gather(
            *(self._deliver(event, audience, data, instance, reason) for audience in audiences)
        )

        logger.info(
            "notification_dispatched",
            notification_event=event.value,
            appointment_id=str(data.appointment_id),
            actor_role=actor_role.value,
            delivered=sum(1 for outcome in outcomes if outcome.success),
            failed=sum(1 for outcome in outcomes if not outcome.success),
        )
        return list(outcomes)

    async def _deliver(
        self,
        event: NotificationEvent,
        audience: Audience,
        data: AppointmentNotificationData,
        instance: WhatsAppInstance | None,
        reason: str | None,
    ) -> DeliveryOutcome:
        if audience == Audience.PATIENT:
            phone, language = data.patient_phone, data.patient_language
        else:
            phone, language = data.provider_phone, data.provider_language

        template_name = None
        message = ""
        try:
            template = template_for(event, audience)
            template_name = template.value

            if not phone:
                logger.warning(
                    "notification_recipient_without_phone",
                    audience=audience.value,
                    appointment_id=str(data.appointment_id),
                )
                return DeliveryOutcome(
                    audience=audience,
                    template_name=template_name,
                    success=False,
                    error=MISSING_PHONE_ERROR,
                    skipped=True,
                )

            message = render(template, data, language, reason)

            if instance is None:
                error = NOT_CONNECTED_ERROR
                result = None
            else:
                result = await self.channel.send(
                    instance, phone, message, correlation_id=str(data.appointment_id)
                )
                error = None if result.success else result.error
        except Exception as e:
            logger.exception(
                "notification_send_failed",
                audience=audience.value,
                appointment_id=str(data.appointment_id),
            )
            result = None
            error = str(e) or e.__class__.__name__

        if result is not None and result.success:
            return DeliveryOutcome(
                audience=audience,
                phone_number=phone,
                template_name=template_name,
                success=True,
                message_id=result.message_id,
            )

        attempt_id = await self._record(
            phone=phone,
            message=message,
            error=error,
            template_name=template_name,
            appointment_id=data.appointment_id,
            patient_id=data.patient_id,
        )
        return DeliveryOutcome(
            audience=audience,
            phone_number=phone,
            template_name=template_name,
            success=False,
            error=error,
            attempt_id=attempt_id,
        )

    async def _record(
        self,
        phone: str | None,
        message: str,
        error: str | None,
        template_name: str | None,
        appointment_id: UUID | None = None,
        patient_id: UUID | None = None,
    ) -> UUID | None:
        if not phone:
            return None
        try:
            attempt = await self.ledger.record_failure(
                phone_number=phone,
                message=message,
                error=error,
                template_name=template_name,
                appointment_id=appointment_id,
                patient_id=patient_id,
            )
        except Exception:
            logger.exception(
                "delivery_ledger_write_failed",
                template_name=template_name,
                appointment_id=str(appointment_id) if appointment_id else None,
            )
            return None
        return attempt.id

    async def send_custom(
        self,
        phone: str,
        message: str,
        appointment_id: UUID | None = None,
    ) -> DeliveryOutcome:
        """Send a free-text message; a failure is recorded in the ledger."""
        error = None
        result = None
        try:
            instance = await self.channel.ensure_connected()
            if instance is None:
                error = NOT_CONNECTED_ERROR
            else:
                result = await self.channel.send(instance, phone, message)
                error = None if result.success else result.error
        except Exception as e:
            logger.exception("custom_message_send_failed")
            error = str(e) or e.__class__.__name__

        if result is not None and result.success:
            return DeliveryOutcome(
                phone_number=phone,
                template_name=NotificationEvent.CUSTOM.value,
                success=True,
                message_id=result.message_id,
            )

        attempt_id = await self._record(
            phone=phone,
            message=message,
            error=error,
            template_name=NotificationEvent.CUSTOM.value,
            appointment_id=appointment_id,
        )
        return DeliveryOutcome(
            phone_number=phone,
            template_name=NotificationEvent.CUSTOM.value,
            success=False,
            error=error,
            attempt_id=attempt_id,
        )


@dataclass(frozen=True)
class NotificationJob:
    """Queued request to notify about an appointment event."""

    event: NotificationEvent
    appointment_id: UUID
    actor_role: ActorRole
    reason: str | None = None


NotificationDataResolver = Callable[[UUID], Awaitable[AppointmentNotificationData]]


class NotificationQueue:
    """
    Fire-and-forget hand-off between request handlers and the dispatcher.

    Jobs go on a bounded ``asyncio.Queue`` drained by a fixed pool of worker
    tasks. Submitting never waits for delivery, so a booking response does
    not depend on WhatsApp.
    """

    def __init__(
        self,
        dispatcher: NotificationDispatcher,
        resolver: NotificationDataResolver,
        workers: int = 4,
        maxsize: int = 1000,
    ):
        self.dispatcher = dispatcher
        self.resolver = resolver
        self.worker_count = workers
        self._queue: asyncio.Queue[NotificationJob] = asyncio.Queue(maxsize=maxsize)
        self._workers: list[asyncio.Task[None]] = []

    @property
    def running(self) -> bool:
        return bool(self._workers)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        """Start the worker tasks."""
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(index), name=f"notification-worker-{index}")
            for index in range(self.worker_count)
        ]
        logger.info("notification_workers_started", workers=self.worker_count)

    async def stop(self) -> None:
        """Cancel the workers. Queued jobs that were not picked up are dropped."""
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("notification_workers_stopped", pending=self._queue.qsize())

    def submit(
        self,
        event: NotificationEvent,
        appointment_id: UUID,
        actor_role: ActorRole,
        reason: str | None = None,
    ) -> bool:
        """
        Queue a notification without waiting for it.

        Returns:
            False when the queue is full and the job was dropped
        """
        job = NotificationJob(event, appointment_id, actor_role, reason)
        try:
            self._queue.put_nowait(job)
        except asyncio.QueueFull:
            logger.error(
                "notification_queue_full",
                notification_event=event.value,
                appointment_id=str(appointment_id),
            )
            return False
        return True

    async def join(self) -> None:
        """Wait until every queued job has been processed."""
        await self._queue.join()

    async def process(self, job: NotificationJob) -> list[DeliveryOutcome]:
        """Resolve contact details and dispatch one job."""
        data = await self.resolver(job.appointment_id)
        return await self.dispatcher.dispatch(job.event, data, job.actor_role, job.reason)

    async def _worker(self, index: int) -> None:
        while True:
            job = await self._queue.get()
            try:
                await self.process(job)
            except Exception:
                logger.exception(
                    "notification_job_failed",
                    worker=index,
                    notification_event=job.event.value,
                    appointment_id=str(job.appointment_id),
                )
            finally:
                self._queue.task_done()
