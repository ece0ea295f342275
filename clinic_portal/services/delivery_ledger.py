"""Failed-delivery ledger: durable record of undelivered WhatsApp messages."""

from datetime import datetime, timedelta
from typing import Any, Protocol
from uuid import UUID

import structlog
from sqlalchemy import insert, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clinic_portal.core.clock import Clock, utc_now
from clinic_portal.core.exceptions import (
    AppException,
    ChannelUnavailableException,
    NotFoundException,
    RetryExhaustedException,
    ValidationException,
)
from clinic_portal.models.message_logs import message_logs
from clinic_portal.schemas.notifications import (
    MAX_AUTOMATIC_RETRIES,
    DeliveryOutcome,
    FailedMessagesStats,
    MessageStatus,
    NotificationAttempt,
    RetrySweepSummary,
    SendResult,
    WhatsAppInstance,
)
from clinic_portal.services.channel_service import WhatsAppChannel

logger = structlog.get_logger(__name__)

MAX_LIST_LIMIT = 100


class MessageLogRepository(Protocol):
    """Storage for ledger entries."""

    async def add(self, values: dict[str, Any]) -> NotificationAttempt: ...

    async def get(self, attempt_id: UUID) -> NotificationAttempt | None: ...

    async def list_failed(
        self,
        limit: int,
        *,
        newest_first: bool = True,
        max_retry_count: int | None = None,
        retried_before: datetime | None = None,
    ) -> list[NotificationAttempt]: ...

    async def record_retry(
        self,
        attempt_id: UUID,
        *,
        delivered: bool,
        error: str | None,
        at: datetime,
    ) -> NotificationAttempt | None: ...


class SqlMessageLogRepository:
    """Ledger storage in the ``message_logs`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        """Initialize repository with an async session factory."""
        self.session_factory = session_factory

    async def add(self, values: dict[str, Any]) -> NotificationAttempt:
        """Insert an entry and return it as stored."""
        stmt = insert(message_logs).values(**values).returning(message_logs)
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()

        row = result.fetchone()
        return NotificationAttempt.model_validate(dict(row._mapping))

    async def get(self, attempt_id: UUID) -> NotificationAttempt | None:
        """Get an entry by id."""
        stmt = select(message_logs).where(message_logs.c.id == attempt_id)
        async with self.session_factory() as session:
            result = await session.execute(stmt)

        row = result.fetchone()
        if not row:
            return None
        return NotificationAttempt.model_validate(dict(row._mapping))

    async def list_failed(
        self,
        limit: int,
        *,
        newest_first: bool = True,
        max_retry_count: int | None = None,
        retried_before: datetime | None = None,
    ) -> list[NotificationAttempt]:
        """
        List entries still marked failed.

        Args:
            limit: Maximum number of entries
            newest_first: Order by creation time descending
            max_retry_count: Only entries retried fewer times than this
            retried_before: Only entries never retried or last retried before this
        """
        stmt = select(message_logs).where(message_logs.c.status == MessageStatus.FAILED.value)

        if max_retry_count is not None:
            stmt = stmt.where(message_logs.c.retry_count < max_retry_count)
        if retried_before is not None:
            stmt = stmt.where(
                or_(
                    message_logs.c.last_retry_at.is_(None),
                    message_logs.c.last_retry_at < retried_before,
                )
            )

        order = message_logs.c.created_at.desc() if newest_first else message_logs.c.created_at.asc()
        stmt = stmt.order_by(order).limit(limit)

        async with self.session_factory() as session:
            result = await session.execute(stmt)

        return [NotificationAttempt.model_validate(dict(row._mapping)) for row in result.fetchall()]

    async def record_retry(
        self,
        attempt_id: UUID,
        *,
        delivered: bool,
        error: str | None,
        at: datetime,
    ) -> NotificationAttempt | None:
        """Record one retry; the counter is incremented in SQL."""
        values: dict[str, Any] = {
            "retry_count": message_logs.c.retry_count + 1,
            "last_retry_at": at,
        }
        if delivered:
            values.update(status=MessageStatus.DELIVERED.value, error=None, delivered_at=at)
        else:
            values["error"] = error

        stmt = (
            update(message_logs)
            .where(message_logs.c.id == attempt_id)
            .values(**values)
            .returning(message_logs)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()

        row = result.fetchone()
        if not row:
            return None
        return NotificationAttempt.model_validate(dict(row._mapping))


class FailedDeliveryLedger:
    """
    Records failed deliveries and retries them on request.

    Entries start with ``retry_count = 0`` and status failed. Each retry
    increments the counter exactly once. A successful retry marks the entry
    delivered, which drops it from the failed listing; nothing is deleted.

    Manual retries are allowed for any failed entry. The automatic sweep
    skips entries that reached ``max_retries``.
    """

    def __init__(
        self,
        repository: MessageLogRepository,
        channel: WhatsAppChannel,
        clock: Clock = utc_now,
        max_retries: int = MAX_AUTOMATIC_RETRIES,
        retry_delay_minutes: int = 5,
    ):
        self.repository = repository
        self.channel = channel
        self.clock = clock
        self.max_retries = max_retries
        self.retry_delay = timedelta(minutes=retry_delay_minutes)

    async def record_failure(
        self,
        phone_number: str,
        message: str,
        error: str | None,
        template_name: str | None = None,
        appointment_id: UUID | None = None,
        patient_id: UUID | None = None,
    ) -> NotificationAttempt:
        """Create a ledger entry for a message that was not delivered."""
        attempt = await self.repository.add(
            {
                "phone_number": phone_number,
                "message": message,
                "template_name": template_name,
                "appointment_id": appointment_id,
                "patient_id": patient_id,
                "error": error,
                "retry_count": 0,
                "status": MessageStatus.FAILED.value,
                "created_at": self.clock(),
            }
        )
        logger.info(
            "delivery_failure_recorded",
            attempt_id=str(attempt.id),
            template_name=template_name,
            appointment_id=str(appointment_id) if appointment_id else None,
            error=error,
        )
        return attempt

    async def list_failed(self, limit: int = 50) -> list[NotificationAttempt]:
        """List failed entries, newest first."""
        if not 1 <= limit <= MAX_LIST_LIMIT:
            raise ValidationException(f"limit must be between 1 and {MAX_LIST_LIMIT}")
        return await self.repository.list_failed(limit, newest_first=True)

    def stats(self, items: list[NotificationAttempt]) -> FailedMessagesStats:
        """Count failed, retriable and exhausted entries in a listing."""
        failed = [item for item in items if item.status == MessageStatus.FAILED]
        exhausted = sum(1 for item in failed if item.retry_count >= self.max_retries)
        return FailedMessagesStats(
            failed=len(failed),
            retriable=len(failed) - exhausted,
            exhausted=exhausted,
        )

    async def retry(
        self,
        attempt_id: UUID,
        automatic: bool = False,
        instance: WhatsAppInstance | None = None,
    ) -> DeliveryOutcome:
        """
        Retry sending one ledger entry.

        Args:
            attempt_id: Ledger entry id
            automatic: Called from the sweep rather than by an operator
            instance: Instance the caller has just confirmed as connected;
                when omitted the provider is asked again, never the cache

        Returns:
            Outcome of the resend; a delivered entry is returned as a skipped success

        Raises:
            NotFoundException: Unknown entry
            RetryExhaustedException: Automatic retry of an exhausted entry
            ChannelUnavailableException: No connected instance; entry untouched
        """
        attempt = await self.repository.get(attempt_id)
        if attempt is None:
            raise NotFoundException("Message not found")

        if attempt.status == MessageStatus.DELIVERED:
            return DeliveryOutcome(
                phone_number=attempt.phone_number,
                template_name=attempt.template_name,
                success=True,
                attempt_id=attempt.id,
                skipped=True,
            )

        if automatic and attempt.retry_count >= self.max_retries:
            raise RetryExhaustedException()

        if instance is None:
            instance = await self.channel.check_connection()
        if instance is None:
            raise ChannelUnavailableException()

        try:
            result = await self.channel.send(
                instance,
                attempt.phone_number,
                attempt.message,
                correlation_id=str(attempt.id),
            )
        except Exception as e:
            result = SendResult(success=False, error=str(e) or e.__class__.__name__)

        updated = await self.repository.record_retry(
            attempt.id,
            delivered=result.success,
            error=None if result.success else result.error,
            at=self.clock(),
        )
        if updated is None:
            raise NotFoundException("Message not found")

        logger.info(
            "delivery_retried",
            attempt_id=str(attempt.id),
            automatic=automatic,
            success=result.success,
            retry_count=updated.retry_count,
        )
        return DeliveryOutcome(
            phone_number=updated.phone_number,
            template_name=updated.template_name,
            success=result.success,
            message_id=result.message_id,
            error=result.error,
            attempt_id=updated.id,
        )

    async def process_retries(self, batch_size: int = 10) -> RetrySweepSummary:
        """
        Automatic retry sweep over the oldest retriable entries.

        Skips the whole cycle when no instance is connected. Entries retried
        within the retry delay are left for a later sweep.
        """
        instance = await self.channel.check_connection()
        if instance is None:
            logger.warning("delivery_retry_sweep_skipped", reason="whatsapp_not_connected")
            return RetrySweepSummary(skipped_reason="WhatsApp not connected")

        candidates = await self.repository.list_failed(
            batch_size,
            newest_first=False,
            max_retry_count=self.max_retries,
            retried_before=self.clock() - self.retry_delay,
        )

        summary = RetrySweepSummary()
        for attempt in candidates:
            try:
                outcome = await self.retry(attempt.id, automatic=True, instance=instance)
            except AppException as e:
                summary.errors += 1
                logger.error("delivery_retry_error", attempt_id=str(attempt.id), error=e.message)
                continue

            summary.retried += 1
            if outcome.success:
                summary.succeeded += 1
            else:
                summary.failed += 1

        logger.info("delivery_retry_sweep_completed", **summary.model_dump())
        return summary
