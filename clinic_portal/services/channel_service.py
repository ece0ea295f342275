"""Outbound WhatsApp channel with a cached connection check."""

from datetime import datetime, timedelta

import structlog

from clinic_portal.core.clock import Clock, utc_now
from clinic_portal.core.evolution_client import EvolutionClient
from clinic_portal.schemas.notifications import SendResult, WhatsAppInstance

logger = structlog.get_logger(__name__)


class WhatsAppChannel:
    """Connected-instance lookup and sending through the Evolution API."""

    def __init__(
        self,
        client: EvolutionClient,
        clock: Clock = utc_now,
        cache_ttl_seconds: int = 60,
    ):
        self.client = client
        self.clock = clock
        self.cache_ttl = timedelta(seconds=cache_ttl_seconds)
        self._instance: WhatsAppInstance | None = None
        self._checked_at: datetime | None = None

    def _cached(self) -> WhatsAppInstance | None:
        if self._instance is None or self._checked_at is None:
            return None
        if self.clock() - self._checked_at >= self.cache_ttl:
            return None
        return self._instance

    async def check_connection(self) -> WhatsAppInstance | None:
        """Query the provider once and refresh the cache on success."""
        instance = await self.client.get_connected_instance()
        if instance is not None:
            self._instance = instance
            self._checked_at = self.clock()
        else:
            self.invalidate()
        return instance

    async def ensure_connected(self) -> WhatsAppInstance | None:
        """
        Get a connected instance.

        Uses the cached instance while fresh. Otherwise checks the provider,
        and re-checks exactly once more when the first check finds nothing.

        Returns:
            Connected instance, or None when the channel is down
        """
        cached = self._cached()
        if cached is not None:
            return cached

        instance = await self.check_connection()
        if instance is None:
            logger.info("whatsapp_connection_recheck")
            instance = await self.check_connection()

        if instance is None:
            logger.warning("whatsapp_not_connected")
        return instance

    def invalidate(self) -> None:
        """Forget the cached instance."""
        self._instance = None
        self._checked_at = None

    async def send(
        self,
        instance: WhatsAppInstance,
        phone: str,
        text: str,
        correlation_id: str | None = None,
    ) -> SendResult:
        """
        Send a text message through a connected instance.

        A failed send drops the cached instance, so the next connection
        check goes back to the provider.
        """
        try:
            result = await self.client.send_text(instance.name, phone, text, correlation_id)
        except Exception:
            self.invalidate()
            raise
        if not result.success:
            self.invalidate()
        return result
