"""Evolution API client for WhatsApp messaging."""

import re
from typing import Any

import httpx
import structlog

from clinic_portal.schemas.notifications import SendResult, WhatsAppInstance

logger = structlog.get_logger(__name__)

WHATSAPP_JID_SUFFIX = "@s.whatsapp.net"


def format_phone_number(phone: str, country_code: str = "55") -> str:
    """
    Normalize a phone number to the WhatsApp international format.

    Accepts ``11999999999``, ``(11) 99999-9999``, ``+55 11 99999-9999``
    and similar, returning ``5511999999999``.
    """
    cleaned = re.sub(r"\D", "", phone)
    if cleaned.startswith("0"):
        cleaned = cleaned[1:]
    if not cleaned.startswith(country_code):
        cleaned = country_code + cleaned
    return cleaned


class EvolutionClient:
    """Thin async client over the Evolution API HTTP surface."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 15.0,
        default_country_code: str = "55",
        allow_all: bool = True,
        test_numbers: list[str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.default_country_code = default_country_code
        self.allow_all = allow_all
        self.test_numbers = {
            format_phone_number(number, default_country_code) for number in test_numbers or []
        }
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
            headers={"apikey": api_key, "Content-Type": "application/json"},
        )

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    def is_allowed(self, formatted_phone: str) -> bool:
        """Check a formatted number against the test allow-list."""
        return self.allow_all or formatted_phone in self.test_numbers

    async def get_connected_instance(self) -> WhatsAppInstance | None:
        """
        Find the first instance with an open WhatsApp session.

        Returns:
            Connected instance, or None when nothing is connected or the
            provider cannot be reached
        """
        try:
            response = await self._client.get("/instance/fetchInstances")
            response.raise_for_status()
            instances: list[dict[str, Any]] = response.json() or []
        except (httpx.HTTPError, ValueError) as e:
            logger.error("whatsapp_instances_fetch_failed", error=str(e))
            return None

        connected = next(
            (
                inst
                for inst in instances
                if (inst.get("connectionStatus") == "open" or inst.get("state") == "open")
                and (inst.get("name") or inst.get("instanceName"))
            ),
            None,
        )
        if connected is None:
            logger.warning("whatsapp_no_connected_instance", instances=len(instances))
            return None

        instance = WhatsAppInstance(
            name=connected.get("name") or connected.get("instanceName"),
            state=connected.get("state") or connected.get("connectionStatus"),
        )
        instance.phone_number = await self._get_instance_phone(instance.name)
        return instance

    async def _get_instance_phone(self, instance_name: str) -> str | None:
        try:
            response = await self._client.get(f"/instance/connectionState/{instance_name}")
            response.raise_for_status()
            detail = response.json() or {}
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("whatsapp_connection_state_failed", instance=instance_name, error=str(e))
            return None

        user_id = ((detail.get("instance") or {}).get("user") or {}).get("id")
        if not user_id:
            return None
        return user_id.replace(WHATSAPP_JID_SUFFIX, "")

    async def send_text(
        self,
        instance_name: str,
        phone: str,
        text: str,
        correlation_id: str | None = None,
    ) -> SendResult:
        """
        Send a plain text message. Never raises.

        Args:
            instance_name: Connected instance to send through
            phone: Destination number in any common format
            text: Message body
            correlation_id: Optional id included in logs

        Returns:
            Send result with the provider message id or the error text
        """
        formatted = format_phone_number(phone, self.default_country_code)

        if not self.is_allowed(formatted):
            logger.warning("whatsapp_number_blocked", phone=formatted, correlation_id=correlation_id)
            return SendResult(
                success=False,
                error=f"Number {formatted} is not authorized to receive test messages",
            )

        try:
            response = await self._client.post(
                f"/message/sendText/{instance_name}",
                json={"number": formatted, "text": text},
            )
        except httpx.HTTPError as e:
            logger.error(
                "whatsapp_send_error",
                phone=formatted,
                correlation_id=correlation_id,
                error=str(e),
            )
            return SendResult(success=False, error=str(e) or e.__class__.__name__)

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        if response.is_error:
            error = data.get("message") or f"Evolution API returned HTTP {response.status_code}"
            if isinstance(error, list):
                error = "; ".join(str(item) for item in error)
            logger.error(
                "whatsapp_send_rejected",
                phone=formatted,
                correlation_id=correlation_id,
                status_code=response.status_code,
                error=error,
            )
            return SendResult(success=False, error=str(error))

        message_id = (data.get("key") or {}).get("id") or data.get("messageId") or data.get("id")
        logger.info(
            "whatsapp_message_sent",
            phone=formatted,
            correlation_id=correlation_id,
            message_id=message_id,
        )
        return SendResult(success=True, message_id=message_id)
