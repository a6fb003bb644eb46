"""
Notification channel adapters.

Delivery of rendered messages over email, SMS and voice. Real providers
sit behind an HTTP gateway; without one configured, messages are logged
and reported as sent (development mode).
"""

import logging
from typing import Optional
from uuid import uuid4

import httpx

from app.config import get_settings
from app.core.rescheduling.errors import NotificationDeliveryError
from app.core.rescheduling.notifications import (
    DeliveryResult,
    NotificationChannel,
    OutboundMessage,
)
from app.core.rescheduling.types import ContactMethod

logger = logging.getLogger(__name__)


class LoggingChannel(NotificationChannel):
    """Logs messages instead of sending them."""

    async def send(self, message: OutboundMessage) -> DeliveryResult:
        if not message.recipient:
            raise NotificationDeliveryError(
                f"No {message.method.value} address for recipient",
                channel=message.method.value,
            )

        notification_id = str(uuid4())
        if message.method == ContactMethod.EMAIL:
            logger.info(f"Email to {message.recipient}: {message.subject}")
            detail = f"Email sent to {message.recipient}"
        elif message.method == ContactMethod.SMS:
            logger.info(f"SMS to {message.recipient} ({len(message.body)} chars)")
            detail = f"SMS sent to {message.recipient}"
        else:
            logger.info(f"Voice call queued to {message.recipient}")
            detail = f"Voice call initiated to {message.recipient}"

        logger.debug(f"Notification {notification_id} body: {message.body[:200]}")
        return DeliveryResult(notification_id=notification_id, message=detail)


class HttpGatewayChannel(NotificationChannel):
    """
    Sends through an HTTP messaging gateway.

    POST {gateway_url}/messages/{method}
        {"to", "subject", "body", "tenant_id", "reference"}
    -> {"id": "..."}
    """

    def __init__(self, gateway_url: str, timeout: Optional[float] = None):
        self.gateway_url = gateway_url.rstrip("/")
        self.timeout = timeout if timeout is not None else get_settings().notification_timeout_seconds
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.gateway_url,
                timeout=self.timeout,
            )
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def send(self, message: OutboundMessage) -> DeliveryResult:
        if not message.recipient:
            raise NotificationDeliveryError(
                f"No {message.method.value} address for recipient",
                channel=message.method.value,
            )

        client = await self._get_client()
        try:
            response = await client.post(
                f"/messages/{message.method.value}",
                json={
                    "to": message.recipient,
                    "subject": message.subject,
                    "body": message.body,
                    "tenant_id": message.tenant_id,
                    "reference": message.reference,
                },
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Gateway rejected {message.method.value} to {message.recipient}: {e}")
            raise NotificationDeliveryError(str(e), channel=message.method.value) from e

        return DeliveryResult(
            notification_id=str(data.get("id") or uuid4()),
            message=f"{message.method.value} accepted by gateway",
        )


# Singleton instance
_channel: Optional[NotificationChannel] = None


def get_notification_channel() -> NotificationChannel:
    """Get singleton channel for the configured delivery mode."""
    global _channel
    if _channel is None:
        gateway_url = get_settings().notification_gateway_url
        if gateway_url:
            _channel = HttpGatewayChannel(gateway_url)
        else:
            _channel = LoggingChannel()
    return _channel


async def close_notification_channel() -> None:
    """Close the singleton channel."""
    global _channel
    if _channel is not None:
        await _channel.close()
        _channel = None
