"""Tests for notification channel adapters."""

import httpx
import pytest
from unittest.mock import AsyncMock, MagicMock

from app.core.rescheduling.errors import NotificationDeliveryError
from app.core.rescheduling.notifications import OutboundMessage
from app.core.rescheduling.types import ContactMethod
from app.infra.notifications import HttpGatewayChannel, LoggingChannel


def make_message(method: ContactMethod = ContactMethod.SMS, recipient: str = "+447700900123") -> OutboundMessage:
    return OutboundMessage(
        method=method,
        recipient=recipient,
        body="Reply with number (1,2,3)",
        tenant_id="tenant-1",
        reference="req-1",
    )


class TestLoggingChannel:
    """Test the development channel."""

    @pytest.mark.asyncio
    async def test_sms(self):
        result = await LoggingChannel().send(make_message())

        assert result.message == "SMS sent to +447700900123"
        assert result.notification_id

    @pytest.mark.asyncio
    async def test_voice(self):
        result = await LoggingChannel().send(make_message(ContactMethod.VOICE))

        assert result.message.startswith("Voice call initiated")

    @pytest.mark.asyncio
    async def test_missing_recipient(self):
        with pytest.raises(NotificationDeliveryError) as exc_info:
            await LoggingChannel().send(make_message(ContactMethod.EMAIL, recipient=""))

        assert exc_info.value.channel == "email"


class TestHttpGatewayChannel:
    """Test HttpGatewayChannel."""

    @pytest.fixture
    def channel(self):
        return HttpGatewayChannel("http://gateway.test/", timeout=5.0)

    @pytest.mark.asyncio
    async def test_send(self, channel):
        mock_response = MagicMock()
        mock_response.raise_for_status = MagicMock()
        mock_response.json.return_value = {"id": "msg-42"}
        mock_client = AsyncMock()
        mock_client.post = AsyncMock(return_value=mock_response)
        channel._client = mock_client

        result = await channel.send(make_message())

        assert result.notification_id == "msg-42"
        path = mock_client.post.call_args.args[0]
        payload = mock_client.post.call_args.kwargs["json"]
        assert path == "/messages/sms"
        assert payload["to"] == "+447700900123"
        assert payload["reference"] == "req-1"

    @pytest.mark.asyncio
    async def test_gateway_failure(self, channel):
        mock_client = AsyncMock()
        mock_client.post = AsyncMock(side_effect=httpx.ConnectError("refused"))
        channel._client = mock_client

        with pytest.raises(NotificationDeliveryError):
            await channel.send(make_message())

    @pytest.mark.asyncio
    async def test_close(self, channel):
        mock_client = AsyncMock()
        mock_client.aclose = AsyncMock()
        channel._client = mock_client

        await channel.close()

        mock_client.aclose.assert_called_once()
        assert channel._client is None
