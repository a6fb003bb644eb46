"""Tests for customer notifications."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from unittest.mock import AsyncMock, MagicMock

from app.core.rescheduling.errors import NotificationDeliveryError
from app.core.rescheduling.models import (
    AvailabilitySlot,
    Contact,
    ReschedulingRequest,
    TenantConfig,
)
from app.core.rescheduling.notifications import (
    DeliveryResult,
    MessageRenderer,
    NotificationRequest,
    NotificationService,
    format_long_time,
    format_short_time,
)
from app.core.rescheduling.tokens import InMemoryTokenStore, ResponseTokenService
from app.core.rescheduling.types import ContactMethod, UrgencyLevel


NOW = datetime(2025, 3, 3, 9, 0, tzinfo=timezone.utc)
SLOT_START = datetime(2025, 3, 4, 14, 0, tzinfo=timezone.utc)


def make_slots(count: int = 5) -> list[AvailabilitySlot]:
    return [
        AvailabilitySlot(
            start_time=SLOT_START + timedelta(hours=i),
            end_time=SLOT_START + timedelta(hours=i, minutes=60),
            duration=60,
        )
        for i in range(count)
    ]


def make_request(
    method: ContactMethod = ContactMethod.EMAIL,
    urgency: UrgencyLevel = UrgencyLevel.NORMAL,
    business_name: str = "Harbour Dental",
    slots=None,
) -> NotificationRequest:
    return NotificationRequest(
        tenant_id="tenant-1",
        contact_id="contact-1",
        rescheduling_request_id="req-12345678-abcd",
        contact_method=method,
        recipient_name="Jane Doe",
        available_slots=slots if slots is not None else make_slots(),
        original_appointment_time=datetime(2025, 3, 3, 10, 0, tzinfo=timezone.utc),
        business_name=business_name,
        urgency_level=urgency,
        recipient_phone="+447700900123",
        recipient_email="jane@example.com",
        timezone="UTC",
    )


@pytest.fixture
def renderer():
    return MessageRenderer(public_url="https://book.example.com/")


@pytest.fixture
def token_service():
    return ResponseTokenService(store=InMemoryTokenStore(), ttl_hours=24, reminder_ttl_hours=12)


@pytest.fixture
def mock_channel():
    channel = MagicMock()
    channel.send = AsyncMock(return_value=DeliveryResult(notification_id="n-1", message="Queued"))
    return channel


@pytest.fixture
def service(token_service, mock_channel, renderer):
    return NotificationService(
        token_service=token_service,
        channel=mock_channel,
        renderer=renderer,
        timeout=1.0,
    )


class TestTimeFormatting:
    """Test human-readable times."""

    def test_long_format(self):
        assert format_long_time(SLOT_START, "UTC") == "Tuesday, March 4, 2025 at 2:00 PM"

    def test_short_format(self):
        assert format_short_time(SLOT_START, "UTC") == "Tue Mar 4 2:00PM"

    def test_converted_to_local_zone(self):
        assert format_short_time(SLOT_START, "Asia/Tokyo") == "Tue Mar 4 11:00PM"


class TestMessageRenderer:
    """Test per-method rendering."""

    def test_email_lists_every_slot(self, renderer):
        content = renderer.render(make_request(), "tok_12345678", expires_in_hours=24)

        assert content.subject == "Reschedule Request - Harbour Dental"
        assert "Dear Jane Doe" in content.body
        assert "5. Tuesday, March 4, 2025 at 6:00 PM (60 minutes)" in content.body
        assert "https://book.example.com/rescheduling/respond/tok_12345678" in content.body
        assert "expires in 24 hours" in content.body

    def test_urgent_prefix(self, renderer):
        content = renderer.render(make_request(urgency=UrgencyLevel.URGENT), "tok", expires_in_hours=24)

        assert content.subject.startswith("URGENT: ")
        assert content.sms_text.startswith("URGENT: ")

    def test_sms_offers_top_three(self, renderer):
        content = renderer.render(make_request(method=ContactMethod.SMS), "tok", expires_in_hours=24)

        assert "3. Tue Mar 4 4:00PM" in content.sms_text
        assert "4." not in content.sms_text
        assert "Reply with number (1,2,3)" in content.sms_text

    def test_sms_length_capped(self, renderer):
        request = make_request(business_name="A Very Long Business Name " * 20)

        content = renderer.render(request, "t" * 70, expires_in_hours=24)

        assert len(content.sms_text) <= MessageRenderer.SMS_MAX_LENGTH
        # The link survives shortening
        assert content.sms_text.endswith("Expires in 24hrs.")

    def test_reminder_label(self, renderer):
        content = renderer.render(make_request(), "tok", expires_in_hours=12, reminder_label="REMINDER #1")

        assert content.subject.startswith("REMINDER #1: ")
        assert content.body.startswith("REMINDER #1: ")
        assert content.voice_script.startswith("This is a reminder call.")
        assert len(content.sms_text) <= MessageRenderer.SMS_MAX_LENGTH

    def test_voice_script(self, renderer):
        content = renderer.render(make_request(), "tok", expires_in_hours=24)

        assert content.voice_script.startswith("Hello Jane Doe, this is Harbour Dental")
        assert "Option 3:" in content.voice_script
        assert "Option 4:" not in content.voice_script


class TestNotificationService:
    """Test dispatch through a channel."""

    @pytest.mark.asyncio
    async def test_send_issues_token(self, service, mock_channel, token_service):
        response = await service.send_rescheduling_notification(make_request(), now=NOW)

        assert response.success
        assert response.status == "sent"
        assert response.notification_id == "n-1"
        assert response.expires_at == NOW + timedelta(hours=24)
        assert (await token_service.validate(response.response_token, NOW)).valid

        message = mock_channel.send.call_args.args[0]
        assert message.method == ContactMethod.EMAIL
        assert message.recipient == "jane@example.com"
        assert message.subject == "Reschedule Request - Harbour Dental"
        assert response.response_token in message.body
        assert message.reference == "req-12345678-abcd"

    @pytest.mark.asyncio
    async def test_sms_uses_phone_without_subject(self, service, mock_channel):
        await service.send_rescheduling_notification(make_request(method=ContactMethod.SMS), now=NOW)

        message = mock_channel.send.call_args.args[0]
        assert message.recipient == "+447700900123"
        assert message.subject is None
        assert len(message.body) <= MessageRenderer.SMS_MAX_LENGTH

    @pytest.mark.asyncio
    async def test_delivery_failure_revokes_token(self, service, mock_channel, token_service):
        mock_channel.send.side_effect = NotificationDeliveryError("gateway rejected", channel="sms")

        response = await service.send_rescheduling_notification(make_request(), now=NOW)

        assert not response.success
        assert response.status == "failed"
        assert "gateway rejected" in response.message
        assert await token_service.pending(now=NOW) == []

    @pytest.mark.asyncio
    async def test_timeout_revokes_token(self, token_service, renderer):
        async def slow_send(message):
            await asyncio.sleep(1)

        channel = MagicMock()
        channel.send = slow_send
        service = NotificationService(token_service, channel, renderer, timeout=0.01)

        response = await service.send_rescheduling_notification(make_request(), now=NOW)

        assert not response.success
        assert "timed out" in response.message
        assert await token_service.pending(now=NOW) == []

    @pytest.mark.asyncio
    async def test_first_reminder(self, service, mock_channel):
        response = await service.send_followup_reminder(make_request(), attempt=1, now=NOW)

        assert response.success
        assert response.expires_at == NOW + timedelta(hours=12)
        message = mock_channel.send.call_args.args[0]
        assert message.subject.startswith("REMINDER #1: ")

    @pytest.mark.asyncio
    async def test_later_reminders_are_final_and_high_priority(self, service, mock_channel):
        await service.send_followup_reminder(make_request(), attempt=2, now=NOW)

        message = mock_channel.send.call_args.args[0]
        assert message.subject == "FINAL REMINDER #2: High Priority: Reschedule Request - Harbour Dental"


class TestNotificationRequestBuild:
    """Test assembly from engine records."""

    def test_build_from_records(self):
        request = ReschedulingRequest(
            tenant_id="tenant-1",
            contact_id="contact-1",
            idempotency_key="k",
            original_appointment_time=NOW,
            available_slots=make_slots(2),
        )
        contact = Contact(id="contact-1", tenant_id="tenant-1", name="Jane", phone="+1555", timezone="America/Chicago")
        config = TenantConfig(tenant_id="tenant-1", business_name="Harbour Dental")

        built = NotificationRequest.build(request, contact, config, ContactMethod.SMS, UrgencyLevel.HIGH)

        assert built.rescheduling_request_id == request.id
        assert built.recipient == "+1555"
        assert built.business_name == "Harbour Dental"
        assert built.timezone == "America/Chicago"
        assert len(built.available_slots) == 2

    def test_default_business_name(self):
        request = ReschedulingRequest(
            tenant_id="tenant-1",
            contact_id="contact-1",
            idempotency_key="k",
            original_appointment_time=NOW,
        )
        contact = Contact(id="contact-1", tenant_id="tenant-1", name="Jane")

        built = NotificationRequest.build(request, contact, None, ContactMethod.VOICE, UrgencyLevel.NORMAL)

        assert built.business_name == "VioConcierge"
        assert built.recipient is None
