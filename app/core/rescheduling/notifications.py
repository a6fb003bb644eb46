"""
Customer notifications for rescheduling.

Renders the slot offer for each contact method, issues the response token
the customer answers with, and hands the message to a delivery channel.

Content per method:
- email: full letter, every offered slot, response link, expiry note
- sms: top 3 slots and the response link, at most 320 characters
- voice: short spoken script for the calling agent
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo

from app.config import get_settings
from app.core.rescheduling.errors import NotificationDeliveryError
from app.core.rescheduling.models import (
    AvailabilitySlot,
    Contact,
    ReschedulingRequest,
    TenantConfig,
    format_datetime,
)
from app.core.rescheduling.tokens import ResponseTokenService, get_token_service
from app.core.rescheduling.types import ContactMethod, UrgencyLevel

logger = logging.getLogger(__name__)


URGENCY_PREFIXES = {
    UrgencyLevel.URGENT: "URGENT: ",
    UrgencyLevel.HIGH: "High Priority: ",
}


@dataclass
class NotificationRequest:
    """Everything needed to offer new times to one customer."""

    tenant_id: str
    contact_id: str
    rescheduling_request_id: str
    contact_method: ContactMethod
    recipient_name: str
    available_slots: list[AvailabilitySlot]
    original_appointment_time: Optional[datetime]
    business_name: str
    urgency_level: UrgencyLevel = UrgencyLevel.NORMAL
    recipient_phone: Optional[str] = None
    recipient_email: Optional[str] = None
    timezone: str = "UTC"

    @property
    def recipient(self) -> Optional[str]:
        """Address for the chosen method."""
        if self.contact_method == ContactMethod.EMAIL:
            return self.recipient_email
        return self.recipient_phone

    @classmethod
    def build(
        cls,
        request: ReschedulingRequest,
        contact: Contact,
        tenant_config: Optional[TenantConfig],
        contact_method: ContactMethod,
        urgency_level: UrgencyLevel,
    ) -> "NotificationRequest":
        """Assemble from the engine's records."""
        business_name = (
            tenant_config.business_name if tenant_config and tenant_config.business_name
            else get_settings().default_business_name
        )
        return cls(
            tenant_id=request.tenant_id,
            contact_id=contact.id,
            rescheduling_request_id=request.id,
            contact_method=contact_method,
            recipient_name=contact.name,
            available_slots=list(request.available_slots),
            original_appointment_time=request.original_appointment_time,
            business_name=business_name,
            urgency_level=urgency_level,
            recipient_phone=contact.phone or None,
            recipient_email=contact.email,
            timezone=contact.timezone or (tenant_config.timezone if tenant_config else "UTC"),
        )


@dataclass
class NotificationContent:
    """Rendered message variants."""

    subject: str
    body: str
    sms_text: str
    voice_script: str

    def for_method(self, method: ContactMethod) -> str:
        if method == ContactMethod.EMAIL:
            return self.body
        if method == ContactMethod.SMS:
            return self.sms_text
        return self.voice_script


@dataclass
class NotificationResponse:
    """Outcome of dispatching a notification."""

    success: bool
    notification_id: str
    method: str
    status: str  # sent | failed
    response_token: str
    expires_at: datetime
    message: Optional[str] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for API response."""
        return {
            "success": self.success,
            "notification_id": self.notification_id,
            "method": self.method,
            "status": self.status,
            "response_token": self.response_token,
            "expires_at": format_datetime(self.expires_at),
            "message": self.message,
        }


@dataclass
class OutboundMessage:
    """A rendered message addressed to one recipient."""

    method: ContactMethod
    recipient: str
    body: str
    subject: Optional[str] = None
    tenant_id: Optional[str] = None
    reference: Optional[str] = None  # Rescheduling request id


@dataclass
class DeliveryResult:
    """Provider acknowledgement of a send."""

    notification_id: str
    message: str


class NotificationChannel(ABC):
    """Sends rendered messages."""

    @abstractmethod
    async def send(self, message: OutboundMessage) -> DeliveryResult:
        """Deliver a message.

        Raises:
            NotificationDeliveryError: If the message was not accepted
        """

    async def close(self) -> None:
        """Release any held resources."""


def format_long_time(value: datetime, tz_name: str) -> str:
    """e.g. 'Tuesday, March 4, 2025 at 2:00 PM'."""
    local = value.astimezone(ZoneInfo(tz_name))
    hour = local.hour % 12 or 12
    return f"{local:%A, %B} {local.day}, {local.year} at {hour}:{local:%M} {local:%p}"


def format_short_time(value: datetime, tz_name: str) -> str:
    """e.g. 'Tue Mar 4 2:00PM'."""
    local = value.astimezone(ZoneInfo(tz_name))
    hour = local.hour % 12 or 12
    return f"{local:%a %b} {local.day} {hour}:{local:%M}{local:%p}"


class MessageRenderer:
    """Builds per-method message text."""

    SMS_MAX_LENGTH = 320
    SMS_SLOT_COUNT = 3

    def __init__(self, public_url: Optional[str] = None):
        self.public_url = (public_url or get_settings().public_url).rstrip("/")

    def response_url(self, token: str) -> str:
        """Link the customer follows to answer."""
        return f"{self.public_url}/rescheduling/respond/{token}"

    def render(
        self,
        request: NotificationRequest,
        token: str,
        expires_in_hours: int,
        reminder_label: Optional[str] = None,
    ) -> NotificationContent:
        """Render the slot offer for every method.

        Args:
            request: Notification details
            token: Response token embedded in the link
            expires_in_hours: Token lifetime shown to the customer
            reminder_label: e.g. "REMINDER #1"; prefixed when set
        """
        prefix = URGENCY_PREFIXES.get(request.urgency_level, "")
        url = self.response_url(token)
        tz = request.timezone
        original = (
            format_long_time(request.original_appointment_time, tz)
            if request.original_appointment_time else "your upcoming appointment"
        )

        subject = f"{prefix}Reschedule Request - {request.business_name}"

        options = "\n".join(
            f"{i + 1}. {format_long_time(slot.start_time, tz)} ({slot.duration} minutes)"
            for i, slot in enumerate(request.available_slots)
        )
        body = (
            f"Dear {request.recipient_name},\n\n"
            f"{prefix.replace(':', '')}We need to reschedule your appointment originally "
            f"scheduled for {original}.\n\n"
            f"Please choose from these available time slots:\n\n"
            f"{options}\n\n"
            f"To confirm your selection, please visit: {url}\n\n"
            f"Or reply to this message with the number of your preferred slot (1, 2, 3, etc.).\n\n"
            f"If none of these times work, please reply with \"DECLINE\" and we'll find alternative options.\n\n"
            f"This request expires in {expires_in_hours} hours.\n\n"
            f"Best regards,\n{request.business_name}"
        )

        sms_text = self._render_sms(request, prefix, url, expires_in_hours)
        voice_script = self._render_voice(request, original)

        if reminder_label:
            subject = f"{reminder_label}: {subject}"
            body = f"{reminder_label}: This is a reminder about your pending rescheduling request.\n\n{body}"
            sms_text = self._fit_sms(f"{reminder_label}: ", sms_text)
            voice_script = f"This is a reminder call. {voice_script}"

        return NotificationContent(
            subject=subject,
            body=body,
            sms_text=sms_text,
            voice_script=voice_script,
        )

    def _render_sms(
        self,
        request: NotificationRequest,
        prefix: str,
        url: str,
        expires_in_hours: int,
    ) -> str:
        tz = request.timezone
        slots = request.available_slots[: self.SMS_SLOT_COUNT]
        options = "\n".join(
            f"{i + 1}. {format_short_time(slot.start_time, tz)}" for i, slot in enumerate(slots)
        )
        numbers = ",".join(str(i + 1) for i in range(len(slots)))
        header = f"{prefix}{request.business_name}: Reschedule needed."
        tail = f"\nOptions:\n{options}\nReply with number ({numbers}) or visit: {url}\nExpires in {expires_in_hours}hrs."
        return self._fit_sms(header, tail)

    def _fit_sms(self, head: str, tail: str) -> str:
        """Join head and tail, shortening head first to respect the length cap."""
        room = self.SMS_MAX_LENGTH - len(tail)
        if room <= 0:
            return tail[: self.SMS_MAX_LENGTH]
        if len(head) > room:
            head = head[: max(0, room - 3)] + "..."
        return f"{head}{tail}"

    def _render_voice(self, request: NotificationRequest, original: str) -> str:
        tz = request.timezone
        options = " ".join(
            f"Option {i + 1}: {format_long_time(slot.start_time, tz)}."
            for i, slot in enumerate(request.available_slots[: self.SMS_SLOT_COUNT])
        )
        return (
            f"Hello {request.recipient_name}, this is {request.business_name} calling about "
            f"your appointment on {original}. We need to find you a new time. {options} "
            f"Please say the option number you prefer, or say decline and we will follow up."
        )


class NotificationService:
    """
    Sends slot offers and follow-up reminders.

    Each send issues a fresh response token first. If delivery fails the
    token is revoked so no unreachable token stays live.
    """

    def __init__(
        self,
        token_service: Optional[ResponseTokenService] = None,
        channel: Optional[NotificationChannel] = None,
        renderer: Optional[MessageRenderer] = None,
        timeout: Optional[float] = None,
    ):
        """Initialize service.

        Args:
            token_service: Token service (uses singleton if not provided)
            channel: Delivery channel (uses configured channel if not provided)
            renderer: Message renderer
            timeout: Seconds allowed per send (defaults to settings)
        """
        self._token_service = token_service
        self._channel = channel
        self._renderer = renderer
        self.timeout = timeout if timeout is not None else get_settings().notification_timeout_seconds

    def _get_token_service(self) -> ResponseTokenService:
        """Get token service."""
        if self._token_service is None:
            self._token_service = get_token_service()
        return self._token_service

    @property
    def token_service(self) -> ResponseTokenService:
        """Token service used for issued response tokens."""
        return self._get_token_service()

    def _get_channel(self) -> NotificationChannel:
        """Get delivery channel."""
        if self._channel is None:
            from app.infra.notifications import get_notification_channel

            self._channel = get_notification_channel()
        return self._channel

    def _get_renderer(self) -> MessageRenderer:
        """Get renderer."""
        if self._renderer is None:
            self._renderer = MessageRenderer()
        return self._renderer

    async def send_rescheduling_notification(
        self,
        request: NotificationRequest,
        now: Optional[datetime] = None,
    ) -> NotificationResponse:
        """Offer slots to the customer.

        Args:
            request: Notification details
            now: Reference time for token expiry

        Returns:
            NotificationResponse with the issued token
        """
        return await self._dispatch(request, is_reminder=False, reminder_label=None, now=now)

    async def send_followup_reminder(
        self,
        request: NotificationRequest,
        attempt: int,
        now: Optional[datetime] = None,
    ) -> NotificationResponse:
        """Re-send the offer with a shorter-lived token.

        Attempts after the first are labelled final and sent at high urgency.
        """
        final = attempt > 1
        reminder = replace(
            request,
            urgency_level=UrgencyLevel.HIGH if final else request.urgency_level,
        )
        label = f"{'FINAL REMINDER' if final else 'REMINDER'} #{attempt}"
        return await self._dispatch(reminder, is_reminder=True, reminder_label=label, now=now)

    async def _dispatch(
        self,
        request: NotificationRequest,
        is_reminder: bool,
        reminder_label: Optional[str],
        now: Optional[datetime],
    ) -> NotificationResponse:
        tokens = self._get_token_service()
        token_data = await tokens.issue(
            request_id=request.rescheduling_request_id,
            tenant_id=request.tenant_id,
            contact_id=request.contact_id,
            available_slots=request.available_slots,
            is_reminder=is_reminder,
            now=now,
        )
        ttl = tokens.reminder_ttl if is_reminder else tokens.ttl
        content = self._get_renderer().render(
            request,
            token_data.token,
            expires_in_hours=int(ttl.total_seconds() // 3600),
            reminder_label=reminder_label,
        )
        method = request.contact_method

        message = OutboundMessage(
            method=method,
            recipient=request.recipient or "",
            body=content.for_method(method),
            subject=content.subject if method == ContactMethod.EMAIL else None,
            tenant_id=request.tenant_id,
            reference=request.rescheduling_request_id,
        )

        try:
            delivery = await asyncio.wait_for(self._get_channel().send(message), timeout=self.timeout)
        except (NotificationDeliveryError, asyncio.TimeoutError) as e:
            reason = "timed out" if isinstance(e, asyncio.TimeoutError) else str(e)
            logger.error(
                f"Failed to send {method.value} notification for request "
                f"{request.rescheduling_request_id}: {reason}"
            )
            await tokens.revoke(token_data.token)
            return NotificationResponse(
                success=False,
                notification_id="",
                method=method.value,
                status="failed",
                response_token=token_data.token,
                expires_at=token_data.expires_at,
                message=f"Failed to send {'reminder' if is_reminder else 'notification'}: {reason}",
            )

        logger.info(
            f"Sent {method.value} {'reminder' if is_reminder else 'notification'} "
            f"for request {request.rescheduling_request_id}"
        )
        return NotificationResponse(
            success=True,
            notification_id=delivery.notification_id,
            method=method.value,
            status="sent",
            response_token=token_data.token,
            expires_at=token_data.expires_at,
            message=delivery.message,
        )


# Singleton instance
_notification_service: Optional[NotificationService] = None


def get_notification_service() -> NotificationService:
    """Get singleton notification service."""
    global _notification_service
    if _notification_service is None:
        _notification_service = NotificationService()
    return _notification_service
