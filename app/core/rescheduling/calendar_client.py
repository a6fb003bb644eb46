"""
HTTP clients for external calendar providers.

Two providers are supported:
- Cal.com (REST booking API): list bookings, create bookings
- Calendly (scheduling-link API): list scheduled events only; new events
  are created by the invitee through Calendly itself

The engine talks to both through the CalendarProvider interface and never
branches on which one it has.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx

from app.config import get_settings
from app.core.rescheduling.errors import CalendarProviderError
from app.core.rescheduling.models import (
    AvailabilitySlot,
    Contact,
    TenantConfig,
    parse_datetime,
)
from app.core.rescheduling.types import BookingSource

logger = logging.getLogger(__name__)


@dataclass
class Booking:
    """An existing booking/event on an external calendar."""

    id: str
    start_time: datetime
    end_time: datetime
    status: str = "accepted"
    title: Optional[str] = None

    @property
    def is_active(self) -> bool:
        """Check if the booking still occupies its time."""
        return self.status.lower() not in {"cancelled", "canceled", "rejected"}


@dataclass
class BookingResult:
    """Result of a booking attempt."""

    success: bool
    booking_id: Optional[str] = None
    message: Optional[str] = None
    error_code: Optional[str] = None


@dataclass
class CalendarCredential:
    """Credentials and scoping for one tenant's calendar account."""

    token: str
    event_type_id: Optional[int] = None
    organization: Optional[str] = None
    user: Optional[str] = None


@dataclass
class BookingFilter:
    """Window of bookings to list."""

    start: Optional[datetime] = None
    end: Optional[datetime] = None


@dataclass
class Attendee:
    """Person the new booking is for."""

    name: str
    email: str
    timezone: str = "UTC"


class CalendarProvider(ABC):
    """Interface for an external calendar."""

    name: str = ""
    supports_booking_creation: bool = True

    def __init__(self, base_url: str, timeout: Optional[float] = None):
        """Initialize client.

        Args:
            base_url: Provider API base URL
            timeout: Request timeout in seconds (defaults to settings)
        """
        self.base_url = base_url
        self.timeout = timeout if timeout is not None else get_settings().calendar_timeout_seconds
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
            )
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    @abstractmethod
    def credential_for(self, tenant_config: TenantConfig) -> Optional[CalendarCredential]:
        """Extract this provider's credentials from tenant config, if any."""

    @abstractmethod
    async def list_bookings(
        self,
        credential: CalendarCredential,
        booking_filter: Optional[BookingFilter] = None,
    ) -> list[Booking]:
        """List existing bookings.

        Raises:
            CalendarProviderError: If the provider cannot be reached or
                returns an error
        """

    @abstractmethod
    async def create_booking(
        self,
        credential: CalendarCredential,
        slot: AvailabilitySlot,
        attendee: Attendee,
    ) -> BookingResult:
        """Book a slot for an attendee."""

    def _error(self, message: str, exc: Exception) -> CalendarProviderError:
        status_code = None
        if isinstance(exc, httpx.HTTPStatusError):
            status_code = exc.response.status_code
        logger.error(f"{self.name} {message}: {exc}")
        return CalendarProviderError(f"{message}: {exc}", provider=self.name, status_code=status_code)


class CalComClient(CalendarProvider):
    """
    Cal.com REST client.

    Endpoints used:
    - GET /bookings - List bookings (optionally by event type)
    - POST /bookings - Create booking
    """

    name = "cal.com"
    supports_booking_creation = True

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None):
        super().__init__(base_url or get_settings().cal_com_base_url, timeout)

    def credential_for(self, tenant_config: TenantConfig) -> Optional[CalendarCredential]:
        if not tenant_config.cal_api_key:
            return None
        return CalendarCredential(
            token=tenant_config.cal_api_key,
            event_type_id=tenant_config.cal_event_type_id,
        )

    def _headers(self, credential: CalendarCredential) -> dict:
        return {
            "Authorization": f"Bearer {credential.token}",
            "Content-Type": "application/json",
        }

    async def list_bookings(
        self,
        credential: CalendarCredential,
        booking_filter: Optional[BookingFilter] = None,
    ) -> list[Booking]:
        client = await self._get_client()

        params: dict = {}
        if credential.event_type_id:
            params["eventTypeId"] = str(credential.event_type_id)

        try:
            response = await client.get(
                "/bookings",
                params=params,
                headers=self._headers(credential),
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise self._error("Failed to list bookings", e) from e

        if not isinstance(data, dict):
            raise self._error("Failed to list bookings", ValueError("response is not a JSON object"))

        bookings = []
        for item in data.get("bookings") or []:
            start, end = _booking_times(item, "startTime", "endTime")
            if start is None or end is None:
                logger.warning(f"Skipping cal.com booking with unusable times: {item!r:.200}")
                continue
            bookings.append(
                Booking(
                    id=str(item.get("uid") or item.get("id", "")),
                    start_time=start,
                    end_time=end,
                    status=str(item.get("status", "ACCEPTED")).lower(),
                    title=item.get("title"),
                )
            )

        return _within(bookings, booking_filter)

    async def create_booking(
        self,
        credential: CalendarCredential,
        slot: AvailabilitySlot,
        attendee: Attendee,
    ) -> BookingResult:
        client = await self._get_client()

        payload = {
            "eventTypeId": credential.event_type_id or 1,
            "start": slot.start_time.isoformat(),
            "end": slot.end_time.isoformat(),
            "attendee": {
                "name": attendee.name,
                "email": attendee.email,
                "timeZone": attendee.timezone,
            },
        }

        try:
            response = await client.post(
                "/bookings",
                json=payload,
                headers=self._headers(credential),
            )
        except httpx.HTTPError as e:
            logger.error(f"Failed to create cal.com booking: {e}")
            return BookingResult(
                success=False,
                error_code="connection_error",
                message="Unable to connect to calendar provider",
            )

        if response.status_code in (200, 201):
            try:
                body = response.json()
            except ValueError as e:
                logger.error(f"cal.com returned an unreadable booking response: {e}")
                return BookingResult(
                    success=False,
                    error_code="invalid_response",
                    message="Calendar provider returned an unreadable response",
                )
            booking = (body.get("booking") if isinstance(body, dict) else None) or {}
            return BookingResult(
                success=True,
                booking_id=str(booking.get("uid") or booking.get("id", "")) or None,
                message="Booking created",
            )

        logger.error(f"cal.com rejected booking: {response.status_code} {response.text}")
        return BookingResult(
            success=False,
            error_code=f"http_{response.status_code}",
            message=f"Calendar provider returned {response.status_code}",
        )


class CalendlyClient(CalendarProvider):
    """
    Calendly REST client.

    Endpoints used:
    - GET /scheduled_events - List scheduled events for a user/organization

    Calendly has no API for creating an event on the invitee's behalf, so
    supports_booking_creation is False and the engine records the calendar
    change as handled outside the system.
    """

    name = "calendly"
    supports_booking_creation = False

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None):
        super().__init__(base_url or get_settings().calendly_base_url, timeout)

    def credential_for(self, tenant_config: TenantConfig) -> Optional[CalendarCredential]:
        if not tenant_config.calendly_access_token:
            return None
        return CalendarCredential(
            token=tenant_config.calendly_access_token,
            organization=tenant_config.calendly_organization,
            user=tenant_config.calendly_user,
        )

    async def list_bookings(
        self,
        credential: CalendarCredential,
        booking_filter: Optional[BookingFilter] = None,
    ) -> list[Booking]:
        client = await self._get_client()

        params: dict = {"status": "active", "count": "100"}
        if credential.organization:
            params["organization"] = credential.organization
        if credential.user:
            params["user"] = credential.user
        if booking_filter and booking_filter.start:
            params["min_start_time"] = booking_filter.start.isoformat()
        if booking_filter and booking_filter.end:
            params["max_start_time"] = booking_filter.end.isoformat()

        try:
            response = await client.get(
                "/scheduled_events",
                params=params,
                headers={"Authorization": f"Bearer {credential.token}"},
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise self._error("Failed to list scheduled events", e) from e

        if not isinstance(data, dict):
            raise self._error("Failed to list scheduled events", ValueError("response is not a JSON object"))

        bookings = []
        for item in data.get("collection") or []:
            start, end = _booking_times(item, "start_time", "end_time")
            if start is None or end is None:
                logger.warning(f"Skipping Calendly event with unusable times: {item!r:.200}")
                continue
            bookings.append(
                Booking(
                    id=str(item.get("uri", "")).rstrip("/").split("/")[-1],
                    start_time=start,
                    end_time=end,
                    status=str(item.get("status", "active")),
                    title=item.get("name"),
                )
            )

        return _within(bookings, booking_filter)

    async def create_booking(
        self,
        credential: CalendarCredential,
        slot: AvailabilitySlot,
        attendee: Attendee,
    ) -> BookingResult:
        return BookingResult(
            success=False,
            error_code="not_supported",
            message="Calendly events are rebooked by the invitee",
        )


def _provider_time(value) -> Optional[datetime]:
    """Parse a provider timestamp. Naive values are UTC; unparseable ones are None."""
    try:
        parsed = parse_datetime(value)
    except (TypeError, ValueError):
        return None
    if parsed is not None and parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _booking_times(item, start_key: str, end_key: str) -> tuple[Optional[datetime], Optional[datetime]]:
    if not isinstance(item, dict):
        return None, None
    start = _provider_time(item.get(start_key))
    end = _provider_time(item.get(end_key))
    if start is not None and end is not None and end <= start:
        return None, None
    return start, end


def _within(bookings: list[Booking], booking_filter: Optional[BookingFilter]) -> list[Booking]:
    """Keep bookings that intersect the filter window."""
    if booking_filter is None:
        return bookings
    result = []
    for booking in bookings:
        if booking_filter.start and booking.end_time <= booking_filter.start:
            continue
        if booking_filter.end and booking.start_time >= booking_filter.end:
            continue
        result.append(booking)
    return result


def build_attendee(contact: Contact) -> Attendee:
    """Attendee details for a contact's new booking."""
    return Attendee(
        name=contact.name,
        email=contact.email or "contact@example.com",
        timezone=contact.timezone or "UTC",
    )


def slot_for_time(start: datetime, duration_minutes: int, provider: str) -> AvailabilitySlot:
    """Build a slot for an arbitrary selected start time."""
    return AvailabilitySlot(
        start_time=start,
        end_time=start + timedelta(minutes=duration_minutes),
        duration=duration_minutes,
        provider=provider,
    )


# Singleton registry
_providers: Optional[dict[str, CalendarProvider]] = None


def get_calendar_providers() -> dict[str, CalendarProvider]:
    """Get singleton provider registry keyed by booking source."""
    global _providers
    if _providers is None:
        _providers = {
            BookingSource.CALCOM.value: CalComClient(),
            BookingSource.CALENDLY.value: CalendlyClient(),
        }
    return _providers


async def close_calendar_providers() -> None:
    """Close all provider HTTP clients."""
    if _providers:
        for provider in _providers.values():
            await provider.close()
