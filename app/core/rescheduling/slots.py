"""
Slot Generator.

Computes conflict-free candidate appointment windows for a tenant:
1. Walk each candidate date's business hours in fixed steps
2. Pad each candidate with a buffer on both sides
3. Drop candidates that overlap an existing booking or start in the past
4. Rank what remains and keep the best few

Bookings come from the contact's bound calendar provider when one is
configured; otherwise (or when the provider is unreachable) slots are
generated from business hours alone.
"""

import logging
import math
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Iterable, Optional, Sequence
from zoneinfo import ZoneInfo

from app.config import get_settings
from app.core.rescheduling.business_hours import BusinessHoursProfile
from app.core.rescheduling.calendar_client import (
    Booking,
    BookingFilter,
    CalendarProvider,
    get_calendar_providers,
)
from app.core.rescheduling.errors import CalendarProviderError
from app.core.rescheduling.models import AvailabilitySlot, Contact, TenantConfig
from app.core.rescheduling.types import BUSINESS_HOURS_PROVIDER

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class BusyInterval:
    """A half-open time range that cannot be offered."""

    start: datetime
    end: datetime

    def overlaps(self, start: datetime, end: datetime) -> bool:
        """Check if [start, end) intersects this interval."""
        return start < self.end and end > self.start

    @classmethod
    def from_booking(cls, booking: Booking) -> "BusyInterval":
        return cls(start=booking.start_time, end=booking.end_time)


class SlotGenerator:
    """
    Deterministic slot generation and ranking.

    Scoring weights (higher ranks first):
    - provider-sourced slot: +2.0
    - proximity: +1.0 / (1 + days away)
    - same time of day as the original appointment: up to +0.5
    - core hours 10:00-16:00: +0.1
    - before 08:00 or after 18:00: -0.2
    """

    MIN_INTERVAL = 15
    MAX_INTERVAL = 60
    MAX_BUFFER = 15
    BUFFER_RATIO = 0.10

    PROVIDER_WEIGHT = 2.0
    PROXIMITY_WEIGHT = 1.0
    HOUR_MATCH_WEIGHT = 0.5
    CORE_HOURS = (10, 16)
    CORE_HOURS_BOOST = 0.1
    EARLY_HOUR = 8
    LATE_HOUR = 18
    OFF_HOURS_PENALTY = 0.2

    def __init__(
        self,
        interval_minutes: Optional[int] = None,
        buffer_minutes: Optional[int] = None,
        max_slots: Optional[int] = None,
        search_days: Optional[int] = None,
    ):
        """Initialize generator.

        Args:
            interval_minutes: Step between candidate starts (defaults to settings)
            buffer_minutes: Fixed buffer; None derives it from the duration
            max_slots: Maximum slots returned by find (defaults to settings)
            search_days: Days searched when no dates are given (defaults to settings)
        """
        settings = get_settings()
        self.interval_minutes = interval_minutes or settings.slot_interval_minutes
        self.buffer_minutes = buffer_minutes
        self.max_slots = max_slots or settings.max_offered_slots
        self.search_days = search_days or settings.slot_search_days

    def step_for(self, duration: int) -> timedelta:
        """Step between candidate starts for a duration."""
        interval = max(self.MIN_INTERVAL, min(self.interval_minutes, self.MAX_INTERVAL))
        return timedelta(minutes=max(1, min(interval, duration)))

    def buffer_for(self, duration: int) -> timedelta:
        """Padding applied before and after a slot."""
        if self.buffer_minutes is not None:
            return timedelta(minutes=self.buffer_minutes)
        return timedelta(minutes=min(self.MAX_BUFFER, math.ceil(duration * self.BUFFER_RATIO)))

    def default_dates(self, now: datetime, tz_name: str) -> list[date]:
        """The next search_days calendar dates in the tenant's timezone."""
        today = now.astimezone(ZoneInfo(tz_name)).date()
        return [today + timedelta(days=i) for i in range(self.search_days)]

    def generate(
        self,
        profile: BusinessHoursProfile,
        duration: int,
        busy: Iterable[BusyInterval] = (),
        dates: Optional[Sequence[date]] = None,
        now: Optional[datetime] = None,
        provider: str = BUSINESS_HOURS_PROVIDER,
        appointment_type: Optional[str] = None,
    ) -> list[AvailabilitySlot]:
        """Generate unranked candidate slots in chronological order.

        Args:
            profile: Tenant business hours
            duration: Appointment length in minutes
            busy: Existing bookings to avoid
            dates: Candidate dates (defaults to the next search_days)
            now: Reference time; slots starting earlier are dropped
            provider: Provider label stamped on each slot
            appointment_type: Appointment type stamped on each slot

        Returns:
            Slots that fit inside business hours and clear every booking
        """
        if duration <= 0:
            return []

        now = now or _utcnow()
        tz = ZoneInfo(profile.timezone)
        busy = list(busy)
        length = timedelta(minutes=duration)
        step = self.step_for(duration)
        buffer = self.buffer_for(duration)

        if dates is None:
            dates = self.default_dates(now, profile.timezone)

        slots = []
        for day in sorted(set(dates)):
            if not profile.is_open(day):
                continue

            hours = profile.for_date(day)
            day_start = datetime.combine(day, hours.start, tzinfo=tz)
            day_end = datetime.combine(day, hours.end, tzinfo=tz)

            start = day_start
            while start + length + buffer <= day_end:
                end = start + length
                padded_start = start - buffer
                padded_end = end + buffer

                if start >= now and not any(b.overlaps(padded_start, padded_end) for b in busy):
                    slots.append(
                        AvailabilitySlot(
                            start_time=start,
                            end_time=end,
                            duration=duration,
                            appointment_type=appointment_type,
                            provider=provider,
                            timezone=profile.timezone,
                        )
                    )
                start += step

        return slots

    def score(
        self,
        slot: AvailabilitySlot,
        now: datetime,
        tz_name: str,
        original_time: Optional[datetime] = None,
    ) -> float:
        """Composite preference score for a slot."""
        tz = ZoneInfo(tz_name)
        local = slot.start_time.astimezone(tz)
        today = now.astimezone(tz).date()
        score = 0.0

        if slot.is_provider_sourced:
            score += self.PROVIDER_WEIGHT

        days_away = max(0, (local.date() - today).days)
        score += self.PROXIMITY_WEIGHT / (1 + days_away)

        hour = local.hour + local.minute / 60
        if original_time is not None:
            original = original_time.astimezone(tz)
            hour_diff = abs(hour - (original.hour + original.minute / 60))
            score += self.HOUR_MATCH_WEIGHT * max(0.0, 1 - hour_diff / 12)

        if self.CORE_HOURS[0] <= hour < self.CORE_HOURS[1]:
            score += self.CORE_HOURS_BOOST
        if hour < self.EARLY_HOUR or hour > self.LATE_HOUR:
            score -= self.OFF_HOURS_PENALTY

        return score

    def rank(
        self,
        slots: Sequence[AvailabilitySlot],
        now: datetime,
        tz_name: str,
        original_time: Optional[datetime] = None,
    ) -> list[AvailabilitySlot]:
        """Order slots best first; ties go to the earliest start."""
        return sorted(
            slots,
            key=lambda s: (-round(self.score(s, now, tz_name, original_time), 9), s.start_time),
        )


def dates_from_proposals(proposed_times: Sequence[datetime], tz_name: str) -> list[date]:
    """Calendar dates (tenant-local) of customer-proposed times."""
    tz = ZoneInfo(tz_name)
    return sorted({t.astimezone(tz).date() for t in proposed_times})


class AvailabilityFinder:
    """
    Finds ranked slots for a contact.

    Pulls existing bookings from the contact's bound provider, generates
    slots around them, and falls back to business hours when the provider
    is unbound, unreachable, or yields nothing.
    """

    def __init__(
        self,
        generator: Optional[SlotGenerator] = None,
        providers: Optional[dict[str, CalendarProvider]] = None,
    ):
        self._generator = generator
        self._providers = providers

    def _get_generator(self) -> SlotGenerator:
        if self._generator is None:
            self._generator = SlotGenerator()
        return self._generator

    def _get_providers(self) -> dict[str, CalendarProvider]:
        if self._providers is None:
            self._providers = get_calendar_providers()
        return self._providers

    async def find(
        self,
        tenant_config: TenantConfig,
        contact: Contact,
        duration: Optional[int] = None,
        preferred_dates: Optional[Sequence[date]] = None,
        original_time: Optional[datetime] = None,
        existing_bookings: Sequence[Booking] = (),
        now: Optional[datetime] = None,
    ) -> list[AvailabilitySlot]:
        """Find ranked, conflict-free slots.

        Args:
            tenant_config: Tenant hours, timezone and calendar credentials
            contact: Contact being rescheduled (booking source, appointment type)
            duration: Minutes (defaults to contact's duration, then settings)
            preferred_dates: Dates to search (defaults to the next search_days)
            original_time: Original appointment time, for time-of-day ranking
            existing_bookings: Extra bookings to avoid
            now: Reference time

        Returns:
            At most max_slots slots, best first; empty if nothing fits
        """
        generator = self._get_generator()
        now = now or _utcnow()
        duration = duration or contact.appointment_duration or get_settings().default_appointment_duration
        profile = BusinessHoursProfile.from_config(
            tenant_config.business_hours,
            tenant_config.business_type,
            tenant_config.timezone,
        )
        dates = list(preferred_dates) if preferred_dates else generator.default_dates(now, profile.timezone)
        busy = [BusyInterval.from_booking(b) for b in existing_bookings if b.is_active]

        slots: list[AvailabilitySlot] = []
        provider = self._get_providers().get(contact.booking_source.value)
        credential = provider.credential_for(tenant_config) if provider else None

        if provider and credential:
            window = BookingFilter(
                start=datetime.combine(min(dates), datetime.min.time(), tzinfo=ZoneInfo(profile.timezone)),
                end=datetime.combine(max(dates) + timedelta(days=1), datetime.min.time(), tzinfo=ZoneInfo(profile.timezone)),
            )
            try:
                bookings = await provider.list_bookings(credential, window)
                busy.extend(BusyInterval.from_booking(b) for b in bookings if b.is_active)
                slots = generator.generate(
                    profile,
                    duration,
                    busy=busy,
                    dates=dates,
                    now=now,
                    provider=provider.name,
                    appointment_type=contact.appointment_type,
                )
            except CalendarProviderError as e:
                logger.warning(
                    f"Calendar {e.provider} unavailable for tenant {tenant_config.tenant_id}, "
                    f"falling back to business hours: {e}"
                )

        if not slots:
            slots = generator.generate(
                profile,
                duration,
                busy=busy,
                dates=dates,
                now=now,
                appointment_type=contact.appointment_type,
            )

        ranked = generator.rank(slots, now, profile.timezone, original_time)
        logger.debug(f"Found {len(ranked)} candidate slots for contact {contact.id}")
        return ranked[: generator.max_slots]


def find_available_slots(
    profile: BusinessHoursProfile,
    duration: int,
    bookings: Sequence[Booking] = (),
    dates: Optional[Sequence[date]] = None,
    now: Optional[datetime] = None,
    original_time: Optional[datetime] = None,
    max_slots: Optional[int] = None,
) -> list[AvailabilitySlot]:
    """Generate and rank business-hours slots around known bookings."""
    generator = SlotGenerator(max_slots=max_slots)
    now = now or _utcnow()
    slots = generator.generate(
        profile,
        duration,
        busy=[BusyInterval.from_booking(b) for b in bookings if b.is_active],
        dates=dates,
        now=now,
    )
    return generator.rank(slots, now, profile.timezone, original_time)[: generator.max_slots]
