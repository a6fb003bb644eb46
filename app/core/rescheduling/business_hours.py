"""
Business-hours profiles.

A profile says, for each weekday, whether the business takes appointments
and between which local times. Defaults come from the tenant's business
category; a tenant's own configuration overrides individual days.

Config format (tenant ``business_hours``):
    {
        "monday": {"enabled": true, "start": "09:00", "end": "17:00"},
        "saturday": {"enabled": false},
        ...
    }
"""

import logging
from dataclasses import dataclass
from datetime import date, time
from typing import Optional

logger = logging.getLogger(__name__)


WEEKDAY_NAMES = [
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
    "sunday",
]


@dataclass(frozen=True)
class DayHours:
    """Opening window for one weekday."""

    enabled: bool
    start: time = time(9, 0)
    end: time = time(17, 0)

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "enabled": self.enabled,
            "start": self.start.strftime("%H:%M"),
            "end": self.end.strftime("%H:%M"),
        }


def _parse_time(value: str) -> time:
    """Parse "HH:MM" into a time."""
    hour, minute = value.split(":")[:2]
    return time(int(hour), int(minute))


def _week(
    weekdays: tuple[str, str],
    saturday: Optional[tuple[str, str]] = None,
    sunday: Optional[tuple[str, str]] = None,
) -> dict[int, DayHours]:
    """Build a seven-day table from weekday/weekend windows."""
    days = {
        i: DayHours(True, _parse_time(weekdays[0]), _parse_time(weekdays[1]))
        for i in range(5)
    }
    days[5] = (
        DayHours(True, _parse_time(saturday[0]), _parse_time(saturday[1]))
        if saturday else DayHours(False)
    )
    days[6] = (
        DayHours(True, _parse_time(sunday[0]), _parse_time(sunday[1]))
        if sunday else DayHours(False)
    )
    return days


# Default hours by business category
CATEGORY_DEFAULTS: dict[str, dict[int, DayHours]] = {
    "professional": _week(("09:00", "17:00")),
    "medical": _week(("09:00", "17:00")),
    "dental": _week(("09:00", "17:00")),
    "salon": _week(("09:00", "20:00"), ("09:00", "18:00"), ("10:00", "16:00")),
    "beauty": _week(("09:00", "20:00"), ("09:00", "18:00"), ("10:00", "16:00")),
    "spa": _week(("09:00", "20:00"), ("09:00", "18:00"), ("10:00", "16:00")),
    "fitness": _week(("06:00", "21:00"), ("06:00", "21:00"), ("06:00", "21:00")),
    "retail": _week(("09:00", "18:00"), ("09:00", "18:00")),
}

DEFAULT_CATEGORY = "professional"


@dataclass(frozen=True)
class BusinessHoursProfile:
    """Weekly opening hours in a tenant's local timezone."""

    days: dict[int, DayHours]
    timezone: str = "Europe/London"

    def for_date(self, day: date) -> DayHours:
        """Get the window for a calendar date."""
        return self.days.get(day.weekday(), DayHours(False))

    def is_open(self, day: date) -> bool:
        """Check if appointments can be taken on a date."""
        hours = self.for_date(day)
        return hours.enabled and hours.start < hours.end

    def to_dict(self) -> dict:
        """Convert to config-style dictionary."""
        return {WEEKDAY_NAMES[i]: self.days[i].to_dict() for i in sorted(self.days)}

    @classmethod
    def for_category(
        cls,
        business_type: Optional[str],
        timezone: str = "Europe/London",
    ) -> "BusinessHoursProfile":
        """Default profile for a business category."""
        key = (business_type or DEFAULT_CATEGORY).strip().lower()
        days = CATEGORY_DEFAULTS.get(key)
        if days is None:
            logger.debug(f"No hours defaults for category '{key}', using {DEFAULT_CATEGORY}")
            days = CATEGORY_DEFAULTS[DEFAULT_CATEGORY]
        return cls(days=dict(days), timezone=timezone)

    @classmethod
    def from_config(
        cls,
        business_hours: Optional[dict],
        business_type: Optional[str] = None,
        timezone: str = "Europe/London",
    ) -> "BusinessHoursProfile":
        """Build a profile from tenant overrides on top of category defaults.

        Days missing from the config keep their category default. A day
        entry without start/end inherits the default window.
        """
        profile = cls.for_category(business_type, timezone)
        if not business_hours:
            return profile

        days = dict(profile.days)
        for index, name in enumerate(WEEKDAY_NAMES):
            entry = business_hours.get(name)
            if entry is None:
                continue

            default = days[index]
            try:
                start = _parse_time(entry["start"]) if entry.get("start") else default.start
                end = _parse_time(entry["end"]) if entry.get("end") else default.end
            except (ValueError, TypeError) as e:
                logger.warning(f"Ignoring invalid business hours for {name}: {e}")
                continue

            days[index] = DayHours(
                enabled=bool(entry.get("enabled", True)),
                start=start,
                end=end,
            )

        return cls(days=days, timezone=timezone)
