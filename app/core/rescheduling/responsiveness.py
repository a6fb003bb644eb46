"""
Responsiveness Scorer.

Scores how reliably a contact answers, predicts when to reach them and how
likely they are to miss their appointment, and picks a contact strategy.

Score = 0.5 + weighted mean of signal deltas, over the signals present:
- answer rate                   0.30
- recent trend (last 5 vs prior 5) 0.25
- sentiment                     0.20
- engagement                    0.15
- timing consistency            0.10
Each delta lies in [-0.5, 0.5], so the score stays in [0, 1].
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from app.core.rescheduling.models import Contact, ContactAnalytics, parse_datetime
from app.core.rescheduling.types import (
    CallOutcome,
    ContactMethod,
    RiskLevel,
    TrendDirection,
    UrgencyLevel,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


DAY_NAMES = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]

PATTERN_LOG_LIMIT = 50

# Signal weights
ANSWER_RATE_WEIGHT = 0.30
TREND_WEIGHT = 0.25
SENTIMENT_WEIGHT = 0.20
ENGAGEMENT_WEIGHT = 0.15
CONSISTENCY_WEIGHT = 0.10

# Fallback contact window when history is too thin
DEFAULT_DAY = 1  # Tuesday
DEFAULT_TIME_RANGE = "10:00-14:00"
MIN_CONFIDENCE = 0.1

STRATEGY_STANDARD_HIGH = "Standard contact protocol - high responsiveness customer"
STRATEGY_CONTINUE = "Continue current approach - positive trend observed"
STRATEGY_MULTI_CHANNEL = "Multi-channel approach: voice + SMS + email with extended lead time"
STRATEGY_INVESTIGATE = "Investigate concerns - declining engagement detected"
STRATEGY_STANDARD = "Standard contact with optimal timing focus"


@dataclass
class ContactTimingData:
    """One logged contact attempt."""

    timestamp: datetime
    day_of_week: int  # 0 = Monday
    hour: int
    answered: bool
    duration: Optional[int] = None  # seconds
    sentiment: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "ContactTimingData":
        """Create from a contact_pattern_data entry."""
        timestamp = parse_datetime(data.get("timestamp")) or _utcnow()
        return cls(
            timestamp=timestamp,
            day_of_week=int(data.get("day_of_week", timestamp.weekday())),
            hour=int(data.get("hour", timestamp.hour)),
            answered=data.get("outcome") == CallOutcome.ANSWERED.value,
            duration=data.get("duration"),
            sentiment=data.get("sentiment"),
        )


@dataclass
class ContactWindow:
    """Best day and time range to reach a contact."""

    day_of_week: int
    time_range: str
    confidence: float

    @property
    def day_name(self) -> str:
        return DAY_NAMES[self.day_of_week]

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "day_of_week": self.day_of_week,
            "day_name": self.day_name,
            "time_range": self.time_range,
            "confidence": round(self.confidence, 4),
        }


@dataclass
class BehaviorPredictions:
    """Predicted contact behavior."""

    likely_to_answer: float
    appointment_risk: RiskLevel
    recommended_strategy: str

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "likely_to_answer": round(self.likely_to_answer, 4),
            "appointment_risk": self.appointment_risk.value,
            "recommended_strategy": self.recommended_strategy,
        }


@dataclass
class ResponsivenessPattern:
    """Derived view of a contact's responsiveness."""

    contact_id: str
    overall_score: float
    trend_direction: TrendDirection
    optimal_contact_window: ContactWindow
    behavior_predictions: BehaviorPredictions
    insights: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        """Convert to dictionary for API response."""
        return {
            "contact_id": self.contact_id,
            "overall_score": round(self.overall_score, 4),
            "trend_direction": self.trend_direction.value,
            "optimal_contact_window": self.optimal_contact_window.to_dict(),
            "behavior_predictions": self.behavior_predictions.to_dict(),
            "insights": self.insights,
        }


def history_from_contact(contact: Contact) -> list[ContactTimingData]:
    """Parse a contact's rolling log, oldest first."""
    history = []
    for entry in contact.contact_pattern_data or []:
        try:
            history.append(ContactTimingData.from_dict(entry))
        except (TypeError, ValueError) as e:
            logger.warning(f"Skipping malformed pattern entry for contact {contact.id}: {e}")
    return sorted(history, key=lambda h: h.timestamp)


class ResponsivenessTracker:
    """Computes responsiveness patterns from contact counters and history."""

    def calculate_score(
        self,
        contact: Contact,
        analytics: Optional[ContactAnalytics],
        history: list[ContactTimingData],
    ) -> float:
        """Overall responsiveness score in [0, 1]."""
        delta_sum = 0.0
        total_weight = 0.0

        if contact.call_attempts > 0:
            answer_rate = _clamp(contact.total_successful_contacts / contact.call_attempts)
            delta_sum += (answer_rate - 0.5) * ANSWER_RATE_WEIGHT
            total_weight += ANSWER_RATE_WEIGHT

        trend = self.recent_trend(history)
        if trend is not None:
            delta_sum += (trend / 2) * TREND_WEIGHT
            total_weight += TREND_WEIGHT

        if analytics and analytics.average_sentiment_score is not None:
            sentiment = (_clamp(analytics.average_sentiment_score, -1.0, 1.0) + 1) / 2
            delta_sum += (sentiment - 0.5) * SENTIMENT_WEIGHT
            total_weight += SENTIMENT_WEIGHT

        if analytics and analytics.overall_engagement_score is not None:
            engagement = _clamp(analytics.overall_engagement_score)
            delta_sum += (engagement - 0.5) * ENGAGEMENT_WEIGHT
            total_weight += ENGAGEMENT_WEIGHT

        consistency = self.consistency(history)
        if consistency is not None:
            delta_sum += (consistency - 0.5) * CONSISTENCY_WEIGHT
            total_weight += CONSISTENCY_WEIGHT

        if total_weight == 0:
            return 0.5
        return _clamp(0.5 + delta_sum / total_weight)

    def recent_trend(self, history: list[ContactTimingData]) -> Optional[float]:
        """Answer rate of the last 5 attempts minus the 5 before, or None."""
        recent = history[-5:]
        previous = history[-10:-5]
        if not recent or not previous:
            return None
        recent_rate = sum(h.answered for h in recent) / len(recent)
        previous_rate = sum(h.answered for h in previous) / len(previous)
        return recent_rate - previous_rate

    def consistency(self, history: list[ContactTimingData]) -> Optional[float]:
        """1 - coefficient of variation of answered call durations, or None."""
        durations = [h.duration for h in history if h.answered and h.duration]
        if len(durations) < 2:
            return None
        mean = sum(durations) / len(durations)
        variance = sum((d - mean) ** 2 for d in durations) / len(durations)
        return _clamp(1 - math.sqrt(variance) / mean)

    def optimal_window(self, history: list[ContactTimingData]) -> ContactWindow:
        """Day and 4-hour window with the best answer rate."""
        if len(history) < 3:
            return ContactWindow(DEFAULT_DAY, DEFAULT_TIME_RANGE, MIN_CONFIDENCE)

        day_stats: dict[int, list[int]] = {}
        hour_stats: dict[int, list[int]] = {}
        for call in history:
            day = day_stats.setdefault(call.day_of_week, [0, 0])
            day[0] += 1
            day[1] += int(call.answered)
            hour = hour_stats.setdefault(call.hour, [0, 0])
            hour[0] += 1
            hour[1] += int(call.answered)

        best_day, best_day_rate = DEFAULT_DAY, 0.0
        for day, (total, answered) in sorted(day_stats.items()):
            rate = answered / total
            if total >= 2 and rate > best_day_rate:
                best_day, best_day_rate = day, rate

        best_range, best_window_rate = DEFAULT_TIME_RANGE, 0.0
        for start_hour in range(8, 19):
            window_total = 0
            window_answered = 0
            for hour in range(start_hour, min(start_hour + 4, 22)):
                total, answered = hour_stats.get(hour, (0, 0))
                window_total += total
                window_answered += answered
            if window_total < 2:
                continue
            rate = window_answered / window_total
            if rate > best_window_rate:
                best_window_rate = rate
                end_hour = min(start_hour + 4, 22)
                best_range = f"{start_hour:02d}:00-{end_hour:02d}:00"

        data_confidence = min(len(history) / 10, 1.0)
        confidence = _clamp((data_confidence + best_window_rate) / 2, MIN_CONFIDENCE, 1.0)
        return ContactWindow(best_day, best_range, confidence)

    def sentiment_trend(self, analytics: Optional[ContactAnalytics]) -> TrendDirection:
        """Compare the last 3 sentiment scores to the 3 before."""
        if not analytics or len(analytics.sentiment_history) < 3:
            return TrendDirection.STABLE

        try:
            scores = [float(entry["score"]) for entry in analytics.sentiment_history]
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Ignoring malformed sentiment history: {e}")
            return TrendDirection.STABLE

        recent = scores[-3:]
        older = scores[-6:-3]
        if not older:
            return TrendDirection.STABLE

        difference = sum(recent) / len(recent) - sum(older) / len(older)
        if difference > 0.2:
            return TrendDirection.IMPROVING
        if difference < -0.2:
            return TrendDirection.DECLINING
        return TrendDirection.STABLE

    def likely_to_answer(self, score: float, history: list[ContactTimingData]) -> float:
        """Answer probability, weighting the last 3 attempts at 30%."""
        probability = score
        if history:
            recent = history[-3:]
            probability = 0.7 * score + 0.3 * (sum(h.answered for h in recent) / len(recent))
        return _clamp(probability, 0.05, 0.95)

    def appointment_risk(
        self,
        contact: Contact,
        analytics: Optional[ContactAnalytics],
        score: float,
    ) -> RiskLevel:
        """Risk that the contact misses the appointment."""
        risk = (1 - score) * 0.4
        if analytics and analytics.no_show_count:
            risk += min(0.3, analytics.no_show_count * 0.1)
        if contact.consecutive_no_answers:
            risk += min(0.3, contact.consecutive_no_answers * 0.05)

        if risk <= 0.3:
            return RiskLevel.LOW
        if risk <= 0.6:
            return RiskLevel.MEDIUM
        return RiskLevel.HIGH

    def strategy(self, score: float, trend: TrendDirection, risk: RiskLevel) -> str:
        """Pick a contact strategy."""
        if score >= 0.8 and risk == RiskLevel.LOW:
            return STRATEGY_STANDARD_HIGH
        if score >= 0.6 and trend == TrendDirection.IMPROVING:
            return STRATEGY_CONTINUE
        if score < 0.4 or risk == RiskLevel.HIGH:
            return STRATEGY_MULTI_CHANNEL
        if trend == TrendDirection.DECLINING:
            return STRATEGY_INVESTIGATE
        return STRATEGY_STANDARD

    def insights(
        self,
        contact: Contact,
        analytics: Optional[ContactAnalytics],
        score: float,
        trend: TrendDirection,
        window: ContactWindow,
    ) -> list[str]:
        """Human-readable findings, most general first."""
        found = []

        if score >= 0.8:
            found.append("Highly responsive customer - reliable contact success")
        elif score <= 0.3:
            found.append("Low responsiveness - consider alternative contact methods")

        if trend == TrendDirection.IMPROVING:
            found.append("Positive engagement trend - customer becoming more responsive")
        elif trend == TrendDirection.DECLINING:
            found.append("Declining responsiveness - may need immediate attention")

        if window.confidence > 0.6:
            found.append(
                f"Best contact window: {window.day_name} {window.time_range} "
                f"({round(window.confidence * 100)}% confidence)"
            )

        if contact.consecutive_no_answers >= 3:
            found.append(
                f"{contact.consecutive_no_answers} consecutive missed calls - "
                f"high priority follow-up needed"
            )

        if analytics and analytics.overall_engagement_score is not None:
            if analytics.overall_engagement_score >= 0.8:
                found.append("High engagement customer - actively participates in conversations")
            elif analytics.overall_engagement_score <= 0.3:
                found.append("Low engagement - conversations tend to be brief or one-sided")

        return found

    def generate_pattern(
        self,
        contact: Contact,
        analytics: Optional[ContactAnalytics] = None,
        history: Optional[list[ContactTimingData]] = None,
    ) -> ResponsivenessPattern:
        """Compute the full responsiveness pattern for a contact.

        Args:
            contact: Contact with persisted counters
            analytics: Externally supplied sentiment/engagement aggregates
            history: Contact attempts (defaults to the contact's rolling log)

        Returns:
            ResponsivenessPattern
        """
        if history is None:
            history = history_from_contact(contact)

        score = self.calculate_score(contact, analytics, history)
        trend = self.sentiment_trend(analytics)
        window = self.optimal_window(history)
        risk = self.appointment_risk(contact, analytics, score)

        return ResponsivenessPattern(
            contact_id=contact.id,
            overall_score=score,
            trend_direction=trend,
            optimal_contact_window=window,
            behavior_predictions=BehaviorPredictions(
                likely_to_answer=self.likely_to_answer(score, history),
                appointment_risk=risk,
                recommended_strategy=self.strategy(score, trend, risk),
            ),
            insights=self.insights(contact, analytics, score, trend, window),
        )

    def update_responsiveness_data(
        self,
        contact: Contact,
        outcome: CallOutcome,
        duration: Optional[int] = None,
        sentiment: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> dict:
        """Counter updates after a call attempt.

        Args:
            contact: Contact before the call
            outcome: Call outcome
            duration: Call length in seconds, if answered
            sentiment: Overall sentiment label from call analysis
            now: Time of the attempt

        Returns:
            Field updates for the contact
        """
        now = now or _utcnow()
        attempts = (contact.call_attempts or 0) + 1
        updates: dict = {
            "call_attempts": attempts,
            "last_call_outcome": outcome.value,
            "last_contact_time": now,
        }

        successes = contact.total_successful_contacts or 0
        if outcome == CallOutcome.ANSWERED:
            successes += 1
            updates["total_successful_contacts"] = successes
            updates["consecutive_no_answers"] = 0
            if duration and duration > 0:
                current_avg = contact.average_response_time or 0
                updates["average_response_time"] = round(
                    (current_avg * (successes - 1) + duration) / successes
                )
        else:
            updates["consecutive_no_answers"] = (contact.consecutive_no_answers or 0) + 1

        updates["responsiveness_score"] = round(successes / attempts, 2)

        try:
            local = now.astimezone(ZoneInfo(contact.timezone)) if contact.timezone else now
        except (KeyError, ValueError):
            local = now
        entry = {
            "timestamp": now.isoformat(),
            "day_of_week": local.weekday(),
            "hour": local.hour,
            "outcome": outcome.value,
            "duration": duration,
            "sentiment": sentiment,
        }
        updates["contact_pattern_data"] = (list(contact.contact_pattern_data or []) + [entry])[-PATTERN_LOG_LIMIT:]

        return updates


def select_contact_method(
    contact: Contact,
    pattern: ResponsivenessPattern,
    urgency: UrgencyLevel,
) -> tuple[ContactMethod, UrgencyLevel]:
    """Choose channel and urgency for a rescheduling notification.

    Rules, in order:
    - urgent requests to a responsive contact (score >= 0.6) go by voice
    - voice contacts who are high risk or unlikely to answer (< 0.3) get SMS
    - a method without an address falls back to one the contact has
    - high risk raises normal urgency to high
    """
    predictions = pattern.behavior_predictions
    method = contact.preferred_contact_method

    if urgency == UrgencyLevel.URGENT and pattern.overall_score >= 0.6 and contact.phone:
        method = ContactMethod.VOICE
    elif method == ContactMethod.VOICE and (
        predictions.appointment_risk == RiskLevel.HIGH or predictions.likely_to_answer < 0.3
    ):
        method = ContactMethod.SMS

    if method == ContactMethod.EMAIL and not contact.email and contact.phone:
        method = ContactMethod.SMS
    elif method != ContactMethod.EMAIL and not contact.phone and contact.email:
        method = ContactMethod.EMAIL

    if predictions.appointment_risk == RiskLevel.HIGH and urgency == UrgencyLevel.NORMAL:
        urgency = UrgencyLevel.HIGH

    return method, urgency


async def record_call_outcome(
    storage,
    tenant_id: str,
    contact_id: str,
    outcome: CallOutcome,
    duration: Optional[int] = None,
    sentiment: Optional[str] = None,
    now: Optional[datetime] = None,
    tracker: Optional[ResponsivenessTracker] = None,
) -> Optional[Contact]:
    """Apply a call outcome to a stored contact.

    Returns:
        Updated contact, or None if the contact does not exist
    """
    contact = await storage.get_contact(contact_id, tenant_id)
    if contact is None:
        return None

    now = now or _utcnow()
    updates = (tracker or get_responsiveness_tracker()).update_responsiveness_data(
        contact, outcome, duration, sentiment, now
    )
    updated = await storage.update_contact(contact_id, tenant_id, updates)
    await storage.create_call_log(
        {
            "tenant_id": tenant_id,
            "contact_id": contact_id,
            "event": "call_outcome",
            "outcome": outcome.value,
            "duration": duration,
            "created_at": now,
        }
    )
    logger.info(f"Recorded {outcome.value} for contact {contact_id}")
    return updated


# Singleton instance
_tracker: Optional[ResponsivenessTracker] = None


def get_responsiveness_tracker() -> ResponsivenessTracker:
    """Get singleton tracker."""
    global _tracker
    if _tracker is None:
        _tracker = ResponsivenessTracker()
    return _tracker
