"""Tests for responsiveness scoring and contact method selection."""

from datetime import datetime, timedelta, timezone

import pytest

from app.core.rescheduling.models import Contact, ContactAnalytics
from app.core.rescheduling.responsiveness import (
    DEFAULT_TIME_RANGE,
    MIN_CONFIDENCE,
    PATTERN_LOG_LIMIT,
    STRATEGY_MULTI_CHANNEL,
    STRATEGY_STANDARD,
    STRATEGY_STANDARD_HIGH,
    BehaviorPredictions,
    ContactTimingData,
    ContactWindow,
    ResponsivenessPattern,
    ResponsivenessTracker,
    history_from_contact,
    record_call_outcome,
    select_contact_method,
)
from app.core.rescheduling.storage import InMemoryReschedulingStorage
from app.core.rescheduling.types import (
    CallOutcome,
    ContactMethod,
    RiskLevel,
    TrendDirection,
    UrgencyLevel,
)


NOW = datetime(2025, 3, 3, 9, 0, tzinfo=timezone.utc)


def make_contact(**kwargs) -> Contact:
    defaults = {
        "id": "contact-1",
        "tenant_id": "tenant-1",
        "name": "Jane Doe",
        "phone": "+447700900123",
        "email": "jane@example.com",
        "timezone": "UTC",
    }
    defaults.update(kwargs)
    return Contact(**defaults)


def call(day: int, hour: int, answered: bool, duration=None) -> ContactTimingData:
    timestamp = NOW + timedelta(days=day, hours=hour - NOW.hour)
    return ContactTimingData(
        timestamp=timestamp,
        day_of_week=timestamp.weekday(),
        hour=hour,
        answered=answered,
        duration=duration,
    )


def make_pattern(score: float, risk: RiskLevel = RiskLevel.LOW, likely: float = 0.6) -> ResponsivenessPattern:
    return ResponsivenessPattern(
        contact_id="contact-1",
        overall_score=score,
        trend_direction=TrendDirection.STABLE,
        optimal_contact_window=ContactWindow(1, DEFAULT_TIME_RANGE, MIN_CONFIDENCE),
        behavior_predictions=BehaviorPredictions(likely, risk, STRATEGY_STANDARD),
    )


@pytest.fixture
def tracker():
    return ResponsivenessTracker()


class TestScore:
    """Test the overall responsiveness score."""

    def test_no_data_is_neutral(self, tracker):
        pattern = tracker.generate_pattern(make_contact())

        assert pattern.overall_score == 0.5
        assert pattern.trend_direction == TrendDirection.STABLE
        assert pattern.behavior_predictions.recommended_strategy == STRATEGY_STANDARD

    def test_answer_rate_only(self, tracker):
        contact = make_contact(call_attempts=10, total_successful_contacts=8)

        assert tracker.calculate_score(contact, None, []) == pytest.approx(0.8)

    def test_upper_bound(self, tracker):
        contact = make_contact(call_attempts=10, total_successful_contacts=10)
        analytics = ContactAnalytics(average_sentiment_score=1.0, overall_engagement_score=1.0)
        history = [call(0, 10, True, 120), call(1, 10, True, 120)]

        assert tracker.calculate_score(contact, analytics, history) == pytest.approx(1.0)

    def test_lower_bound(self, tracker):
        contact = make_contact(call_attempts=10, total_successful_contacts=0)
        analytics = ContactAnalytics(average_sentiment_score=-5.0, overall_engagement_score=-1.0)

        assert tracker.calculate_score(contact, analytics, []) == pytest.approx(0.0)

    def test_recent_trend(self, tracker):
        history = [call(i, 10, False) for i in range(5)] + [call(i, 10, True) for i in range(5, 10)]

        assert tracker.recent_trend(history) == pytest.approx(1.0)
        assert tracker.recent_trend(history[:5]) is None

    def test_consistency_needs_two_answered_calls(self, tracker):
        assert tracker.consistency([call(0, 10, True, 60)]) is None
        assert tracker.consistency([call(0, 10, True, 60), call(1, 10, True, 60)]) == pytest.approx(1.0)


class TestOptimalWindow:
    """Test best-time prediction."""

    def test_thin_history_uses_default(self, tracker):
        window = tracker.optimal_window([call(0, 10, True), call(1, 10, True)])

        assert window.day_of_week == 1
        assert window.time_range == "10:00-14:00"
        assert window.confidence == MIN_CONFIDENCE

    def test_best_day_and_hours(self, tracker):
        # Monday mornings missed, Wednesday afternoons answered
        history = [call(0, 9, False), call(7, 9, False)] + [
            call(2 + 7 * week, 15, True) for week in range(4)
        ]

        window = tracker.optimal_window(history)

        assert window.day_name == "Wednesday"
        assert window.time_range == "12:00-16:00"
        assert window.confidence == pytest.approx(0.8)


class TestPredictions:
    """Test trend, risk and strategy."""

    def test_sentiment_trend(self, tracker):
        improving = ContactAnalytics(sentiment_history=[{"score": s} for s in [-0.5, -0.5, -0.5, 0.5, 0.5, 0.5]])
        declining = ContactAnalytics(sentiment_history=[{"score": s} for s in [0.5, 0.5, 0.5, -0.5, -0.5, -0.5]])

        assert tracker.sentiment_trend(improving) == TrendDirection.IMPROVING
        assert tracker.sentiment_trend(declining) == TrendDirection.DECLINING
        assert tracker.sentiment_trend(ContactAnalytics()) == TrendDirection.STABLE

    def test_high_risk_contact(self, tracker):
        contact = make_contact(consecutive_no_answers=6)
        analytics = ContactAnalytics(no_show_count=3)

        pattern = tracker.generate_pattern(contact, analytics)

        assert pattern.behavior_predictions.appointment_risk == RiskLevel.HIGH
        assert pattern.behavior_predictions.recommended_strategy == STRATEGY_MULTI_CHANNEL
        assert "6 consecutive missed calls - high priority follow-up needed" in pattern.insights

    def test_highly_responsive_contact(self, tracker):
        contact = make_contact(call_attempts=10, total_successful_contacts=10)

        pattern = tracker.generate_pattern(contact)

        assert pattern.behavior_predictions.recommended_strategy == STRATEGY_STANDARD_HIGH
        assert pattern.insights[0] == "Highly responsive customer - reliable contact success"

    def test_likely_to_answer_bounds(self, tracker):
        assert tracker.likely_to_answer(1.0, []) == 0.95
        assert tracker.likely_to_answer(0.0, [call(0, 10, False)]) == 0.05

    def test_to_dict(self, tracker):
        result = tracker.generate_pattern(make_contact()).to_dict()

        assert result["optimal_contact_window"]["day_name"] == "Tuesday"
        assert result["behavior_predictions"]["appointment_risk"] == "low"


class TestUpdateResponsivenessData:
    """Test counter updates after a call."""

    def test_answered_call(self, tracker):
        contact = make_contact(call_attempts=9, total_successful_contacts=7, average_response_time=100, consecutive_no_answers=2)

        updates = tracker.update_responsiveness_data(contact, CallOutcome.ANSWERED, duration=180, now=NOW)

        assert updates["call_attempts"] == 10
        assert updates["total_successful_contacts"] == 8
        assert updates["consecutive_no_answers"] == 0
        assert updates["average_response_time"] == 110
        assert updates["responsiveness_score"] == 0.8
        assert updates["last_contact_time"] == NOW

    def test_missed_call(self, tracker):
        contact = make_contact(call_attempts=9, total_successful_contacts=7, consecutive_no_answers=2)

        updates = tracker.update_responsiveness_data(contact, CallOutcome.NO_ANSWER, now=NOW)

        assert updates["consecutive_no_answers"] == 3
        assert "total_successful_contacts" not in updates
        assert updates["responsiveness_score"] == 0.7
        assert updates["last_call_outcome"] == "no_answer"

    def test_pattern_entry_uses_local_time(self, tracker):
        contact = make_contact(timezone="Asia/Tokyo")
        late_monday_utc = datetime(2025, 3, 3, 23, 30, tzinfo=timezone.utc)

        updates = tracker.update_responsiveness_data(contact, CallOutcome.BUSY, now=late_monday_utc)

        entry = updates["contact_pattern_data"][-1]
        assert entry["day_of_week"] == 1
        assert entry["hour"] == 8

    def test_pattern_log_capped(self, tracker):
        log = [{"timestamp": NOW.isoformat(), "outcome": "answered"}] * PATTERN_LOG_LIMIT
        contact = make_contact(contact_pattern_data=log)

        updates = tracker.update_responsiveness_data(contact, CallOutcome.VOICEMAIL, now=NOW)

        assert len(updates["contact_pattern_data"]) == PATTERN_LOG_LIMIT
        assert updates["contact_pattern_data"][-1]["outcome"] == "voicemail"


def test_history_skips_malformed_entries():
    contact = make_contact(
        contact_pattern_data=[
            {"timestamp": "not-a-date", "outcome": "answered"},
            {"timestamp": NOW.isoformat(), "outcome": "answered", "hour": 9},
        ]
    )

    history = history_from_contact(contact)

    assert len(history) == 1
    assert history[0].answered


class TestSelectContactMethod:
    """Test channel and urgency selection."""

    def test_urgent_responsive_contact_gets_call(self):
        contact = make_contact(preferred_contact_method=ContactMethod.EMAIL)

        method, urgency = select_contact_method(contact, make_pattern(0.7), UrgencyLevel.URGENT)

        assert method == ContactMethod.VOICE
        assert urgency == UrgencyLevel.URGENT

    def test_high_risk_voice_contact_gets_sms(self):
        contact = make_contact(preferred_contact_method=ContactMethod.VOICE)

        method, urgency = select_contact_method(contact, make_pattern(0.3, RiskLevel.HIGH), UrgencyLevel.NORMAL)

        assert method == ContactMethod.SMS
        assert urgency == UrgencyLevel.HIGH

    def test_unlikely_to_answer_gets_sms(self):
        contact = make_contact(preferred_contact_method=ContactMethod.VOICE)

        method, _ = select_contact_method(contact, make_pattern(0.5, likely=0.2), UrgencyLevel.LOW)

        assert method == ContactMethod.SMS

    def test_email_without_address_falls_back_to_sms(self):
        contact = make_contact(preferred_contact_method=ContactMethod.EMAIL, email=None)

        method, _ = select_contact_method(contact, make_pattern(0.5), UrgencyLevel.NORMAL)

        assert method == ContactMethod.SMS

    def test_no_phone_falls_back_to_email(self):
        contact = make_contact(preferred_contact_method=ContactMethod.SMS, phone="")

        method, _ = select_contact_method(contact, make_pattern(0.5), UrgencyLevel.NORMAL)

        assert method == ContactMethod.EMAIL

    def test_preference_kept(self):
        contact = make_contact(preferred_contact_method=ContactMethod.EMAIL)

        assert select_contact_method(contact, make_pattern(0.5), UrgencyLevel.NORMAL) == (
            ContactMethod.EMAIL,
            UrgencyLevel.NORMAL,
        )


class TestRecordCallOutcome:
    """Test persisting call outcomes."""

    @pytest.mark.asyncio
    async def test_updates_contact_and_logs(self):
        storage = InMemoryReschedulingStorage()
        storage.add_contact(make_contact())

        updated = await record_call_outcome(
            storage, "tenant-1", "contact-1", CallOutcome.ANSWERED, duration=90, now=NOW
        )

        assert updated.call_attempts == 1
        assert updated.total_successful_contacts == 1
        assert updated.average_response_time == 90
        assert storage.call_logs[-1]["event"] == "call_outcome"

    @pytest.mark.asyncio
    async def test_unknown_contact(self):
        storage = InMemoryReschedulingStorage()

        result = await record_call_outcome(storage, "tenant-1", "missing", CallOutcome.BUSY, now=NOW)

        assert result is None
        assert storage.call_logs == []

    @pytest.mark.asyncio
    async def test_other_tenant_cannot_update(self):
        storage = InMemoryReschedulingStorage()
        storage.add_contact(make_contact())

        assert await record_call_outcome(storage, "tenant-2", "contact-1", CallOutcome.BUSY, now=NOW) is None
