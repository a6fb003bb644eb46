"""
Domain models for the rescheduling engine.

Plain dataclasses passed between the workflow, the slot generator, the
token service and the storage layer. Storage implementations map these to
and from their own representation.
"""

from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

from app.core.rescheduling.errors import RequestValidationFailed
from app.core.rescheduling.types import (
    AppointmentStatus,
    BookingSource,
    BUSINESS_HOURS_PROVIDER,
    ContactMethod,
    RequestStatus,
    RescheduleReason,
    UrgencyLevel,
    WorkflowStage,
)


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string (or pass through a datetime).

    Strings ending in "Z" are accepted. Returns None for empty input.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)


def format_datetime(value: Optional[datetime]) -> Optional[str]:
    """Format a datetime as ISO-8601, or None."""
    return value.isoformat() if value is not None else None


def build_idempotency_key(
    tenant_id: str,
    contact_id: str,
    call_session_id: Optional[str] = None,
    requested_at: Optional[datetime] = None,
) -> str:
    """Derive the deduplication key for a rescheduling trigger.

    Requests tied to a call session collapse onto one key per session.
    Without a session the key falls back to the trigger timestamp in
    epoch milliseconds.
    """
    if call_session_id:
        return f"reschedule_{tenant_id}_{contact_id}_{call_session_id}"
    moment = requested_at or _utcnow()
    return f"reschedule_{tenant_id}_{contact_id}_{int(moment.timestamp() * 1000)}"


def build_webhook_event_id(tenant_id: str, call_session_id: Optional[str]) -> Optional[str]:
    """Webhook event id for session-bound triggers."""
    if not call_session_id:
        return None
    return f"webhook_{call_session_id}_{tenant_id}"


@dataclass(frozen=True)
class AvailabilitySlot:
    """A candidate appointment window."""

    start_time: datetime
    end_time: datetime
    duration: int  # minutes
    appointment_type: Optional[str] = None
    provider: str = BUSINESS_HOURS_PROVIDER
    location: Optional[str] = "Office"
    timezone: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "AvailabilitySlot":
        """Create from a serialized dict (accepts camelCase keys too)."""
        return cls(
            start_time=parse_datetime(data.get("start_time", data.get("startTime"))),
            end_time=parse_datetime(data.get("end_time", data.get("endTime"))),
            duration=int(data.get("duration", data.get("duration_minutes", 0))),
            appointment_type=data.get("appointment_type", data.get("appointmentType")),
            provider=data.get("provider") or BUSINESS_HOURS_PROVIDER,
            location=data.get("location"),
            timezone=data.get("timezone"),
        )

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "start_time": format_datetime(self.start_time),
            "end_time": format_datetime(self.end_time),
            "duration": self.duration,
            "appointment_type": self.appointment_type,
            "provider": self.provider,
            "location": self.location,
            "timezone": self.timezone,
        }

    @property
    def is_provider_sourced(self) -> bool:
        """Check if the slot came from an external calendar."""
        return self.provider != BUSINESS_HOURS_PROVIDER


@dataclass
class RescheduleRequestData:
    """Payload that starts a rescheduling workflow."""

    contact_id: str
    tenant_id: str
    original_appointment_time: Optional[datetime]
    call_session_id: Optional[str] = None
    original_appointment_type: Optional[str] = None
    reschedule_reason: RescheduleReason = RescheduleReason.OTHER
    customer_preference: Optional[str] = None
    urgency_level: UrgencyLevel = UrgencyLevel.NORMAL
    proposed_times: Optional[list[datetime]] = None
    requested_at: Optional[datetime] = None

    def validate(self) -> None:
        """Check required fields.

        Raises:
            RequestValidationFailed: If a required field is missing or a
                timestamp is not timezone-aware
        """
        if not self.tenant_id:
            raise RequestValidationFailed("tenant_id is required", field="tenant_id")
        if not self.contact_id:
            raise RequestValidationFailed("contact_id is required", field="contact_id")
        if self.original_appointment_time is None:
            raise RequestValidationFailed(
                "original_appointment_time is required",
                field="original_appointment_time",
            )
        if self.original_appointment_time.tzinfo is None:
            raise RequestValidationFailed(
                "original_appointment_time must be timezone-aware",
                field="original_appointment_time",
            )
        for proposed in self.proposed_times or []:
            if proposed.tzinfo is None:
                raise RequestValidationFailed(
                    "proposed_times must be timezone-aware",
                    field="proposed_times",
                )

    @property
    def idempotency_key(self) -> str:
        """Deduplication key for this trigger."""
        return build_idempotency_key(
            self.tenant_id,
            self.contact_id,
            self.call_session_id,
            self.requested_at,
        )


@dataclass
class ReschedulingRequest:
    """The tracked unit of work for one appointment change."""

    tenant_id: str
    contact_id: str
    idempotency_key: str
    original_appointment_time: Optional[datetime]
    id: str = field(default_factory=lambda: str(uuid4()))
    call_session_id: Optional[str] = None
    webhook_event_id: Optional[str] = None
    original_appointment_type: Optional[str] = None
    reschedule_reason: RescheduleReason = RescheduleReason.OTHER
    customer_preference: Optional[str] = None
    urgency_level: UrgencyLevel = UrgencyLevel.NORMAL
    proposed_times: list[datetime] = field(default_factory=list)

    # Workflow state
    status: RequestStatus = RequestStatus.PENDING
    workflow_stage: WorkflowStage = WorkflowStage.CUSTOMER_REQUEST
    automated_processing: bool = True

    # Derived
    available_slots: list[AvailabilitySlot] = field(default_factory=list)
    final_selected_time: Optional[datetime] = None
    calendar_updated: bool = False
    confirmation_sent: bool = False
    processed_by: Optional[str] = None
    processed_at: Optional[datetime] = None
    response_time_hours: Optional[float] = None

    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def from_data(
        cls,
        data: RescheduleRequestData,
        automated: bool = True,
    ) -> "ReschedulingRequest":
        """Build a new pending request from a trigger payload."""
        return cls(
            tenant_id=data.tenant_id,
            contact_id=data.contact_id,
            idempotency_key=data.idempotency_key,
            webhook_event_id=build_webhook_event_id(data.tenant_id, data.call_session_id),
            call_session_id=data.call_session_id,
            original_appointment_time=data.original_appointment_time,
            original_appointment_type=data.original_appointment_type,
            reschedule_reason=data.reschedule_reason,
            customer_preference=data.customer_preference,
            urgency_level=data.urgency_level,
            proposed_times=list(data.proposed_times or []),
            automated_processing=automated,
        )

    def with_updates(self, updates: dict) -> "ReschedulingRequest":
        """Return a copy with the given fields replaced.

        Raises:
            KeyError: If an update names an unknown field
        """
        known = {f.name for f in fields(self)}
        unknown = set(updates) - known
        if unknown:
            raise KeyError(f"Unknown rescheduling request fields: {sorted(unknown)}")
        return replace(self, **updates)

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "contact_id": self.contact_id,
            "call_session_id": self.call_session_id,
            "idempotency_key": self.idempotency_key,
            "webhook_event_id": self.webhook_event_id,
            "original_appointment_time": format_datetime(self.original_appointment_time),
            "original_appointment_type": self.original_appointment_type,
            "reschedule_reason": self.reschedule_reason.value,
            "customer_preference": self.customer_preference,
            "urgency_level": self.urgency_level.value,
            "proposed_times": [format_datetime(t) for t in self.proposed_times],
            "status": self.status.value,
            "workflow_stage": self.workflow_stage.value,
            "automated_processing": self.automated_processing,
            "available_slots": [s.to_dict() for s in self.available_slots],
            "final_selected_time": format_datetime(self.final_selected_time),
            "calendar_updated": self.calendar_updated,
            "confirmation_sent": self.confirmation_sent,
            "processed_by": self.processed_by,
            "processed_at": format_datetime(self.processed_at),
            "response_time_hours": self.response_time_hours,
            "created_at": format_datetime(self.created_at),
            "updated_at": format_datetime(self.updated_at),
        }


@dataclass
class Contact:
    """Customer record fields the engine reads and updates."""

    id: str
    tenant_id: str
    name: str
    phone: str = ""
    email: Optional[str] = None
    appointment_time: Optional[datetime] = None
    appointment_type: Optional[str] = None
    appointment_duration: Optional[int] = None
    appointment_status: AppointmentStatus = AppointmentStatus.PENDING
    timezone: str = "Europe/London"
    booking_source: BookingSource = BookingSource.MANUAL
    preferred_contact_method: ContactMethod = ContactMethod.VOICE

    # Responsiveness counters
    call_attempts: int = 0
    total_successful_contacts: int = 0
    consecutive_no_answers: int = 0
    last_call_outcome: Optional[str] = None
    last_contact_time: Optional[datetime] = None
    average_response_time: Optional[int] = None
    responsiveness_score: Optional[float] = None
    contact_pattern_data: list[dict] = field(default_factory=list)

    reschedule_request_count: int = 0

    def with_updates(self, updates: dict) -> "Contact":
        """Return a copy with the given fields replaced."""
        known = {f.name for f in fields(self)}
        unknown = set(updates) - known
        if unknown:
            raise KeyError(f"Unknown contact fields: {sorted(unknown)}")
        return replace(self, **updates)


@dataclass
class TenantConfig:
    """Per-tenant business settings and calendar credentials."""

    tenant_id: str
    business_name: Optional[str] = None
    business_type: str = "professional"
    timezone: str = "Europe/London"
    business_hours: Optional[dict] = None

    # Calendar integration
    cal_api_key: Optional[str] = None
    cal_event_type_id: Optional[int] = None
    calendly_access_token: Optional[str] = None
    calendly_organization: Optional[str] = None
    calendly_user: Optional[str] = None


@dataclass
class ContactAnalytics:
    """Externally computed conversation analytics for a contact."""

    average_sentiment_score: Optional[float] = None  # -1.0 to 1.0
    overall_engagement_score: Optional[float] = None  # 0.0 to 1.0
    no_show_count: int = 0
    sentiment_history: list[dict] = field(default_factory=list)


@dataclass
class WorkflowResult:
    """Outcome of one engine operation."""

    success: bool
    request_id: str
    workflow_stage: str
    status: str
    message: str
    available_slots: Optional[list[AvailabilitySlot]] = None
    selected_time: Optional[datetime] = None
    calendar_updated: Optional[bool] = None
    confirmation_sent: Optional[bool] = None
    duplicate: bool = False

    # Engine-internal: fields the stage wants persisted
    updates: dict = field(default_factory=dict, repr=False)
    contact_updates: dict = field(default_factory=dict, repr=False)
    awaiting_response: bool = False

    def to_dict(self) -> dict:
        """Convert to dictionary for API response."""
        result = {
            "success": self.success,
            "request_id": self.request_id,
            "workflow_stage": self.workflow_stage,
            "status": self.status,
            "message": self.message,
        }

        if self.available_slots is not None:
            result["available_slots"] = [s.to_dict() for s in self.available_slots]
        if self.selected_time is not None:
            result["selected_time"] = format_datetime(self.selected_time)
        if self.calendar_updated is not None:
            result["calendar_updated"] = self.calendar_updated
        if self.confirmation_sent is not None:
            result["confirmation_sent"] = self.confirmation_sent
        if self.duplicate:
            result["duplicate"] = True

        return result
