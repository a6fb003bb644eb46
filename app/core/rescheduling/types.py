"""Enumerations shared across the rescheduling engine."""

from enum import Enum


class RequestStatus(str, Enum):
    """Business status of a rescheduling request."""

    PENDING = "pending"        # Work outstanding
    APPROVED = "approved"      # New time chosen, calendar not yet written
    REJECTED = "rejected"      # Cancelled or invalid
    COMPLETED = "completed"    # New appointment confirmed
    EXPIRED = "expired"        # Swept after the retention window
    BLOCKED = "blocked"        # No availability, needs an operator
    ERROR = "error"            # External failure, needs manual retry


class WorkflowStage(str, Enum):
    """Phases a rescheduling request moves through."""

    CUSTOMER_REQUEST = "customer_request"
    AVAILABILITY_CHECK = "availability_check"
    CONFIRMATION = "confirmation"
    CALENDAR_UPDATE = "calendar_update"

    # Side states
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class WorkflowMode(str, Enum):
    """How far a single call into the engine may advance a request."""

    MANUAL = "manual"              # One stage per call
    AUTOMATED = "automated"        # Chain, pause at confirmation for the customer
    AUTO_CONFIRM = "auto_confirm"  # Chain to completion using the top ranked slot


class RescheduleReason(str, Enum):
    """Why the customer needs a new time."""

    CUSTOMER_CONFLICT = "customer_conflict"
    EMERGENCY = "emergency"
    ILLNESS = "illness"
    PREFER_DIFFERENT_TIME = "prefer_different_time"
    OTHER = "other"


class UrgencyLevel(str, Enum):
    """How quickly the customer should be contacted."""

    URGENT = "urgent"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


class ContactMethod(str, Enum):
    """Notification channels."""

    EMAIL = "email"
    SMS = "sms"
    VOICE = "voice"


class AppointmentStatus(str, Enum):
    """Contact appointment status values touched by the engine."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    RESCHEDULED = "rescheduled"
    NEEDS_RESCHEDULING = "needs_rescheduling"


class BookingSource(str, Enum):
    """Where a contact's appointment was booked."""

    MANUAL = "manual"
    CALCOM = "calcom"
    CALENDLY = "calendly"


class CallOutcome(str, Enum):
    """Result of an outbound call attempt."""

    ANSWERED = "answered"
    NO_ANSWER = "no_answer"
    BUSY = "busy"
    VOICEMAIL = "voicemail"


class TrendDirection(str, Enum):
    """Direction of a contact's engagement over time."""

    IMPROVING = "improving"
    STABLE = "stable"
    DECLINING = "declining"


class RiskLevel(str, Enum):
    """Likelihood that an appointment is missed."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


BUSINESS_HOURS_PROVIDER = "business_hours"
"""Provider label for slots produced from business hours alone."""
