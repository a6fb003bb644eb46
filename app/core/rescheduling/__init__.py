"""
Rescheduling Module

Provides the rescheduling workflow engine, slot generation, customer
response tokens, notifications and responsiveness scoring.

Usage:
    from app.core.rescheduling import (
        RescheduleRequestData,
        WorkflowMode,
        get_rescheduling_workflow,
    )

    workflow = get_rescheduling_workflow()
    result = await workflow.create_rescheduling_request(
        RescheduleRequestData(
            contact_id="contact-1",
            tenant_id="tenant-1",
            original_appointment_time=appointment_time,
        ),
        WorkflowMode.AUTOMATED,
    )
    print(result.workflow_stage)  # "confirmation"
"""

# Types and models
from app.core.rescheduling.types import (
    AppointmentStatus,
    BookingSource,
    CallOutcome,
    ContactMethod,
    RequestStatus,
    RescheduleReason,
    UrgencyLevel,
    WorkflowMode,
    WorkflowStage,
)
from app.core.rescheduling.errors import (
    CalendarProviderError,
    InvalidTransitionError,
    NotificationDeliveryError,
    RequestValidationFailed,
    ReschedulingError,
    StorageError,
)
from app.core.rescheduling.models import (
    AvailabilitySlot,
    Contact,
    ContactAnalytics,
    RescheduleRequestData,
    ReschedulingRequest,
    TenantConfig,
    WorkflowResult,
)

# Slot Generator
from app.core.rescheduling.business_hours import BusinessHoursProfile
from app.core.rescheduling.slots import (
    AvailabilityFinder,
    SlotGenerator,
    find_available_slots,
)

# Response Tokens and Notifications
from app.core.rescheduling.tokens import (
    ResponseTokenService,
    TokenRedemption,
    get_token_service,
)
from app.core.rescheduling.notifications import (
    NotificationRequest,
    NotificationService,
    get_notification_service,
)

# Responsiveness
from app.core.rescheduling.responsiveness import (
    ResponsivenessPattern,
    ResponsivenessTracker,
    get_responsiveness_tracker,
    record_call_outcome,
)

# Storage
from app.core.rescheduling.storage import (
    InMemoryReschedulingStorage,
    ReschedulingStorage,
)

# Workflow Engine (main orchestrator)
from app.core.rescheduling.workflow import (
    ReschedulingWorkflow,
    get_rescheduling_workflow,
)

__all__ = [
    # Types
    "AppointmentStatus",
    "BookingSource",
    "CallOutcome",
    "ContactMethod",
    "RequestStatus",
    "RescheduleReason",
    "UrgencyLevel",
    "WorkflowMode",
    "WorkflowStage",
    # Errors
    "CalendarProviderError",
    "InvalidTransitionError",
    "NotificationDeliveryError",
    "RequestValidationFailed",
    "ReschedulingError",
    "StorageError",
    # Models
    "AvailabilitySlot",
    "Contact",
    "ContactAnalytics",
    "RescheduleRequestData",
    "ReschedulingRequest",
    "TenantConfig",
    "WorkflowResult",
    # Slot Generator
    "BusinessHoursProfile",
    "AvailabilityFinder",
    "SlotGenerator",
    "find_available_slots",
    # Tokens and Notifications
    "ResponseTokenService",
    "TokenRedemption",
    "get_token_service",
    "NotificationRequest",
    "NotificationService",
    "get_notification_service",
    # Responsiveness
    "ResponsivenessPattern",
    "ResponsivenessTracker",
    "get_responsiveness_tracker",
    "record_call_outcome",
    # Storage
    "InMemoryReschedulingStorage",
    "ReschedulingStorage",
    # Workflow Engine
    "ReschedulingWorkflow",
    "get_rescheduling_workflow",
]
