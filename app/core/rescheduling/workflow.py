"""
Rescheduling Workflow Engine.

Moves a rescheduling request through its stages:

    customer_request -> availability_check -> confirmation -> calendar_update

plus the side states cancelled and expired. One processor per stage,
dispatched by a table keyed on WorkflowStage. Processors never write the
request themselves: they return the updates they want, and the engine
commits them in one write per stage before advancing.

Modes:
- manual: process exactly one stage per call
- automated: chain stages; confirmation sends the customer notification
  once and the chain pauses for the reply
- auto_confirm: chain stages; confirmation picks the top ranked slot and
  the chain runs through calendar_update
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from app.config import get_settings
from app.core.rescheduling.calendar_client import (
    CalendarProvider,
    build_attendee,
    get_calendar_providers,
    slot_for_time,
)
from app.core.rescheduling.errors import (
    CalendarProviderError,
    RequestValidationFailed,
    StorageError,
)
from app.core.rescheduling.models import (
    Contact,
    ContactAnalytics,
    RescheduleRequestData,
    ReschedulingRequest,
    TenantConfig,
    WorkflowResult,
)
from app.core.rescheduling.notifications import (
    NotificationRequest,
    NotificationService,
    get_notification_service,
)
from app.core.rescheduling.responsiveness import (
    ResponsivenessPattern,
    ResponsivenessTracker,
    get_responsiveness_tracker,
    select_contact_method,
)
from app.core.rescheduling.slots import AvailabilityFinder, dates_from_proposals
from app.core.rescheduling.state import (
    STAGE_ORDER,
    ensure_transition,
    is_resolved,
    is_terminal_stage,
)
from app.core.rescheduling.storage import ReschedulingStorage
from app.core.rescheduling.tokens import ResponseTokenService, get_token_service
from app.core.rescheduling.types import (
    AppointmentStatus,
    RequestStatus,
    WorkflowMode,
    WorkflowStage,
)

logger = logging.getLogger(__name__)

REQUEST_NOT_FOUND_MESSAGE = "Rescheduling request not found"


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def _append_note(existing: Optional[str], note: str) -> str:
    """Append a line to the free-text preference field."""
    return f"{existing}\n\n{note}" if existing else note


@dataclass
class WorkflowContext:
    """What a stage processor may read."""

    storage: ReschedulingStorage
    mode: WorkflowMode
    now: datetime
    contact: Optional[Contact] = None
    tenant_config: Optional[TenantConfig] = None
    analytics: Optional[ContactAnalytics] = None

    @property
    def config(self) -> TenantConfig:
        """Tenant config, or defaults if the tenant has none stored."""
        return self.tenant_config or TenantConfig(tenant_id="")


def _result(
    request: ReschedulingRequest,
    success: bool,
    message: str,
    status: Optional[RequestStatus] = None,
    **kwargs,
) -> WorkflowResult:
    return WorkflowResult(
        success=success,
        request_id=request.id,
        workflow_stage=request.workflow_stage.value,
        status=(status or request.status).value,
        message=message,
        **kwargs,
    )


class StageProcessor(ABC):
    """Handles one workflow stage."""

    stage: WorkflowStage

    @abstractmethod
    def can_process(self, request: ReschedulingRequest) -> bool:
        """Check if the request is in a state this processor handles."""

    @abstractmethod
    async def process(self, request: ReschedulingRequest, context: WorkflowContext) -> WorkflowResult:
        """Run the stage and return the updates to persist."""

    @abstractmethod
    def next_stage(self) -> Optional[WorkflowStage]:
        """Stage to advance to on success, or None at the end."""


class CustomerRequestProcessor(StageProcessor):
    """Validates the trigger and logs it."""

    stage = WorkflowStage.CUSTOMER_REQUEST

    def can_process(self, request: ReschedulingRequest) -> bool:
        return request.status == RequestStatus.PENDING and request.workflow_stage == self.stage

    async def process(self, request: ReschedulingRequest, context: WorkflowContext) -> WorkflowResult:
        if not request.original_appointment_time or not request.contact_id:
            return _result(
                request,
                False,
                "Invalid customer request - missing required information",
                status=RequestStatus.REJECTED,
                updates={"status": RequestStatus.REJECTED},
            )

        await context.storage.create_call_log(
            {
                "tenant_id": request.tenant_id,
                "contact_id": request.contact_id,
                "call_session_id": request.call_session_id,
                "log_level": "info",
                "event": "reschedule_requested",
                "message": f"Rescheduling request received: {request.reschedule_reason.value}",
                "metadata": {
                    "original_time": request.original_appointment_time.isoformat(),
                    "urgency": request.urgency_level.value,
                    "customer_preference": request.customer_preference,
                },
                "created_at": context.now,
            }
        )

        return _result(request, True, "Customer request validated and logged")

    def next_stage(self) -> Optional[WorkflowStage]:
        return WorkflowStage.AVAILABILITY_CHECK


class AvailabilityCheckProcessor(StageProcessor):
    """Finds candidate slots and snapshots them onto the request."""

    stage = WorkflowStage.AVAILABILITY_CHECK

    def __init__(self, finder: AvailabilityFinder):
        self.finder = finder

    def can_process(self, request: ReschedulingRequest) -> bool:
        return (
            request.status in (RequestStatus.PENDING, RequestStatus.BLOCKED)
            and request.workflow_stage == self.stage
        )

    async def process(self, request: ReschedulingRequest, context: WorkflowContext) -> WorkflowResult:
        contact = context.contact
        if contact is None:
            return _result(
                request,
                False,
                "Contact not found or access denied",
                status=RequestStatus.BLOCKED,
                updates={"status": RequestStatus.BLOCKED},
            )

        config = context.config
        preferred_dates = (
            dates_from_proposals(request.proposed_times, config.timezone)
            if request.proposed_times else None
        )

        slots = await self.finder.find(
            config,
            contact,
            duration=contact.appointment_duration,
            preferred_dates=preferred_dates,
            original_time=request.original_appointment_time,
            now=context.now,
        )

        if not slots:
            logger.info(f"No availability for request {request.id}; blocking")
            return _result(
                request,
                False,
                "No available time slots found",
                status=RequestStatus.BLOCKED,
                available_slots=[],
                updates={"status": RequestStatus.BLOCKED, "available_slots": []},
            )

        return _result(
            request,
            True,
            f"Found {len(slots)} available time slots",
            status=RequestStatus.PENDING,
            available_slots=slots,
            updates={"status": RequestStatus.PENDING, "available_slots": slots},
        )

    def next_stage(self) -> Optional[WorkflowStage]:
        return WorkflowStage.CONFIRMATION


class ConfirmationProcessor(StageProcessor):
    """Auto-selects a slot or asks the customer to choose one."""

    stage = WorkflowStage.CONFIRMATION

    def __init__(
        self,
        notification_service: NotificationService,
        tracker: ResponsivenessTracker,
    ):
        self.notification_service = notification_service
        self.tracker = tracker

    def can_process(self, request: ReschedulingRequest) -> bool:
        return request.status == RequestStatus.PENDING and request.workflow_stage == self.stage

    async def process(self, request: ReschedulingRequest, context: WorkflowContext) -> WorkflowResult:
        if context.mode == WorkflowMode.AUTO_CONFIRM and not request.final_selected_time:
            if request.available_slots:
                selected = request.available_slots[0]
                return _result(
                    request,
                    True,
                    "Automatically confirmed first available slot",
                    status=RequestStatus.APPROVED,
                    selected_time=selected.start_time,
                    updates={
                        "final_selected_time": selected.start_time,
                        "status": RequestStatus.APPROVED,
                        "processed_by": "system",
                    },
                )
            logger.warning(f"Request {request.id} reached confirmation without slots")

        if request.confirmation_sent:
            return _result(
                request,
                True,
                "Awaiting customer response",
                confirmation_sent=True,
                awaiting_response=True,
            )

        contact = context.contact
        if contact is None:
            return _result(
                request,
                False,
                "Contact not found; awaiting manual confirmation of time slot",
                confirmation_sent=False,
                awaiting_response=True,
            )

        pattern = self.tracker.generate_pattern(contact, context.analytics)
        method, urgency = select_contact_method(contact, pattern, request.urgency_level)
        notification = NotificationRequest.build(
            request,
            contact,
            context.tenant_config,
            method,
            urgency,
        )
        response = await self.notification_service.send_rescheduling_notification(
            notification,
            now=context.now,
        )

        if not response.success:
            return _result(
                request,
                False,
                f"Customer notification failed ({response.message}); awaiting manual confirmation",
                confirmation_sent=False,
                awaiting_response=True,
            )

        return _result(
            request,
            True,
            f"Customer notification sent via {response.method}. Awaiting response.",
            confirmation_sent=True,
            awaiting_response=True,
            updates={
                "confirmation_sent": True,
                "customer_preference": _append_note(
                    request.customer_preference,
                    f"Notification sent via {response.method} at {context.now.isoformat()}",
                ),
            },
        )

    def next_stage(self) -> Optional[WorkflowStage]:
        return WorkflowStage.CALENDAR_UPDATE


class CalendarUpdateProcessor(StageProcessor):
    """Writes the chosen time to the bound calendar and the contact."""

    stage = WorkflowStage.CALENDAR_UPDATE

    def __init__(self, providers: dict[str, CalendarProvider]):
        self.providers = providers

    def can_process(self, request: ReschedulingRequest) -> bool:
        return request.status == RequestStatus.APPROVED and request.workflow_stage == self.stage

    async def process(self, request: ReschedulingRequest, context: WorkflowContext) -> WorkflowResult:
        if not request.final_selected_time:
            return _result(
                request,
                False,
                "No final time selected for calendar update",
                status=RequestStatus.ERROR,
                calendar_updated=False,
                updates={"status": RequestStatus.ERROR, "calendar_updated": False},
            )

        contact = context.contact
        if contact is None:
            return _result(
                request,
                False,
                "Contact not found for calendar update",
                status=RequestStatus.ERROR,
                calendar_updated=False,
                updates={"status": RequestStatus.ERROR, "calendar_updated": False},
            )

        duration = contact.appointment_duration or get_settings().default_appointment_duration
        provider = self.providers.get(contact.booking_source.value)
        credential = provider.credential_for(context.config) if provider else None

        if provider and credential and provider.supports_booking_creation:
            slot = slot_for_time(request.final_selected_time, duration, provider.name)
            try:
                booking = await provider.create_booking(credential, slot, build_attendee(contact))
                failure = None if booking.success else booking.message
            except CalendarProviderError as e:
                failure = str(e)

            if failure is not None:
                logger.error(f"Calendar update failed for request {request.id}: {failure}")
                return _result(
                    request,
                    False,
                    f"Failed to update calendar: {failure}",
                    status=RequestStatus.ERROR,
                    calendar_updated=False,
                    updates={"status": RequestStatus.ERROR, "calendar_updated": False},
                )
            message = f"Calendar updated successfully via {provider.name}"
        elif provider and credential:
            message = f"Appointment time updated; rebook in {provider.name} manually"
        else:
            message = "Appointment time updated"

        response_hours = round((context.now - request.created_at).total_seconds() / 3600, 2)

        await context.storage.create_call_log(
            {
                "tenant_id": request.tenant_id,
                "contact_id": request.contact_id,
                "call_session_id": request.call_session_id,
                "log_level": "info",
                "event": "appointment_rescheduled",
                "message": f"Appointment moved to {request.final_selected_time.isoformat()}",
                "created_at": context.now,
            }
        )

        return _result(
            request,
            True,
            message,
            status=RequestStatus.COMPLETED,
            selected_time=request.final_selected_time,
            calendar_updated=True,
            updates={
                "status": RequestStatus.COMPLETED,
                "calendar_updated": True,
                "processed_at": context.now,
                "response_time_hours": response_hours,
            },
            contact_updates={
                "appointment_time": request.final_selected_time,
                "appointment_status": AppointmentStatus.CONFIRMED,
                "last_contact_time": context.now,
            },
        )

    def next_stage(self) -> Optional[WorkflowStage]:
        return None


class ReschedulingWorkflow:
    """
    Rescheduling workflow orchestrator.

    Coordinates:
    - Request intake and deduplication
    - Stage processing and advancement
    - Operator confirmation and cancellation
    - Customer responses via response tokens
    - Follow-up reminders and the expiry sweep
    """

    def __init__(
        self,
        storage: ReschedulingStorage,
        notification_service: Optional[NotificationService] = None,
        token_service: Optional[ResponseTokenService] = None,
        availability_finder: Optional[AvailabilityFinder] = None,
        providers: Optional[dict[str, CalendarProvider]] = None,
        tracker: Optional[ResponsivenessTracker] = None,
    ):
        """Initialize engine.

        Args:
            storage: Storage backend
            notification_service: Notification service (uses singleton if not provided)
            token_service: Token service (uses the notification service's if not provided)
            availability_finder: Slot finder (built from providers if not provided)
            providers: Calendar providers keyed by booking source
            tracker: Responsiveness tracker
        """
        self.storage = storage
        self.notification_service = notification_service or get_notification_service()
        self.token_service = token_service or self.notification_service.token_service
        self.providers = providers if providers is not None else get_calendar_providers()
        self.tracker = tracker or get_responsiveness_tracker()
        finder = availability_finder or AvailabilityFinder(providers=self.providers)

        self._processors: dict[WorkflowStage, StageProcessor] = {
            WorkflowStage.CUSTOMER_REQUEST: CustomerRequestProcessor(),
            WorkflowStage.AVAILABILITY_CHECK: AvailabilityCheckProcessor(finder),
            WorkflowStage.CONFIRMATION: ConfirmationProcessor(self.notification_service, self.tracker),
            WorkflowStage.CALENDAR_UPDATE: CalendarUpdateProcessor(self.providers),
        }

    def _not_found(self, request_id: str) -> WorkflowResult:
        return WorkflowResult(
            success=False,
            request_id=request_id,
            workflow_stage="",
            status="",
            message=REQUEST_NOT_FOUND_MESSAGE,
        )

    def _state_result(
        self,
        request: ReschedulingRequest,
        success: bool,
        message: str,
        duplicate: bool = False,
    ) -> WorkflowResult:
        """Result describing a request's stored state."""
        return _result(
            request,
            success,
            message,
            available_slots=list(request.available_slots) or None,
            selected_time=request.final_selected_time,
            calendar_updated=request.calendar_updated,
            confirmation_sent=request.confirmation_sent,
            duplicate=duplicate,
        )

    async def _build_context(
        self,
        request: ReschedulingRequest,
        mode: WorkflowMode,
        now: datetime,
    ) -> WorkflowContext:
        return WorkflowContext(
            storage=self.storage,
            mode=mode,
            now=now,
            contact=await self.storage.get_contact(request.contact_id, request.tenant_id),
            tenant_config=await self.storage.get_tenant_config(request.tenant_id),
            analytics=await self.storage.get_contact_analytics(request.contact_id, request.tenant_id),
        )

    async def create_rescheduling_request(
        self,
        data: RescheduleRequestData,
        mode: WorkflowMode,
        now: Optional[datetime] = None,
    ) -> WorkflowResult:
        """Create a request (or return the existing one) and start processing.

        Args:
            data: Trigger payload
            mode: How far to advance in this call
            now: Reference time

        Returns:
            WorkflowResult; duplicate=True when the idempotency key already existed
        """
        now = now or _utcnow()

        try:
            data.validate()
        except RequestValidationFailed as e:
            logger.info(f"Rejected rescheduling request for contact {data.contact_id}: {e}")
            return WorkflowResult(
                success=False,
                request_id="",
                workflow_stage=WorkflowStage.CUSTOMER_REQUEST.value,
                status=RequestStatus.REJECTED.value,
                message=f"Invalid rescheduling request: {e}",
            )

        contact = await self.storage.get_contact(data.contact_id, data.tenant_id)
        if contact is None:
            return WorkflowResult(
                success=False,
                request_id="",
                workflow_stage=WorkflowStage.CUSTOMER_REQUEST.value,
                status=RequestStatus.REJECTED.value,
                message="Contact not found or access denied",
            )

        request = ReschedulingRequest.from_data(data, automated=mode != WorkflowMode.MANUAL)
        request = request.with_updates({"created_at": now, "updated_at": now})
        stored, created = await self.storage.create_rescheduling_request(request)

        if not created:
            logger.info(f"Duplicate rescheduling trigger {stored.idempotency_key} -> request {stored.id}")
            return self._state_result(stored, True, "Rescheduling request already exists", duplicate=True)

        logger.info(
            f"Created rescheduling request {stored.id} for contact {stored.contact_id} "
            f"(tenant {stored.tenant_id}, mode {mode.value})"
        )
        await self.storage.update_contact(
            contact.id,
            contact.tenant_id,
            {
                "appointment_status": AppointmentStatus.NEEDS_RESCHEDULING,
                "reschedule_request_count": (contact.reschedule_request_count or 0) + 1,
            },
        )

        return await self.process_workflow(stored.id, stored.tenant_id, mode, now=now)

    async def process_workflow(
        self,
        request_id: str,
        tenant_id: str,
        mode: WorkflowMode,
        now: Optional[datetime] = None,
    ) -> WorkflowResult:
        """Advance a request through as many stages as the mode allows.

        Raises:
            StorageError: If the storage backend fails
        """
        now = now or _utcnow()
        request = await self.storage.get_rescheduling_request(request_id, tenant_id)
        if request is None:
            return self._not_found(request_id)

        last: Optional[WorkflowResult] = None
        for _ in range(len(STAGE_ORDER) + 1):
            if is_resolved(request.workflow_stage, request.status):
                break

            processor = self._processors.get(request.workflow_stage)
            if processor is None or not processor.can_process(request):
                break

            context = await self._build_context(request, mode, now)
            result = await processor.process(request, context)
            request = await self._commit(request, processor, result)

            result.workflow_stage = request.workflow_stage.value
            result.status = request.status.value
            last = result

            if not result.success or result.awaiting_response or mode == WorkflowMode.MANUAL:
                break

            # Pick up concurrent changes such as a cancellation
            request = await self.storage.get_rescheduling_request(request_id, tenant_id)
            if request is None:
                break
        else:
            logger.warning(f"Stage limit reached while processing request {request_id}")

        if last is None:
            if is_resolved(request.workflow_stage, request.status):
                return self._state_result(
                    request,
                    False,
                    f"Rescheduling request is already {request.status.value}",
                )
            return self._state_result(request, False, "Current stage cannot be processed")
        return last

    async def _commit(
        self,
        request: ReschedulingRequest,
        processor: StageProcessor,
        result: WorkflowResult,
    ) -> ReschedulingRequest:
        """Persist a stage result in a single request write."""
        current = await self.storage.get_rescheduling_request(request.id, request.tenant_id)
        if current is None:
            raise StorageError(f"Rescheduling request {request.id} disappeared during processing")
        if is_resolved(current.workflow_stage, current.status):
            logger.info(f"Request {request.id} was resolved during {processor.stage.value}; discarding result")
            result.success = False
            result.message = f"Rescheduling request is already {current.status.value}"
            result.awaiting_response = False
            return current

        updates = dict(result.updates)
        if result.success and not result.awaiting_response:
            target = processor.next_stage()
            if target is not None:
                ensure_transition(current.workflow_stage, target)
                updates["workflow_stage"] = target

        if updates:
            current = await self.storage.update_rescheduling_request(request.id, request.tenant_id, updates)
        if result.contact_updates:
            await self.storage.update_contact(request.contact_id, request.tenant_id, result.contact_updates)

        logger.info(
            f"Request {request.id}: {processor.stage.value} -> "
            f"{current.workflow_stage.value} ({current.status.value})"
        )
        return current

    async def confirm_reschedule(
        self,
        request_id: str,
        tenant_id: str,
        selected_time: datetime,
        processed_by: str = "operator",
        note: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> WorkflowResult:
        """Fix the new time and run the calendar update.

        Args:
            request_id: Rescheduling request
            tenant_id: Owning tenant
            selected_time: New appointment start (timezone-aware)
            processed_by: Who confirmed (user id, "customer", ...)
            note: Optional text appended to the customer preference
            now: Reference time
        """
        request = await self.storage.get_rescheduling_request(request_id, tenant_id)
        if request is None:
            return self._not_found(request_id)

        if is_resolved(request.workflow_stage, request.status):
            return self._state_result(
                request,
                False,
                f"Cannot confirm a request that is {request.status.value}",
            )

        if selected_time.tzinfo is None:
            return self._state_result(request, False, "Selected time must be timezone-aware")

        if request.workflow_stage != WorkflowStage.CALENDAR_UPDATE:
            ensure_transition(request.workflow_stage, WorkflowStage.CALENDAR_UPDATE)
        updates = {
            "final_selected_time": selected_time,
            "status": RequestStatus.APPROVED,
            "workflow_stage": WorkflowStage.CALENDAR_UPDATE,
            "processed_by": processed_by,
        }
        if note:
            updates["customer_preference"] = _append_note(request.customer_preference, note)

        await self.storage.update_rescheduling_request(request_id, tenant_id, updates)
        logger.info(f"Request {request_id} confirmed for {selected_time.isoformat()} by {processed_by}")

        return await self.process_workflow(request_id, tenant_id, WorkflowMode.MANUAL, now=now)

    async def cancel_rescheduling_request(
        self,
        request_id: str,
        tenant_id: str,
        reason: Optional[str] = None,
        processed_by: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> WorkflowResult:
        """Move a request straight to cancelled and undo its side effects."""
        now = now or _utcnow()
        request = await self.storage.get_rescheduling_request(request_id, tenant_id)
        if request is None:
            return self._not_found(request_id)

        if is_resolved(request.workflow_stage, request.status):
            return self._state_result(
                request,
                False,
                f"Cannot cancel a request that is {request.status.value}",
            )

        ensure_transition(request.workflow_stage, WorkflowStage.CANCELLED)
        updates = {
            "status": RequestStatus.REJECTED,
            "workflow_stage": WorkflowStage.CANCELLED,
            "customer_preference": _append_note(
                request.customer_preference,
                f"Cancelled: {reason or 'No reason given'}",
            ),
            "processed_at": now,
        }
        if processed_by:
            updates["processed_by"] = processed_by

        request = await self.storage.update_rescheduling_request(request_id, tenant_id, updates)

        if await self.storage.get_contact(request.contact_id, tenant_id) is not None:
            await self.storage.update_contact(
                request.contact_id,
                tenant_id,
                {"appointment_status": AppointmentStatus.PENDING},
            )
        await self.token_service.revoke_for_request(request_id)

        logger.info(f"Cancelled rescheduling request {request_id}")
        return self._state_result(request, True, "Rescheduling request cancelled")

    async def process_customer_response(
        self,
        token: str,
        selected_slot_index: Optional[int],
        comments: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> WorkflowResult:
        """Act on a customer's reply to a slot offer.

        Args:
            token: Response token from the notification
            selected_slot_index: Chosen slot, or None to decline all
            comments: Free-text comments from the customer
            now: Reference time
        """
        now = now or _utcnow()
        redemption = await self.token_service.redeem(token, selected_slot_index, now)
        if not redemption.valid:
            return WorkflowResult(
                success=False,
                request_id=redemption.request_id or "",
                workflow_stage="",
                status="",
                message=redemption.message,
            )

        data = redemption.token_data
        comment_note = f"Customer comments: {comments}" if comments else None

        if redemption.declined:
            request = await self.storage.get_rescheduling_request(data.rescheduling_request_id, data.tenant_id)
            if request is None:
                return self._not_found(data.rescheduling_request_id)

            note = "Customer declined the offered times"
            if comment_note:
                note = f"{note}. {comment_note}"
            request = await self.storage.update_rescheduling_request(
                request.id,
                request.tenant_id,
                {"customer_preference": _append_note(request.customer_preference, note)},
            )
            await self.storage.create_call_log(
                {
                    "tenant_id": request.tenant_id,
                    "contact_id": request.contact_id,
                    "log_level": "info",
                    "event": "reschedule_declined",
                    "message": note,
                    "created_at": now,
                }
            )
            return self._state_result(
                request,
                True,
                "Customer declined the offered times; awaiting operator follow-up",
            )

        return await self.confirm_reschedule(
            data.rescheduling_request_id,
            data.tenant_id,
            redemption.selected_slot.start_time,
            processed_by="customer",
            note=comment_note,
            now=now,
        )

    async def send_followup_reminder(
        self,
        request_id: str,
        tenant_id: str,
        attempt: int = 1,
        now: Optional[datetime] = None,
    ) -> WorkflowResult:
        """Re-send the slot offer for a request awaiting the customer."""
        now = now or _utcnow()
        request = await self.storage.get_rescheduling_request(request_id, tenant_id)
        if request is None:
            return self._not_found(request_id)

        if request.workflow_stage != WorkflowStage.CONFIRMATION or request.status != RequestStatus.PENDING:
            return self._state_result(
                request,
                False,
                "Reminders can only be sent for requests awaiting confirmation",
            )
        if not request.available_slots:
            return self._state_result(request, False, "No offered slots to remind about")

        context = await self._build_context(request, WorkflowMode.MANUAL, now)
        if context.contact is None:
            return self._state_result(request, False, "Contact not found or access denied")

        pattern = self.tracker.generate_pattern(context.contact, context.analytics)
        method, urgency = select_contact_method(context.contact, pattern, request.urgency_level)
        notification = NotificationRequest.build(
            request,
            context.contact,
            context.tenant_config,
            method,
            urgency,
        )
        response = await self.notification_service.send_followup_reminder(notification, attempt, now=now)

        if response.success:
            request = await self.storage.update_rescheduling_request(
                request_id,
                tenant_id,
                {
                    "confirmation_sent": True,
                    "customer_preference": _append_note(
                        request.customer_preference,
                        f"Reminder #{attempt} sent via {response.method} at {now.isoformat()}",
                    ),
                },
            )

        return self._state_result(request, response.success, response.message or "")

    async def process_expired_requests(self, now: Optional[datetime] = None) -> dict:
        """Expire unresolved requests older than the retention window.

        Returns:
            {"processed": n, "expired": m}
        """
        now = now or _utcnow()
        cutoff = now - timedelta(days=get_settings().request_retention_days)
        candidates = await self.storage.get_expired_rescheduling_requests(cutoff)

        processed = 0
        expired = 0
        for request in candidates:
            processed += 1
            if is_terminal_stage(request.workflow_stage):
                continue
            try:
                ensure_transition(request.workflow_stage, WorkflowStage.EXPIRED)
                await self.storage.update_rescheduling_request(
                    request.id,
                    request.tenant_id,
                    {"status": RequestStatus.EXPIRED, "workflow_stage": WorkflowStage.EXPIRED},
                )
                if await self.storage.get_contact(request.contact_id, request.tenant_id) is not None:
                    await self.storage.update_contact(
                        request.contact_id,
                        request.tenant_id,
                        {"appointment_status": AppointmentStatus.PENDING},
                    )
                await self.token_service.revoke_for_request(request.id)
                expired += 1
            except StorageError as e:
                logger.error(f"Failed to expire rescheduling request {request.id}: {e}")

        if processed:
            logger.info(f"Expiry sweep: {expired}/{processed} requests expired")
        return {"processed": processed, "expired": expired}

    async def get_rescheduling_request(
        self,
        request_id: str,
        tenant_id: str,
    ) -> Optional[ReschedulingRequest]:
        """Get a request within a tenant."""
        return await self.storage.get_rescheduling_request(request_id, tenant_id)

    async def get_requests(
        self,
        tenant_id: str,
        status: Optional[RequestStatus] = None,
    ) -> list[ReschedulingRequest]:
        """List a tenant's requests, optionally by status."""
        return await self.storage.get_rescheduling_requests_by_tenant(tenant_id, status)

    async def get_pending_requests(self, tenant_id: str) -> list[ReschedulingRequest]:
        """Requests with outstanding work."""
        return await self.storage.get_rescheduling_requests_by_tenant(tenant_id, RequestStatus.PENDING)

    async def get_responsiveness_pattern(
        self,
        contact_id: str,
        tenant_id: str,
    ) -> Optional[ResponsivenessPattern]:
        """Compute a contact's responsiveness pattern."""
        contact = await self.storage.get_contact(contact_id, tenant_id)
        if contact is None:
            return None
        analytics = await self.storage.get_contact_analytics(contact_id, tenant_id)
        return self.tracker.generate_pattern(contact, analytics)


# Singleton instance
_workflow: Optional[ReschedulingWorkflow] = None


def get_rescheduling_workflow() -> ReschedulingWorkflow:
    """Get singleton workflow backed by the SQL storage."""
    global _workflow
    if _workflow is None:
        from app.infra.storage import get_storage

        _workflow = ReschedulingWorkflow(storage=get_storage())
    return _workflow
