"""
Rescheduling API Endpoints.

Operator and webhook triggers, stage control, and the customer response
link. Tenant-scoped routes read the tenant from the X-Tenant-ID header;
the customer response routes are authorized by the response token alone.
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Header, Query, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from app.core.rescheduling.models import RescheduleRequestData, WorkflowResult
from app.core.rescheduling.types import (
    RequestStatus,
    RescheduleReason,
    UrgencyLevel,
    WorkflowMode,
)
from app.core.rescheduling.workflow import (
    REQUEST_NOT_FOUND_MESSAGE,
    ReschedulingWorkflow,
    get_rescheduling_workflow,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/rescheduling", tags=["Rescheduling"])

# Booking provider webhook events that start a rescheduling request
RESCHEDULE_EVENTS = {
    "BOOKING_RESCHEDULED": RescheduleReason.PREFER_DIFFERENT_TIME,
    "BOOKING_CANCELLED": RescheduleReason.CUSTOMER_CONFLICT,
    "invitee.updated": RescheduleReason.PREFER_DIFFERENT_TIME,
    "invitee.canceled": RescheduleReason.CUSTOMER_CONFLICT,
    "reschedule_requested": RescheduleReason.OTHER,
}


def get_tenant_id(
    x_tenant_id: str = Header(
        ...,
        alias="X-Tenant-ID",
        description="Tenant identifier",
    ),
) -> str:
    """Require the tenant header."""
    if not x_tenant_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Tenant-ID header is required",
        )
    return x_tenant_id


class CreateRescheduleRequest(BaseModel):
    """Manual rescheduling trigger."""

    contact_id: str = Field(..., min_length=1, description="Contact whose appointment moves")
    original_appointment_time: datetime = Field(
        ...,
        description="Current appointment start (ISO-8601 with offset)",
        examples=["2025-03-04T14:00:00+00:00"],
    )
    call_session_id: Optional[str] = Field(default=None, description="Originating call session")
    original_appointment_type: Optional[str] = None
    reschedule_reason: RescheduleReason = RescheduleReason.OTHER
    customer_preference: Optional[str] = Field(default=None, max_length=2000)
    urgency_level: UrgencyLevel = UrgencyLevel.NORMAL
    proposed_times: Optional[list[datetime]] = Field(
        default=None,
        description="Times the customer suggested; only their dates are searched when given",
    )
    mode: WorkflowMode = Field(
        default=WorkflowMode.MANUAL,
        description="manual: one stage per call; automated: run until the customer is asked; "
        "auto_confirm: book the top ranked slot",
    )


class WebhookEvent(BaseModel):
    """Booking provider or call platform event."""

    event: str = Field(..., description="Provider trigger, e.g. BOOKING_CANCELLED")
    contact_id: str = Field(..., min_length=1)
    original_appointment_time: Optional[datetime] = None
    call_session_id: Optional[str] = None
    customer_preference: Optional[str] = Field(default=None, max_length=2000)
    urgency_level: UrgencyLevel = UrgencyLevel.NORMAL


class ProcessRequest(BaseModel):
    """Advance a request."""

    mode: WorkflowMode = WorkflowMode.MANUAL


class ConfirmRequest(BaseModel):
    """Operator confirmation of a new time."""

    selected_time: datetime = Field(..., description="New appointment start (ISO-8601 with offset)")
    processed_by: str = Field(default="operator", max_length=100)


class CancelRequest(BaseModel):
    """Cancel a request."""

    reason: Optional[str] = Field(default=None, max_length=2000)
    processed_by: Optional[str] = Field(default=None, max_length=100)


class ReminderRequest(BaseModel):
    """Follow-up reminder."""

    attempt: int = Field(default=1, ge=1, le=10)


class CustomerResponse(BaseModel):
    """Customer's reply to a slot offer."""

    selected_slot_index: Optional[int] = Field(
        default=None,
        ge=0,
        description="Index of the chosen slot; null declines all offered times",
    )
    comments: Optional[str] = Field(default=None, max_length=2000)


def _respond(result: WorkflowResult, success_status: int = status.HTTP_200_OK) -> JSONResponse:
    """Map a workflow result to an HTTP response."""
    if result.message == REQUEST_NOT_FOUND_MESSAGE:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=result.message)
    return JSONResponse(status_code=success_status, content=result.to_dict())


@router.post(
    "/requests",
    summary="Create a rescheduling request",
    description="Start the rescheduling workflow for a contact. Repeated triggers for the same call session return the existing request.",
    responses={
        201: {"description": "Request created"},
        200: {"description": "Existing request returned (duplicate trigger)"},
        400: {"description": "Invalid request"},
    },
)
async def create_request(
    body: CreateRescheduleRequest,
    tenant_id: str = Depends(get_tenant_id),
    workflow: ReschedulingWorkflow = Depends(get_rescheduling_workflow),
) -> JSONResponse:
    data = RescheduleRequestData(
        contact_id=body.contact_id,
        tenant_id=tenant_id,
        original_appointment_time=body.original_appointment_time,
        call_session_id=body.call_session_id,
        original_appointment_type=body.original_appointment_type,
        reschedule_reason=body.reschedule_reason,
        customer_preference=body.customer_preference,
        urgency_level=body.urgency_level,
        proposed_times=body.proposed_times,
    )
    result = await workflow.create_rescheduling_request(data, body.mode)

    if not result.request_id:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=result.to_dict())
    if result.duplicate:
        return JSONResponse(status_code=status.HTTP_200_OK, content=result.to_dict())
    return JSONResponse(status_code=status.HTTP_201_CREATED, content=result.to_dict())


@router.post(
    "/webhook",
    summary="Booking webhook",
    description="Map a booking cancellation or reschedule event to an automated rescheduling request.",
)
async def webhook(
    event: WebhookEvent,
    tenant_id: str = Depends(get_tenant_id),
    workflow: ReschedulingWorkflow = Depends(get_rescheduling_workflow),
) -> JSONResponse:
    reason = RESCHEDULE_EVENTS.get(event.event)
    if reason is None:
        logger.debug(f"Ignoring webhook event {event.event} for tenant {tenant_id}")
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={"handled": False, "event": event.event},
        )

    original_time = event.original_appointment_time
    if original_time is None:
        contact = await workflow.storage.get_contact(event.contact_id, tenant_id)
        original_time = contact.appointment_time if contact else None

    data = RescheduleRequestData(
        contact_id=event.contact_id,
        tenant_id=tenant_id,
        original_appointment_time=original_time,
        call_session_id=event.call_session_id,
        reschedule_reason=reason,
        customer_preference=event.customer_preference,
        urgency_level=event.urgency_level,
    )
    result = await workflow.create_rescheduling_request(data, WorkflowMode.AUTOMATED)
    logger.info(f"Webhook {event.event} for contact {event.contact_id}: {result.message}")

    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content={"handled": True, "event": event.event, "result": result.to_dict()},
    )


@router.get(
    "/requests",
    summary="List rescheduling requests",
)
async def list_requests(
    status_filter: Optional[RequestStatus] = Query(default=None, alias="status"),
    tenant_id: str = Depends(get_tenant_id),
    workflow: ReschedulingWorkflow = Depends(get_rescheduling_workflow),
) -> dict:
    requests = await workflow.get_requests(tenant_id, status_filter)
    return {
        "count": len(requests),
        "requests": [r.to_dict() for r in requests],
    }


@router.get(
    "/requests/pending",
    summary="List requests with outstanding work",
)
async def list_pending_requests(
    tenant_id: str = Depends(get_tenant_id),
    workflow: ReschedulingWorkflow = Depends(get_rescheduling_workflow),
) -> dict:
    requests = await workflow.get_pending_requests(tenant_id)
    return {
        "count": len(requests),
        "requests": [r.to_dict() for r in requests],
    }


@router.get(
    "/requests/{request_id}",
    summary="Get a rescheduling request",
    responses={404: {"description": "Request not found"}},
)
async def get_request(
    request_id: str,
    tenant_id: str = Depends(get_tenant_id),
    workflow: ReschedulingWorkflow = Depends(get_rescheduling_workflow),
) -> dict:
    request = await workflow.get_rescheduling_request(request_id, tenant_id)
    if request is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=REQUEST_NOT_FOUND_MESSAGE,
        )
    return request.to_dict()


@router.post(
    "/requests/{request_id}/process",
    summary="Advance a rescheduling request",
)
async def process_request(
    request_id: str,
    body: Optional[ProcessRequest] = None,
    tenant_id: str = Depends(get_tenant_id),
    workflow: ReschedulingWorkflow = Depends(get_rescheduling_workflow),
) -> JSONResponse:
    mode = body.mode if body else WorkflowMode.MANUAL
    return _respond(await workflow.process_workflow(request_id, tenant_id, mode))


@router.post(
    "/requests/{request_id}/confirm",
    summary="Confirm a new appointment time",
)
async def confirm_request(
    request_id: str,
    body: ConfirmRequest,
    tenant_id: str = Depends(get_tenant_id),
    workflow: ReschedulingWorkflow = Depends(get_rescheduling_workflow),
) -> JSONResponse:
    result = await workflow.confirm_reschedule(
        request_id,
        tenant_id,
        body.selected_time,
        processed_by=body.processed_by,
    )
    return _respond(result)


@router.post(
    "/requests/{request_id}/cancel",
    summary="Cancel a rescheduling request",
)
async def cancel_request(
    request_id: str,
    body: Optional[CancelRequest] = None,
    tenant_id: str = Depends(get_tenant_id),
    workflow: ReschedulingWorkflow = Depends(get_rescheduling_workflow),
) -> JSONResponse:
    body = body or CancelRequest()
    result = await workflow.cancel_rescheduling_request(
        request_id,
        tenant_id,
        reason=body.reason,
        processed_by=body.processed_by,
    )
    return _respond(result)


@router.post(
    "/requests/{request_id}/reminders",
    summary="Send a follow-up reminder",
)
async def send_reminder(
    request_id: str,
    body: Optional[ReminderRequest] = None,
    tenant_id: str = Depends(get_tenant_id),
    workflow: ReschedulingWorkflow = Depends(get_rescheduling_workflow),
) -> JSONResponse:
    attempt = body.attempt if body else 1
    return _respond(await workflow.send_followup_reminder(request_id, tenant_id, attempt))


@router.get(
    "/respond/{token}",
    summary="Show the offered slots for a response token",
    responses={400: {"description": "Invalid or expired token"}},
)
async def get_response_options(
    token: str,
    workflow: ReschedulingWorkflow = Depends(get_rescheduling_workflow),
) -> JSONResponse:
    check = await workflow.token_service.validate(token)
    if not check.valid:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=check.to_dict())

    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content={
            **check.to_dict(),
            "expires_at": check.token_data.expires_at.isoformat(),
            "available_slots": [s.to_dict() for s in check.token_data.available_slots],
        },
    )


@router.post(
    "/respond/{token}",
    summary="Submit the customer's choice",
    responses={400: {"description": "Invalid or expired token, or bad selection"}},
)
async def submit_response(
    token: str,
    body: CustomerResponse,
    workflow: ReschedulingWorkflow = Depends(get_rescheduling_workflow),
) -> JSONResponse:
    result = await workflow.process_customer_response(
        token,
        body.selected_slot_index,
        comments=body.comments,
    )
    token_rejected = not result.success and not result.workflow_stage
    if token_rejected and result.message != REQUEST_NOT_FOUND_MESSAGE:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=result.to_dict())
    return _respond(result)


@router.get(
    "/tokens/pending",
    summary="List outstanding response tokens",
)
async def list_pending_tokens(
    tenant_id: str = Depends(get_tenant_id),
    workflow: ReschedulingWorkflow = Depends(get_rescheduling_workflow),
) -> dict:
    tokens = await workflow.token_service.pending(tenant_id)
    return {
        "count": len(tokens),
        # Tokens are bearer credentials; listings show a prefix only
        "tokens": [{**t.to_dict(), "token": f"{t.token[:8]}..."} for t in tokens],
    }
