"""
Contact responsiveness endpoints.

Read a contact's responsiveness pattern and record call outcomes that
feed it.
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from app.api.routes.rescheduling import get_tenant_id
from app.core.rescheduling.responsiveness import record_call_outcome
from app.core.rescheduling.types import CallOutcome
from app.core.rescheduling.workflow import ReschedulingWorkflow, get_rescheduling_workflow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/contacts", tags=["Contacts"])


class CallOutcomeRequest(BaseModel):
    """Outcome of one call attempt."""

    outcome: CallOutcome
    duration: Optional[int] = Field(default=None, ge=0, description="Call length in seconds")
    sentiment: Optional[str] = Field(default=None, max_length=50)
    occurred_at: Optional[datetime] = Field(default=None, description="Defaults to now")


@router.get(
    "/{contact_id}/responsiveness",
    summary="Get a contact's responsiveness pattern",
    responses={404: {"description": "Contact not found"}},
)
async def get_responsiveness(
    contact_id: str,
    tenant_id: str = Depends(get_tenant_id),
    workflow: ReschedulingWorkflow = Depends(get_rescheduling_workflow),
) -> dict:
    pattern = await workflow.get_responsiveness_pattern(contact_id, tenant_id)
    if pattern is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Contact not found",
        )
    return pattern.to_dict()


@router.post(
    "/{contact_id}/call-outcomes",
    summary="Record a call outcome",
    responses={404: {"description": "Contact not found"}},
)
async def post_call_outcome(
    contact_id: str,
    body: CallOutcomeRequest,
    tenant_id: str = Depends(get_tenant_id),
    workflow: ReschedulingWorkflow = Depends(get_rescheduling_workflow),
) -> dict:
    contact = await record_call_outcome(
        workflow.storage,
        tenant_id,
        contact_id,
        body.outcome,
        duration=body.duration,
        sentiment=body.sentiment,
        now=body.occurred_at,
        tracker=workflow.tracker,
    )
    if contact is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Contact not found",
        )

    return {
        "contact_id": contact.id,
        "call_attempts": contact.call_attempts,
        "total_successful_contacts": contact.total_successful_contacts,
        "consecutive_no_answers": contact.consecutive_no_answers,
        "responsiveness_score": contact.responsiveness_score,
        "last_call_outcome": contact.last_call_outcome,
    }
