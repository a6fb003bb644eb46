"""
SQL storage for the rescheduling engine.

PostgreSQL via async SQLAlchemy. Each call runs in its own session from
get_db_context(); driver errors surface as StorageError.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError

from app.core.rescheduling.errors import StorageError
from app.core.rescheduling.models import (
    AvailabilitySlot,
    Contact,
    ContactAnalytics,
    ReschedulingRequest,
    TenantConfig,
    format_datetime,
    parse_datetime,
)
from app.core.rescheduling.state import UNRESOLVED_STATUSES
from app.core.rescheduling.storage import ReschedulingStorage
from app.core.rescheduling.types import RequestStatus, WorkflowStage
from app.infra.database import get_db_context
from app.models.database import (
    CallLog,
    ContactAnalyticsRecord,
    ContactRecord,
    ReschedulingRequestRecord,
    TenantConfigRecord,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def _request_columns(values: dict) -> dict:
    """Convert domain values to column values."""
    columns = dict(values)
    if "available_slots" in columns:
        columns["available_slots"] = [s.to_dict() for s in columns["available_slots"] or []]
    if "proposed_times" in columns:
        columns["proposed_times"] = [format_datetime(t) for t in columns["proposed_times"] or []]
    return columns


def _to_request(record: ReschedulingRequestRecord) -> ReschedulingRequest:
    return ReschedulingRequest(
        id=record.id,
        tenant_id=record.tenant_id,
        contact_id=record.contact_id,
        call_session_id=record.call_session_id,
        idempotency_key=record.idempotency_key,
        webhook_event_id=record.webhook_event_id,
        original_appointment_time=record.original_appointment_time,
        original_appointment_type=record.original_appointment_type,
        reschedule_reason=record.reschedule_reason,
        customer_preference=record.customer_preference,
        urgency_level=record.urgency_level,
        proposed_times=[parse_datetime(t) for t in record.proposed_times or []],
        status=record.status,
        workflow_stage=record.workflow_stage,
        automated_processing=record.automated_processing,
        available_slots=[AvailabilitySlot.from_dict(s) for s in record.available_slots or []],
        final_selected_time=record.final_selected_time,
        calendar_updated=record.calendar_updated,
        confirmation_sent=record.confirmation_sent,
        processed_by=record.processed_by,
        processed_at=record.processed_at,
        response_time_hours=record.response_time_hours,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


def _to_contact(record: ContactRecord) -> Contact:
    return Contact(
        id=record.id,
        tenant_id=record.tenant_id,
        name=record.name,
        phone=record.phone or "",
        email=record.email,
        appointment_time=record.appointment_time,
        appointment_type=record.appointment_type,
        appointment_duration=record.appointment_duration,
        appointment_status=record.appointment_status,
        timezone=record.timezone,
        booking_source=record.booking_source,
        preferred_contact_method=record.preferred_contact_method,
        call_attempts=record.call_attempts or 0,
        total_successful_contacts=record.total_successful_contacts or 0,
        consecutive_no_answers=record.consecutive_no_answers or 0,
        last_call_outcome=record.last_call_outcome,
        last_contact_time=record.last_contact_time,
        average_response_time=record.average_response_time,
        responsiveness_score=record.responsiveness_score,
        contact_pattern_data=list(record.contact_pattern_data or []),
        reschedule_request_count=record.reschedule_request_count or 0,
    )


def _to_tenant_config(record: TenantConfigRecord) -> TenantConfig:
    return TenantConfig(
        tenant_id=record.tenant_id,
        business_name=record.business_name,
        business_type=record.business_type,
        timezone=record.timezone,
        business_hours=record.business_hours,
        cal_api_key=record.cal_api_key,
        cal_event_type_id=record.cal_event_type_id,
        calendly_access_token=record.calendly_access_token,
        calendly_organization=record.calendly_organization,
        calendly_user=record.calendly_user,
    )


class SqlReschedulingStorage(ReschedulingStorage):
    """
    PostgreSQL-backed storage.

    Create-or-get relies on the (tenant_id, idempotency_key) unique
    constraint with INSERT ... ON CONFLICT DO NOTHING, so concurrent
    triggers for the same key produce one row.
    """

    def __init__(self, session_context: Optional[Callable[[], Any]] = None):
        """Initialize storage.

        Args:
            session_context: Async context manager factory yielding a session
                (defaults to get_db_context)
        """
        self._session_context = session_context or get_db_context

    async def get_rescheduling_request(
        self,
        request_id: str,
        tenant_id: str,
    ) -> Optional[ReschedulingRequest]:
        try:
            async with self._session_context() as db:
                record = await db.get(ReschedulingRequestRecord, request_id)
                if record is None or record.tenant_id != tenant_id:
                    return None
                return _to_request(record)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to load rescheduling request {request_id}: {e}") from e

    async def create_rescheduling_request(
        self,
        request: ReschedulingRequest,
    ) -> tuple[ReschedulingRequest, bool]:
        values = _request_columns(
            {
                "id": request.id,
                "tenant_id": request.tenant_id,
                "contact_id": request.contact_id,
                "call_session_id": request.call_session_id,
                "idempotency_key": request.idempotency_key,
                "webhook_event_id": request.webhook_event_id,
                "original_appointment_time": request.original_appointment_time,
                "original_appointment_type": request.original_appointment_type,
                "reschedule_reason": request.reschedule_reason,
                "customer_preference": request.customer_preference,
                "urgency_level": request.urgency_level,
                "proposed_times": request.proposed_times,
                "status": request.status,
                "workflow_stage": request.workflow_stage,
                "automated_processing": request.automated_processing,
                "available_slots": request.available_slots,
                "created_at": request.created_at,
                "updated_at": request.updated_at,
            }
        )
        stmt = (
            pg_insert(ReschedulingRequestRecord)
            .values(**values)
            .on_conflict_do_nothing(constraint="uq_reschedule_idempotency")
            .returning(ReschedulingRequestRecord.id)
        )

        try:
            async with self._session_context() as db:
                inserted = (await db.execute(stmt)).scalar_one_or_none()
                if inserted is not None:
                    return request, True

                result = await db.execute(
                    select(ReschedulingRequestRecord).where(
                        ReschedulingRequestRecord.tenant_id == request.tenant_id,
                        ReschedulingRequestRecord.idempotency_key == request.idempotency_key,
                    )
                )
                return _to_request(result.scalar_one()), False
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to create rescheduling request: {e}") from e

    async def update_rescheduling_request(
        self,
        request_id: str,
        tenant_id: str,
        updates: dict,
    ) -> ReschedulingRequest:
        try:
            async with self._session_context() as db:
                record = await db.get(ReschedulingRequestRecord, request_id)
                if record is None or record.tenant_id != tenant_id:
                    raise StorageError(f"Rescheduling request {request_id} not found")

                for key, value in _request_columns(updates).items():
                    if not hasattr(ReschedulingRequestRecord, key):
                        raise KeyError(f"Unknown rescheduling request field: {key}")
                    setattr(record, key, value)
                record.updated_at = _utcnow()

                await db.flush()
                return _to_request(record)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to update rescheduling request {request_id}: {e}") from e

    async def get_rescheduling_requests_by_tenant(
        self,
        tenant_id: str,
        status: Optional[RequestStatus] = None,
    ) -> list[ReschedulingRequest]:
        stmt = select(ReschedulingRequestRecord).where(
            ReschedulingRequestRecord.tenant_id == tenant_id
        )
        if status is not None:
            stmt = stmt.where(ReschedulingRequestRecord.status == status)
        stmt = stmt.order_by(ReschedulingRequestRecord.created_at.desc())

        try:
            async with self._session_context() as db:
                result = await db.execute(stmt)
                return [_to_request(r) for r in result.scalars().all()]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list rescheduling requests: {e}") from e

    async def get_expired_rescheduling_requests(
        self,
        cutoff: datetime,
    ) -> list[ReschedulingRequest]:
        stmt = select(ReschedulingRequestRecord).where(
            ReschedulingRequestRecord.created_at < cutoff,
            ReschedulingRequestRecord.status.in_(UNRESOLVED_STATUSES),
            ReschedulingRequestRecord.workflow_stage.not_in(
                [WorkflowStage.CANCELLED, WorkflowStage.EXPIRED]
            ),
        )

        try:
            async with self._session_context() as db:
                result = await db.execute(stmt)
                return [_to_request(r) for r in result.scalars().all()]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to query expired requests: {e}") from e

    async def get_contact(self, contact_id: str, tenant_id: str) -> Optional[Contact]:
        try:
            async with self._session_context() as db:
                record = await db.get(ContactRecord, contact_id)
                if record is None or record.tenant_id != tenant_id:
                    return None
                return _to_contact(record)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to load contact {contact_id}: {e}") from e

    async def update_contact(self, contact_id: str, tenant_id: str, updates: dict) -> Contact:
        try:
            async with self._session_context() as db:
                record = await db.get(ContactRecord, contact_id)
                if record is None or record.tenant_id != tenant_id:
                    raise StorageError(f"Contact {contact_id} not found")

                for key, value in updates.items():
                    if not hasattr(ContactRecord, key):
                        raise KeyError(f"Unknown contact field: {key}")
                    setattr(record, key, value)
                record.updated_at = _utcnow()

                await db.flush()
                return _to_contact(record)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to update contact {contact_id}: {e}") from e

    async def get_tenant_config(self, tenant_id: str) -> Optional[TenantConfig]:
        try:
            async with self._session_context() as db:
                record = await db.get(TenantConfigRecord, tenant_id)
                return _to_tenant_config(record) if record else None
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to load tenant config {tenant_id}: {e}") from e

    async def create_call_log(self, entry: dict) -> None:
        entry = dict(entry)
        details = entry.pop("metadata", None) or {}
        created_at = entry.pop("created_at", None) or _utcnow()

        try:
            async with self._session_context() as db:
                db.add(
                    CallLog(
                        tenant_id=entry["tenant_id"],
                        contact_id=entry.get("contact_id"),
                        call_session_id=entry.get("call_session_id"),
                        log_level=entry.get("log_level", "info"),
                        event=entry.get("event", "event"),
                        message=entry.get("message"),
                        outcome=entry.get("outcome"),
                        duration=entry.get("duration"),
                        details=details,
                        created_at=created_at,
                    )
                )
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to write call log: {e}") from e

    async def get_contact_analytics(
        self,
        contact_id: str,
        tenant_id: str,
    ) -> Optional[ContactAnalytics]:
        try:
            async with self._session_context() as db:
                record = await db.get(ContactAnalyticsRecord, (tenant_id, contact_id))
                if record is None:
                    return None
                return ContactAnalytics(
                    average_sentiment_score=record.average_sentiment_score,
                    overall_engagement_score=record.overall_engagement_score,
                    no_show_count=record.no_show_count or 0,
                    sentiment_history=list(record.sentiment_history or []),
                )
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to load analytics for contact {contact_id}: {e}") from e


# Singleton instance
_storage: Optional[SqlReschedulingStorage] = None


def get_storage() -> SqlReschedulingStorage:
    """Get singleton SQL storage."""
    global _storage
    if _storage is None:
        _storage = SqlReschedulingStorage()
    return _storage
