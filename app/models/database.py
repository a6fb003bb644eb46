"""
Database Models

SQLAlchemy ORM models for the multi-tenant rescheduling engine.
"""

import uuid
from datetime import datetime
from typing import Optional, List

from sqlalchemy import (
    Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Text,
    UniqueConstraint, Enum as SQLEnum, text
)
from sqlalchemy.dialects.postgresql import JSON
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from app.core.rescheduling.types import (
    AppointmentStatus,
    BookingSource,
    ContactMethod,
    RequestStatus,
    RescheduleReason,
    UrgencyLevel,
    WorkflowStage,
)


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamp columns."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=text("CURRENT_TIMESTAMP"),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=text("CURRENT_TIMESTAMP"),
        nullable=False
    )


class TenantConfigRecord(Base, TimestampMixin):
    """
    Tenant business settings.

    Holds opening hours, timezone and the calendar credentials used to
    read availability and write bookings.
    """

    __tablename__ = "tenant_configs"

    tenant_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    business_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    business_type: Mapped[str] = mapped_column(String(50), default="professional")
    timezone: Mapped[str] = mapped_column(String(50), default="Europe/London")
    business_hours: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    # Calendar integration
    cal_api_key: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    cal_event_type_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    calendly_access_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    calendly_organization: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    calendly_user: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    contacts: Mapped[List["ContactRecord"]] = relationship(
        "ContactRecord",
        back_populates="tenant"
    )

    def __repr__(self) -> str:
        return f"<TenantConfigRecord(tenant_id='{self.tenant_id}', business_type='{self.business_type}')>"


class ContactRecord(Base, TimestampMixin):
    """
    Contact model.

    The customer whose appointment is being moved, with the responsiveness
    counters updated after every call attempt.
    """

    __tablename__ = "contacts"
    __table_args__ = (
        Index("idx_contact_tenant", "tenant_id"),
        Index("idx_contact_phone", "tenant_id", "phone"),
    )

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4())
    )
    tenant_id: Mapped[str] = mapped_column(
        String(100),
        ForeignKey("tenant_configs.tenant_id", ondelete="CASCADE"),
        nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[str] = mapped_column(String(50), default="")
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    appointment_time: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True
    )
    appointment_type: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    appointment_duration: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    appointment_status: Mapped[AppointmentStatus] = mapped_column(
        SQLEnum(AppointmentStatus, name="appointment_status"),
        default=AppointmentStatus.PENDING
    )
    timezone: Mapped[str] = mapped_column(String(50), default="Europe/London")
    booking_source: Mapped[BookingSource] = mapped_column(
        SQLEnum(BookingSource, name="booking_source"),
        default=BookingSource.MANUAL
    )
    preferred_contact_method: Mapped[ContactMethod] = mapped_column(
        SQLEnum(ContactMethod, name="contact_method"),
        default=ContactMethod.VOICE
    )

    # Responsiveness counters
    call_attempts: Mapped[int] = mapped_column(Integer, default=0)
    total_successful_contacts: Mapped[int] = mapped_column(Integer, default=0)
    consecutive_no_answers: Mapped[int] = mapped_column(Integer, default=0)
    last_call_outcome: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    last_contact_time: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True
    )
    average_response_time: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    responsiveness_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    contact_pattern_data: Mapped[list] = mapped_column(JSON, default=list)

    reschedule_request_count: Mapped[int] = mapped_column(Integer, default=0)

    tenant: Mapped["TenantConfigRecord"] = relationship(
        "TenantConfigRecord",
        back_populates="contacts"
    )

    def __repr__(self) -> str:
        return f"<ContactRecord(id={self.id}, name='{self.name}', status={self.appointment_status.value})>"


class ContactAnalyticsRecord(Base, TimestampMixin):
    """Conversation analytics aggregated outside the engine."""

    __tablename__ = "contact_analytics"

    tenant_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    contact_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("contacts.id", ondelete="CASCADE"),
        primary_key=True
    )
    average_sentiment_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    overall_engagement_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    no_show_count: Mapped[int] = mapped_column(Integer, default=0)
    sentiment_history: Mapped[list] = mapped_column(JSON, default=list)


class ReschedulingRequestRecord(Base, TimestampMixin):
    """
    Rescheduling request model.

    One row per appointment change. The (tenant_id, idempotency_key)
    constraint makes repeated triggers collapse onto a single row.
    """

    __tablename__ = "rescheduling_requests"
    __table_args__ = (
        UniqueConstraint("tenant_id", "idempotency_key", name="uq_reschedule_idempotency"),
        Index("idx_reschedule_tenant_status", "tenant_id", "status"),
        Index("idx_reschedule_created", "created_at"),
        Index("idx_reschedule_contact", "tenant_id", "contact_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(100), nullable=False)
    contact_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("contacts.id", ondelete="CASCADE"),
        nullable=False
    )
    call_session_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False)
    webhook_event_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    original_appointment_time: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True
    )
    original_appointment_type: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    reschedule_reason: Mapped[RescheduleReason] = mapped_column(
        SQLEnum(RescheduleReason, name="reschedule_reason"),
        default=RescheduleReason.OTHER
    )
    customer_preference: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    urgency_level: Mapped[UrgencyLevel] = mapped_column(
        SQLEnum(UrgencyLevel, name="urgency_level"),
        default=UrgencyLevel.NORMAL
    )
    proposed_times: Mapped[list] = mapped_column(JSON, default=list)

    status: Mapped[RequestStatus] = mapped_column(
        SQLEnum(RequestStatus, name="request_status"),
        default=RequestStatus.PENDING
    )
    workflow_stage: Mapped[WorkflowStage] = mapped_column(
        SQLEnum(WorkflowStage, name="workflow_stage"),
        default=WorkflowStage.CUSTOMER_REQUEST
    )
    automated_processing: Mapped[bool] = mapped_column(Boolean, default=True)

    available_slots: Mapped[list] = mapped_column(JSON, default=list)
    final_selected_time: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True
    )
    calendar_updated: Mapped[bool] = mapped_column(Boolean, default=False)
    confirmation_sent: Mapped[bool] = mapped_column(Boolean, default=False)
    processed_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True
    )
    response_time_hours: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<ReschedulingRequestRecord(id={self.id}, contact_id={self.contact_id}, "
            f"stage={self.workflow_stage.value}, status={self.status.value})>"
        )


class CallLog(Base):
    """
    Call log model.

    Append-only record of rescheduling events and call outcomes.
    """

    __tablename__ = "call_logs"
    __table_args__ = (
        Index("idx_call_log_tenant", "tenant_id"),
        Index("idx_call_log_contact", "tenant_id", "contact_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4
    )
    tenant_id: Mapped[str] = mapped_column(String(100), nullable=False)
    contact_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    call_session_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    log_level: Mapped[str] = mapped_column(String(20), default="info")
    event: Mapped[str] = mapped_column(String(50), nullable=False)
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    outcome: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    duration: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    details: Mapped[dict] = mapped_column("metadata", JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=text("CURRENT_TIMESTAMP"),
        nullable=False
    )

    def __repr__(self) -> str:
        return f"<CallLog(id={self.id}, event='{self.event}', contact_id={self.contact_id})>"
