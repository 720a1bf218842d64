from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base
from app.models.common import JSONType, TimestampMixin, UTCDateTime


class Coach(TimestampMixin, Base):
    __tablename__ = "coaches"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    current_students: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class Learner(TimestampMixin, Base):
    __tablename__ = "learners"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    parent_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    parent_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    parent_phone: Mapped[str | None] = mapped_column(String(40), nullable=True)


class Booking(TimestampMixin, Base):
    __tablename__ = "bookings"
    __table_args__ = (
        UniqueConstraint("gateway_order_id", name="uq_booking_gateway_order"),
        CheckConstraint("status in ('pending','paid','cancelled')", name="ck_booking_status"),
        CheckConstraint("preferred_day is null or (preferred_day >= 0 and preferred_day <= 6)", name="ck_booking_day"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    gateway_order_id: Mapped[str] = mapped_column(String(120), nullable=False)
    learner_id: Mapped[int] = mapped_column(ForeignKey("learners.id", ondelete="CASCADE"), index=True)
    coach_id: Mapped[int | None] = mapped_column(ForeignKey("coaches.id", ondelete="SET NULL"), nullable=True)
    plan_slug: Mapped[str] = mapped_column(String(40), default="full", nullable=False)
    preferred_day: Mapped[int | None] = mapped_column(Integer, nullable=True)
    preferred_time: Mapped[str | None] = mapped_column(String(5), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="pending", nullable=False)


class PaymentRecord(TimestampMixin, Base):
    __tablename__ = "payments"
    __table_args__ = (
        UniqueConstraint("gateway_payment_id", name="uq_payment_gateway_payment"),
        CheckConstraint("amount_minor >= 0", name="ck_payment_amount_non_negative"),
        Index("ix_payments_created_at", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    gateway_payment_id: Mapped[str] = mapped_column(String(120), nullable=False)
    gateway_order_id: Mapped[str | None] = mapped_column(String(120), nullable=True, index=True)
    learner_id: Mapped[int | None] = mapped_column(ForeignKey("learners.id", ondelete="SET NULL"), nullable=True)
    amount_minor: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), default="INR", nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="captured", nullable=False)
    source: Mapped[str] = mapped_column(String(20), default="checkout", nullable=False)
    enrollment_id: Mapped[int | None] = mapped_column(
        ForeignKey("enrollments.id", ondelete="SET NULL"), nullable=True, index=True
    )
    captured_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    refund_id: Mapped[str | None] = mapped_column(String(120), nullable=True)
    refunded_minor: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class Enrollment(TimestampMixin, Base):
    __tablename__ = "enrollments"
    __table_args__ = (
        # At most one active enrollment per learner; reconciliation relies on it.
        Index(
            "uq_enrollment_active_learner",
            "learner_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
        CheckConstraint(
            "status in ('active','season_completed','terminated')",
            name="ck_enrollment_status",
        ),
        CheckConstraint("reschedules_used >= 0", name="ck_enrollment_reschedules_non_negative"),
        CheckConstraint("reschedules_used <= max_reschedules", name="ck_enrollment_reschedules_within_quota"),
        CheckConstraint("sessions_completed >= 0", name="ck_enrollment_completed_non_negative"),
        CheckConstraint("total_sessions > 0", name="ck_enrollment_total_positive"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    learner_id: Mapped[int] = mapped_column(ForeignKey("learners.id", ondelete="CASCADE"), index=True)
    coach_id: Mapped[int | None] = mapped_column(ForeignKey("coaches.id", ondelete="SET NULL"), nullable=True)
    payment_id: Mapped[str | None] = mapped_column(String(120), nullable=True, index=True)
    plan_slug: Mapped[str] = mapped_column(String(40), default="full", nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="active", nullable=False)
    total_sessions: Mapped[int] = mapped_column(Integer, nullable=False)
    sessions_completed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_reschedules: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    reschedules_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    consecutive_no_shows: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_no_shows: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    at_risk: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    session_duration_minutes: Mapped[int] = mapped_column(Integer, default=45, nullable=False)
    program_start: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    program_end: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    source: Mapped[str] = mapped_column(String(20), default="checkout", nullable=False)
    terminated_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    termination_reason: Mapped[str | None] = mapped_column(Text, nullable=True)


class ScheduledSession(TimestampMixin, Base):
    __tablename__ = "scheduled_sessions"
    __table_args__ = (
        UniqueConstraint("enrollment_id", "sequence_number", name="uq_session_enrollment_sequence"),
        Index("ix_scheduled_sessions_status_starts", "status", "starts_at"),
        CheckConstraint("duration_minutes > 0", name="ck_session_duration_positive"),
        CheckConstraint(
            "status in ('pending','scheduled','in_progress','completed','cancelled','no_show')",
            name="ck_session_status",
        ),
        CheckConstraint(
            "session_type in ('coaching','check_in','diagnostic')",
            name="ck_session_type",
        ),
        CheckConstraint(
            "calendar_event_id is null or starts_at is not null",
            name="ck_session_calendar_has_time",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    enrollment_id: Mapped[int] = mapped_column(ForeignKey("enrollments.id", ondelete="CASCADE"), index=True)
    learner_id: Mapped[int] = mapped_column(ForeignKey("learners.id", ondelete="CASCADE"), index=True)
    coach_id: Mapped[int | None] = mapped_column(ForeignKey("coaches.id", ondelete="SET NULL"), index=True, nullable=True)
    sequence_number: Mapped[int] = mapped_column(Integer, nullable=False)
    session_type: Mapped[str] = mapped_column(String(20), default="coaching", nullable=False)
    starts_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    duration_minutes: Mapped[int] = mapped_column(Integer, default=45, nullable=False)
    calendar_event_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    meeting_url: Mapped[str | None] = mapped_column(String(1200), nullable=True)
    recording_bot_id: Mapped[str | None] = mapped_column(String(120), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="pending", nullable=False)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)


class SessionChangeRequest(TimestampMixin, Base):
    __tablename__ = "session_change_requests"
    __table_args__ = (
        CheckConstraint("kind in ('reschedule','reassign')", name="ck_change_request_kind"),
        CheckConstraint(
            "status in ('pending','approved','rejected','failed','conflict')",
            name="ck_change_request_status",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    session_id: Mapped[int] = mapped_column(ForeignKey("scheduled_sessions.id", ondelete="CASCADE"), index=True)
    enrollment_id: Mapped[int] = mapped_column(ForeignKey("enrollments.id", ondelete="CASCADE"), index=True)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    original_starts_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    requested_starts_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    original_coach_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    requested_coach_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    initiated_by: Mapped[str] = mapped_column(String(40), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="pending", nullable=False)
    detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)


class SchedulingQueueItem(TimestampMixin, Base):
    __tablename__ = "scheduling_queue"
    __table_args__ = (
        CheckConstraint("status in ('pending','in_progress','resolved')", name="ck_scheduling_queue_status"),
        Index("ix_scheduling_queue_status_created", "status", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    session_id: Mapped[int | None] = mapped_column(
        ForeignKey("scheduled_sessions.id", ondelete="SET NULL"),
        index=True,
        nullable=True,
    )
    enrollment_id: Mapped[int | None] = mapped_column(Integer, index=True, nullable=True)
    learner_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    coach_id: Mapped[int | None] = mapped_column(Integer, index=True, nullable=True)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="pending", nullable=False)
    attempts_made: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    history: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)
    assigned_to: Mapped[str | None] = mapped_column(String(255), nullable=True)
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)


class ActivityLog(TimestampMixin, Base):
    __tablename__ = "activity_log"
    __table_args__ = (Index("ix_activity_log_action_created", "action", "created_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    action: Mapped[str] = mapped_column(String(80), nullable=False)
    actor: Mapped[str] = mapped_column(String(255), default="system", nullable=False)
    details: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
