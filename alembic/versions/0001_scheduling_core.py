"""scheduling core tables

Revision ID: 0001_scheduling_core
Revises:
Create Date: 2026-10-18
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision = "0001_scheduling_core"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "coaches",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("current_students", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email"),
    )

    op.create_table(
        "learners",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("parent_name", sa.String(length=255), nullable=True),
        sa.Column("parent_email", sa.String(length=255), nullable=True),
        sa.Column("parent_phone", sa.String(length=40), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "bookings",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("gateway_order_id", sa.String(length=120), nullable=False),
        sa.Column("learner_id", sa.Integer(), nullable=False),
        sa.Column("coach_id", sa.Integer(), nullable=True),
        sa.Column("plan_slug", sa.String(length=40), nullable=False, server_default="full"),
        sa.Column("preferred_day", sa.Integer(), nullable=True),
        sa.Column("preferred_time", sa.String(length=5), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        *_timestamps(),
        sa.ForeignKeyConstraint(["learner_id"], ["learners.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["coach_id"], ["coaches.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("gateway_order_id", name="uq_booking_gateway_order"),
        sa.CheckConstraint("status in ('pending','paid','cancelled')", name="ck_booking_status"),
        sa.CheckConstraint(
            "preferred_day is null or (preferred_day >= 0 and preferred_day <= 6)",
            name="ck_booking_day",
        ),
    )
    op.create_index("ix_bookings_learner_id", "bookings", ["learner_id"], unique=False)

    op.create_table(
        "payments",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("gateway_payment_id", sa.String(length=120), nullable=False),
        sa.Column("gateway_order_id", sa.String(length=120), nullable=True),
        sa.Column("learner_id", sa.Integer(), nullable=True),
        sa.Column("amount_minor", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=8), nullable=False, server_default="INR"),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="captured"),
        sa.Column("source", sa.String(length=20), nullable=False, server_default="checkout"),
        sa.Column("captured_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["learner_id"], ["learners.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("gateway_payment_id", name="uq_payment_gateway_payment"),
        sa.CheckConstraint("amount_minor >= 0", name="ck_payment_amount_non_negative"),
    )
    op.create_index("ix_payments_gateway_order_id", "payments", ["gateway_order_id"], unique=False)
    op.create_index("ix_payments_created_at", "payments", ["created_at"], unique=False)

    op.create_table(
        "enrollments",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("learner_id", sa.Integer(), nullable=False),
        sa.Column("coach_id", sa.Integer(), nullable=True),
        sa.Column("payment_id", sa.String(length=120), nullable=True),
        sa.Column("plan_slug", sa.String(length=40), nullable=False, server_default="full"),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="active"),
        sa.Column("total_sessions", sa.Integer(), nullable=False),
        sa.Column("sessions_completed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_reschedules", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("reschedules_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("consecutive_no_shows", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_no_shows", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("at_risk", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("session_duration_minutes", sa.Integer(), nullable=False, server_default="45"),
        sa.Column("program_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("program_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("source", sa.String(length=20), nullable=False, server_default="checkout"),
        sa.Column("terminated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("termination_reason", sa.Text(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["learner_id"], ["learners.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["coach_id"], ["coaches.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("status in ('active','season_completed','terminated')", name="ck_enrollment_status"),
        sa.CheckConstraint("reschedules_used >= 0", name="ck_enrollment_reschedules_non_negative"),
        sa.CheckConstraint("reschedules_used <= max_reschedules", name="ck_enrollment_reschedules_within_quota"),
        sa.CheckConstraint("sessions_completed >= 0", name="ck_enrollment_completed_non_negative"),
        sa.CheckConstraint("total_sessions > 0", name="ck_enrollment_total_positive"),
    )
    op.create_index("ix_enrollments_learner_id", "enrollments", ["learner_id"], unique=False)
    op.create_index("ix_enrollments_payment_id", "enrollments", ["payment_id"], unique=False)
    op.create_index(
        "uq_enrollment_active_learner",
        "enrollments",
        ["learner_id"],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
    )

    op.create_table(
        "scheduled_sessions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("enrollment_id", sa.Integer(), nullable=False),
        sa.Column("learner_id", sa.Integer(), nullable=False),
        sa.Column("coach_id", sa.Integer(), nullable=True),
        sa.Column("sequence_number", sa.Integer(), nullable=False),
        sa.Column("session_type", sa.String(length=20), nullable=False, server_default="coaching"),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_minutes", sa.Integer(), nullable=False, server_default="45"),
        sa.Column("calendar_event_id", sa.String(length=255), nullable=True),
        sa.Column("meeting_url", sa.String(length=1200), nullable=True),
        sa.Column("recording_bot_id", sa.String(length=120), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["enrollment_id"], ["enrollments.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["learner_id"], ["learners.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["coach_id"], ["coaches.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("enrollment_id", "sequence_number", name="uq_session_enrollment_sequence"),
        sa.CheckConstraint("duration_minutes > 0", name="ck_session_duration_positive"),
        sa.CheckConstraint(
            "status in ('pending','scheduled','in_progress','completed','cancelled','no_show')",
            name="ck_session_status",
        ),
        sa.CheckConstraint("session_type in ('coaching','check_in','diagnostic')", name="ck_session_type"),
        sa.CheckConstraint(
            "calendar_event_id is null or starts_at is not null",
            name="ck_session_calendar_has_time",
        ),
    )
    op.create_index("ix_scheduled_sessions_enrollment_id", "scheduled_sessions", ["enrollment_id"], unique=False)
    op.create_index("ix_scheduled_sessions_learner_id", "scheduled_sessions", ["learner_id"], unique=False)
    op.create_index("ix_scheduled_sessions_coach_id", "scheduled_sessions", ["coach_id"], unique=False)
    op.create_index("ix_scheduled_sessions_status_starts", "scheduled_sessions", ["status", "starts_at"], unique=False)

    op.create_table(
        "session_change_requests",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("session_id", sa.Integer(), nullable=False),
        sa.Column("enrollment_id", sa.Integer(), nullable=False),
        sa.Column("kind", sa.String(length=20), nullable=False),
        sa.Column("original_starts_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("requested_starts_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("original_coach_id", sa.Integer(), nullable=True),
        sa.Column("requested_coach_id", sa.Integer(), nullable=True),
        sa.Column("initiated_by", sa.String(length=40), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("detail", sa.Text(), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["session_id"], ["scheduled_sessions.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["enrollment_id"], ["enrollments.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("kind in ('reschedule','reassign')", name="ck_change_request_kind"),
        sa.CheckConstraint(
            "status in ('pending','approved','rejected','failed','conflict')",
            name="ck_change_request_status",
        ),
    )
    op.create_index("ix_session_change_requests_session_id", "session_change_requests", ["session_id"], unique=False)
    op.create_index(
        "ix_session_change_requests_enrollment_id",
        "session_change_requests",
        ["enrollment_id"],
        unique=False,
    )

    op.create_table(
        "scheduling_queue",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("session_id", sa.Integer(), nullable=True),
        sa.Column("enrollment_id", sa.Integer(), nullable=True),
        sa.Column("learner_id", sa.Integer(), nullable=True),
        sa.Column("coach_id", sa.Integer(), nullable=True),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("attempts_made", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("history", postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default="[]"),
        sa.Column("assigned_to", sa.String(length=255), nullable=True),
        sa.Column("resolution_notes", sa.Text(), nullable=True),
        sa.Column("resolved_by", sa.String(length=255), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["session_id"], ["scheduled_sessions.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("status in ('pending','in_progress','resolved')", name="ck_scheduling_queue_status"),
    )
    op.create_index("ix_scheduling_queue_session_id", "scheduling_queue", ["session_id"], unique=False)
    op.create_index("ix_scheduling_queue_enrollment_id", "scheduling_queue", ["enrollment_id"], unique=False)
    op.create_index("ix_scheduling_queue_coach_id", "scheduling_queue", ["coach_id"], unique=False)
    op.create_index("ix_scheduling_queue_status_created", "scheduling_queue", ["status", "created_at"], unique=False)

    op.create_table(
        "activity_log",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("action", sa.String(length=80), nullable=False),
        sa.Column("actor", sa.String(length=255), nullable=False, server_default="system"),
        sa.Column("details", postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default="{}"),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_activity_log_action_created", "activity_log", ["action", "created_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_activity_log_action_created", table_name="activity_log")
    op.drop_table("activity_log")

    op.drop_index("ix_scheduling_queue_status_created", table_name="scheduling_queue")
    op.drop_index("ix_scheduling_queue_coach_id", table_name="scheduling_queue")
    op.drop_index("ix_scheduling_queue_enrollment_id", table_name="scheduling_queue")
    op.drop_index("ix_scheduling_queue_session_id", table_name="scheduling_queue")
    op.drop_table("scheduling_queue")

    op.drop_index("ix_session_change_requests_enrollment_id", table_name="session_change_requests")
    op.drop_index("ix_session_change_requests_session_id", table_name="session_change_requests")
    op.drop_table("session_change_requests")

    op.drop_index("ix_scheduled_sessions_status_starts", table_name="scheduled_sessions")
    op.drop_index("ix_scheduled_sessions_coach_id", table_name="scheduled_sessions")
    op.drop_index("ix_scheduled_sessions_learner_id", table_name="scheduled_sessions")
    op.drop_index("ix_scheduled_sessions_enrollment_id", table_name="scheduled_sessions")
    op.drop_table("scheduled_sessions")

    op.drop_index("uq_enrollment_active_learner", table_name="enrollments")
    op.drop_index("ix_enrollments_payment_id", table_name="enrollments")
    op.drop_index("ix_enrollments_learner_id", table_name="enrollments")
    op.drop_table("enrollments")

    op.drop_index("ix_payments_created_at", table_name="payments")
    op.drop_index("ix_payments_gateway_order_id", table_name="payments")
    op.drop_table("payments")

    op.drop_index("ix_bookings_learner_id", table_name="bookings")
    op.drop_table("bookings")

    op.drop_table("learners")
    op.drop_table("coaches")
