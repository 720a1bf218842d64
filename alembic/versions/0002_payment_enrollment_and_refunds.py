"""payment enrollment link and refund tracking

Revision ID: 0002_payment_refunds
Revises: 0001_scheduling_core
Create Date: 2026-10-18
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision = "0002_payment_refunds"
down_revision = "0001_scheduling_core"
branch_labels = None
depends_on = None


def upgrade() -> None:
    with op.batch_alter_table("payments") as batch_op:
        batch_op.add_column(sa.Column("enrollment_id", sa.Integer(), nullable=True))
        batch_op.add_column(sa.Column("refund_id", sa.String(length=120), nullable=True))
        batch_op.add_column(
            sa.Column("refunded_minor", sa.Integer(), nullable=False, server_default=sa.text("0"))
        )
        batch_op.create_foreign_key(
            "fk_payments_enrollment_id",
            "enrollments",
            ["enrollment_id"],
            ["id"],
            ondelete="SET NULL",
        )
    op.create_index("ix_payments_enrollment_id", "payments", ["enrollment_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_payments_enrollment_id", table_name="payments")
    with op.batch_alter_table("payments") as batch_op:
        batch_op.drop_constraint("fk_payments_enrollment_id", type_="foreignkey")
        batch_op.drop_column("refunded_minor")
        batch_op.drop_column("refund_id")
        batch_op.drop_column("enrollment_id")
