"""messaging pipeline tables

Revision ID: 0001_messaging_init
Revises:
Create Date: 2026-10-17
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "0001_messaging_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "communication_log",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("campaign_id", sa.String(length=36), nullable=False),
        sa.Column("customer_id", sa.String(length=36), nullable=False),
        sa.Column("customer_email", sa.String(length=320), nullable=True),
        sa.Column("customer_name", sa.String(length=200), nullable=True),
        sa.Column("message_text", sa.Text(), nullable=True),
        sa.Column("campaign_name", sa.String(length=200), nullable=True),
        sa.Column("campaign_type", sa.String(length=50), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("vendor_ref", sa.String(length=100), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("attempts <= max_attempts", name="ck_communication_log_attempts_bound"),
    )
    op.create_index("ix_communication_log_campaign_id", "communication_log", ["campaign_id"])
    op.create_index("ix_communication_log_status_created", "communication_log", ["status", "created_at"])

    op.create_table(
        "delivery_receipts",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("communication_id", sa.String(length=36), sa.ForeignKey("communication_log.id"), nullable=False),
        sa.Column("attempt_number", sa.Integer(), nullable=False),
        sa.Column("vendor_ref", sa.String(length=100), nullable=True),
        sa.Column("receipt_status", sa.String(length=20), nullable=False),
        sa.Column("failure_code", sa.String(length=50), nullable=True),
        sa.Column("failure_reason", sa.String(length=500), nullable=True),
        sa.Column("cost", sa.Integer(), nullable=True),
        sa.Column("vendor_response", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("processed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("communication_id", "attempt_number", name="uq_delivery_receipts_comm_attempt"),
    )
    op.create_index("ix_delivery_receipts_received_at", "delivery_receipts", ["received_at"])

    op.create_table(
        "receipt_processing_log",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("receipt_id", sa.String(length=36), sa.ForeignKey("delivery_receipts.id"), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_receipt_processing_log_processed_at", "receipt_processing_log", ["processed_at"])

    op.create_table(
        "campaign_delivery_summary",
        sa.Column("campaign_id", sa.String(length=36), primary_key=True),
        sa.Column("total_messages", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("pending_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("sent_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("delivered_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_updated", sa.DateTime(timezone=True), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("campaign_delivery_summary")
    op.drop_table("receipt_processing_log")
    op.drop_table("delivery_receipts")
    op.drop_table("communication_log")
