from __future__ import annotations

from sqlalchemy import Boolean, CheckConstraint, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import JSON

from app.models.base import Base

# Use JSONB on Postgres, fallback to JSON for SQLite/test environments.
JSONType = JSON().with_variant(JSONB, "postgresql")


class CommunicationStatus:
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"

    TERMINAL = frozenset({DELIVERED, FAILED})


class CommunicationLog(Base):
    """One message owed to one customer for one campaign."""

    __tablename__ = "communication_log"
    __table_args__ = (
        Index("ix_communication_log_status_created", "status", "created_at"),
        CheckConstraint("attempts <= max_attempts", name="ck_communication_log_attempts_bound"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    campaign_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    customer_id: Mapped[str] = mapped_column(String(36), nullable=False)
    customer_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    customer_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    message_text: Mapped[str | None] = mapped_column(Text, nullable=True)

    campaign_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    campaign_type: Mapped[str | None] = mapped_column(String(50), nullable=True)

    status: Mapped[str] = mapped_column(String(20), nullable=False)  # PENDING/PROCESSING/DELIVERED/FAILED
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)

    last_attempt_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=True)
    vendor_ref: Mapped[str | None] = mapped_column(String(100), nullable=True)

    created_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=False)


class DeliveryReceipt(Base):
    __tablename__ = "delivery_receipts"
    # One receipt per delivery attempt; redelivered outcomes hit this constraint.
    __table_args__ = (
        UniqueConstraint("communication_id", "attempt_number", name="uq_delivery_receipts_comm_attempt"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    communication_id: Mapped[str] = mapped_column(String(36), ForeignKey("communication_log.id"), nullable=False)
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False)

    vendor_ref: Mapped[str | None] = mapped_column(String(100), nullable=True)
    receipt_status: Mapped[str] = mapped_column(String(20), nullable=False)  # DELIVERED/FAILED
    failure_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    cost: Mapped[int | None] = mapped_column(Integer, nullable=True)
    vendor_response: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)

    received_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=False)


class ReceiptProcessingLog(Base):
    __tablename__ = "receipt_processing_log"
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    receipt_id: Mapped[str] = mapped_column(String(36), ForeignKey("delivery_receipts.id"), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)  # COMPLETED
    processed_at: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=False)


class CampaignDeliverySummary(Base):
    """Per-campaign counters; eventually consistent with communication_log."""

    __tablename__ = "campaign_delivery_summary"
    campaign_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    total_messages: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    pending_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sent_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    delivered_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_updated: Mapped["DateTime"] = mapped_column(DateTime(timezone=True), nullable=False)
