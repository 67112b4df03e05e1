from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.tables import (
    CampaignDeliverySummary,
    CommunicationLog,
    CommunicationStatus,
    DeliveryReceipt,
    ReceiptProcessingLog,
)
from app.util.ids import new_uuid
from app.util.time import now_utc

COUNTER_FIELDS = ("total_messages", "pending_count", "sent_count", "delivered_count", "failed_count")


def counter_delta(status: str) -> dict[str, int]:
    """Counter change for a row leaving PROCESSING with the given status."""
    if status == CommunicationStatus.DELIVERED:
        return {"delivered_count": 1, "sent_count": 1, "pending_count": -1}
    if status == CommunicationStatus.FAILED:
        return {"failed_count": 1, "sent_count": 1, "pending_count": -1}
    # Retry: still part of the pending pool.
    return {}


def create_communication(
    db: Session,
    *,
    campaign_id: str,
    customer_id: str,
    customer_email: str | None,
    customer_name: str | None,
    message_text: str | None,
    max_attempts: int | None = None,
    campaign_name: str | None = None,
    campaign_type: str | None = None,
) -> CommunicationLog:
    """Queue a PENDING communication. Caller commits."""
    now = now_utc()
    row = CommunicationLog(
        id=new_uuid(),
        campaign_id=campaign_id,
        customer_id=customer_id,
        customer_email=customer_email,
        customer_name=customer_name,
        message_text=message_text,
        campaign_name=campaign_name,
        campaign_type=campaign_type,
        status=CommunicationStatus.PENDING,
        attempts=0,
        max_attempts=max_attempts or settings.DEFAULT_MAX_ATTEMPTS,
        last_attempt_at=None,
        delivered_at=None,
        vendor_ref=None,
        created_at=now,
        updated_at=now,
    )
    db.add(row)
    db.flush()
    upsert_counters(db, campaign_id=campaign_id, delta={"total_messages": 1, "pending_count": 1})
    return row


def find_due_communications(db: Session, *, limit: int) -> list[CommunicationLog]:
    """PENDING rows with attempts left, oldest first."""
    return (
        db.query(CommunicationLog)
        .filter(
            CommunicationLog.status == CommunicationStatus.PENDING,
            CommunicationLog.attempts < CommunicationLog.max_attempts,
        )
        .order_by(CommunicationLog.created_at.asc(), CommunicationLog.id.asc())
        .limit(limit)
        .all()
    )


def mark_processing(db: Session, *, communication_id: str) -> CommunicationLog | None:
    """Claim a due row: PENDING -> PROCESSING and attempts += 1, in one conditional UPDATE.

    Returns None when the row is no longer due (claimed by another
    caller, terminal, or out of attempts).
    """
    now = now_utc()
    res = db.execute(
        update(CommunicationLog)
        .where(
            CommunicationLog.id == communication_id,
            CommunicationLog.status == CommunicationStatus.PENDING,
            CommunicationLog.attempts < CommunicationLog.max_attempts,
        )
        .values(
            status=CommunicationStatus.PROCESSING,
            attempts=CommunicationLog.attempts + 1,
            last_attempt_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if res.rowcount != 1:
        return None
    return db.get(CommunicationLog, communication_id, populate_existing=True)


def get_communication(db: Session, *, communication_id: str, for_update: bool = False) -> CommunicationLog | None:
    stmt = select(CommunicationLog).where(CommunicationLog.id == communication_id)
    if for_update:
        stmt = stmt.with_for_update()
    return db.execute(stmt).scalar_one_or_none()


def update_after_outcome(db: Session, *, communication_id: str, fields: dict) -> CommunicationLog:
    """Apply reconciliation fields to a row. Caller commits."""
    row = db.get(CommunicationLog, communication_id)
    if row is None:
        raise LookupError(f"communication {communication_id} not found")
    for key, value in fields.items():
        setattr(row, key, value)
    row.updated_at = now_utc()
    return row


def insert_receipt(
    db: Session,
    *,
    communication_id: str,
    attempt_number: int,
    receipt_status: str,
    vendor_ref: str | None,
    failure_code: str | None,
    failure_reason: str | None,
    cost: int | None,
    vendor_response: dict | None,
    received_at: datetime,
) -> tuple[DeliveryReceipt, bool]:
    """Insert the receipt for (communication_id, attempt_number) unless it already exists.

    Returns (receipt, created). Caller commits. A receipt is written
    together with its processing-log entry and flagged processed.
    """
    existing = (
        db.query(DeliveryReceipt)
        .filter(
            DeliveryReceipt.communication_id == communication_id,
            DeliveryReceipt.attempt_number == attempt_number,
        )
        .one_or_none()
    )
    if existing:
        return existing, False

    now = now_utc()
    receipt = DeliveryReceipt(
        id=new_uuid(),
        communication_id=communication_id,
        attempt_number=attempt_number,
        vendor_ref=vendor_ref,
        receipt_status=receipt_status,
        failure_code=failure_code,
        failure_reason=failure_reason[:500] if failure_reason else None,
        cost=cost,
        vendor_response=vendor_response or {},
        received_at=received_at,
        processed=False,
        created_at=now,
    )
    # A concurrent duplicate still trips uq_delivery_receipts_comm_attempt at commit.
    db.add(receipt)
    db.add(ReceiptProcessingLog(id=new_uuid(), receipt_id=receipt.id, status="COMPLETED", processed_at=now))
    receipt.processed = True
    return receipt, True


def upsert_counters(db: Session, *, campaign_id: str, delta: dict[str, int]) -> CampaignDeliverySummary:
    """Increment campaign counters by delta. Caller commits."""
    unknown = set(delta) - set(COUNTER_FIELDS)
    if unknown:
        raise ValueError(f"Unknown counter(s): {sorted(unknown)}")

    row = db.get(CampaignDeliverySummary, campaign_id)
    if row is None:
        row = CampaignDeliverySummary(campaign_id=campaign_id, last_updated=now_utc(), **{f: 0 for f in COUNTER_FIELDS})
        db.add(row)

    for field, inc in delta.items():
        value = (getattr(row, field) or 0) + inc
        if field == "pending_count":
            value = max(0, value)
        setattr(row, field, value)
    row.last_updated = now_utc()
    return row


def get_counters(db: Session, *, campaign_id: str) -> CampaignDeliverySummary | None:
    return db.get(CampaignDeliverySummary, campaign_id)


def reset_stuck_processing(db: Session, *, older_than: timedelta) -> list[str]:
    """PROCESSING rows whose last attempt is older than the threshold go back to PENDING.

    Rows already out of attempts go to FAILED instead, so the attempt bound holds.
    """
    cutoff = now_utc() - older_than
    rows = (
        db.query(CommunicationLog)
        .filter(
            CommunicationLog.status == CommunicationStatus.PROCESSING,
            CommunicationLog.last_attempt_at < cutoff,
        )
        .all()
    )
    now = now_utc()
    reset: list[str] = []
    for row in rows:
        if row.attempts < row.max_attempts:
            row.status = CommunicationStatus.PENDING
        else:
            row.status = CommunicationStatus.FAILED
            upsert_counters(db, campaign_id=row.campaign_id, delta=counter_delta(CommunicationStatus.FAILED))
        row.updated_at = now
        reset.append(row.id)
    db.commit()
    return reset


def processing_stats(db: Session, *, since: datetime) -> dict:
    breakdown_rows = (
        db.query(DeliveryReceipt.receipt_status, func.count(DeliveryReceipt.id))
        .filter(DeliveryReceipt.received_at >= since)
        .group_by(DeliveryReceipt.receipt_status)
        .all()
    )
    processed = (
        db.query(func.count(ReceiptProcessingLog.id))
        .filter(ReceiptProcessingLog.status == "COMPLETED", ReceiptProcessingLog.processed_at >= since)
        .scalar()
    )
    return {
        "receipts_processed": int(processed or 0),
        "status_breakdown": {status: int(count) for status, count in breakdown_rows},
    }


def status_counts(db: Session, *, campaign_id: str | None = None) -> dict[str, int]:
    q = db.query(CommunicationLog.status, func.count(CommunicationLog.id))
    if campaign_id:
        q = q.filter(CommunicationLog.campaign_id == campaign_id)
    return {status: int(count) for status, count in q.group_by(CommunicationLog.status).all()}
