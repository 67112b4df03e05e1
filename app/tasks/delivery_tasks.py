from __future__ import annotations

import logging
from datetime import timedelta

from app.core.celery_app import celery
from app.core.config import settings
from app.core.db import SessionLocal
from app.delivery import store
from app.util.time import now_utc

log = logging.getLogger("delivery_tasks")


@celery.task(name="app.tasks.delivery_tasks.sweep_stuck_communications")
def sweep_stuck_communications(*, older_than_s: int | None = None) -> dict:
    """Reset communications stuck in PROCESSING.

    A row stays PROCESSING when the producer crashed mid-call or its
    outcome could not be published. Rows with attempts left go back to
    PENDING, the rest to FAILED.
    """

    threshold = older_than_s if older_than_s is not None else settings.STUCK_PROCESSING_AFTER_S
    db = SessionLocal()
    try:
        ids = store.reset_stuck_processing(db, older_than=timedelta(seconds=threshold))
        if ids:
            log.warning("Stuck sweep reset %s communication(s) older than %ss", len(ids), threshold)
        return {"ok": True, "reset": len(ids), "communication_ids": ids}
    except Exception:
        db.rollback()
        log.exception("Stuck sweep failed")
        raise
    finally:
        db.close()


@celery.task(name="app.tasks.delivery_tasks.delivery_stats")
def delivery_stats(*, hours: int = 24, campaign_id: str | None = None) -> dict:
    db = SessionLocal()
    try:
        stats = store.processing_stats(db, since=now_utc() - timedelta(hours=hours))
        out = {"ok": True, "window_hours": hours, **stats, "status_counts": store.status_counts(db, campaign_id=campaign_id)}
        if campaign_id:
            counters = store.get_counters(db, campaign_id=campaign_id)
            out["counters"] = (
                {
                    "total_messages": counters.total_messages,
                    "pending_count": counters.pending_count,
                    "sent_count": counters.sent_count,
                    "delivered_count": counters.delivered_count,
                    "failed_count": counters.failed_count,
                }
                if counters
                else None
            )
        return out
    finally:
        db.close()
