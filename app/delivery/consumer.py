from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable

from pydantic import ValidationError
from sqlalchemy.orm import Session

from app.delivery import store
from app.messaging.channel import BrokerUnavailable, MessageChannel, Subscription
from app.models.tables import CommunicationLog, CommunicationStatus
from app.schemas.delivery import DeliveryOutcome, DeliverySuccess, OutcomeMessage
from app.util.time import now_utc

log = logging.getLogger("response_consumer")


class InvalidOutcomeMessage(Exception):
    pass


@dataclass(frozen=True)
class ReconcileResult:
    communication_id: str
    status: str
    transitioned: bool
    receipt_id: str | None
    receipt_created: bool


def decide_status(outcome: DeliveryOutcome, *, attempts: int, max_attempts: int) -> str:
    """Next status for a PROCESSING row given the outcome of its latest attempt."""
    if isinstance(outcome, DeliverySuccess):
        return CommunicationStatus.DELIVERED
    if outcome.retryable and attempts < max_attempts:
        return CommunicationStatus.PENDING
    return CommunicationStatus.FAILED


def parse_outcome_message(body: object) -> OutcomeMessage:
    if not isinstance(body, dict):
        raise InvalidOutcomeMessage(f"Invalid response format: expected object, got {type(body).__name__}")
    if not body.get("communication_id"):
        raise InvalidOutcomeMessage("Invalid response format: missing communication_id")
    if not body.get("delivery_response"):
        raise InvalidOutcomeMessage("Invalid response format: missing delivery_response")
    try:
        return OutcomeMessage.model_validate(body)
    except ValidationError as e:
        raise InvalidOutcomeMessage(f"Invalid response format: {e.error_count()} validation error(s)") from e


class ResponseConsumer:
    """Reconciles published outcomes into communication_log, receipts and campaign counters.

    The only writer allowed to move a row out of PROCESSING.
    """

    def __init__(
        self,
        *,
        channel: MessageChannel,
        session_factory: Callable[[], Session],
        topic: str = "response.process",
        queue_name: str = "message_response_queue",
        prefetch: int = 10,
    ) -> None:
        self.channel = channel
        self.session_factory = session_factory
        self.topic = topic
        self.queue_name = queue_name
        self.prefetch = prefetch
        self._subscription: Subscription | None = None
        self._lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._subscription is not None and self._subscription.is_alive()

    def start(self) -> None:
        with self._lock:
            if self.is_running:
                return
            self.channel.ensure_connected()
            if not self.channel.is_active():
                raise BrokerUnavailable("Failed to establish broker connection")
            self._subscription = self.channel.consume(
                self.queue_name, self.topic, self.handle_message, concurrency=self.prefetch
            )
        log.info("Response consumer listening on %s (prefetch=%s)", self.queue_name, self.prefetch)

    def stop(self, timeout: float | None = 30.0) -> None:
        with self._lock:
            sub, self._subscription = self._subscription, None
        if sub is not None:
            sub.stop(timeout)
            log.info("Response consumer stopped")

    def handle_message(self, body: dict) -> ReconcileResult:
        """Channel handler: return to ack, raise to reject without requeue."""
        try:
            message = parse_outcome_message(body)
        except InvalidOutcomeMessage as e:
            log.error("Rejecting malformed outcome message: %s", e)
            raise
        return self.reconcile(message)

    def reconcile(self, message: OutcomeMessage) -> ReconcileResult:
        outcome = message.delivery_response
        cid = message.communication_id

        db = self.session_factory()
        try:
            row: CommunicationLog | None = store.get_communication(db, communication_id=cid, for_update=True)
            if row is None:
                raise LookupError(f"communication {cid} not found")

            campaign_id = row.campaign_id
            new_status = row.status
            transitioned = False
            if row.status == CommunicationStatus.PROCESSING and row.attempts == message.attempt_number:
                new_status = decide_status(outcome, attempts=row.attempts, max_attempts=row.max_attempts)
                fields: dict = {"status": new_status, "last_attempt_at": now_utc()}
                if outcome.vendor_ref:
                    fields["vendor_ref"] = outcome.vendor_ref
                if new_status == CommunicationStatus.DELIVERED:
                    fields["delivered_at"] = outcome.delivered_at or now_utc()
                store.update_after_outcome(db, communication_id=cid, fields=fields)
                transitioned = True
            else:
                # Redelivered or stale outcome: the row already moved on.
                log.info(
                    "Outcome for %s attempt %s ignored (status=%s attempts=%s)",
                    cid,
                    message.attempt_number,
                    row.status,
                    row.attempts,
                )

            receipt, created = store.insert_receipt(
                db,
                communication_id=cid,
                attempt_number=message.attempt_number,
                receipt_status="DELIVERED" if isinstance(outcome, DeliverySuccess) else "FAILED",
                vendor_ref=outcome.vendor_ref,
                failure_code=None if isinstance(outcome, DeliverySuccess) else outcome.error_code,
                failure_reason=None if isinstance(outcome, DeliverySuccess) else outcome.error_message,
                cost=outcome.cost if isinstance(outcome, DeliverySuccess) else None,
                vendor_response=outcome.vendor_response,
                received_at=_received_at(message),
            )
            receipt_id = receipt.id
            db.commit()
        except Exception:
            db.rollback()
            log.exception("Failed to reconcile outcome for %s", cid)
            raise
        finally:
            db.close()

        if transitioned:
            log.info("Communication %s -> %s (attempt %s)", cid, new_status, message.attempt_number)
            delta = store.counter_delta(new_status)
            if delta:
                self._update_counters(campaign_id, delta)

        return ReconcileResult(
            communication_id=cid,
            status=new_status,
            transitioned=transitioned,
            receipt_id=receipt_id,
            receipt_created=created,
        )

    def _update_counters(self, campaign_id: str, delta: dict[str, int]) -> None:
        db = self.session_factory()
        try:
            store.upsert_counters(db, campaign_id=campaign_id, delta=delta)
            db.commit()
        except Exception as e:
            db.rollback()
            # Counters are advisory; the communication row and receipt are already committed.
            log.warning("Campaign counters update failed for %s: %s", campaign_id, e)
        finally:
            db.close()

    def processing_stats(self, *, hours: int = 24) -> dict:
        since = now_utc() - timedelta(hours=hours)
        db = self.session_factory()
        try:
            stats = store.processing_stats(db, since=since)
        finally:
            db.close()
        return {"window_hours": hours, **stats, "timestamp": now_utc().isoformat()}


def _received_at(message: OutcomeMessage):
    outcome = message.delivery_response
    if isinstance(outcome, DeliverySuccess):
        return outcome.delivered_at
    return outcome.failed_at or message.processed_at
