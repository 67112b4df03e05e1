from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable

from sqlalchemy.orm import Session

from app.delivery import store
from app.delivery.vendor import DeliveryVendor
from app.messaging.channel import BrokerUnavailable, MessageChannel
from app.models.tables import CommunicationLog
from app.schemas.delivery import OutcomeMessage, SYSTEM_ERROR, VendorRequest, system_error
from app.util.time import now_ms, now_utc

log = logging.getLogger("delivery_producer")


class ProducerNotRunning(Exception):
    pass


class ProducerStillStopping(Exception):
    pass


@dataclass
class BatchResult:
    fetched: int = 0
    claimed: int = 0
    published: int = 0
    publish_failed: int = 0
    communication_ids: list[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "fetched": self.fetched,
            "claimed": self.claimed,
            "published": self.published,
            "publish_failed": self.publish_failed,
            "communication_ids": list(self.communication_ids),
        }


def build_vendor_request(row: CommunicationLog) -> VendorRequest:
    # row.attempts already includes the attempt being made.
    return VendorRequest(
        communication_id=row.id,
        campaign_id=row.campaign_id,
        customer_id=row.customer_id,
        customer_email=row.customer_email,
        customer_name=row.customer_name,
        message_text=row.message_text,
        campaign_name=row.campaign_name,
        campaign_type=row.campaign_type,
        attempt_number=row.attempts,
        max_attempts=row.max_attempts,
        timestamp=now_utc(),
    )


class DeliveryProducer:
    """Polls communication_log for due rows and turns each into exactly one published outcome.

    Per row: claim (PENDING -> PROCESSING, attempts + 1), call the
    vendor, publish the outcome keyed by communication id. The claim is
    committed before the vendor call so a crash leaves the row visibly
    in flight instead of silently PENDING again.
    """

    def __init__(
        self,
        *,
        channel: MessageChannel,
        vendor: DeliveryVendor,
        session_factory: Callable[[], Session],
        topic: str = "response.process",
        queue_name: str = "message_response_queue",
        batch_size: int = 10,
        poll_interval_s: float = 5.0,
    ) -> None:
        self.channel = channel
        self.vendor = vendor
        self.session_factory = session_factory
        self.topic = topic
        self.queue_name = queue_name
        self.batch_size = batch_size
        self.poll_interval_s = poll_interval_s
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stop.is_set()

    def start(self) -> None:
        with self._lock:
            if self.is_running:
                return
            if self._thread is not None and self._thread.is_alive():
                raise ProducerStillStopping("Delivery producer is still finishing its previous batch")
            self.channel.ensure_connected()
            if not self.channel.is_active():
                raise BrokerUnavailable("Failed to establish broker connection")
            # Outcomes must not be dropped before the consumer has bound its queue.
            self.channel.declare_queue(self.queue_name, self.topic)

            self._stop.clear()
            self._thread = threading.Thread(target=self._loop, name="delivery-producer", daemon=True)
            self._thread.start()
        log.info(
            "Delivery producer started (batch_size=%s, poll_interval=%.1fs)", self.batch_size, self.poll_interval_s
        )

    def stop(self, timeout: float | None = 30.0) -> None:
        """Stop polling; the batch in progress is allowed to finish, bounded by timeout."""
        with self._lock:
            thread = self._thread
            self._stop.set()
        if thread is None:
            return
        if thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout)
            if thread.is_alive():
                log.warning("Delivery producer still finishing a batch after %ss; leaving it to finish", timeout)
                return
        self._thread = None
        log.info("Delivery producer stopped")

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                result = self.run_batch()
                if result.fetched:
                    log.info(
                        "Batch done: fetched=%s claimed=%s published=%s publish_failed=%s",
                        result.fetched,
                        result.claimed,
                        result.published,
                        result.publish_failed,
                    )
            except Exception:
                log.exception("Error processing pending communications")
            self._stop.wait(self.poll_interval_s)

    def trigger_batch(self) -> BatchResult:
        """Run one batch now, outside the timer cadence."""
        if not self.is_running:
            raise ProducerNotRunning("Delivery producer is not running")
        log.info("Manually triggering delivery batch")
        result = self.run_batch()
        log.info("Manual trigger processed %s communications", result.claimed)
        return result

    def run_batch(self) -> BatchResult:
        result = BatchResult()
        db = self.session_factory()
        try:
            due_ids = [row.id for row in store.find_due_communications(db, limit=self.batch_size)]
        finally:
            db.close()

        result.fetched = len(due_ids)
        for communication_id in due_ids:
            published = self.process_communication(communication_id)
            if published is None:
                continue
            result.claimed += 1
            result.communication_ids.append(communication_id)
            if published:
                result.published += 1
            else:
                result.publish_failed += 1
        return result

    def process_communication(self, communication_id: str) -> bool | None:
        """Claim, call the vendor, publish.

        Returns None if the row could not be claimed, otherwise whether
        the outcome was published.
        """
        db = self.session_factory()
        try:
            row = store.mark_processing(db, communication_id=communication_id)
            if row is None:
                log.debug("Communication %s no longer due; skipping", communication_id)
                return None
            request = build_vendor_request(row)
        except Exception:
            db.rollback()
            log.exception("Failed to claim communication %s", communication_id)
            return None
        finally:
            db.close()

        log.info(
            "Delivering %s to %s (attempt %s/%s)",
            communication_id,
            request.customer_email,
            request.attempt_number,
            request.max_attempts,
        )

        try:
            outcome = self.vendor.send(request)
        except Exception as e:
            log.exception("Vendor call failed for %s", communication_id)
            outcome = system_error(e)

        log.info("Vendor response for %s: %s", communication_id, outcome.status)

        message = OutcomeMessage(
            communication_id=request.communication_id,
            campaign_id=request.campaign_id,
            customer_id=request.customer_id,
            customer_email=request.customer_email,
            attempt_number=request.attempt_number,
            delivery_response=outcome,
            processed_at=now_utc(),
        )
        prefix = "error-response" if getattr(outcome, "error_code", None) == SYSTEM_ERROR else "response"
        try:
            self.channel.publish(
                self.topic,
                message.model_dump(mode="json"),
                key=communication_id,
                message_id=f"{prefix}-{communication_id}-{now_ms()}",
                persistent=True,
            )
        except Exception:
            # Row stays PROCESSING until the stuck sweep picks it up.
            log.exception("Failed to publish outcome for %s; left PROCESSING", communication_id)
            return False
        return True
