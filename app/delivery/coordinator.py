from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from typing import Callable

from sqlalchemy.orm import Session

from app.delivery import store
from app.delivery.consumer import ResponseConsumer
from app.delivery.producer import BatchResult, DeliveryProducer
from app.delivery.vendor import VendorSimulator
from app.messaging.channel import BrokerUnavailable, MessageChannel
from app.util.time import now_utc

log = logging.getLogger("messaging_coordinator")


class CoordinatorNotRunning(Exception):
    pass


class MessagingCoordinator:
    """Starts and stops the delivery producer and response consumer as one unit."""

    def __init__(
        self,
        *,
        channel: MessageChannel,
        producer: DeliveryProducer,
        consumer: ResponseConsumer,
        vendor: VendorSimulator,
        session_factory: Callable[[], Session],
        stop_timeout_s: float = 30.0,
    ) -> None:
        self.channel = channel
        self.producer = producer
        self.consumer = consumer
        self.vendor = vendor
        self.session_factory = session_factory
        self.stop_timeout_s = stop_timeout_s
        self._running = False
        self._lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            log.info("Starting messaging coordinator")
            try:
                self.channel.connect()
                if not self.channel.is_active():
                    raise BrokerUnavailable("Failed to establish broker connection")

                with ThreadPoolExecutor(max_workers=2, thread_name_prefix="coordinator-start") as pool:
                    futures = [pool.submit(self.producer.start), pool.submit(self.consumer.start)]
                    errors = [f.exception() for f in futures]
                failed = [e for e in errors if e is not None]
                if failed:
                    raise failed[0]
            except Exception:
                log.exception("Failed to start messaging coordinator")
                self._shutdown()
                raise
            self._running = True
        log.info("Messaging coordinator started")

    def stop(self) -> None:
        with self._lock:
            if not self._running:
                return
            log.info("Stopping messaging coordinator")
            self._shutdown()
            self._running = False
        log.info("Messaging coordinator stopped")

    def _shutdown(self) -> None:
        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="coordinator-stop") as pool:
            futures = [
                pool.submit(self.producer.stop, self.stop_timeout_s),
                pool.submit(self.consumer.stop, self.stop_timeout_s),
            ]
        for f in futures:
            exc = f.exception()
            if exc is not None:
                log.error("Error stopping messaging component: %s", exc)
        try:
            self.channel.close()
        except Exception:
            log.exception("Error closing broker connection")

    def health(self) -> dict:
        connected = self.channel.is_active()
        return {
            "timestamp": now_utc().isoformat(),
            "coordinator": {"status": "RUNNING" if self._running else "STOPPED"},
            "broker": {"connected": connected, "status": "CONNECTED" if connected else "DISCONNECTED"},
            "services": {
                "delivery_producer": {
                    "status": "RUNNING" if self.producer.is_running else "STOPPED",
                    "type": "PRODUCER",
                },
                "response_consumer": {
                    "status": "RUNNING" if self.consumer.is_running else "STOPPED",
                    "type": "CONSUMER",
                },
            },
        }

    def trigger_now(self) -> BatchResult:
        if not self._running:
            raise CoordinatorNotRunning("Messaging coordinator is not running")
        return self.producer.trigger_batch()

    def processing_stats(self, *, hours: int = 24) -> dict:
        return self.consumer.processing_stats(hours=hours)

    def vendor_stats(self) -> dict:
        return self.vendor.stats()

    def set_vendor_success_rate(self, rate: float) -> dict:
        self.vendor.set_success_rate(rate)
        return self.vendor.stats()

    def sweep_stuck(self, *, older_than_s: float) -> list[str]:
        """Return PROCESSING rows older than the threshold to the queue (maintenance)."""
        db = self.session_factory()
        try:
            ids = store.reset_stuck_processing(db, older_than=timedelta(seconds=older_than_s))
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        if ids:
            log.warning("Reset %s stuck PROCESSING communication(s)", len(ids))
        return ids
