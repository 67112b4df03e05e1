"""Run the delivery producer and response consumer as one long-lived process.

Usage: python -m scripts.run_messaging
"""

from __future__ import annotations

import logging
import signal
import threading

from app.core.config import settings
from app.core.logging import configure_logging
from app.delivery.runtime import get_coordinator

log = logging.getLogger("run_messaging")


def main() -> int:
    configure_logging(settings.LOG_LEVEL)
    coordinator = get_coordinator()
    stop = threading.Event()

    def _on_signal(signum, _frame) -> None:
        log.info("Received %s, shutting down", signal.Signals(signum).name)
        stop.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, _on_signal)

    try:
        coordinator.start()
    except Exception:
        log.exception("Failed to start messaging coordinator")
        return 1

    h = coordinator.health()
    log.info("Broker: %s; services: %s", h["broker"]["status"], h["services"])
    try:
        stats = coordinator.processing_stats()
        log.info("Last 24h: processed=%s breakdown=%s", stats["receipts_processed"], stats["status_breakdown"])
    except Exception as e:
        log.warning("Stats unavailable at startup: %s", e)

    stop.wait()
    try:
        coordinator.stop()
    except Exception:
        log.exception("Error during shutdown")
        return 1
    log.info("Graceful shutdown completed")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
