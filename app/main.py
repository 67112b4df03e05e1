from __future__ import annotations

import logging
import time
from typing import Any

from fastapi import Depends, FastAPI
from redis import Redis

from app.api.routers.messaging import router as messaging_router
from app.core.config import settings
from app.core.db import database_ready
from app.core.logging import configure_logging
from app.delivery.coordinator import MessagingCoordinator
from app.delivery.runtime import get_coordinator

configure_logging(settings.LOG_LEVEL)
log = logging.getLogger("app")

app = FastAPI(title=settings.APP_NAME)


def _retry_backoff(fn, *, attempts: int = 30, base_sleep_s: float = 1.0, max_sleep_s: float = 2.0, what: str) -> bool:
    sleep_s = base_sleep_s
    for i in range(1, attempts + 1):
        try:
            fn()
            return True
        except Exception as e:
            if i == attempts:
                log.error("Startup: %s still not ready after %s attempts: %s", what, attempts, str(e))
                return False
            log.warning("Startup: %s not ready (attempt %s/%s): %s", what, i, attempts, str(e))
            time.sleep(sleep_s)
            sleep_s = min(max_sleep_s, sleep_s * 2.0)
    return False


@app.on_event("startup")
def _startup() -> None:
    if not settings.MESSAGING_AUTOSTART:
        log.info("Startup: MESSAGING_AUTOSTART=false; coordinator not started")
        return

    coordinator = get_coordinator()
    if settings.ENSURE_EXTERNAL_DEPS_ON_STARTUP:
        # Do not crash the API if the broker is temporarily unavailable.
        _retry_backoff(coordinator.start, what="messaging coordinator")
    else:
        coordinator.start()


@app.on_event("shutdown")
def _shutdown() -> None:
    get_coordinator().stop()


def _check_redis() -> bool:
    try:
        r = Redis.from_url(settings.REDIS_URL, socket_connect_timeout=1, socket_timeout=1)
        return bool(r.ping())
    except Exception:
        return False


@app.get("/health")
def health(coordinator: MessagingCoordinator = Depends(get_coordinator)) -> dict[str, Any]:
    deps = {
        "database": database_ready(),
        "broker": coordinator.channel.is_active(),
        "redis": _check_redis(),
    }
    return {
        "ok": deps["database"] and (deps["broker"] or not coordinator.is_running),
        "deps": deps,
        "messaging": "RUNNING" if coordinator.is_running else "STOPPED",
        "app": settings.APP_NAME,
    }


app.include_router(messaging_router, prefix="/messaging", tags=["messaging"])
