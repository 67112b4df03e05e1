from __future__ import annotations

import logging
import math
import random
import secrets
import threading
import time
from dataclasses import dataclass
from typing import Callable, Protocol

from app.schemas.delivery import DeliveryError, DeliveryFailure, DeliveryOutcome, DeliverySuccess, VendorRequest
from app.util.time import now_ms, now_utc

log = logging.getLogger("vendor_simulator")

SMS_SEGMENT_CHARS = 160


@dataclass(frozen=True)
class FailureReason:
    code: str
    message: str
    retryable: bool


FAILURE_REASONS: tuple[FailureReason, ...] = (
    FailureReason("INVALID_EMAIL", "Invalid email address format", False),
    FailureReason("EMAIL_BOUNCED", "Email address bounced", False),
    FailureReason("RATE_LIMITED", "Rate limit exceeded", True),
    FailureReason("TEMPORARY_FAILURE", "Temporary service unavailable", True),
    FailureReason("SPAM_DETECTED", "Message flagged as spam", False),
    FailureReason("QUOTA_EXCEEDED", "Daily quota exceeded", True),
)

PROBE_STATUSES = ("SENT", "DELIVERED", "READ", "CLICKED")

USER_AGENTS = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 15_0 like Mac OS X)",
    "Mozilla/5.0 (Android 11; Mobile)",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64)",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7)",
)


class DeliveryVendor(Protocol):
    def send(self, payload: VendorRequest | dict) -> DeliveryOutcome: ...


def calculate_cost(message_text: str, *, unit_cost: int = 1) -> int:
    """Cost in cents: one unit per started 160-char segment."""
    return math.ceil(len(message_text) / SMS_SEGMENT_CHARS) * unit_cost


def generate_vendor_ref() -> str:
    return f"vendor_{now_ms()}_{secrets.token_hex(4)}"


class VendorSimulator:
    """Stand-in for a third-party delivery API.

    Latency, success rate and failure taxonomy follow a typical bulk
    messaging provider. Only the success rate changes after construction,
    so one instance can serve concurrent callers.
    """

    def __init__(
        self,
        *,
        success_rate: float = 0.9,
        avg_delay_ms: int = 500,
        delay_variation_ms: int = 300,
        min_delay_ms: int = 50,
        unit_cost: int = 1,
        rng: random.Random | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._check_rate(success_rate)
        self._success_rate = success_rate
        self.avg_delay_ms = avg_delay_ms
        self.delay_variation_ms = delay_variation_ms
        self.min_delay_ms = min_delay_ms
        self.unit_cost = unit_cost
        self._rng = rng or random.Random()
        # random.Random is not safe to share between threads without a lock.
        self._rng_lock = threading.Lock()
        self._sleep = sleep

    @property
    def success_rate(self) -> float:
        return self._success_rate

    @staticmethod
    def _check_rate(rate: float) -> None:
        if not 0.0 <= rate <= 1.0:
            raise ValueError("Success rate must be between 0 and 1")

    def set_success_rate(self, rate: float) -> None:
        self._check_rate(rate)
        self._success_rate = rate
        log.info("Vendor success rate set to %.0f%%", rate * 100)

    def stats(self) -> dict:
        return {
            "success_rate": self._success_rate,
            "failure_rate": round(1.0 - self._success_rate, 6),
            "avg_delay_ms": self.avg_delay_ms,
            "delay_variation_ms": self.delay_variation_ms,
        }

    def _random(self) -> float:
        with self._rng_lock:
            return self._rng.random()

    def _choice(self, seq):
        with self._rng_lock:
            return self._rng.choice(seq)

    def simulated_delay_s(self) -> float:
        variation = (self._random() - 0.5) * 2 * self.delay_variation_ms
        return max(self.min_delay_ms, self.avg_delay_ms + variation) / 1000.0

    def send(self, payload: VendorRequest | dict) -> DeliveryOutcome:
        data = payload.model_dump() if isinstance(payload, VendorRequest) else payload

        # Bad requests are rejected before any simulated network time.
        if not data:
            return _error("INVALID_PAYLOAD", "Message payload is required")
        if not data.get("customer_email"):
            return _error("MISSING_EMAIL", "Customer email is required")
        if not data.get("message_text"):
            return _error("MISSING_MESSAGE", "Message text is required")

        self._sleep(self.simulated_delay_s())

        if self._random() <= self._success_rate:
            return self._success(data)
        return self._failure()

    def _success(self, data: dict) -> DeliverySuccess:
        ref = generate_vendor_ref()
        delivered_at = now_utc()
        return DeliverySuccess(
            vendor_ref=ref,
            delivered_at=delivered_at,
            cost=calculate_cost(data["message_text"], unit_cost=self.unit_cost),
            vendor_response={
                "message_id": ref,
                "status_code": 200,
                "delivery_status": "DELIVERED",
                "timestamp": delivered_at.isoformat(),
            },
        )

    def _failure(self) -> DeliveryFailure:
        reason: FailureReason = self._choice(FAILURE_REASONS)
        ref = generate_vendor_ref()
        failed_at = now_utc()
        return DeliveryFailure(
            vendor_ref=ref,
            error_code=reason.code,
            error_message=reason.message,
            retryable=reason.retryable,
            failed_at=failed_at,
            vendor_response={
                "message_id": ref,
                "status_code": 429 if reason.retryable else 400,
                "delivery_status": "FAILED",
                "error_details": reason.message,
                "timestamp": failed_at.isoformat(),
            },
        )

    def delivery_status(self, vendor_ref: str) -> dict:
        """Simulated status probe for an already accepted message."""
        self._sleep(self.simulated_delay_s())
        with self._rng_lock:
            status = self._rng.choice(PROBE_STATUSES)
            delivery_time_s = self._rng.randint(10, 310)
            user_agent = self._rng.choice(USER_AGENTS)
        return {
            "vendor_ref": vendor_ref,
            "status": status,
            "updated_at": now_utc().isoformat(),
            "details": {"delivery_time": delivery_time_s, "user_agent": user_agent},
        }


def _error(code: str, message: str) -> DeliveryError:
    return DeliveryError(
        error_code=code,
        error_message=message,
        retryable=False,
        vendor_response={"status_code": 400, "error": message},
    )
