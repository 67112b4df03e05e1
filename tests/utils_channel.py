from __future__ import annotations

import json

from app.core.db import SessionLocal
from app.delivery import store
from app.delivery.consumer import ResponseConsumer
from app.delivery.producer import DeliveryProducer
from app.messaging.channel import BrokerUnavailable
from app.models.tables import CommunicationLog
from app.schemas.delivery import DeliveryError, DeliveryFailure, DeliverySuccess
from app.util.ids import new_uuid


class InMemorySubscription:
    def __init__(self, handler, concurrency: int) -> None:
        self.handler = handler
        self.concurrency = concurrency
        self.alive = True

    def stop(self, timeout: float | None = None) -> None:
        self.alive = False

    def is_alive(self) -> bool:
        return self.alive


class InMemoryChannel:
    """Synchronous MessageChannel double: publish queues, deliver_all() runs the handler."""

    def __init__(self, *, fail_connect: bool = False, fail_consume: bool = False) -> None:
        self.active = False
        self.fail_connect = fail_connect
        self.fail_consume = fail_consume
        self.fail_publish = False
        self.pending: list[dict] = []
        self.acked: list[dict] = []
        self.rejected: list[dict] = []
        self.declared: dict[str, str] = {}
        self.subscription: InMemorySubscription | None = None
        self.closed = 0

    def connect(self) -> None:
        if self.fail_connect:
            raise BrokerUnavailable("broker unreachable")
        self.active = True

    def ensure_connected(self) -> None:
        self.connect()

    def is_active(self) -> bool:
        return self.active

    def close(self) -> None:
        self.active = False
        self.closed += 1

    def declare_queue(self, queue_name: str, topic: str) -> None:
        self.declared[queue_name] = topic

    def publish(self, topic, payload, *, key=None, message_id=None, persistent=True) -> bool:
        if self.fail_publish:
            raise ConnectionError("channel closed")
        if not self.active:
            raise BrokerUnavailable("Broker connection is not active")
        # Round-trip through JSON like a real broker would.
        body = json.loads(json.dumps(payload))
        self.pending.append({"topic": topic, "key": key, "message_id": message_id, "body": body})
        return True

    def consume(self, queue_name, topic, handler, *, concurrency=1) -> InMemorySubscription:
        if self.fail_consume:
            raise BrokerUnavailable("cannot consume")
        self.subscription = InMemorySubscription(handler, concurrency)
        return self.subscription

    def inject(self, body: dict) -> None:
        self.pending.append({"topic": "response.process", "key": None, "message_id": None, "body": body})

    def deliver_all(self) -> int:
        delivered = 0
        while self.pending:
            envelope = self.pending.pop(0)
            try:
                self.subscription.handler(envelope["body"])
            except Exception:
                self.rejected.append(envelope)
            else:
                self.acked.append(envelope)
            delivered += 1
        return delivered


class StubVendor:
    """Returns scripted outcomes in order; the last one repeats."""

    def __init__(self, *outcomes) -> None:
        self.outcomes = list(outcomes)
        self.calls: list = []

    def send(self, payload):
        self.calls.append(payload)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def success(ref: str = "vendor_1_abcd") -> DeliverySuccess:
    return DeliverySuccess(vendor_ref=ref, cost=1, vendor_response={"status_code": 200})


def failure(code: str = "RATE_LIMITED", retryable: bool = True) -> DeliveryFailure:
    return DeliveryFailure(
        vendor_ref="vendor_2_ef01",
        error_code=code,
        error_message=code.lower(),
        retryable=retryable,
        vendor_response={"status_code": 429 if retryable else 400},
    )


def error(code: str = "MISSING_EMAIL") -> DeliveryError:
    return DeliveryError(error_code=code, error_message=code.lower(), retryable=False)


def make_pipeline(channel: InMemoryChannel, vendor, *, batch_size: int = 10):
    producer = DeliveryProducer(channel=channel, vendor=vendor, session_factory=SessionLocal, batch_size=batch_size)
    consumer = ResponseConsumer(channel=channel, session_factory=SessionLocal)
    channel.connect()
    channel.declare_queue(consumer.queue_name, consumer.topic)
    consumer.start()
    return producer, consumer


def seed_communication(
    *,
    campaign_id: str | None = None,
    attempts: int = 0,
    max_attempts: int = 3,
    email: str | None = "a@example.com",
    text: str | None = "Hello from the spring sale",
    created_at=None,
) -> str:
    with SessionLocal() as db:
        row = store.create_communication(
            db,
            campaign_id=campaign_id or new_uuid(),
            customer_id=new_uuid(),
            customer_email=email,
            customer_name="Ada",
            message_text=text,
            max_attempts=max_attempts,
            campaign_name="spring-sale",
            campaign_type="PROMOTIONAL",
        )
        row.attempts = attempts
        if created_at is not None:
            row.created_at = created_at
        db.commit()
        return row.id


def load(communication_id: str) -> CommunicationLog:
    with SessionLocal() as db:
        return db.get(CommunicationLog, communication_id)
