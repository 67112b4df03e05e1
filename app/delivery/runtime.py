from __future__ import annotations

import threading

from app.core.config import Settings, settings
from app.core.db import SessionLocal
from app.delivery.consumer import ResponseConsumer
from app.delivery.coordinator import MessagingCoordinator
from app.delivery.producer import DeliveryProducer
from app.delivery.vendor import VendorSimulator
from app.messaging.channel import KombuChannel, MessageChannel

_coordinator: MessagingCoordinator | None = None
_lock = threading.Lock()


def build_vendor(cfg: Settings = settings) -> VendorSimulator:
    return VendorSimulator(
        success_rate=cfg.VENDOR_SUCCESS_RATE,
        avg_delay_ms=cfg.VENDOR_AVG_DELAY_MS,
        delay_variation_ms=cfg.VENDOR_DELAY_VARIATION_MS,
        min_delay_ms=cfg.VENDOR_MIN_DELAY_MS,
        unit_cost=cfg.VENDOR_UNIT_COST,
    )


def build_channel(cfg: Settings = settings) -> KombuChannel:
    return KombuChannel(
        cfg.BROKER_URL,
        exchange_name=cfg.MESSAGING_EXCHANGE,
        max_retries=cfg.BROKER_CONNECT_MAX_RETRIES,
    )


def build_coordinator(
    cfg: Settings = settings,
    *,
    channel: MessageChannel | None = None,
    vendor: VendorSimulator | None = None,
    session_factory=SessionLocal,
) -> MessagingCoordinator:
    channel = channel or build_channel(cfg)
    vendor = vendor or build_vendor(cfg)
    producer = DeliveryProducer(
        channel=channel,
        vendor=vendor,
        session_factory=session_factory,
        topic=cfg.RESPONSE_ROUTING_KEY,
        queue_name=cfg.RESPONSE_QUEUE,
        batch_size=cfg.DELIVERY_BATCH_SIZE,
        poll_interval_s=cfg.DELIVERY_POLL_INTERVAL_S,
    )
    consumer = ResponseConsumer(
        channel=channel,
        session_factory=session_factory,
        topic=cfg.RESPONSE_ROUTING_KEY,
        queue_name=cfg.RESPONSE_QUEUE,
        prefetch=cfg.RESPONSE_CONSUMER_PREFETCH,
    )
    return MessagingCoordinator(
        channel=channel,
        producer=producer,
        consumer=consumer,
        vendor=vendor,
        session_factory=session_factory,
        stop_timeout_s=cfg.DELIVERY_STOP_TIMEOUT_S,
    )


def get_coordinator() -> MessagingCoordinator:
    """Process-wide coordinator used by the HTTP app and the worker script."""
    global _coordinator
    with _lock:
        if _coordinator is None:
            _coordinator = build_coordinator()
        return _coordinator
