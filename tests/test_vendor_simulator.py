from __future__ import annotations

import random

import pytest

from app.delivery.vendor import FAILURE_REASONS, VendorSimulator, calculate_cost
from app.schemas.delivery import DeliveryError, DeliveryFailure, DeliverySuccess, VendorRequest


def _payload(**overrides) -> dict:
    payload = {
        "communication_id": "c1",
        "campaign_id": "k1",
        "customer_id": "u1",
        "customer_email": "a@example.com",
        "customer_name": "Ada",
        "message_text": "hello",
        "attempt_number": 1,
        "max_attempts": 3,
    }
    payload.update(overrides)
    return payload


def _sim(**kwargs):
    sleeps: list[float] = []
    sim = VendorSimulator(rng=random.Random(7), sleep=sleeps.append, **kwargs)
    return sim, sleeps


@pytest.mark.parametrize(
    "payload,code",
    [
        ({}, "INVALID_PAYLOAD"),
        (_payload(customer_email=None), "MISSING_EMAIL"),
        (_payload(customer_email=""), "MISSING_EMAIL"),
        (_payload(message_text=None), "MISSING_MESSAGE"),
    ],
)
def test_invalid_payload_returns_error_without_delay(payload, code):
    sim, sleeps = _sim()
    out = sim.send(payload)
    assert isinstance(out, DeliveryError)
    assert out.error_code == code
    assert out.retryable is False
    assert sleeps == []


def test_always_succeeds_at_rate_one():
    sim, sleeps = _sim(success_rate=1.0)
    outs = [sim.send(_payload()) for _ in range(25)]

    assert all(isinstance(o, DeliverySuccess) for o in outs)
    assert len({o.vendor_ref for o in outs}) == 25
    assert all(o.vendor_ref.startswith("vendor_") for o in outs)
    assert all(o.cost == 1 for o in outs)
    assert all(o.vendor_response["status_code"] == 200 for o in outs)
    assert len(sleeps) == 25
    assert all(0.05 <= s <= 0.8 for s in sleeps)


def test_always_fails_at_rate_zero_with_known_reasons():
    sim, _ = _sim(success_rate=0.0)
    reasons = {r.code: r for r in FAILURE_REASONS}

    for _ in range(40):
        out = sim.send(_payload())
        assert isinstance(out, DeliveryFailure)
        assert out.error_code in reasons
        assert out.retryable is reasons[out.error_code].retryable
        assert out.vendor_response["status_code"] == (429 if out.retryable else 400)
        assert out.vendor_ref


def test_failure_taxonomy_retryability():
    retryable = {r.code for r in FAILURE_REASONS if r.retryable}
    assert retryable == {"RATE_LIMITED", "TEMPORARY_FAILURE", "QUOTA_EXCEEDED"}
    assert {r.code for r in FAILURE_REASONS} - retryable == {"INVALID_EMAIL", "EMAIL_BOUNCED", "SPAM_DETECTED"}


@pytest.mark.parametrize("rate", [-0.01, 1.01, 2])
def test_success_rate_out_of_range_rejected(rate):
    sim, _ = _sim(success_rate=0.5)
    with pytest.raises(ValueError):
        sim.set_success_rate(rate)
    assert sim.success_rate == 0.5

    with pytest.raises(ValueError):
        VendorSimulator(success_rate=rate)


def test_success_rate_is_mutable_and_reported():
    sim, _ = _sim()
    sim.set_success_rate(0.25)
    stats = sim.stats()
    assert stats["success_rate"] == 0.25
    assert stats["failure_rate"] == 0.75
    assert stats["avg_delay_ms"] == 500
    assert stats["delay_variation_ms"] == 300


@pytest.mark.parametrize(
    "length,unit,expected",
    [(1, 1, 1), (160, 1, 1), (161, 1, 2), (320, 1, 2), (321, 1, 3), (161, 5, 10)],
)
def test_cost_is_segments_times_unit(length, unit, expected):
    assert calculate_cost("x" * length, unit_cost=unit) == expected


def test_success_cost_uses_message_length():
    sim, _ = _sim(success_rate=1.0, unit_cost=2)
    out = sim.send(_payload(message_text="y" * 161))
    assert out.cost == 4


def test_delay_is_floored():
    sim, _ = _sim(avg_delay_ms=0, delay_variation_ms=0)
    assert sim.simulated_delay_s() == pytest.approx(0.05)


def test_accepts_vendor_request_model():
    sim, _ = _sim(success_rate=1.0)
    req = VendorRequest(**_payload())
    assert isinstance(sim.send(req), DeliverySuccess)


def test_delivery_status_probe():
    sim, sleeps = _sim()
    probe = sim.delivery_status("vendor_1_aa")
    assert probe["vendor_ref"] == "vendor_1_aa"
    assert probe["status"] in {"SENT", "DELIVERED", "READ", "CLICKED"}
    assert 10 <= probe["details"]["delivery_time"] <= 310
    assert len(sleeps) == 1
