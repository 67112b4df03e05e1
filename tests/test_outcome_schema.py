from __future__ import annotations

import pytest
from pydantic import ValidationError

from app.delivery.consumer import InvalidOutcomeMessage, parse_outcome_message
from app.schemas.delivery import DeliveryError, DeliveryFailure, DeliverySuccess, OutcomeMessage, outcome_adapter, system_error


def _message(**overrides) -> dict:
    body = {
        "communication_id": "c1",
        "campaign_id": "k1",
        "customer_id": "u1",
        "customer_email": "a@example.com",
        "attempt_number": 1,
        "delivery_response": {"status": "SUCCESS", "vendor_ref": "vendor_1_aa", "delivered_at": "2026-10-17T10:00:00Z"},
        "processed_at": "2026-10-17T10:00:01Z",
    }
    body.update(overrides)
    return body


def test_outcome_variants_are_discriminated_by_status():
    assert isinstance(outcome_adapter.validate_python({"status": "SUCCESS", "vendor_ref": "v"}), DeliverySuccess)
    failed = outcome_adapter.validate_python(
        {"status": "FAILED", "vendor_ref": "v", "error_code": "RATE_LIMITED", "error_message": "x", "retryable": True}
    )
    assert isinstance(failed, DeliveryFailure)
    assert failed.retryable is True
    err = outcome_adapter.validate_python({"status": "ERROR", "error_code": "MISSING_EMAIL", "error_message": "x"})
    assert isinstance(err, DeliveryError)
    assert err.retryable is False


def test_success_requires_vendor_ref():
    with pytest.raises(ValidationError):
        outcome_adapter.validate_python({"status": "SUCCESS"})


def test_success_rejects_empty_vendor_ref():
    with pytest.raises(ValidationError):
        outcome_adapter.validate_python({"status": "SUCCESS", "vendor_ref": ""})
    with pytest.raises(InvalidOutcomeMessage):
        parse_outcome_message(_message(delivery_response={"status": "SUCCESS", "vendor_ref": ""}))


def test_unknown_status_rejected():
    with pytest.raises(ValidationError):
        outcome_adapter.validate_python({"status": "MAYBE", "vendor_ref": "v"})


def test_system_error_is_retryable():
    out = system_error(RuntimeError("db gone"))
    assert out.error_code == "SYSTEM_ERROR"
    assert out.retryable is True
    assert "db gone" in out.error_message


def test_parse_valid_message():
    msg = parse_outcome_message(_message())
    assert isinstance(msg, OutcomeMessage)
    assert isinstance(msg.delivery_response, DeliverySuccess)
    assert msg.attempt_number == 1


@pytest.mark.parametrize(
    "body",
    [
        _message(communication_id=None),
        _message(communication_id=""),
        _message(delivery_response=None),
        _message(delivery_response={"status": "FAILED"}),
        _message(attempt_number=0),
        ["not", "an", "object"],
    ],
)
def test_malformed_messages_raise(body):
    with pytest.raises(InvalidOutcomeMessage):
        parse_outcome_message(body)
