from __future__ import annotations

from datetime import datetime
from typing import Annotated, Literal

from pydantic import BaseModel, Field, TypeAdapter

from app.util.time import now_utc


class VendorRequest(BaseModel):
    """Payload handed to the delivery vendor for one attempt."""

    communication_id: str
    campaign_id: str
    customer_id: str
    customer_email: str | None = None
    customer_name: str | None = None
    message_text: str | None = None
    campaign_name: str | None = None
    campaign_type: str | None = None
    attempt_number: int
    max_attempts: int
    timestamp: datetime = Field(default_factory=now_utc)


class DeliverySuccess(BaseModel):
    status: Literal["SUCCESS"] = "SUCCESS"
    vendor_ref: str = Field(min_length=1)
    message: str = "Message delivered successfully"
    delivered_at: datetime = Field(default_factory=now_utc)
    cost: int = 0
    vendor_response: dict = Field(default_factory=dict)

    @property
    def retryable(self) -> bool:
        return False


class DeliveryFailure(BaseModel):
    status: Literal["FAILED"] = "FAILED"
    vendor_ref: str | None = None
    error_code: str
    error_message: str
    retryable: bool
    failed_at: datetime = Field(default_factory=now_utc)
    vendor_response: dict = Field(default_factory=dict)


class DeliveryError(BaseModel):
    """Request never reached a delivery decision: bad input or a system fault."""

    status: Literal["ERROR"] = "ERROR"
    vendor_ref: str | None = None
    error_code: str
    error_message: str
    retryable: bool = False
    failed_at: datetime = Field(default_factory=now_utc)
    vendor_response: dict = Field(default_factory=dict)


DeliveryOutcome = Annotated[
    DeliverySuccess | DeliveryFailure | DeliveryError,
    Field(discriminator="status"),
]

SYSTEM_ERROR = "SYSTEM_ERROR"


class OutcomeMessage(BaseModel):
    """Wire contract on the response channel (one per vendor call)."""

    communication_id: str = Field(min_length=1)
    campaign_id: str | None = None
    customer_id: str | None = None
    customer_email: str | None = None
    attempt_number: int = Field(ge=1)
    delivery_response: DeliveryOutcome
    processed_at: datetime = Field(default_factory=now_utc)


outcome_adapter: TypeAdapter[DeliverySuccess | DeliveryFailure | DeliveryError] = TypeAdapter(DeliveryOutcome)


def system_error(exc: BaseException) -> DeliveryError:
    """Wrap an exception raised around the vendor call so the normal retry path applies."""
    return DeliveryError(
        error_code=SYSTEM_ERROR,
        error_message=f"{type(exc).__name__}: {exc}"[:500],
        retryable=True,
    )
