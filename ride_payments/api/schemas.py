"""
Pydantic schemas for API request/response models.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ride_payments.core.enums import Provider


class PayinRequest(BaseModel):
    """Request schema for collecting a booking payment."""

    booking_id: str = Field(..., min_length=1, max_length=64, description="Booking reference")
    amount: Decimal = Field(..., gt=0, description="Amount to collect")
    phone_number: str = Field(..., min_length=9, max_length=20, description="Payer number")
    idempotency_key: Optional[str] = Field(
        default=None,
        max_length=255,
        description="One payment per (booking, key); generated when omitted",
    )
    provider: Optional[Provider] = Field(
        default=None, description="Explicit provider (inferred from the number when omitted)"
    )
    user_id: Optional[str] = Field(default=None, max_length=64, description="Payer id")
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    reason: Optional[str] = Field(default=None, max_length=160, description="Text shown to payer")

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: Optional[str]) -> Optional[str]:
        """Validate currency format."""
        return v.upper() if v else v

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "booking_id": "B1",
                    "amount": "5000",
                    "phone_number": "+237 677 123 456",
                    "idempotency_key": "payment_B1_U1",
                    "user_id": "U1",
                }
            ]
        }
    }


class PayoutRequest(BaseModel):
    """Request schema for disbursing driver earnings."""

    driver_id: str = Field(..., min_length=1, max_length=64)
    booking_id: str = Field(..., min_length=1, max_length=64)
    amount: Decimal = Field(..., gt=0)
    phone_number: str = Field(..., min_length=9, max_length=20)
    reason: str = Field(..., min_length=1, max_length=160)
    payment_id: Optional[UUID] = Field(default=None, description="Related booking payment")
    provider: Optional[Provider] = None
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: Optional[str]) -> Optional[str]:
        """Validate currency format."""
        return v.upper() if v else v


class BookingPayoutRequest(BaseModel):
    """Request schema for paying a driver for a completed booking."""

    booking_id: str = Field(..., min_length=1, max_length=64)
    driver_id: str = Field(..., min_length=1, max_length=64)
    phone_number: str = Field(..., min_length=9, max_length=20)
    provider: Optional[Provider] = None


class RefundRequest(BaseModel):
    """Request schema for refunding part or all of a payment."""

    payment_id: UUID
    booking_id: str = Field(..., min_length=1, max_length=64)
    amount: Decimal = Field(..., gt=0)
    reason: str = Field(..., min_length=1, max_length=160)
    phone_number: Optional[str] = Field(
        default=None, description="Refund number (defaults to the payer's)"
    )


class SeatReductionRefundRequest(BaseModel):
    """Request schema for refunding seats a passenger gave up."""

    payment_id: UUID
    booking_id: str = Field(..., min_length=1, max_length=64)
    seats_before: int = Field(..., ge=1)
    seats_after: int = Field(..., ge=1)
    price_per_seat: Decimal = Field(..., gt=0)
    phone_number: Optional[str] = None


class CheckStatusRequest(BaseModel):
    """Request schema for a status check."""

    reference: str = Field(
        ..., min_length=1, max_length=255, description="Provider token or record id"
    )


class CheckStatusResponse(BaseModel):
    """Response schema for a status check."""

    status: str
    message: str
    updated: bool
    kind: str
    id: str
    transactionToken: Optional[str] = None


class PaymentStatusResponse(BaseModel):
    """Response schema for payment status."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    booking_id: str
    user_id: Optional[str] = None
    amount: Decimal
    currency: str
    provider: str
    phone_number: str
    status: str
    transaction_id: Optional[str] = None
    refunded_amount: Decimal = Decimal("0")
    error_message: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class PayoutStatusResponse(BaseModel):
    """Response schema for payout status."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    payment_id: Optional[UUID] = None
    booking_id: str
    driver_id: str
    amount: Decimal
    currency: str
    provider: str
    status: str
    transaction_id: Optional[str] = None
    previous_transaction_id: Optional[str] = None
    last_provider_status: Optional[str] = None
    error_message: Optional[str] = None
    retry_count: int
    last_retry_at: Optional[datetime] = None
    retry_history: List[Dict[str, Any]] = Field(default_factory=list)
    max_retries_reached: bool
    original_amount: Optional[Decimal] = None
    transaction_fee: Optional[Decimal] = None
    commission: Optional[Decimal] = None
    created_at: datetime
    updated_at: datetime


class PayoutRetryResponse(BaseModel):
    """Response schema for a manual payout retry."""

    outcome: str
    payoutId: str
    status: str
    retryCount: int
    maxRetriesReached: bool
    message: str


class CallbackAckResponse(BaseModel):
    """Acknowledgement returned to providers."""

    message: str
    outcome: Optional[str] = None
    status: Optional[str] = None


class ReconciliationResponse(BaseModel):
    """Response schema for a reconciliation sweep."""

    runId: str
    status: str
    checked: int
    updated: int
    retried: int
    errors: int
    abandoned: int = 0
    flagged: int = 0
    durationSeconds: float
    retryOutcomes: Dict[str, int] = Field(default_factory=dict)


class HealthCheckResponse(BaseModel):
    """Response schema for health check."""

    status: str = Field(..., description="Overall health status")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual checks")
    message: Optional[str] = Field(default=None, description="Status message")
