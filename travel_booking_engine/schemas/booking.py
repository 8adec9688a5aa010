"""
Pydantic schemas for booking-related API requests and responses.
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator, model_validator

from ..models.booking import BookingStatus, PaymentStatus
from ..services.policy_evaluator import CancellationTerms, ModificationTerms


class BookingCreateRequest(BaseModel):
    """Schema for creating a new booking."""

    resource_id: str = Field(..., min_length=1, max_length=128, description="Accommodation to book")
    check_in: datetime = Field(..., description="Check-in time (ISO 8601, UTC when no offset)")
    check_out: datetime = Field(..., description="Check-out time, after check-in")
    guest_count: int = Field(..., ge=1, description="Number of guests")
    total_amount: Decimal = Field(..., gt=0, decimal_places=2, description="Quoted total price")
    currency: str = Field("EUR", min_length=3, max_length=3, description="ISO 4217 currency code")

    @field_validator("currency")
    @classmethod
    def normalise_currency(cls, v: str) -> str:
        if not v.isalpha():
            raise ValueError("currency must be alphabetic")
        return v.upper()

    @model_validator(mode="after")
    def validate_dates(self):
        if self.check_out <= self.check_in:
            raise ValueError("check_out must be after check_in")
        return self


class BookingModifyRequest(BaseModel):
    """Schema for modifying a confirmed booking; omitted fields stay unchanged."""

    check_in: Optional[datetime] = None
    check_out: Optional[datetime] = None
    guest_count: Optional[int] = Field(None, ge=1)

    @model_validator(mode="after")
    def validate_not_empty(self):
        if self.check_in is None and self.check_out is None and self.guest_count is None:
            raise ValueError("At least one of check_in, check_out or guest_count is required")
        return self


class BookingCancelRequest(BaseModel):
    """Schema for cancelling a booking."""

    reason: Optional[str] = Field(None, max_length=500, description="Optional cancellation reason")


class StatusHistoryEntry(BaseModel):
    sequence: int
    status: BookingStatus
    actor: str
    reason: Optional[str]
    created_at: datetime

    model_config = {"from_attributes": True}


class BookingResponse(BaseModel):
    """Schema for booking responses."""

    booking_id: UUID = Field(..., validation_alias="id")
    resource_id: str
    user_id: str
    check_in: datetime
    check_out: datetime
    guest_count: int
    total_amount: Decimal
    amount_paid: Optional[Decimal] = None
    currency: str
    status: BookingStatus
    payment_status: PaymentStatus
    payment_intent_ref: Optional[str] = None
    confirmation_number: Optional[str] = None
    expires_at: Optional[datetime] = None
    refund_amount: Optional[Decimal] = None
    failure_reason: Optional[str] = None
    cancellation_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    status_history: List[StatusHistoryEntry] = []

    model_config = {"from_attributes": True, "populate_by_name": True}


class BookingListResponse(BaseModel):
    """Schema for booking list responses."""

    bookings: List[BookingResponse]
    total: int
    limit: int
    offset: int


class CreateBookingResponse(BaseModel):
    """Response for successful booking creation."""

    booking: BookingResponse
    client_secret: Optional[str] = Field(None, description="Secret the client uses to complete payment")
    expires_in_minutes: int
    message: str = "Booking created. Complete payment before the hold expires."


class CancellationTermsResponse(BaseModel):
    refund_eligible: bool
    refund_amount: Decimal
    refund_percentage: Decimal
    hours_until_check_in: float

    @classmethod
    def from_terms(cls, terms: CancellationTerms) -> "CancellationTermsResponse":
        return cls(
            refund_eligible=terms.refund_eligible,
            refund_amount=terms.refund_amount,
            refund_percentage=terms.refund_percentage,
            hours_until_check_in=terms.hours_until_check_in,
        )


class ModificationTermsResponse(BaseModel):
    allowed: bool
    reason: Optional[str] = None
    change_fee: Decimal
    price_delta: Decimal
    new_total: Decimal
    amount_due: Decimal
    hours_until_check_in: float

    @classmethod
    def from_terms(cls, terms: ModificationTerms) -> "ModificationTermsResponse":
        return cls(
            allowed=terms.allowed,
            reason=terms.reason,
            change_fee=terms.change_fee,
            price_delta=terms.price_delta,
            new_total=terms.new_total,
            amount_due=terms.amount_due,
            hours_until_check_in=terms.hours_until_check_in,
        )


class ModifyBookingResponse(BaseModel):
    """Response for a successful modification."""

    booking: BookingResponse
    terms: ModificationTermsResponse
    message: str = "Booking modified successfully"


class CancelBookingResponse(BaseModel):
    """Response for a successful cancellation."""

    booking: BookingResponse
    terms: CancellationTermsResponse
    refund_id: Optional[str] = None
    message: str = "Booking cancelled successfully"
