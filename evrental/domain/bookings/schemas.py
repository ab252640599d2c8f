from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from evrental.domain.bookings.statuses import ConditionPhase, DamageSeverity
from evrental.domain.payments.statuses import PaymentMethod


class BookingWindow(BaseModel):
    customer_id: str = Field(min_length=1, max_length=64)
    vehicle_id: str = Field(min_length=1, max_length=64)
    scheduled_start: datetime
    scheduled_end: datetime
    hourly_rate: Decimal = Field(gt=0)
    vehicle_price: Decimal = Field(ge=0)

    @model_validator(mode="after")
    def validate_window(self) -> "BookingWindow":
        if self.scheduled_end <= self.scheduled_start:
            raise ValueError("scheduled_end must be after scheduled_start")
        return self


class BookingPreviewRequest(BookingWindow):
    pass


class BookingCreateRequest(BookingWindow):
    payment_method: PaymentMethod


class CostBreakdownResponse(BaseModel):
    rental_hours: int
    rental_cost: Decimal
    trust_score: int
    deposit_multiplier: Decimal
    deposit_amount: Decimal
    service_fee: Decimal
    service_fee_waived: bool
    total_amount: Decimal
    available: bool


class BookingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    booking_id: str
    customer_id: str
    vehicle_id: str
    status: str
    scheduled_start: datetime
    scheduled_end: datetime
    rental_hours: int
    rental_cost: Decimal
    deposit_amount: Decimal
    service_fee: Decimal
    total_amount: Decimal
    payment_method: str
    trust_score_snapshot: int
    hold_expires_at: datetime | None = None
    picked_up_at: datetime | None = None
    returned_at: datetime | None = None
    cancellation_reason: str | None = None


class CheckoutRequest(BaseModel):
    success_url: str | None = None
    cancel_url: str | None = None


class CheckoutResponse(BaseModel):
    booking_id: str
    provider: str
    checkout_url: str
    reference: str | None = None


class ConditionRequest(BaseModel):
    phase: str
    photo_ref: str = Field(min_length=1, max_length=512)
    notes: str | None = None
    recorded_by: str | None = Field(None, max_length=64)

    @model_validator(mode="after")
    def validate_phase(self) -> "ConditionRequest":
        ConditionPhase.from_any_case(self.phase)
        return self


class ConditionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    record_id: str
    booking_id: str
    phase: str
    photo_ref: str
    notes: str | None = None
    recorded_by: str | None = None


class DamageRequest(BaseModel):
    severity: DamageSeverity
    estimated_cost: Decimal | None = Field(None, ge=0)
    description: str | None = None


class DamageResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    damage_id: str
    booking_id: str
    severity: str
    estimated_cost: Decimal | None = None
    description: str | None = None


class RentalEventRequest(BaseModel):
    occurred_at: datetime | None = None


class CompletionResponse(BaseModel):
    booking: BookingResponse
    settlement_id: str
    deposit_refund_amount: Decimal
    additional_payment_required: Decimal
    refund_scheduled: bool
    trust_score: int


class ContractResponse(BaseModel):
    booking_id: str
    document_reference: str
