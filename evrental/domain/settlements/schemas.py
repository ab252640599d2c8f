from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field


class SettlementResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    settlement_id: str
    booking_id: str
    scheduled_return: datetime
    actual_return: datetime
    overtime_hours: int
    overtime_fee: Decimal
    damage_charge: Decimal
    damage_description: str | None = None
    initial_deposit: Decimal
    total_additional_charges: Decimal
    deposit_refund_amount: Decimal
    additional_payment_required: Decimal
    is_finalized: bool
    finalized_at: datetime | None = None
    finalized_by: str | None = None
    refund_status: str
    refund_method: str | None = None
    refund_transaction_id: str | None = None
    refund_proof_reference: str | None = None
    refund_notes: str | None = None
    refund_processed_at: datetime | None = None
    refund_processed_by: str | None = None


class DamageChargeRequest(BaseModel):
    amount: Decimal = Field(ge=0)
    description: str | None = None


class FinalizeRequest(BaseModel):
    finalized_by: str | None = Field(None, max_length=64)


class ManualRefundRequest(BaseModel):
    admin_id: str = Field(min_length=1, max_length=64)
    proof_reference: str = Field(min_length=1, max_length=512)
    notes: str | None = None


class RefundFailureRequest(BaseModel):
    reason: str = Field(min_length=1)


class RefundRequestResponse(BaseModel):
    settlement: SettlementResponse
    scheduled: bool
