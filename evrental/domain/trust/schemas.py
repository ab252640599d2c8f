from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from evrental.domain.trust.statuses import RiskLevel


class TrustScoreResponse(BaseModel):
    customer_id: str
    score: int
    deposit_multiplier: float


class TrustHistoryEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    history_id: int
    booking_id: str | None = None
    change_amount: int
    previous_score: int
    new_score: int
    reason: str
    change_type: str
    admin_id: str | None = None
    created_at: datetime


class TrustAdjustmentRequest(BaseModel):
    delta: int
    reason: str = Field(min_length=1, max_length=500)
    admin_id: str = Field(min_length=1, max_length=64)


class RiskProfileResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    customer_id: str
    trust_score: int
    risk_score: int
    risk_level: RiskLevel
    risk_factors: list[str]
    penalty_count: int
    late_return_count: int
    damage_count: int
    no_show_count: int
    last_violation_at: datetime | None = None
