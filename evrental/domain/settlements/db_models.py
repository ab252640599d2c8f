import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, Numeric, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from evrental.infra.db import Base


class Settlement(Base):
    __tablename__ = "settlements"

    settlement_id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    booking_id: Mapped[str] = mapped_column(
        ForeignKey("bookings.booking_id"), nullable=False, unique=True
    )
    scheduled_return: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    actual_return: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    overtime_hours: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    overtime_fee: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    damage_charge: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    damage_description: Mapped[str | None] = mapped_column(Text)
    initial_deposit: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    total_additional_charges: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    deposit_refund_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    additional_payment_required: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    is_finalized: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    finalized_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    finalized_by: Mapped[str | None] = mapped_column(String(64))
    refund_status: Mapped[str] = mapped_column(String(32), nullable=False)
    refund_method: Mapped[str | None] = mapped_column(String(16))
    refund_transaction_id: Mapped[str | None] = mapped_column(String(255))
    refund_proof_reference: Mapped[str | None] = mapped_column(String(512))
    refund_notes: Mapped[str | None] = mapped_column(Text)
    refund_processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    refund_processed_by: Mapped[str | None] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )
