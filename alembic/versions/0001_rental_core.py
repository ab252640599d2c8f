from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0001_rental_core"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "vehicle_locks",
        sa.Column("vehicle_id", sa.String(length=64), primary_key=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        "bookings",
        sa.Column("booking_id", sa.String(length=36), primary_key=True),
        sa.Column("customer_id", sa.String(length=64), nullable=False),
        sa.Column("vehicle_id", sa.String(length=64), nullable=False),
        sa.Column("scheduled_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("scheduled_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("hourly_rate", sa.Numeric(14, 2), nullable=False),
        sa.Column("rental_hours", sa.Integer(), nullable=False),
        sa.Column("rental_cost", sa.Numeric(14, 2), nullable=False),
        sa.Column("vehicle_price", sa.Numeric(14, 2), nullable=False),
        sa.Column("deposit_amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("service_fee", sa.Numeric(14, 2), nullable=False),
        sa.Column("total_amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("trust_score_snapshot", sa.Integer(), nullable=False),
        sa.Column("payment_method", sa.String(length=16), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("hold_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("picked_up_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("returned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancellation_reason", sa.String(length=255), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_bookings_customer_id", "bookings", ["customer_id"])
    op.create_index("ix_bookings_vehicle_window", "bookings", ["vehicle_id", "scheduled_start", "scheduled_end"])
    op.create_index("ix_bookings_status_hold", "bookings", ["status", "hold_expires_at"])

    op.create_table(
        "booking_condition_records",
        sa.Column("record_id", sa.String(length=36), primary_key=True),
        sa.Column(
            "booking_id",
            sa.String(length=36),
            sa.ForeignKey("bookings.booking_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("phase", sa.String(length=16), nullable=False),
        sa.Column("photo_ref", sa.String(length=512), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("recorded_by", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_booking_condition_records_booking_id", "booking_condition_records", ["booking_id"])

    op.create_table(
        "booking_damages",
        sa.Column("damage_id", sa.String(length=36), primary_key=True),
        sa.Column(
            "booking_id",
            sa.String(length=36),
            sa.ForeignKey("bookings.booking_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("severity", sa.String(length=32), nullable=False),
        sa.Column("estimated_cost", sa.Numeric(14, 2), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_booking_damages_booking_id", "booking_damages", ["booking_id"])

    op.create_table(
        "payments",
        sa.Column("payment_id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "booking_id",
            sa.String(length=36),
            sa.ForeignKey("bookings.booking_id"),
            nullable=False,
            unique=True,
        ),
        sa.Column("amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("method", sa.String(length=16), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("transaction_id", sa.String(length=255), nullable=True, unique=True),
        sa.Column("gateway_payload", sa.JSON(), nullable=True),
        sa.Column("checkout_reference", sa.String(length=255), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refund_id", sa.String(length=255), nullable=True),
        sa.Column("refund_reason", sa.String(length=512), nullable=True),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "settlements",
        sa.Column("settlement_id", sa.String(length=36), primary_key=True),
        sa.Column(
            "booking_id",
            sa.String(length=36),
            sa.ForeignKey("bookings.booking_id"),
            nullable=False,
            unique=True,
        ),
        sa.Column("scheduled_return", sa.DateTime(timezone=True), nullable=False),
        sa.Column("actual_return", sa.DateTime(timezone=True), nullable=False),
        sa.Column("overtime_hours", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("overtime_fee", sa.Numeric(14, 2), nullable=False),
        sa.Column("damage_charge", sa.Numeric(14, 2), nullable=False),
        sa.Column("damage_description", sa.Text(), nullable=True),
        sa.Column("initial_deposit", sa.Numeric(14, 2), nullable=False),
        sa.Column("total_additional_charges", sa.Numeric(14, 2), nullable=False),
        sa.Column("deposit_refund_amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("additional_payment_required", sa.Numeric(14, 2), nullable=False),
        sa.Column("is_finalized", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("finalized_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finalized_by", sa.String(length=64), nullable=True),
        sa.Column("refund_status", sa.String(length=32), nullable=False),
        sa.Column("refund_method", sa.String(length=16), nullable=True),
        sa.Column("refund_transaction_id", sa.String(length=255), nullable=True),
        sa.Column("refund_proof_reference", sa.String(length=512), nullable=True),
        sa.Column("refund_notes", sa.Text(), nullable=True),
        sa.Column("refund_processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refund_processed_by", sa.String(length=64), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "trust_scores",
        sa.Column("customer_id", sa.String(length=64), primary_key=True),
        sa.Column("score", sa.Integer(), nullable=False),
        sa.Column("last_booking_id", sa.String(length=36), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "trust_score_history",
        sa.Column("history_id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "customer_id",
            sa.String(length=64),
            sa.ForeignKey("trust_scores.customer_id"),
            nullable=False,
        ),
        sa.Column("booking_id", sa.String(length=36), nullable=True),
        sa.Column("change_amount", sa.Integer(), nullable=False),
        sa.Column("previous_score", sa.Integer(), nullable=False),
        sa.Column("new_score", sa.Integer(), nullable=False),
        sa.Column("reason", sa.String(length=512), nullable=False),
        sa.Column("change_type", sa.String(length=32), nullable=False),
        sa.Column("admin_id", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_trust_score_history_customer_id", "trust_score_history", ["customer_id"])
    op.create_index("ix_trust_score_history_booking_id", "trust_score_history", ["booking_id"])

    op.create_table(
        "outbox_events",
        sa.Column("event_id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("kind", sa.String(length=64), nullable=False),
        sa.Column("payload_json", sa.JSON(), nullable=False),
        sa.Column("dedupe_key", sa.String(length=255), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("dedupe_key", name="uq_outbox_dedupe_key"),
    )
    op.create_index("ix_outbox_events_status_next_attempt", "outbox_events", ["status", "next_attempt_at"])

    op.create_table(
        "job_heartbeats",
        sa.Column("name", sa.String(length=64), primary_key=True),
        sa.Column("last_heartbeat", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_result", sa.JSON(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("job_heartbeats")
    op.drop_index("ix_outbox_events_status_next_attempt", table_name="outbox_events")
    op.drop_table("outbox_events")
    op.drop_index("ix_trust_score_history_booking_id", table_name="trust_score_history")
    op.drop_index("ix_trust_score_history_customer_id", table_name="trust_score_history")
    op.drop_table("trust_score_history")
    op.drop_table("trust_scores")
    op.drop_table("settlements")
    op.drop_table("payments")
    op.drop_index("ix_booking_damages_booking_id", table_name="booking_damages")
    op.drop_table("booking_damages")
    op.drop_index("ix_booking_condition_records_booking_id", table_name="booking_condition_records")
    op.drop_table("booking_condition_records")
    op.drop_index("ix_bookings_status_hold", table_name="bookings")
    op.drop_index("ix_bookings_vehicle_window", table_name="bookings")
    op.drop_index("ix_bookings_customer_id", table_name="bookings")
    op.drop_table("bookings")
    op.drop_table("vehicle_locks")
