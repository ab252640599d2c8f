from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine, inspect

from evrental.settings import settings


def test_alembic_upgrade_head(tmp_path):
    db_path = tmp_path / "test.db"
    config = Config("alembic.ini")
    original_database_url = settings.database_url
    try:
        settings.database_url = f"sqlite+aiosqlite:///{db_path}"
        command.upgrade(config, "head")
    finally:
        settings.database_url = original_database_url

    engine = create_engine(f"sqlite:///{db_path}")
    inspector = inspect(engine)
    tables = inspector.get_table_names()
    for table in (
        "bookings",
        "vehicle_locks",
        "booking_condition_records",
        "booking_damages",
        "payments",
        "settlements",
        "trust_scores",
        "trust_score_history",
        "outbox_events",
        "job_heartbeats",
    ):
        assert table in tables

    settlement_columns = {column["name"] for column in inspector.get_columns("settlements")}
    assert {"deposit_refund_amount", "refund_status", "refund_proof_reference"} <= settlement_columns
