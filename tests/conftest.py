import asyncio
import sys
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Mapping

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from evrental.dependencies import build_engine
from evrental.domain.bookings import db_models as booking_db_models  # noqa: F401
from evrental.domain.ops import db_models as ops_db_models  # noqa: F401
from evrental.domain.outbox import db_models as outbox_db_models  # noqa: F401
from evrental.domain.payments import db_models as payment_db_models  # noqa: F401
from evrental.domain.settlements import db_models as settlement_db_models  # noqa: F401
from evrental.domain.trust import db_models as trust_db_models  # noqa: F401
from evrental.infra.db import Base, get_db_session
from evrental.infra.gateways import CheckoutSession, GatewayError, GatewayRegistry
from evrental.infra.metrics import Metrics
from evrental.main import app
from evrental.settings import settings

# Fixed clock for lifecycle tests; bookings start one hour after it.
NOW = datetime(2030, 5, 1, 8, 0, tzinfo=timezone.utc)


class RecordingNotifier:
    def __init__(self) -> None:
        self.events: list[tuple[str, str, dict[str, Any]]] = []

    async def notify(self, customer_id: str, event_type: str, payload: dict[str, Any]) -> None:
        self.events.append((customer_id, event_type, payload))

    def types(self) -> list[str]:
        return [event_type for _, event_type, _ in self.events]


@dataclass
class FakeGateway:
    name: str
    supports_automatic_refund: bool = True
    fail_refunds: bool = False
    refunds: list[dict[str, Any]] = field(default_factory=list)
    checkouts: list[dict[str, Any]] = field(default_factory=list)

    async def create_checkout(
        self,
        *,
        amount: Decimal,
        currency: str,
        success_url: str | None,
        cancel_url: str | None,
        metadata: Mapping[str, str],
    ) -> CheckoutSession:
        self.checkouts.append({"amount": amount, "currency": currency, "metadata": dict(metadata)})
        return CheckoutSession(
            redirect_url=f"https://pay.example/{self.name}/{metadata['booking_id']}",
            reference=f"{self.name}-session-{len(self.checkouts)}",
        )

    async def refund(self, *, transaction_id: str, amount: Decimal, currency: str, reason: str) -> str:
        if self.fail_refunds:
            raise GatewayError(f"{self.name} refund rejected")
        self.refunds.append(
            {"transaction_id": transaction_id, "amount": amount, "currency": currency, "reason": reason}
        )
        return f"re_{len(self.refunds)}"


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest.fixture(scope="session")
def test_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())
    yield engine
    asyncio.run(engine.dispose())


@pytest.fixture(scope="session")
def async_session_maker(test_engine):
    return async_sessionmaker(test_engine, expire_on_commit=False)


@pytest.fixture(autouse=True)
def restore_settings():
    original = {
        "testing": settings.testing,
        "app_env": settings.app_env,
        "metrics_enabled": settings.metrics_enabled,
        "metrics_token": settings.metrics_token,
    }
    settings.testing = True
    settings.app_env = "dev"
    yield
    for key, value in original.items():
        setattr(settings, key, value)


@pytest.fixture(autouse=True)
def clean_database(test_engine):
    async def truncate_tables() -> None:
        async with test_engine.begin() as conn:
            for table in reversed(Base.metadata.sorted_tables):
                await conn.execute(table.delete())

    asyncio.run(truncate_tables())
    yield


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def fake_gateways() -> GatewayRegistry:
    return GatewayRegistry(
        {
            "stripe": FakeGateway("stripe"),
            "vnpay": FakeGateway("vnpay", supports_automatic_refund=False),
            "payos": FakeGateway("payos"),
        }
    )


@pytest.fixture()
def test_metrics() -> Metrics:
    return Metrics(enabled=True)


@pytest.fixture()
def engine(fake_gateways, notifier, test_metrics):
    return build_engine(settings, gateways=fake_gateways, notifier=notifier, metrics=test_metrics)


@pytest.fixture()
def booking_window():
    start = NOW + timedelta(hours=1)
    return start, start + timedelta(hours=3)


async def create_paid_booking(
    engine,
    session,
    *,
    customer_id: str = "cust-1",
    vehicle_id: str = "vf8-001",
    method: str = "stripe",
    transaction_id: str = "pi_123",
    start: datetime | None = None,
    hours: int = 3,
):
    start = start or NOW + timedelta(hours=1)
    booking = await engine.create_booking(
        session,
        customer_id=customer_id,
        vehicle_id=vehicle_id,
        scheduled_start=start,
        scheduled_end=start + timedelta(hours=hours),
        hourly_rate=Decimal("20000"),
        vehicle_price=Decimal("500000"),
        payment_method=method,
        now=NOW,
    )
    await engine.confirm_payment(session, booking.booking_id, transaction_id, {"source": "test"})
    return booking


async def start_paid_rental(engine, session, **kwargs):
    booking = await create_paid_booking(engine, session, **kwargs)
    await engine.record_condition(session, booking.booking_id, phase="pickup", photo_ref="s3://photos/pickup-1.jpg")
    await engine.start_rental(session, booking.booking_id, now=booking.scheduled_start)
    await engine.record_condition(session, booking.booking_id, phase="RETURN", photo_ref="s3://photos/return-1.jpg")
    return booking


@pytest.fixture()
def client(async_session_maker, engine, fake_gateways, notifier, test_metrics):
    async def override_db_session():
        async with async_session_maker() as session:
            yield session

    originals = {
        key: getattr(app.state, key, None)
        for key in ("db_session_factory", "booking_engine", "gateways", "notifier", "metrics")
    }
    app.dependency_overrides[get_db_session] = override_db_session
    app.state.db_session_factory = async_session_maker
    app.state.booking_engine = engine
    app.state.gateways = fake_gateways
    app.state.notifier = notifier
    app.state.metrics = test_metrics
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    for key, value in originals.items():
        setattr(app.state, key, value)
