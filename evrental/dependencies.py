from fastapi import Request

from evrental.domain.bookings.service import BookingEngine
from evrental.domain.documents.service import ContractGenerator, UnconfiguredContractGenerator
from evrental.domain.notifications.service import LoggingNotificationSink, NotificationSink
from evrental.domain.policy import BillingPolicy, BookingPolicy, TrustPolicy
from evrental.domain.settlements.calculator import SettlementCalculator
from evrental.domain.settlements.service import SettlementService
from evrental.domain.trust.service import TrustScoreLedger
from evrental.infra.db import get_db_session
from evrental.infra.gateways import GatewayRegistry, resolve_gateways
from evrental.infra.metrics import Metrics, metrics as default_metrics
from evrental.settings import settings

__all__ = [
    "build_engine",
    "get_booking_engine",
    "get_contract_generator",
    "get_db_session",
    "get_gateways",
]


def build_engine(
    app_settings,
    *,
    gateways: GatewayRegistry,
    notifier: NotificationSink | None = None,
    metrics: Metrics | None = None,
) -> BookingEngine:
    calculator = SettlementCalculator(BillingPolicy.from_settings(app_settings))
    ledger = TrustScoreLedger(TrustPolicy.from_settings(app_settings))
    automatic = frozenset(method for method in ("stripe", "vnpay", "payos") if gateways.supports_automatic_refund(method))
    settlements = SettlementService(calculator, ledger, automatic_refund_methods=automatic)
    return BookingEngine(
        policy=BookingPolicy.from_settings(app_settings),
        ledger=ledger,
        calculator=calculator,
        settlements=settlements,
        notifier=notifier or LoggingNotificationSink(),
        metrics=metrics or default_metrics,
    )


def get_gateways(request: Request) -> GatewayRegistry:
    app_settings = getattr(request.app.state, "app_settings", settings)
    return resolve_gateways(request.app.state, app_settings)


def get_booking_engine(request: Request) -> BookingEngine:
    engine = getattr(request.app.state, "booking_engine", None)
    if engine is None:
        app_settings = getattr(request.app.state, "app_settings", settings)
        engine = build_engine(
            app_settings,
            gateways=get_gateways(request),
            notifier=getattr(request.app.state, "notifier", None),
            metrics=getattr(request.app.state, "metrics", None),
        )
        request.app.state.booking_engine = engine
    return engine


def get_contract_generator(request: Request) -> ContractGenerator:
    generator = getattr(request.app.state, "contract_generator", None)
    if generator is None:
        return UnconfiguredContractGenerator()
    return generator
