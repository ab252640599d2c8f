from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Mapping, Protocol

OUTCOME_SUCCEEDED = "succeeded"
OUTCOME_FAILED = "failed"
OUTCOME_IGNORED = "ignored"


class GatewayError(Exception):
    """A gateway call failed or returned an unusable response."""


class SignatureError(GatewayError):
    """Inbound callback failed signature verification."""


@dataclass(frozen=True)
class CheckoutSession:
    redirect_url: str
    reference: str | None = None


@dataclass(frozen=True)
class GatewayEvent:
    outcome: str
    booking_id: str | None = None
    payment_id: int | None = None
    transaction_id: str | None = None
    amount: Decimal | None = None
    event_type: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)


class PaymentGateway(Protocol):
    name: str
    supports_automatic_refund: bool

    async def create_checkout(
        self,
        *,
        amount: Decimal,
        currency: str,
        success_url: str | None,
        cancel_url: str | None,
        metadata: Mapping[str, str],
    ) -> CheckoutSession:
        ...

    async def refund(self, *, transaction_id: str, amount: Decimal, currency: str, reason: str) -> str:
        ...


class GatewayRegistry:
    def __init__(self, gateways: Mapping[str, PaymentGateway]) -> None:
        self._gateways = dict(gateways)

    def get(self, method: str) -> PaymentGateway:
        gateway = self._gateways.get(method)
        if gateway is None:
            raise GatewayError(f"No gateway configured for payment method {method}")
        return gateway

    def supports_automatic_refund(self, method: str) -> bool:
        gateway = self._gateways.get(method)
        return bool(gateway and gateway.supports_automatic_refund)

    def __contains__(self, method: str) -> bool:
        return method in self._gateways


def build_gateways(app_settings) -> GatewayRegistry:
    from evrental.infra.payos import PayOSClient
    from evrental.infra.stripe_client import StripeClient
    from evrental.infra.vnpay import VNPayClient

    return GatewayRegistry(
        {
            "stripe": StripeClient(
                secret_key=app_settings.stripe_secret_key,
                webhook_secret=app_settings.stripe_webhook_secret,
            ),
            "vnpay": VNPayClient(
                tmn_code=app_settings.vnpay_tmn_code,
                hash_secret=app_settings.vnpay_hash_secret,
                payment_url=app_settings.vnpay_payment_url,
                return_url=app_settings.vnpay_return_url,
            ),
            "payos": PayOSClient(
                base_url=app_settings.payos_base_url,
                api_key=app_settings.payos_api_key,
                checksum_key=app_settings.payos_checksum_key,
                return_url=app_settings.payos_return_url,
                cancel_url=app_settings.payos_cancel_url,
                timeout=app_settings.gateway_timeout_seconds,
            ),
        }
    )


def resolve_gateways(app_state: Any, app_settings) -> GatewayRegistry:
    registry = getattr(app_state, "gateways", None)
    if registry is None:
        registry = build_gateways(app_settings)
        app_state.gateways = registry
    return registry
