from __future__ import annotations

from decimal import Decimal
from typing import Any, Mapping

import anyio

from evrental.infra.gateways import (
    OUTCOME_FAILED,
    OUTCOME_IGNORED,
    OUTCOME_SUCCEEDED,
    CheckoutSession,
    GatewayError,
    GatewayEvent,
    SignatureError,
)

ZERO_DECIMAL_CURRENCIES = {"vnd", "jpy", "krw"}


def _safe_get(source: object, key: str, default: Any | None = None) -> Any:
    if isinstance(source, dict):
        return source.get(key, default)
    return getattr(source, key, default)


def to_minor_units(amount: Decimal, currency: str) -> int:
    if currency.lower() in ZERO_DECIMAL_CURRENCIES:
        return int(Decimal(amount))
    return int(Decimal(amount) * 100)


def from_minor_units(amount: int | None, currency: str) -> Decimal | None:
    if amount is None:
        return None
    if currency.lower() in ZERO_DECIMAL_CURRENCIES:
        return Decimal(amount)
    return Decimal(amount) / 100


class StripeClient:
    name = "stripe"
    supports_automatic_refund = True

    def __init__(
        self,
        *,
        secret_key: str | None,
        webhook_secret: str | None,
        stripe_sdk: Any | None = None,
    ) -> None:
        if stripe_sdk is None:
            import stripe as stripe_sdk  # type: ignore

        self.stripe = stripe_sdk
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret

    def _create_checkout_session(
        self,
        *,
        amount: Decimal,
        currency: str,
        success_url: str | None,
        cancel_url: str | None,
        metadata: Mapping[str, str],
    ) -> Any:
        if not self.secret_key:
            raise GatewayError("Stripe secret key not configured")

        self.stripe.api_key = self.secret_key
        return self.stripe.checkout.Session.create(
            mode="payment",
            payment_method_types=["card"],
            success_url=success_url,
            cancel_url=cancel_url,
            line_items=[
                {
                    "price_data": {
                        "currency": currency,
                        "product_data": {"name": "Vehicle rental"},
                        "unit_amount": to_minor_units(amount, currency),
                    },
                    "quantity": 1,
                }
            ],
            metadata=dict(metadata),
            payment_intent_data={"metadata": dict(metadata)},
        )

    async def create_checkout(
        self,
        *,
        amount: Decimal,
        currency: str,
        success_url: str | None,
        cancel_url: str | None,
        metadata: Mapping[str, str],
    ) -> CheckoutSession:
        session = await anyio.to_thread.run_sync(
            lambda: self._create_checkout_session(
                amount=amount,
                currency=currency,
                success_url=success_url,
                cancel_url=cancel_url,
                metadata=metadata,
            )
        )
        return CheckoutSession(redirect_url=_safe_get(session, "url"), reference=_safe_get(session, "id"))

    def _create_refund(self, transaction_id: str, amount_minor: int, reason: str) -> Any:
        if not self.secret_key:
            raise GatewayError("Stripe secret key not configured")
        self.stripe.api_key = self.secret_key
        return self.stripe.Refund.create(
            payment_intent=transaction_id,
            amount=amount_minor,
            metadata={"reason": reason},
        )

    async def refund(self, *, transaction_id: str, amount: Decimal, currency: str, reason: str) -> str:
        refund = await anyio.to_thread.run_sync(
            lambda: self._create_refund(transaction_id, to_minor_units(amount, currency), reason)
        )
        refund_id = _safe_get(refund, "id")
        if not refund_id:
            raise GatewayError("Stripe refund response carried no id")
        return str(refund_id)

    def verify_webhook(self, payload: bytes, signature: str | None) -> Any:
        if not self.webhook_secret:
            raise SignatureError("Stripe webhook secret not configured")
        if not signature:
            raise SignatureError("Missing Stripe signature header")
        return self.stripe.Webhook.construct_event(
            payload=payload, sig_header=signature, secret=self.webhook_secret
        )

    def parse_event(self, event: Any) -> GatewayEvent:
        event_type = _safe_get(event, "type") or ""
        data = _safe_get(event, "data", {}) or {}
        payload_object = _safe_get(data, "object", {}) or {}
        metadata = _safe_get(payload_object, "metadata", {}) or {}
        booking_id = _safe_get(metadata, "booking_id")
        currency = _safe_get(payload_object, "currency") or "vnd"

        is_checkout_event = event_type.startswith("checkout.session.")
        transaction_id = (
            _safe_get(payload_object, "payment_intent")
            if is_checkout_event
            else _safe_get(payload_object, "id")
        )
        amount = from_minor_units(
            _safe_get(payload_object, "amount_total") or _safe_get(payload_object, "amount_received"),
            currency,
        )

        outcome = OUTCOME_IGNORED
        if event_type == "checkout.session.completed" and _safe_get(payload_object, "payment_status") == "paid":
            outcome = OUTCOME_SUCCEEDED
        elif event_type == "payment_intent.succeeded":
            outcome = OUTCOME_SUCCEEDED
        elif event_type in {"checkout.session.expired", "payment_intent.payment_failed"}:
            outcome = OUTCOME_FAILED

        return GatewayEvent(
            outcome=outcome,
            booking_id=str(booking_id) if booking_id else None,
            transaction_id=str(transaction_id) if transaction_id else None,
            amount=amount,
            event_type=event_type,
            payload={"event_id": _safe_get(event, "id"), "type": event_type},
        )
