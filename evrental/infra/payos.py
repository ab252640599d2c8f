from __future__ import annotations

import hashlib
import hmac
import json
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping

import httpx

from evrental.infra.gateways import (
    OUTCOME_FAILED,
    OUTCOME_IGNORED,
    OUTCOME_SUCCEEDED,
    CheckoutSession,
    GatewayError,
    GatewayEvent,
    SignatureError,
)

logger = logging.getLogger(__name__)

PAID = "PAID"
FAILED_STATUSES = {"CANCELLED", "FAILED"}


def checksum(body: bytes, key: str) -> str:
    return hmac.new(key.encode("utf-8"), body or b"", hashlib.sha256).hexdigest()


class PayOSClient:
    name = "payos"
    supports_automatic_refund = True

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str | None,
        checksum_key: str | None,
        return_url: str,
        cancel_url: str | None = None,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.checksum_key = checksum_key
        self.return_url = return_url
        self.cancel_url = cancel_url or return_url
        self.timeout = timeout
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=self.timeout,
            transport=self.transport,
        )

    async def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        try:
            async with self._client() as client:
                response = await client.post(path, json=body)
        except httpx.HTTPError as exc:
            raise GatewayError(f"PayOS request failed: {type(exc).__name__}") from exc
        if not 200 <= response.status_code < 300:
            logger.warning(
                "payos_request_rejected",
                extra={"extra": {"path": path, "status_code": response.status_code}},
            )
            raise GatewayError(f"PayOS returned status {response.status_code}")
        try:
            return response.json().get("data") or {}
        except ValueError as exc:
            raise GatewayError("PayOS returned a non-JSON body") from exc

    async def create_checkout(
        self,
        *,
        amount: Decimal,
        currency: str,
        success_url: str | None,
        cancel_url: str | None,
        metadata: Mapping[str, str],
    ) -> CheckoutSession:
        order_code = metadata.get("payment_id")
        if not order_code:
            raise GatewayError("PayOS checkout requires a payment_id order code")
        data = await self._post(
            "/v2/payment-requests",
            {
                "orderCode": int(order_code),
                "amount": int(Decimal(amount)),
                "description": f"Booking {metadata.get('booking_id', order_code)}"[:25],
                "returnUrl": success_url or self.return_url,
                "cancelUrl": cancel_url or self.cancel_url,
            },
        )
        checkout_url = data.get("checkoutUrl")
        if not checkout_url:
            raise GatewayError("PayOS response carried no checkout URL")
        return CheckoutSession(redirect_url=checkout_url, reference=data.get("id") or data.get("paymentLinkId"))

    async def refund(self, *, transaction_id: str, amount: Decimal, currency: str, reason: str) -> str:
        data = await self._post(
            "/v2/refunds",
            {"transactionId": transaction_id, "amount": int(Decimal(amount)), "description": reason},
        )
        refund_id = data.get("refundId")
        if not refund_id:
            raise GatewayError("PayOS refund response carried no refund id")
        return str(refund_id)

    def verify_webhook(self, body: bytes, signature: str | None) -> GatewayEvent:
        if not self.checksum_key:
            raise SignatureError("PayOS checksum key not configured")
        if not signature:
            raise SignatureError("Missing X-Checksum header")
        if not hmac.compare_digest(checksum(body, self.checksum_key), signature.strip().lower()):
            raise SignatureError("Invalid PayOS checksum")

        try:
            document = json.loads(body or b"{}")
        except ValueError as exc:
            raise GatewayError("PayOS webhook body is not JSON") from exc
        data = document.get("data") if isinstance(document.get("data"), dict) else document
        status = str(data.get("status") or "").upper()
        if status == PAID:
            outcome = OUTCOME_SUCCEEDED
        elif status in FAILED_STATUSES:
            outcome = OUTCOME_FAILED
        else:
            outcome = OUTCOME_IGNORED

        try:
            payment_id = int(data.get("orderCode"))
        except (TypeError, ValueError):
            payment_id = None
        try:
            amount = Decimal(str(data["amount"])) if data.get("amount") is not None else None
        except InvalidOperation:
            amount = None
        transaction_id = data.get("transactionId") or data.get("reference")
        return GatewayEvent(
            outcome=outcome,
            payment_id=payment_id,
            transaction_id=str(transaction_id) if transaction_id else None,
            amount=amount,
            event_type=f"payos.{status.lower() or 'unknown'}",
            payload=data,
        )
