from __future__ import annotations

import hashlib
import hmac
import time
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Mapping
from urllib.parse import quote_plus

from evrental.infra.gateways import (
    OUTCOME_FAILED,
    OUTCOME_SUCCEEDED,
    CheckoutSession,
    GatewayError,
    GatewayEvent,
    SignatureError,
)

SIGNATURE_FIELDS = {"vnp_SecureHash", "vnp_SecureHashType"}
VNPAY_TZ = timezone(timedelta(hours=7))


def canonical_query(params: Mapping[str, str]) -> str:
    """Key-sorted, URL-encoded ``k=v`` pairs joined by ``&``; empty values are dropped."""
    pairs = [
        f"{quote_plus(key)}={quote_plus(str(value))}"
        for key, value in sorted(params.items())
        if key not in SIGNATURE_FIELDS and value not in (None, "")
    ]
    return "&".join(pairs)


def sign(params: Mapping[str, str], secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), canonical_query(params).encode("utf-8"), hashlib.sha512).hexdigest()


def booking_id_from_txn_ref(txn_ref: str | None) -> str | None:
    if not txn_ref:
        return None
    booking_id, _, _ = txn_ref.partition("_")
    return booking_id or None


class VNPayClient:
    name = "vnpay"
    # VNPay payouts go through the merchant portal; staff upload the proof.
    supports_automatic_refund = False

    def __init__(
        self,
        *,
        tmn_code: str | None,
        hash_secret: str | None,
        payment_url: str,
        return_url: str,
        version: str = "2.1.0",
        locale: str = "vn",
    ) -> None:
        self.tmn_code = tmn_code
        self.hash_secret = hash_secret
        self.payment_url = payment_url
        self.return_url = return_url
        self.version = version
        self.locale = locale

    def build_payment_url(self, *, booking_id: str, amount: Decimal, description: str, return_url: str | None = None) -> tuple[str, str]:
        if not self.tmn_code or not self.hash_secret:
            raise GatewayError("VNPay merchant credentials not configured")
        txn_ref = f"{booking_id}_{time.time_ns() // 100}"
        params = {
            "vnp_Version": self.version,
            "vnp_Command": "pay",
            "vnp_TmnCode": self.tmn_code,
            "vnp_Amount": str(int(Decimal(amount)) * 100),
            "vnp_CreateDate": datetime.now(tz=VNPAY_TZ).strftime("%Y%m%d%H%M%S"),
            "vnp_CurrCode": "VND",
            "vnp_IpAddr": "127.0.0.1",
            "vnp_Locale": self.locale,
            "vnp_OrderInfo": description,
            "vnp_OrderType": "other",
            "vnp_ReturnUrl": return_url or self.return_url,
            "vnp_TxnRef": txn_ref,
        }
        query = canonical_query(params)
        secure_hash = sign(params, self.hash_secret)
        return f"{self.payment_url}?{query}&vnp_SecureHash={secure_hash}", txn_ref

    async def create_checkout(
        self,
        *,
        amount: Decimal,
        currency: str,
        success_url: str | None,
        cancel_url: str | None,
        metadata: Mapping[str, str],
    ) -> CheckoutSession:
        booking_id = metadata.get("booking_id")
        if not booking_id:
            raise GatewayError("VNPay checkout requires a booking_id")
        url, txn_ref = self.build_payment_url(
            booking_id=booking_id,
            amount=amount,
            description=f"Payment for booking {booking_id}",
            return_url=success_url,
        )
        return CheckoutSession(redirect_url=url, reference=txn_ref)

    async def refund(self, *, transaction_id: str, amount: Decimal, currency: str, reason: str) -> str:
        raise GatewayError("VNPay refunds are processed manually")

    def verify_callback(self, params: Mapping[str, str]) -> GatewayEvent:
        if not self.hash_secret:
            raise SignatureError("VNPay hash secret not configured")
        given = (params.get("vnp_SecureHash") or "").lower()
        if not given:
            raise SignatureError("Missing vnp_SecureHash")
        expected = sign(params, self.hash_secret)
        if not hmac.compare_digest(expected, given):
            raise SignatureError("Invalid VNPay signature")

        try:
            amount = Decimal(params.get("vnp_Amount") or "0") / 100
        except InvalidOperation:
            amount = None
        succeeded = params.get("vnp_ResponseCode") == "00" and params.get("vnp_TransactionStatus", "00") == "00"
        return GatewayEvent(
            outcome=OUTCOME_SUCCEEDED if succeeded else OUTCOME_FAILED,
            booking_id=booking_id_from_txn_ref(params.get("vnp_TxnRef")),
            transaction_id=params.get("vnp_TransactionNo") or None,
            amount=amount,
            event_type="vnpay.ipn",
            payload=dict(params),
        )
