import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from evrental.infra.gateways import GatewayRegistry
from evrental.main import app


def _window() -> tuple[datetime, datetime]:
    start = (datetime.now(tz=timezone.utc) + timedelta(days=2)).replace(minute=0, second=0, microsecond=0)
    return start, start + timedelta(hours=3)


def _booking_body(start: datetime, end: datetime, **overrides) -> dict:
    body = {
        "customer_id": "cust-api",
        "vehicle_id": "vf9-101",
        "scheduled_start": start.isoformat(),
        "scheduled_end": end.isoformat(),
        "hourly_rate": "20000",
        "vehicle_price": "500000",
        "payment_method": "stripe",
    }
    body.update(overrides)
    return body


def _confirm(async_session_maker, engine, booking_id: str) -> None:
    async def _run() -> None:
        async with async_session_maker() as session:
            await engine.confirm_payment(session, booking_id, "pi_api_1", {"source": "test"})

    asyncio.run(_run())


def test_booking_api_flow(client, async_session_maker, engine, fake_gateways):
    start, end = _window()

    preview = client.post("/v1/bookings/preview", json=_booking_body(start, end))
    assert preview.status_code == 200, preview.text
    assert Decimal(preview.json()["total_amount"]) == Decimal("260000")
    assert preview.json()["available"] is True

    created = client.post("/v1/bookings", json=_booking_body(start, end))
    assert created.status_code == 201, created.text
    booking_id = created.json()["booking_id"]
    assert created.json()["status"] == "PENDING"
    assert created.json()["hold_expires_at"] is not None

    checkout = client.post(f"/v1/bookings/{booking_id}/checkout", json={"success_url": "https://app.example/ok"})
    assert checkout.status_code == 201, checkout.text
    assert checkout.json()["checkout_url"] == f"https://pay.example/stripe/{booking_id}"
    assert checkout.json()["reference"] == "stripe-session-1"
    assert fake_gateways.get("stripe").checkouts[0]["amount"] == Decimal("260000.00")

    taken = client.post("/v1/bookings", json=_booking_body(start, end, customer_id="cust-other"))
    assert taken.status_code == 409
    assert taken.json()["title"] == "Vehicle Unavailable"

    _confirm(async_session_maker, engine, booking_id)

    pickup = client.post(
        f"/v1/bookings/{booking_id}/conditions", json={"phase": "pickup", "photo_ref": "s3://photos/p1.jpg"}
    )
    assert pickup.status_code == 201, pickup.text
    assert pickup.json()["phase"] == "PICKUP"

    started = client.post(f"/v1/bookings/{booking_id}/start", json={"occurred_at": start.isoformat()})
    assert started.status_code == 200, started.text
    assert started.json()["status"] == "IN_PROGRESS"

    client.post(f"/v1/bookings/{booking_id}/conditions", json={"phase": "RETURN", "photo_ref": "s3://photos/r1.jpg"})
    completed = client.post(f"/v1/bookings/{booking_id}/complete", json={"occurred_at": end.isoformat()})
    assert completed.status_code == 200, completed.text
    payload = completed.json()
    assert payload["booking"]["status"] == "COMPLETED"
    assert Decimal(payload["deposit_refund_amount"]) == Decimal("150000")
    assert payload["refund_scheduled"] is True
    assert payload["trust_score"] == 160

    fetched = client.get(f"/v1/bookings/{booking_id}")
    assert fetched.json()["status"] == "COMPLETED"

    contract = client.post(f"/v1/bookings/{booking_id}/contract")
    assert contract.status_code == 503
    assert contract.json()["title"] == "Service Unavailable"


def test_booking_api_rejects_invalid_window(client):
    start, end = _window()
    response = client.post("/v1/bookings", json=_booking_body(end, start))
    assert response.status_code == 422
    assert response.json()["title"] == "Validation Error"

    unknown_method = client.post("/v1/bookings", json=_booking_body(start, end, payment_method="cash"))
    assert unknown_method.status_code == 422


def test_checkout_without_configured_gateway(client):
    start, end = _window()
    booking_id = client.post("/v1/bookings", json=_booking_body(start, end, payment_method="payos")).json()[
        "booking_id"
    ]
    app.state.gateways = GatewayRegistry({})

    response = client.post(f"/v1/bookings/{booking_id}/checkout", json={})
    assert response.status_code == 503


def test_pending_booking_cannot_start_over_http(client):
    start, end = _window()
    booking_id = client.post("/v1/bookings", json=_booking_body(start, end)).json()["booking_id"]

    response = client.post(f"/v1/bookings/{booking_id}/start")
    assert response.status_code == 409
    assert response.json()["title"] == "Invalid State Transition"


def test_unknown_booking_is_404(client):
    response = client.get("/v1/bookings/missing")
    assert response.status_code == 404
