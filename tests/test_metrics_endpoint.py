from evrental.infra.metrics import Metrics
from evrental.main import app
from evrental.settings import settings


def test_metrics_endpoint_requires_token_when_configured(client):
    settings.metrics_token = "secret-token"

    unauthorized = client.get("/metrics")
    assert unauthorized.status_code == 401

    wrong = client.get("/metrics", headers={"Authorization": "Bearer nope"})
    assert wrong.status_code == 401

    authorized = client.get("/metrics", headers={"Authorization": "Bearer secret-token"})
    assert authorized.status_code == 200
    assert "bookings_total" in authorized.text


def test_metrics_endpoint_open_without_token(client):
    settings.metrics_token = None
    app.state.metrics.record_booking("created")

    response = client.get("/metrics")
    assert response.status_code == 200
    assert 'bookings_total{action="created"} 1.0' in response.text


def test_metrics_endpoint_hidden_when_disabled(client):
    app.state.metrics = Metrics(enabled=False)

    response = client.get("/metrics")
    assert response.status_code == 404
