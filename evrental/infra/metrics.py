import logging

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, generate_latest

logger = logging.getLogger(__name__)

DISABLED_BODY = b"metrics_disabled 1\n"
PLAIN_CONTENT_TYPE = "text/plain; version=0.0.4"


class Metrics:
    """Prometheus counters for the rental engine, no-ops until enabled."""

    def __init__(self, enabled: bool = False) -> None:
        self._configure(enabled)

    def _configure(self, enabled: bool) -> None:
        self.enabled = enabled
        self.registry = CollectorRegistry(auto_describe=True)
        self.bookings = None
        self.webhook_events = None
        self.job_runs = None
        self.refunds = None
        self.http_5xx = None
        if not enabled:
            return

        self.bookings = Counter(
            "bookings_total",
            "Booking lifecycle transitions by action.",
            ["action"],
            registry=self.registry,
        )
        self.webhook_events = Counter(
            "webhook_events_total",
            "Payment gateway callbacks by gateway and result.",
            ["gateway", "result"],
            registry=self.registry,
        )
        self.job_runs = Counter(
            "job_runs_total",
            "Background job items by job and status.",
            ["job", "status"],
            registry=self.registry,
        )
        self.refunds = Counter(
            "refunds_total",
            "Deposit refund attempts by result.",
            ["result"],
            registry=self.registry,
        )
        self.http_5xx = Counter(
            "http_5xx_total",
            "HTTP responses with status >= 500.",
            ["method", "path"],
            registry=self.registry,
        )

    def record_booking(self, action: str, count: int = 1) -> None:
        if self.bookings is None or count <= 0:
            return
        self.bookings.labels(action=action).inc(count)

    def record_webhook(self, gateway: str, result: str) -> None:
        if self.webhook_events is None:
            return
        self.webhook_events.labels(gateway=gateway, result=result).inc()

    def record_job(self, job: str, status: str, count: int = 1) -> None:
        if self.job_runs is None or count <= 0:
            return
        self.job_runs.labels(job=job, status=status).inc(count)

    def record_refund(self, result: str) -> None:
        if self.refunds is None:
            return
        self.refunds.labels(result=result).inc()

    def record_http_5xx(self, method: str, path: str) -> None:
        if self.http_5xx is None:
            return
        self.http_5xx.labels(method=method, path=path).inc()

    def render(self) -> tuple[bytes, str]:
        if not self.enabled:
            return DISABLED_BODY, PLAIN_CONTENT_TYPE
        try:
            return generate_latest(self.registry), CONTENT_TYPE_LATEST
        except Exception:  # noqa: BLE001
            logger.exception("metrics_render_failed")
            return b"metrics_render_failed 1\n", PLAIN_CONTENT_TYPE


metrics = Metrics(enabled=False)


def configure_metrics(enabled: bool) -> Metrics:
    metrics._configure(enabled)
    return metrics
