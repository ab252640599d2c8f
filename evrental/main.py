import logging
import os
import sys
import time
import uuid
from typing import Callable

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from evrental.api.routes_bookings import router as bookings_router
from evrental.api.routes_health import router as health_router
from evrental.api.routes_metrics import router as metrics_router
from evrental.api.routes_payments import router as payments_router
from evrental.api.routes_settlements import router as settlements_router
from evrental.api.routes_trust import router as trust_router
from evrental.dependencies import build_engine
from evrental.domain.documents.service import UnconfiguredContractGenerator
from evrental.domain.errors import DomainError
from evrental.domain.notifications.service import LoggingNotificationSink
from evrental.infra.db import get_session_factory
from evrental.infra.gateways import build_gateways
from evrental.infra.logging import configure_logging
from evrental.infra.metrics import configure_metrics
from evrental.settings import settings

PROBLEM_TYPE_VALIDATION = "https://evrental.example/problems/validation-error"
PROBLEM_TYPE_DOMAIN = "https://evrental.example/problems/domain-error"
PROBLEM_TYPE_SERVER = "https://evrental.example/problems/server-error"

logger = logging.getLogger(__name__)


def problem_details(
    request: Request,
    status: int,
    title: str,
    detail: str,
    errors: list[dict[str, str]] | None = None,
    type_: str = "about:blank",
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    content = {
        "type": type_,
        "title": title,
        "status": status,
        "detail": detail,
        "request_id": getattr(request.state, "request_id", None),
        "errors": errors or [],
    }
    return JSONResponse(status_code=status, content=content, headers=headers)


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


class LoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable):
        request_logger = logging.getLogger("evrental.request")
        started = time.perf_counter()
        response = await call_next(request)
        latency_ms = int((time.perf_counter() - started) * 1000)
        if response.status_code >= 500:
            registry = getattr(request.app.state, "metrics", None)
            if registry is not None:
                registry.record_http_5xx(request.method, request.url.path)
        request_logger.info(
            "request",
            extra={
                "extra": {
                    "request_id": getattr(request.state, "request_id", None),
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "latency_ms": latency_ms,
                }
            },
        )
        return response


def _validate_prod_config(app_settings) -> None:
    if app_settings.app_env == "dev" or app_settings.testing or os.getenv("PYTEST_CURRENT_TEST") or "pytest" in sys.argv[0]:
        return

    errors: list[str] = []
    if not (app_settings.stripe_secret_key or app_settings.vnpay_hash_secret or app_settings.payos_checksum_key):
        errors.append("At least one payment gateway must be configured outside dev")
    if app_settings.stripe_secret_key and not app_settings.stripe_webhook_secret:
        errors.append("STRIPE_WEBHOOK_SECRET is required when Stripe is enabled")
    if app_settings.metrics_enabled and not app_settings.metrics_token:
        errors.append("METRICS_TOKEN is required when metrics are exposed outside dev")

    if errors:
        for error in errors:
            logger.error("startup_config_error", extra={"extra": {"detail": error}})
        raise RuntimeError("Invalid production configuration; see logs for details")


def create_app(app_settings) -> FastAPI:
    configure_logging()
    _validate_prod_config(app_settings)
    app = FastAPI(title="EV Rental Booking Engine", version="1.0.0")

    metrics = configure_metrics(app_settings.metrics_enabled)
    gateways = build_gateways(app_settings)
    notifier = LoggingNotificationSink()
    app.state.app_settings = app_settings
    app.state.db_session_factory = get_session_factory()
    app.state.metrics = metrics
    app.state.gateways = gateways
    app.state.notifier = notifier
    app.state.contract_generator = UnconfiguredContractGenerator()
    app.state.booking_engine = build_engine(
        app_settings, gateways=gateways, notifier=notifier, metrics=metrics
    )

    app.add_middleware(LoggingMiddleware)
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.cors_origins or (["http://localhost:3000"] if app_settings.app_env == "dev" else []),
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = []
        for error in exc.errors():
            loc = error.get("loc", [])
            field = ".".join(str(part) for part in loc if part not in {"body", "query", "path"}) or "body"
            errors.append({"field": field, "message": error.get("msg", "Invalid value")})
        return problem_details(
            request=request,
            status=422,
            title="Validation Error",
            detail="Request validation failed",
            errors=errors,
            type_=PROBLEM_TYPE_VALIDATION,
        )

    @app.exception_handler(DomainError)
    async def domain_exception_handler(request: Request, exc: DomainError):
        if exc.status_code >= 500:
            logger.error(
                "domain_error",
                extra={"extra": {"title": exc.title, "detail": exc.detail, "path": request.url.path}},
            )
        return problem_details(
            request=request,
            status=exc.status_code,
            title=exc.title,
            detail=exc.detail,
            errors=exc.errors,
            type_=exc.type or (PROBLEM_TYPE_DOMAIN if exc.status_code < 500 else PROBLEM_TYPE_SERVER),
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return problem_details(
            request=request,
            status=exc.status_code,
            title=exc.detail if isinstance(exc.detail, str) else "HTTP Error",
            detail=exc.detail if isinstance(exc.detail, str) else "Request failed",
            type_=PROBLEM_TYPE_DOMAIN if exc.status_code < 500 else PROBLEM_TYPE_SERVER,
            headers=exc.headers,
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            extra={"extra": {"request_id": getattr(request.state, "request_id", None), "path": request.url.path}},
        )
        return problem_details(
            request=request,
            status=500,
            title="Internal Server Error",
            detail="Unexpected error",
            type_=PROBLEM_TYPE_SERVER,
        )

    app.include_router(health_router)
    app.include_router(metrics_router)
    app.include_router(bookings_router)
    app.include_router(payments_router)
    app.include_router(settlements_router)
    app.include_router(trust_router)
    return app


app = create_app(settings)
