"""
Prometheus metrics instrumentation.

This module provides Prometheus metrics for:
- HTTP requests (latency, status codes, throughput) via the instrumentator
- MFA setup and verification outcomes
- Per-IP rate limiting hits
- Celery task execution

Metrics are exposed on a SEPARATE admin port (default 9090) protected by HTTP Basic Auth.
They are NOT exposed on the main API port (8000).

Dev access: curl -u admin:metrics_admin http://localhost:9090/metrics
Prod: override METRICS_USERNAME and METRICS_PASSWORD in environment.
"""

import base64
import binascii
import hmac

from fastapi import FastAPI
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from prometheus_fastapi_instrumentator import Instrumentator, metrics
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import Response
from starlette.routing import Route
from starlette.types import ASGIApp

from app.config import settings


# MFA metrics
mfa_setup_total = Counter(
    "mfa_setup_total",
    "MFA setup operations by method and outcome",
    ["method", "status"],  # started, activated, invalid, session_expired, ...
)

mfa_verification_total = Counter(
    "mfa_verification_total",
    "MFA login verifications by method and outcome",
    ["method", "status"],  # verified, invalid, rate_limited
)

mfa_email_otp_sent_total = Counter(
    "mfa_email_otp_sent_total",
    "Email one-time codes issued",
    ["purpose"],  # setup, login
)

mfa_generation_errors_total = Counter(
    "mfa_generation_errors_total",
    "Secure random source failures",
)

# Rate limiting metrics
rate_limit_hits_total = Counter(
    "rate_limit_hits_total",
    "Total rate limit hits (requests blocked)",
    ["endpoint"],
)

# Celery metrics
celery_task_duration_seconds = Histogram(
    "celery_task_duration_seconds",
    "Celery task duration in seconds",
    ["task_name", "status"],
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0),
)

celery_tasks_total = Counter(
    "celery_tasks_total",
    "Total Celery tasks executed",
    ["task_name", "status"],
)


def setup_metrics(app: FastAPI) -> None:
    """
    Instrument the FastAPI app with Prometheus metrics collectors.

    Does NOT expose a /metrics route on the main API port.
    Metrics are served on a separate admin port via create_metrics_app().
    """
    instrumentator = Instrumentator(
        should_group_status_codes=False,
        should_ignore_untemplated=True,
        should_respect_env_var=True,
        should_instrument_requests_inprogress=True,
        excluded_handlers=["/health", "/docs", "/openapi.json"],
        env_var_name="ENABLE_METRICS",
        inprogress_name="http_requests_inprogress",
        inprogress_labels=True,
    )

    instrumentator.add(
        metrics.latency(
            should_include_handler=True,
            should_include_method=True,
            should_include_status=True,
            buckets=(0.01, 0.025, 0.05, 0.075, 0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0),
        )
    )

    instrumentator.add(
        metrics.requests(
            should_include_handler=True,
            should_include_method=True,
            should_include_status=True,
        )
    )

    # Instrument only; /metrics lives on the admin port
    instrumentator.instrument(app)


def _unauthorized() -> Response:
    return Response(
        content="Unauthorized",
        status_code=401,
        headers={"WWW-Authenticate": 'Basic realm="metrics"'},
    )


def create_metrics_app() -> ASGIApp:
    """
    Create a minimal ASGI app that serves /metrics behind HTTP Basic Auth.

    This app runs on a separate admin port (METRICS_ADMIN_PORT, default 9090)
    so Prometheus metrics are never exposed on the public API port.
    """
    async def metrics_endpoint(request: Request) -> Response:
        auth_header = request.headers.get("Authorization", "")
        if not auth_header.startswith("Basic "):
            return _unauthorized()

        try:
            decoded = base64.b64decode(auth_header[6:]).decode("utf-8", errors="replace")
            username, password = decoded.split(":", 1)
        except (binascii.Error, ValueError):
            return _unauthorized()

        if not (
            hmac.compare_digest(username, settings.METRICS_USERNAME)
            and hmac.compare_digest(password, settings.METRICS_PASSWORD)
        ):
            return _unauthorized()

        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return Starlette(routes=[Route("/metrics", metrics_endpoint)])


def track_mfa_setup(method: str, status: str) -> None:
    """Track a setup start or setup verification outcome."""
    mfa_setup_total.labels(method=method, status=status).inc()


def track_mfa_verification(method: str, status: str) -> None:
    """Track a login verification outcome."""
    mfa_verification_total.labels(method=method, status=status).inc()


def track_email_otp_sent(purpose: str) -> None:
    mfa_email_otp_sent_total.labels(purpose=purpose).inc()


def track_generation_error() -> None:
    mfa_generation_errors_total.inc()


def track_rate_limit_hit(endpoint: str) -> None:
    """Track when a rate limit is hit."""
    rate_limit_hits_total.labels(endpoint=endpoint).inc()


def track_celery_task(task_name: str, status: str, duration_seconds: float) -> None:
    """Track Celery task execution."""
    celery_task_duration_seconds.labels(task_name=task_name, status=status).observe(
        duration_seconds
    )
    celery_tasks_total.labels(task_name=task_name, status=status).inc()
