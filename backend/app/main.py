"""FastAPI main application."""

import asyncio
import logging
from contextlib import asynccontextmanager

import sentry_sdk
import uvicorn
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.httpsredirect import HTTPSRedirectMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from app.api.v1 import mfa
from app.config import settings
from app.core.database import close_db, init_db
from app.core.logging_config import setup_logging
from app.core.metrics import create_metrics_app, setup_metrics
from app.middleware.csrf_protection import CSRFProtectionMiddleware
from app.middleware.error_handler import ErrorHandlerMiddleware
from app.middleware.security_headers import SecurityHeadersMiddleware
from app.services.error_logging_service import error_logging_service

_logger = logging.getLogger(__name__)


def _filter_sensitive_data(event, hint):
    """Strip credentials and MFA material from Sentry events before sending."""
    request = event.get("request")
    if request:
        headers = request.get("headers") or {}
        for header in ("authorization", "cookie", "x-csrf-token"):
            if header in headers:
                headers[header] = "[Filtered]"
        if request.get("query_string"):
            request["query_string"] = "[Filtered]"
        if isinstance(request.get("data"), dict):
            request["data"] = error_logging_service.sanitize_request_data(request["data"])
    return event


# Error tracking is optional and only enabled when a DSN is configured
if settings.SENTRY_DSN:
    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
        ],
        traces_sample_rate=1.0 if settings.DEBUG else 0.1,
        send_default_pii=False,
        environment=settings.ENVIRONMENT,
        release=f"{settings.APP_NAME}@{settings.APP_VERSION}",
        before_send=_filter_sensitive_data,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    setup_logging()
    _logger.info("Starting %s...", settings.APP_NAME)

    await init_db()

    # Prometheus metrics on a separate admin port (protected by basic auth)
    if settings.METRICS_ENABLED:
        metrics_config = uvicorn.Config(
            create_metrics_app(),
            host="0.0.0.0",  # nosec B104 - internal-only port, basic auth protected
            port=settings.METRICS_ADMIN_PORT,
            log_level="warning",
        )
        metrics_server = uvicorn.Server(metrics_config)
        app.state.metrics_task = asyncio.create_task(metrics_server.serve())
        _logger.info("Metrics admin server started on port %s", settings.METRICS_ADMIN_PORT)

    yield

    _logger.info("Shutting down %s...", settings.APP_NAME)
    await close_db()


# Disable interactive API docs in production to reduce attack surface
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    lifespan=lifespan,
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None,
    openapi_url="/openapi.json" if settings.DEBUG else None,
)

if settings.METRICS_ENABLED:
    setup_metrics(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Catch uncaught exceptions with PII redaction
app.add_middleware(ErrorHandlerMiddleware)

if settings.ENVIRONMENT == "production":
    app.add_middleware(HTTPSRedirectMiddleware)
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.ALLOWED_HOSTS)

app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(CSRFProtectionMiddleware)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request, exc):
    _logger.debug("Validation error on %s", request.url.path)
    # Submitted codes must not be echoed back in validation errors
    errors = [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]
    return JSONResponse(status_code=422, content={"detail": errors})


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "running",
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}


app.include_router(mfa.router, prefix="/api/v1/mfa", tags=["MFA"])
