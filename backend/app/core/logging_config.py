"""
Structured logging configuration.

Modules log through the standard library (``logging.getLogger(__name__)``).
The root handler runs every record through the structlog processor chain,
so ``extra`` fields become structured keys and MFA material is masked before
rendering. Development gets a readable console renderer; production (or
LOG_FORMAT=json) gets one JSON object per line for the log aggregator.

Usage:
    from app.core.logging_config import setup_logging, log_mfa_event

    setup_logging()  # once, at startup

    logger = logging.getLogger(__name__)
    log_mfa_event(logger, "mfa_setup_verify", user.id, "authenticator", "activated")
"""

import logging
import sys
from typing import Any, Optional

import structlog
from pythonjsonlogger import jsonlogger

from app.config import settings

# Event keys whose values must never reach a log line
MFA_SECRET_KEYS = frozenset({
    "code",
    "secret",
    "candidate_secret",
    "session_token",
    "mfa_token",
    "backup_codes",
    "device_fingerprint",
})


def drop_mfa_secrets(logger: Any, method_name: str, event_dict: dict) -> dict:
    """structlog processor masking MFA material passed as event fields."""
    for key in MFA_SECRET_KEYS.intersection(event_dict):
        event_dict[key] = "[REDACTED]"
    return event_dict


def _shared_processors() -> list:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.ExtraAdder(),
        drop_mfa_secrets,
        structlog.processors.TimeStamper(fmt="iso"),
    ]


def build_formatter(use_json: bool) -> structlog.stdlib.ProcessorFormatter:
    """Formatter rendering stdlib records through the structlog chain."""
    if use_json:
        render = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        render = [structlog.dev.ConsoleRenderer()]

    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=_shared_processors(),
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, *render],
    )


def setup_logging() -> None:
    """
    Configure stdlib logging and structlog for the application.

    Both share one stdout handler; stdlib loggers and structlog loggers end
    up in the same stream at the same level with the same masking.
    """
    use_json = settings.LOG_FORMAT == "json" or settings.ENVIRONMENT == "production"

    structlog.configure(
        processors=[
            *_shared_processors(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.CallsiteParameterAdder(
                parameters=[
                    structlog.processors.CallsiteParameter.FILENAME,
                    structlog.processors.CallsiteParameter.LINENO,
                    structlog.processors.CallsiteParameter.FUNC_NAME,
                ],
            ),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(build_formatter(use_json))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

    _configure_uvicorn_logging(use_json)

    if settings.ENVIRONMENT == "production":
        logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def _configure_uvicorn_logging(use_json: bool = False) -> None:
    """Configure uvicorn's access and error logs with JSON formatting."""
    if use_json:
        formatter = jsonlogger.JsonFormatter(
            "%(asctime)s %(name)s %(levelname)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level"},
        )
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(formatter)

        for logger_name in ["uvicorn", "uvicorn.access", "uvicorn.error"]:
            logger = logging.getLogger(logger_name)
            logger.handlers.clear()
            logger.addHandler(handler)


def log_mfa_event(
    logger: logging.Logger,
    event: str,
    user_id: Any,
    method: Optional[str] = None,
    outcome: Optional[str] = None,
    **fields,
) -> None:
    """
    Log an MFA state transition at INFO.

    *fields* travel as ``extra`` and are rendered as structured keys. Never
    pass codes, secrets or raw tokens here.
    """
    logger.info(
        "%s user=%s method=%s outcome=%s",
        event,
        user_id,
        method,
        outcome,
        extra={
            "mfa_event": event,
            "user_id": str(user_id),
            "method": method,
            "outcome": outcome,
            **fields,
        },
    )
