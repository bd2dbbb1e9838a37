"""
Structured logging configuration.

Uses structlog for JSON-formatted logs with request ids bound through
contextvars.
"""
import logging
import sys
from typing import Any, Callable, Optional

import structlog
from pythonjsonlogger import jsonlogger

from memberpay.config import Settings, get_settings

# Event keys whose values never reach a log line.
REDACTED_KEYS = frozenset(
    {
        "client_secret",
        "api_key",
        "apikey",
        "merchant_key",
        "public_key",
        "token",
        "access_token",
        "tokenMarchand",
        "authorization",
    }
)


def app_context_processor(settings: Settings) -> Callable[..., dict[str, Any]]:
    """
    Build a processor adding application context to log events.

    Args:
        settings: Settings naming the app and environment

    Returns:
        Processor stamping app_name and app_env on every event
    """

    def add_app_context(
        logger: Any, method_name: str, event_dict: dict[str, Any]
    ) -> dict[str, Any]:
        event_dict["app_name"] = settings.app_name
        event_dict["app_env"] = settings.app_env
        return event_dict

    return add_app_context


def redact_secrets(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Mask credential-bearing keys."""
    for key in event_dict:
        if key in REDACTED_KEYS:
            event_dict[key] = "***"
    return event_dict


def setup_logging(settings: Optional[Settings] = None) -> None:
    """
    Configure structured logging with JSON formatter.

    Sets up:
    - JSON-formatted logs
    - Request ID tracking
    - Secret redaction
    """
    settings = settings or get_settings()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            redact_secrets,
            app_context_processor(settings),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    json_handler = logging.StreamHandler(sys.stdout)
    formatter = jsonlogger.JsonFormatter(
        "%(timestamp)s %(level)s %(name)s %(message)s",
        rename_fields={
            "timestamp": "@timestamp",
            "level": "level",
            "name": "logger",
            "message": "message",
        },
    )
    json_handler.setFormatter(formatter)
    root_logger.addHandler(json_handler)

    # Suppress noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    logger = structlog.get_logger(__name__)
    logger.info(
        "logging_configured",
        log_level=settings.log_level,
        app_env=settings.app_env,
    )
