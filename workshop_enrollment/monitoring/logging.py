"""
Structured logging for the enrollment service.

Log events are structlog dictionaries rendered as JSON. Request-scoped
fields (request id, workshop, enrollment) travel through contextvars so
that a seat decision can be traced from the HTTP request through the
workshop lock to the notification it triggers.
"""
import logging
import sys
from typing import Any, Optional

import structlog
from pythonjsonlogger import jsonlogger

from workshop_enrollment.config import Settings, get_settings

# Fields that carry a claim credential; only a prefix is ever logged.
_SECRET_FIELDS = ("claim_token", "token", "claim_url")
_EMAIL_FIELDS = ("email", "customer_email")


def add_service_context(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Stamp every event with the application name and environment."""
    settings = get_settings()
    event_dict.setdefault("app_name", settings.app_name)
    event_dict.setdefault("app_env", settings.app_env)
    return event_dict


def mask_customer_data(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """
    Keep customer emails and claim tokens out of the log stream.

    An email keeps its first character and domain so support can still
    correlate a complaint with a log line.
    """
    for field in _EMAIL_FIELDS:
        email = event_dict.get(field)
        if isinstance(email, str) and "@" in email:
            local, _, domain = email.partition("@")
            event_dict[field] = f"{local[:1]}***@{domain}"

    for field in _SECRET_FIELDS:
        value = event_dict.get(field)
        if isinstance(value, str) and value:
            event_dict[field] = value[:8] + "..."
    return event_dict


def setup_logging(settings: Optional[Settings] = None) -> None:
    """
    Configure structlog and the stdlib root logger.

    Args:
        settings: Settings to configure from (defaults to cached settings)
    """
    settings = settings or get_settings()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            add_service_context,
            mask_customer_data,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # uvicorn, SQLAlchemy and the Stripe SDK log through stdlib
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"},
        )
    )
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.log_level)

    logging.getLogger("stripe").setLevel(logging.INFO)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.database_echo else logging.WARNING
    )
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
        env=settings.app_env,
        store_backend=settings.store_backend,
        lock_backend=settings.lock_backend,
    )


def bind_request_context(request_id: str, **fields: Any) -> None:
    """Attach request-scoped fields to every event logged in this context."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id, **fields)


def clear_request_context() -> None:
    structlog.contextvars.clear_contextvars()
