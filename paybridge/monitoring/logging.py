"""
Structured logging configuration.

structlog renders every event as one JSON line on stdout. Request-scoped
fields (request id, routed operation) live in structlog context variables and
are merged into each event; payer phone numbers and credentials are masked
before rendering.
"""
import logging
import sys
from typing import Any, Callable

import structlog
from pythonjsonlogger import jsonlogger

from paybridge.config import Settings

Processor = Callable[[Any, str, dict[str, Any]], dict[str, Any]]

SECRET_FIELDS = frozenset(
    {"api_key", "api_secret", "authorization", "password", "signature", "token", "webhook_secret"}
)
PHONE_FIELDS = frozenset({"msisdn", "phone", "phone_number"})

QUIET_LOGGERS = ("httpx", "httpcore", "asyncio")


def app_context(settings: Settings) -> Processor:
    """Build a processor stamping the service name and environment on events."""

    def add_app_context(
        logger: Any, method_name: str, event_dict: dict[str, Any]
    ) -> dict[str, Any]:
        event_dict.setdefault("app_name", settings.app_name)
        event_dict.setdefault("app_env", settings.app_env)
        return event_dict

    return add_app_context


def mask_phone(value: Any) -> str:
    digits = "".join(ch for ch in str(value) if ch.isdigit())
    if len(digits) <= 4:
        return "***"
    return f"***{digits[-3:]}"


def mask_sensitive_fields(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Mask credentials and payer phone numbers in log events."""
    for key in list(event_dict):
        lowered = key.lower()
        if event_dict[key] is None:
            continue
        if lowered in SECRET_FIELDS:
            event_dict[key] = "***"
        elif lowered in PHONE_FIELDS:
            event_dict[key] = mask_phone(event_dict[key])
    return event_dict


def bind_request_context(request_id: str, **fields: Any) -> None:
    """Bind request-scoped fields for every event logged while handling it."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id, **fields)


def clear_request_context() -> None:
    structlog.contextvars.clear_contextvars()


def setup_logging(settings: Settings) -> None:
    """
    Configure structlog and the stdlib root logger for JSON output.

    Args:
        settings: Application settings (log level, app name, SQL echo)
    """
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            app_context(settings),
            mask_sensitive_fields,
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

    # uvicorn and SQLAlchemy log through the stdlib; give them the same JSON shape
    json_handler = logging.StreamHandler(sys.stdout)
    json_handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"},
            static_fields={"app_name": settings.app_name, "app_env": settings.app_env},
        )
    )
    root_logger.addHandler(json_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.database_echo else logging.WARNING
    )

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
        database_echo=settings.database_echo,
    )
