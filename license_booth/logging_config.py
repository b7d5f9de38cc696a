"""
Structured logging configuration for the License Booth service.

Configures structlog to emit one JSON object per line on **stdout** with the
fields every record carries: ``timestamp`` (ISO 8601 UTC), ``level``,
``event``, ``service_name`` and, while a request is being handled,
``correlation_id`` (bound through ``structlog.contextvars`` by
``CorrelationIdMiddleware``).

Standard library loggers (Uvicorn, httpx, redis) go through the same
processor chain and produce identical JSON output.  httpx is kept at
WARNING so per-request INFO lines from the upstream client do not flood the
output during an event.

Credentials never reach the output in full: call sites log a masked prefix
(``api_key_pool.mask_api_key``), and ``_redact_sensitive_fields`` replaces
any field whose name marks it as a secret.
"""

import logging
import sys

import structlog

SERVICE_NAME = "license-booth-api"

REDACTED_VALUE = "[REDACTED]"
SENSITIVE_FIELD_NAMES = frozenset({"admin_token", "backing_store_token", "authorization", "x_goog_api_key"})

_QUIET_LIBRARY_LOGGERS = ("httpx", "httpcore")


def _add_service_name(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: structlog.types.EventDict,
) -> structlog.types.EventDict:
    event_dict["service_name"] = SERVICE_NAME
    return event_dict


def _uppercase_level(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: structlog.types.EventDict,
) -> structlog.types.EventDict:
    if "level" in event_dict:
        event_dict["level"] = event_dict["level"].upper()
    return event_dict


def _redact_sensitive_fields(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: structlog.types.EventDict,
) -> structlog.types.EventDict:
    """Replace the value of any field named as a secret."""
    for field_name in SENSITIVE_FIELD_NAMES.intersection(event_dict):
        event_dict[field_name] = REDACTED_VALUE
    return event_dict


def configure_logging(log_level: str = "INFO") -> None:
    """
    Configure structlog for structured JSON logging to stdout.

    Should be called once during application startup, before any log
    messages are emitted.  Calling it again replaces the root handler, so
    repeated application construction in tests does not duplicate output.

    Args:
        log_level: Minimum level name; unknown names fall back to INFO.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        _add_service_name,
        structlog.stdlib.add_log_level,
        _uppercase_level,
        _redact_sensitive_fields,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.JSONRenderer(),
        ],
        foreign_pre_chain=shared_processors,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    for library_logger_name in _QUIET_LIBRARY_LOGGERS:
        logging.getLogger(library_logger_name).setLevel(max(level, logging.WARNING))
