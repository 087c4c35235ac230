from __future__ import annotations

import logging
import os
import sys
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Per-request correlation id, echoed back in the X-Request-ID header
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_PII_KEYS = ("password", "secret", "token", "authorization", "email", "cookie")

# Third-party loggers that go through stdlib logging
_LIBRARY_LOGGERS = ("psycopg", "psycopg.pool", "httpx", "uvicorn.error")


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Use the client's request id if it sent one, otherwise mint a UUID."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def redact_value(value: str) -> str:
    """Keep the first and last two characters of a sensitive string."""
    if len(value) <= 4:
        return "***"
    return value[:2] + "***" + value[-2:]


def _is_sensitive(key: str) -> bool:
    lower_key = key.lower()
    return any(pii in lower_key for pii in _PII_KEYS)


def _redact_mapping(values: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in values.items():
        if isinstance(value, dict):
            values[key] = _redact_mapping(dict(value))
        elif isinstance(value, str) and _is_sensitive(key):
            values[key] = redact_value(value)
    return values


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credentials, tokens and addresses, including inside nested dicts."""
    return _redact_mapping(event_dict)


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Configure structlog and route library loggers to the same stream.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: If True, output JSON; if False, output human-readable
        development_mode: If True, use pretty console output
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=development_mode))
    else:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # pool and HTTP client warnings; their INFO chatter stays off
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    for name in _LIBRARY_LOGGERS:
        lib_logger = logging.getLogger(name)
        lib_logger.handlers = [handler]
        lib_logger.setLevel(max(level, logging.WARNING))
        lib_logger.propagate = False


configure_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a configured logger; entries carry the request correlation id."""
    return structlog.get_logger(name)
