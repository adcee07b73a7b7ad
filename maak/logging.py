from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, List, Optional

import structlog

# Per-request correlation id, set by the X-Request-ID middleware
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_PII_KEYS = {
    "password",
    "secret",
    "token",
    "api_key",
    "apikey",
    "authorization",
    "email",
    "phone",
}


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID for request tracing."""
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set or generate a correlation ID for the current request context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def preview_credential(value: Optional[str], *, length: int = 20) -> Optional[str]:
    """Return a short, log-safe prefix of a credential value."""
    if not value:
        return None
    if len(value) <= length:
        return value[: max(len(value) // 2, 1)] + "..."
    return value[:length] + "..."


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credential and contact fields, keeping the ends for debugging.

    ``*_preview`` keys are already shortened by ``preview_credential``.
    """
    for key, value in list(event_dict.items()):
        lower_key = key.lower()
        if lower_key.endswith("_preview") or not isinstance(value, str) or len(value) <= 4:
            continue
        if any(pii in lower_key for pii in _PII_KEYS):
            event_dict[key] = f"{value[:2]}***{value[-2:]}"
    return event_dict


def _renderer(json_output: bool, development_mode: bool) -> List[Any]:
    if development_mode or not json_output:
        return [structlog.dev.ConsoleRenderer(colors=True)]
    return [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Install the structlog pipeline used by the API server and the client.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: If True, output JSON; if False, output human-readable
        development_mode: If True, use pretty console output
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
        *_renderer(json_output, development_mode),
    ]
    level = getattr(logging, log_level.upper(), logging.INFO)
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


configure_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
