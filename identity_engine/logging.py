from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_TRUTHY = {"1", "true", "yes", "on"}

# Keys whose values are never rendered, not even partially
_SECRET_KEYS = ("password", "secret", "token", "authorization", "hash", "api_key")
# Keys holding an address; only the domain and a short prefix survive
_ADDRESS_KEYS = ("email", "recipient", "to_addr")


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind a request id to the current context, generating one when absent."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def redact_email(email: Optional[str]) -> str:
    """Redact an address for logging: ``jo***@example.com``."""
    if not email or "@" not in email:
        return "***"
    local, domain = email.rsplit("@", 1)
    if len(local) <= 2:
        return f"***@{domain}"
    return f"{local[:2]}***@{domain}"


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def _redact_identity_fields(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credentials outright and shorten email addresses before rendering."""
    for key, value in list(event_dict.items()):
        lower_key = key.lower()
        if lower_key.endswith("_type") or lower_key.endswith("_kind"):
            continue
        if any(marker in lower_key for marker in _SECRET_KEYS):
            if isinstance(value, str):
                event_dict[key] = "[redacted]"
        elif any(marker in lower_key for marker in _ADDRESS_KEYS) and isinstance(value, str):
            event_dict[key] = redact_email(value)
    return event_dict


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Install the structlog pipeline.

    Args:
        log_level: DEBUG, INFO, WARNING or ERROR
        json_output: render one JSON object per line
        development_mode: render colored console output instead of JSON
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_correlation_id,
        _redact_identity_fields,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if development_mode or not json_output:
        renderers = [structlog.dev.ConsoleRenderer(colors=True)]
    else:
        renderers = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=shared_processors + renderers,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=os.getenv("LOG_JSON", "true").lower() in _TRUTHY,
    development_mode=os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


_CLIENT_UNSAFE_PATTERNS = [
    re.compile(p)
    for p in (
        r"(?i)(select|insert|update|delete)\s+.{0,60}",
        r"(?i)(relation|column|constraint)\s+\"[^\"]+\"",
        r"(?i)connection\s+.*\s+(failed|refused|timeout)",
        r"\$argon2(id|i|d)\$\S+",
        r"(?i)bearer\s+\S+",
        r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}",
        r"(?i)(password|secret|token|key)\s*[:=]\s*\S+",
        r"(?i)smtp\S*\s+.{0,50}",
        r"(?i)traceback\s*\(most recent call last\)",
    )
]


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Strip SQL, hashes, bearer tokens, addresses and transport chatter from a 5xx message."""
    if not error or not isinstance(error, str):
        return "An error occurred"
    result = error
    for pattern in _CLIENT_UNSAFE_PATTERNS:
        result = pattern.sub(replacement, result)
    if len(result) > 300:
        result = result[:297] + "..."
    return result
