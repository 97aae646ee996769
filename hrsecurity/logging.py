from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Per-request correlation ID, set by the X-Request-ID middleware
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_TRUTHY = {"1", "true", "yes", "on"}


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Adopt the caller's request id or mint one, and reset per-request bindings."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    structlog.contextvars.clear_contextvars()
    return cid


def bind_principal(tenant_id: Optional[str], account_id: Optional[str]) -> None:
    """Attach the authenticated tenant and account to every later log line of the request."""
    structlog.contextvars.bind_contextvars(tenant_id=tenant_id, account_id=account_id)


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


# Substrings of field names whose values are credentials or contact details
_SENSITIVE_FIELDS = ("password", "secret", "token", "authorization", "email", "otp", "code")
# Stable identifiers that happen to match the substrings above
_SAFE_FIELDS = frozenset({"error_code", "status_code", "event_type", "reason_code"})


def _mask(value: str) -> str:
    if len(value) <= 4:
        return "***"
    return f"{value[:2]}***{value[-2:]}"


def _redact_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credential-like fields; backup codes and TOTP values must never be logged."""
    for key, value in list(event_dict.items()):
        lower_key = key.lower()
        if lower_key in _SAFE_FIELDS or not isinstance(value, str):
            continue
        if any(marker in lower_key for marker in _SENSITIVE_FIELDS):
            event_dict[key] = _mask(value)
    return event_dict


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Configure structlog.

    JSON lines go to stdout in production. ``development_mode`` (or
    ``json_output=False``) switches to the coloured console renderer.
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_correlation_id,
        _redact_credentials,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.extend(
            [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        )

    structlog.configure(
        processors=processors,
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


# Infrastructure details that driver errors tend to carry
_INFRA_DETAIL_PATTERNS = [
    re.compile(r"(?i)(postgres(?:ql)?|redis|rediss)://[^\s]+"),
    re.compile(r"(?i)(password|secret|token|key|credential)\s*[:=]\s*[^\s]+"),
    re.compile(r"(?i)(user|host|dbname)\s*=\s*[^\s]+"),
    re.compile(r"(?i)(sql|query|select|insert|update|delete|where|from|join)\s+.{0,50}"),
    re.compile(r"(?i)/(?:home|var|etc|usr|opt|tmp|srv)/[^\s]+"),
    re.compile(r"(?i)traceback\s*\(most recent call last\)"),
]


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Scrub connection strings, credentials and SQL fragments from a driver error.

    Store errors are logged through this before the log line leaves the host.
    The result is capped at 500 characters.
    """
    if not error or not isinstance(error, str):
        return "An error occurred"

    result = error
    for pattern in _INFRA_DETAIL_PATTERNS:
        result = pattern.sub(replacement, result)

    if len(result) > 500:
        result = result[:497] + "..."
    return result
