from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Request id shared by log lines, error envelopes and the X-Request-ID header
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh uuid4) to the current context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def mask_phone_number(phone: Optional[str]) -> str:
    """Mask a phone number for logs, keeping the first and last two characters.

    >>> mask_phone_number("+15550100")
    '+1*****00'
    """
    if not phone:
        return ""
    if len(phone) <= 4:
        return "*" * len(phone)
    return phone[:2] + "*" * (len(phone) - 4) + phone[-2:]


def _with_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


# Substrings of event keys whose values are credentials or one-time codes
_CREDENTIAL_KEYS = ("password", "secret", "token", "authorization", "code_hash", "otp_code", "push")
_PHONE_KEYS = ("phone", "phone_number", "phone_key")


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credentials and raw phone numbers before an event is rendered."""
    for key, value in list(event_dict.items()):
        if not isinstance(value, str):
            continue
        lowered = key.lower()
        if lowered in _PHONE_KEYS:
            if "*" not in value:
                event_dict[key] = mask_phone_number(value)
        elif any(marker in lowered for marker in _CREDENTIAL_KEYS) and len(value) > 4:
            event_dict[key] = value[:2] + "***" + value[-2:]
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def configure_logging(level: Optional[str] = None, *, console: Optional[bool] = None) -> None:
    """Install the structlog pipeline.

    JSON lines by default; ``LOG_DEV_MODE`` (or ``console=True``) switches to
    the coloured console renderer for local work.
    """
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if console is None:
        console = _env_flag("LOG_DEV_MODE", "false") or not _env_flag("LOG_JSON", "true")

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _with_correlation_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
    ]
    if console:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level_name, logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


_SENSITIVE_ERROR_PATTERNS = [
    # connection strings carrying credentials
    r"(?i)\b(?:postgres(?:ql)?|redis|rediss)://\S+",
    r"(?i)(sql|query|select|insert|update|delete|where|from|join)\s+.{0,50}",
    r"(?i)connection\s+.*\s+(failed|refused|timeout)",
    r"(?i)/(?:home|var|etc|usr|opt|tmp|srv)/[^\s]+",
    r"(?i)[a-z]:\\[^\s]+",
    r"(?i)(password|secret|token|key|credential|api.?key)\s*[:=]\s*[^\s]+",
    r"(?i)traceback\s*\(most recent call last\)",
    # raw E.164 numbers
    r"\+\d{8,15}",
]

_SENSITIVE_ERROR_RE = [re.compile(p) for p in _SENSITIVE_ERROR_PATTERNS]
_MAX_ERROR_LENGTH = 500


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Strip DSNs, SQL, paths, credentials and phone numbers from an error string.

    Used for anything that leaves the process (analytics, logs shipped off
    host); the result is capped at 500 characters.
    """
    if not error or not isinstance(error, str):
        return "An error occurred"
    result = error
    for pattern in _SENSITIVE_ERROR_RE:
        result = pattern.sub(replacement, result)
    if len(result) > _MAX_ERROR_LENGTH:
        result = result[: _MAX_ERROR_LENGTH - 3] + "..."
    return result
