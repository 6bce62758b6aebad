from __future__ import annotations

import logging
import os
import re
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Dict, Iterator, Optional

import structlog

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


@contextmanager
def correlation_scope(correlation_id: Optional[str] = None) -> Iterator[str]:
    """Tag every log line emitted inside the block with one correlation id.

    The id is restored on exit, so nested scopes and concurrent tasks keep
    their own values.
    """
    cid = correlation_id or str(uuid.uuid4())
    token = correlation_id_var.set(cid)
    try:
        yield cid
    finally:
        correlation_id_var.reset(token)


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


# Credential material is dropped outright; contact details keep enough to triage
_SECRET_KEY_FRAGMENTS = ("password", "secret", "token", "code", "authorization", "cookie")
_CONTACT_KEY_FRAGMENTS = ("email",)
_ALLOWED_KEYS = frozenset({"event", "error_code", "status_code", "token_type", "kind"})


def _mask_contact(value: str) -> str:
    local, sep, domain = value.partition("@")
    if not sep:
        return "***"
    return f"{local[:2]}***@{domain}"


def _redact_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    for key, value in list(event_dict.items()):
        # Counters such as refresh_tokens=3 pass through
        if key in _ALLOWED_KEYS or not isinstance(value, (str, bytes)):
            continue
        lower_key = key.lower()
        if any(fragment in lower_key for fragment in _SECRET_KEY_FRAGMENTS):
            event_dict[key] = "[redacted]"
        elif isinstance(value, str) and any(f in lower_key for f in _CONTACT_KEY_FRAGMENTS):
            event_dict[key] = _mask_contact(value)
    return event_dict


def configure_logging(level: str = "INFO", fmt: str = "json") -> None:
    """Install the structlog pipeline.

    ``fmt`` is ``json`` for machine-readable lines or ``console`` for local
    development.
    """
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_correlation_id,
        _redact_credentials,
        structlog.processors.StackInfoRenderer(),
    ]
    if fmt == "console":
        processors.append(structlog.dev.ConsoleRenderer(colors=False))
    else:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    level=os.getenv("LOG_LEVEL", "INFO"),
    fmt=os.getenv("LOG_FORMAT", "json").lower(),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# Fragments that must never leave the process inside an error message
_SENSITIVE_ERROR_PATTERNS = [
    r"\$argon2id?\$[^\s]+",
    r"eyJ[\w-]+\.[\w-]+\.[\w-]+",
    r"\b[0-9a-f]{40,}\b",
    r"(?i)(select|insert|update|delete)\s+.{0,50}",
    r"(?i)(postgres(?:ql)?|redis)://[^\s]+",
    r"(?i)/(?:home|var|etc|usr|opt|tmp|srv)/[^\s]+",
    r"(?i)(password|secret|token|key)\s*[:=]\s*[^\s]+",
]

_SENSITIVE_PATTERNS_COMPILED = [re.compile(p) for p in _SENSITIVE_ERROR_PATTERNS]


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Strip hashes, tokens, connection strings, SQL and paths from a message."""
    if not error or not isinstance(error, str):
        return "An error occurred"
    result = error
    for pattern in _SENSITIVE_PATTERNS_COMPILED:
        result = pattern.sub(replacement, result)
    if len(result) > 500:
        result = result[:497] + "..."
    return result
