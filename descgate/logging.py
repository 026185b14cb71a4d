from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Per-request correlation id, set by the HTTP layer from X-Request-ID
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID for request tracing."""
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set or generate a correlation ID for the current request context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor to add correlation_id to all log entries."""
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor to redact credentials and PII from log entries."""
    pii_keys = {"password", "secret", "id_token", "credential", "authorization", "email", "cookie"}
    for key in list(event_dict.keys()):
        lower_key = key.lower()
        if any(pii in lower_key for pii in pii_keys):
            if isinstance(event_dict[key], str) and len(event_dict[key]) > 4:
                # Keep first/last 2 chars for debugging
                event_dict[key] = event_dict[key][:2] + "***" + event_dict[key][-2:]
    return event_dict


def _configure_structlog(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Configure structlog processors.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: If True, output JSON; if False, output human-readable
        development_mode: If True, use pretty console output
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if development_mode or not json_output:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=True),
        ]
    else:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


_log_level = os.getenv("LOG_LEVEL", "INFO").upper()
_json_output = os.getenv("LOG_JSON", "true").lower() in {"1", "true", "yes", "on"}
_dev_mode = os.getenv("LOG_DEV_MODE", "false").lower() in {"1", "true", "yes", "on"}

_configure_structlog(
    log_level=_log_level,
    json_output=_json_output,
    development_mode=_dev_mode,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a configured logger with correlation ID support."""
    return structlog.get_logger(name)


GENERIC_ERROR_MESSAGE = "An error occurred while processing your request"
UNAVAILABLE_MESSAGE = "Service temporarily unavailable"
MAX_CLIENT_MESSAGE_LENGTH = 100

# Ordered (pattern, replacement) pairs applied to every client-facing message
_CLIENT_MESSAGE_SCRUBBERS = [
    (re.compile(r'File "[^"]+", line \d+'), "[STACK]"),
    (re.compile(r"\bat [^\s]+:\d+(?::\d+)?"), "[STACK]"),
    (re.compile(r"(?i)\b[a-z]:\\[^\s]*"), "[PATH]"),
    (re.compile(r"(?<![\w:/])/(?:[\w.-]+/)*[\w.-]+"), "[PATH]"),
    (re.compile(r"/[^\s]*\.[a-zA-Z]+"), "[PATH]"),
    (re.compile(r"(?i)\b(?:localhost|[a-z0-9-]+(?:\.[a-z0-9-]+)+):\d{2,5}\b"), "[HOST]"),
    (re.compile(r"\b\d{1,3}(?:\.\d{1,3}){3}\b"), "[IP]"),
    (re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}"), "[EMAIL]"),
    (re.compile(r"(?i)process\.env\.[A-Z_]+|os\.environ(?:\[[^\]]*\])?|os\.getenv\([^)]*\)|\$\{?[A-Z_][A-Z0-9_]{2,}\}?"), "[ENV]"),
    (re.compile(r"(?i)\b(?:redis|firestore|firebase|postgres(?:ql)?|mysql|mongo(?:db)?|sqlite|psycopg)\b"), "Database"),
    (re.compile(r"(?i)\b(?:pyjwt|structlog|starlette|fastapi|pydantic|httpx|uvicorn|node_modules)\b[^\s]*"), "[MODULE]"),
]

# Any of these in the scrubbed text collapses the message to the generic string
_SENSITIVE_KEYWORDS = (
    "password", "secret", "key", "token", "credential",
    "internal", "stack", "trace", "debug", "config",
    "environment", "variable", "connection", "database",
)


def sanitize_error_message(error: Optional[str]) -> str:
    """Scrub a message before it is allowed onto the wire.

    Paths, host:port pairs, IP addresses, emails, stack frames, library and
    database names and environment references are replaced with placeholders.
    Messages that still mention a sensitive keyword, or that are longer than
    ``MAX_CLIENT_MESSAGE_LENGTH``, collapse to a fixed generic string.
    """
    if not error or not isinstance(error, str):
        return UNAVAILABLE_MESSAGE

    result = error
    for pattern, replacement in _CLIENT_MESSAGE_SCRUBBERS:
        result = pattern.sub(replacement, result)

    lowered = result.lower()
    if any(keyword in lowered for keyword in _SENSITIVE_KEYWORDS):
        return GENERIC_ERROR_MESSAGE
    if len(result) > MAX_CLIENT_MESSAGE_LENGTH:
        return GENERIC_ERROR_MESSAGE
    return result.strip() or UNAVAILABLE_MESSAGE


# Keys whose values never leave the process, in logs or persisted records
_SENSITIVE_ATTRIBUTE_KEYS = frozenset({
    "password", "secret", "token", "id_token", "idtoken", "api_key", "apikey",
    "authorization", "cookie", "credential", "credentials", "private_key",
    "signing_key", "session_token",
})

_MAX_ATTRIBUTE_LENGTH = 1000


def _is_sensitive_key(key: str) -> bool:
    lower_key = key.lower().replace("-", "_").replace(" ", "_")
    if lower_key in _SENSITIVE_ATTRIBUTE_KEYS:
        return True
    return any(lower_key.endswith(f"_{sensitive}") for sensitive in _SENSITIVE_ATTRIBUTE_KEYS)


def sanitize_attributes(data: Any, *, depth: int = 0, max_depth: int = 10) -> Any:
    """Drop sensitive keys and truncate long strings in event/context payloads.

    Args:
        data: Data to sanitize (dict, list, or primitive)
        depth: Current recursion depth
        max_depth: Maximum recursion depth

    Returns:
        A copy that is safe to log or persist
    """
    if depth > max_depth:
        return "[max depth exceeded]"

    if isinstance(data, dict):
        result = {}
        for key, value in data.items():
            if _is_sensitive_key(str(key)):
                continue
            result[key] = sanitize_attributes(value, depth=depth + 1, max_depth=max_depth)
        return result
    if isinstance(data, (list, tuple, set, frozenset)):
        return [sanitize_attributes(item, depth=depth + 1, max_depth=max_depth) for item in data]
    if isinstance(data, str) and len(data) > _MAX_ATTRIBUTE_LENGTH:
        return data[:_MAX_ATTRIBUTE_LENGTH] + "..."
    return data
