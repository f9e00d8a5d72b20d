from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Context variable for correlation ID (per-request tracking)
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
    pii_keys = {"password", "secret", "token", "api_key", "authorization", "email"}
    for key in list(event_dict.keys()):
        lower_key = key.lower()
        if any(pii in lower_key for pii in pii_keys):
            if isinstance(event_dict[key], str) and len(event_dict[key]) > 4:
                # Redact but preserve first/last 2 chars for debugging
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


# Initialize logging on module import
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


# Patterns that indicate collaborator internals in error messages
_SENSITIVE_ERROR_PATTERNS = [
    # Database/query related
    r'(?i)(sql|query|select|insert|update|delete|where|from|join)\s+.{0,50}',
    r'(?i)database\s+error',
    r'(?i)connection\s+.*\s+(failed|refused|timeout)',
    # Path/file related
    r'(?i)/(?:home|var|etc|usr|opt|tmp)/[^\s]+',
    r'(?i)[a-z]:\\[^\s]+',
    # Credential patterns
    r'(?i)(password|secret|token|key|credential|api.?key)\s*[:=]\s*[^\s]+',
    # Stack traces
    r'(?i)traceback\s*\(most recent call last\)',
    r'(?i)at\s+\S+\.\S+\(\S+:\d+\)',
    # Hosts and ports
    r'\b\d{1,3}(?:\.\d{1,3}){3}(?::\d+)?\b',
]

_SENSITIVE_PATTERNS_COMPILED = [re.compile(p) for p in _SENSITIVE_ERROR_PATTERNS]

# Keys that should be redacted in response data
_SENSITIVE_RESPONSE_KEYS = frozenset({
    'password', 'secret', 'token', 'api_key', 'apikey', 'api-key',
    'authorization', 'auth', 'credentials', 'private_key', 'privatekey',
    'secret_key', 'secretkey', 'access_key', 'accesskey', 'license_key',
})


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Sanitize a collaborator error message before it is persisted or returned.

    Removes query fragments, file paths, credentials, stack traces and
    host addresses. Output is capped at 500 characters.
    """
    if not error or not isinstance(error, str):
        return "An error occurred"

    result = error
    for pattern in _SENSITIVE_PATTERNS_COMPILED:
        result = pattern.sub(replacement, result)

    if len(result) > 500:
        result = result[:497] + "..."

    return result


def sanitize_response_data(data: Any, *, depth: int = 0, max_depth: int = 20) -> Any:
    """Redact sensitive keys from response data.

    Args:
        data: Data to sanitize (dict, list, or primitive)
        depth: Current recursion depth
        max_depth: Maximum recursion depth

    Returns:
        Sanitized data with sensitive values redacted
    """
    if depth > max_depth:
        return "[max depth exceeded]"

    if isinstance(data, dict):
        result = {}
        for key, value in data.items():
            lower_key = str(key).lower().replace('-', '_').replace(' ', '_')
            if any(sensitive in lower_key for sensitive in _SENSITIVE_RESPONSE_KEYS):
                result[key] = "[REDACTED]"
            else:
                result[key] = sanitize_response_data(value, depth=depth + 1, max_depth=max_depth)
        return result
    elif isinstance(data, list):
        return [sanitize_response_data(item, depth=depth + 1, max_depth=max_depth) for item in data]
    else:
        return data
