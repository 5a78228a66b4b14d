"""Structlog configuration with redaction of secrets and caller data.

Webhook signatures, provider keys and everything a caller said or typed
(phone numbers, addresses, transcripts) must never reach log output.
"""

import logging
import re
from collections.abc import MutableMapping
from typing import Any

import structlog

from ringledger.config import settings

# Field names whose values are always redacted (substring match)
SENSITIVE_FIELDS = frozenset(
    {
        # Credentials
        "secret",
        "password",
        "token",
        "api_key",
        "authorization",
        "bearer",
        "signature",
        "database_url",
        # Caller PII
        "phone",
        "caller_name",
        "address",
        "transcript",
        "summary",
        "issue_description",
    }
)

SENSITIVE_PATTERNS = [
    re.compile(r"Bearer\s+[A-Za-z0-9._-]+", re.IGNORECASE),
    # Stripe keys and webhook secrets
    re.compile(r"(sk|rk)_(live|test)_[A-Za-z0-9]{10,}"),
    re.compile(r"whsec_[A-Za-z0-9]{10,}"),
    # Stripe webhook signature header
    re.compile(r"t=\d+,v1=[a-fA-F0-9]{64}"),
    # Hex HMAC digests
    re.compile(r"\b[a-fA-F0-9]{64}\b"),
    # E.164 phone numbers
    re.compile(r"\+1\d{10}\b"),
]

REDACTED = "***REDACTED***"


def _is_sensitive_field(key: str) -> bool:
    key_lower = key.lower().replace("-", "_")
    return any(sensitive in key_lower for sensitive in SENSITIVE_FIELDS)


def _redact_sensitive_value(value: str) -> str:
    for pattern in SENSITIVE_PATTERNS:
        if pattern.search(value):
            return REDACTED
    return value


def _redact_dict(data: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
    """Recursively redact sensitive data from a dictionary (in place)."""
    for key in list(data.keys()):
        value = data[key]

        if _is_sensitive_field(str(key)):
            data[key] = REDACTED
            continue

        if isinstance(value, MutableMapping):
            _redact_dict(value)
        elif isinstance(value, list):
            data[key] = [
                _redact_dict(item)
                if isinstance(item, MutableMapping)
                else _redact_sensitive_value(item)
                if isinstance(item, str)
                else item
                for item in value
            ]
        elif isinstance(value, str):
            data[key] = _redact_sensitive_value(value)

    return data


def redact_sensitive_data(
    logger: structlog.types.WrappedLogger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    """Structlog processor that redacts sensitive data from log events.

    The event message itself is left alone; only context values are checked.
    """
    event = event_dict.pop("event", None)
    _redact_dict(event_dict)
    if event is not None:
        event_dict["event"] = event
    return event_dict


def configure_logging(log_level: str | None = None, json_logs: bool | None = None) -> None:
    """Configure structlog for the service.

    Call once during application startup. JSON output is used everywhere
    except development.
    """
    level = logging.getLevelName((log_level or settings.LOG_LEVEL).upper())
    if not isinstance(level, int):
        level = logging.INFO
    if json_logs is None:
        json_logs = settings.ENVIRONMENT != "development"

    renderer: structlog.types.Processor = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            redact_sensitive_data,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )
