from __future__ import annotations

import hashlib
import logging
import os
import re
import uuid
from typing import Any, Dict, Optional

import structlog

_TRUTHY = {"1", "true", "yes", "on"}

# Keys whose values are credentials and are never logged, even partially
_SECRET_KEYS = ("password", "secret", "token", "authorization", "recovery_code", "mfa_code")
# Keys whose values are contact details; enough is kept to tell entries apart
_CONTACT_KEYS = ("email",)

# Three base64url segments: any signed token that slipped into a message
_COMPACT_TOKEN = re.compile(
    r"(?<![A-Za-z0-9_-])[A-Za-z0-9_-]{8,}\.[A-Za-z0-9_-]{8,}\.[A-Za-z0-9_-]{8,}(?![A-Za-z0-9_-])"
)


def token_fingerprint(token: str) -> str:
    """Short stable digest that identifies a token in logs without exposing it."""
    return "tok:" + hashlib.sha256(token.encode()).hexdigest()[:12]


def get_correlation_id() -> Optional[str]:
    return structlog.contextvars.get_contextvars().get("correlation_id")


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    cid = correlation_id or str(uuid.uuid4())
    structlog.contextvars.bind_contextvars(correlation_id=cid)
    return cid


def bind_request_context(
    correlation_id: Optional[str], method: str, path: str
) -> str:
    """Start a fresh logging context for one inbound request."""
    structlog.contextvars.clear_contextvars()
    cid = set_correlation_id(correlation_id)
    structlog.contextvars.bind_contextvars(method=method, path=path)
    return cid


def clear_request_context() -> None:
    structlog.contextvars.clear_contextvars()


def _mask_contact(value: str) -> str:
    local, sep, domain = value.partition("@")
    if not sep:
        return "***"
    return f"{local[:1]}***@{domain}"


def _redact_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Drop credential values and mask contact details before rendering."""
    for key in list(event_dict.keys()):
        value = event_dict[key]
        if not isinstance(value, str):
            continue
        lower_key = key.lower()
        if any(marker in lower_key for marker in _SECRET_KEYS):
            event_dict[key] = "[redacted]"
        elif any(marker in lower_key for marker in _CONTACT_KEYS):
            event_dict[key] = _mask_contact(value)
        elif _COMPACT_TOKEN.search(value):
            event_dict[key] = _COMPACT_TOKEN.sub(
                lambda match: token_fingerprint(match.group(0)), value
            )
    return event_dict


def configure_logging(
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
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _redact_credentials,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if development_mode or not json_output:
        renderers = [structlog.dev.ConsoleRenderer(colors=True)]
    else:
        renderers = [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

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
    log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    json_output=os.getenv("LOG_JSON", "true").lower() in _TRUTHY,
    development_mode=os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
