"""structlog setup for the gallery kernel.

Every entry carries the request's correlation id. Credential material is
matched by exact key and replaced outright; email addresses keep only their
first character and domain. Identifiers such as ``token_id``,
``old_token_id`` and ``user_id`` are left intact so rotation and reuse
audits can be followed chain by chain.
"""

from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, MutableMapping, Optional

import structlog

REDACTED = "[redacted]"

# Keys whose values are secrets, never identifiers
SECRET_KEYS = frozenset(
    {
        "password",
        "current_password",
        "new_password",
        "password_hash",
        "secret",
        "jwt_secret",
        "client_secret",
        "smtp_password",
        "authorization",
        "access_token",
        "refresh_token",
        "token",
        "token_hash",
        "code",
    }
)

_correlation_id: ContextVar[Optional[str]] = ContextVar("gallery_correlation_id", default=None)


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind a correlation id (generated when absent) to the current context."""
    cid = correlation_id or str(uuid.uuid4())
    _correlation_id.set(cid)
    return cid


def get_correlation_id() -> Optional[str]:
    return _correlation_id.get()


def mask_email(value: str) -> str:
    local, sep, domain = value.partition("@")
    if not sep or not local:
        return REDACTED
    return f"{local[0]}***@{domain}"


def add_correlation_id(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    cid = _correlation_id.get()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def redact_secrets(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    for key, value in list(event_dict.items()):
        lowered = key.lower()
        if lowered in SECRET_KEYS:
            if value is not None:
                event_dict[key] = REDACTED
        elif lowered.endswith("email") and isinstance(value, str):
            event_dict[key] = mask_email(value)
    return event_dict


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def configure_logging(
    level: Optional[str] = None,
    *,
    json_output: Optional[bool] = None,
    dev_mode: Optional[bool] = None,
) -> None:
    """Install the processor chain; arguments default to LOG_LEVEL, LOG_JSON and LOG_DEV_MODE."""
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if json_output is None:
        json_output = _env_flag("LOG_JSON", True)
    if dev_mode is None:
        dev_mode = _env_flag("LOG_DEV_MODE", False)

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        add_correlation_id,
        redact_secrets,
        structlog.processors.StackInfoRenderer(),
    ]
    if dev_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=dev_mode))
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


def log_security_event(event: str, logger: Optional[Any] = None, **fields: Any) -> None:
    """Emit a security audit event (token reuse, OAuth linking conflicts, lockouts)."""
    log = logger or get_logger("security")
    log.warning(event, security_event=True, **fields)
