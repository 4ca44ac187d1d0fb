from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, List, Optional

import structlog

# One id per authentication request, attached to every log line it produces
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh uuid4) to the current context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = correlation_id_var.get()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


# Substrings of log keys whose string values are masked
_PII_LOG_KEYS = (
    "password",
    "secret",
    "token",
    "code",
    "authorization",
    "email",
    "first_name",
    "last_name",
)
_UNMASKED_LOG_KEYS = frozenset({"event", "error_code"})


def _mask(value: str) -> str:
    if len(value) <= 4:
        return "***"
    return f"{value[:2]}***{value[-2:]}"


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credentials and personal data before a log line is rendered.

    Two characters survive at each end of longer values so related entries
    can still be matched up by eye.
    """
    for key, value in list(event_dict.items()):
        if key in _UNMASKED_LOG_KEYS or not isinstance(value, str):
            continue
        lowered = key.lower()
        if any(marker in lowered for marker in _PII_LOG_KEYS):
            event_dict[key] = _mask(value)
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


def _processors(json_output: bool, development_mode: bool) -> List[Any]:
    chain: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if json_output and not development_mode:
        chain += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        chain.append(structlog.dev.ConsoleRenderer(colors=True))
    return chain


def configure_logging(
    log_level: Optional[str] = None,
    json_output: Optional[bool] = None,
    development_mode: Optional[bool] = None,
) -> None:
    """Install the structlog pipeline.

    Unset arguments fall back to ``LOG_LEVEL``, ``LOG_JSON`` and
    ``LOG_DEV_MODE``. JSON lines are the default; development mode switches
    to the coloured console renderer.
    """
    level_name = (log_level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if json_output is None:
        json_output = _env_flag("LOG_JSON", "true")
    if development_mode is None:
        development_mode = _env_flag("LOG_DEV_MODE", "false")

    structlog.configure(
        processors=_processors(json_output, development_mode),
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


# Keys whose values never leave the process in audit payloads
_SENSITIVE_DETAIL_KEYS = frozenset({
    'password', 'secret', 'token', 'api_key', 'apikey',
    'authorization', 'credentials', 'private_key', 'backup_code',
    'code', 'otp', 'mfa_secret', 'salt', 'hash',
})


def sanitize_detail_data(data: Any, *, depth: int = 0, max_depth: int = 10) -> Any:
    """Copy ``data`` with sensitive values replaced by ``[REDACTED]``.

    Dict keys are matched case-insensitively with ``-`` and spaces treated
    as ``_``; lists and tuples are walked element by element. Nesting deeper
    than ``max_depth`` is cut off.
    """
    if depth > max_depth:
        return "[max depth exceeded]"

    if isinstance(data, dict):
        result = {}
        for key, value in data.items():
            lower_key = str(key).lower().replace('-', '_').replace(' ', '_')
            if any(sensitive in lower_key for sensitive in _SENSITIVE_DETAIL_KEYS):
                result[key] = "[REDACTED]"
            else:
                result[key] = sanitize_detail_data(value, depth=depth + 1, max_depth=max_depth)
        return result
    if isinstance(data, (list, tuple)):
        return [sanitize_detail_data(item, depth=depth + 1, max_depth=max_depth) for item in data]
    return data
