from __future__ import annotations

import hashlib
import logging
import os
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Dict, Iterator, Mapping, Optional

import structlog

# One id per authentication context (request, CLI invocation, job)
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_SENSITIVE_KEYS = frozenset(
    {"password", "secret", "token", "api_key", "authorization", "email", "recovery", "code"}
)
# Event names and one-way digests are logged verbatim
_VERBATIM_KEYS = frozenset({"event", "level", "timestamp", "logger"})
_VERBATIM_SUFFIXES = ("_hash", "_digest", "_prefix")


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set (or generate) the correlation id for the current context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


@contextmanager
def auth_log_context(**values: Any) -> Iterator[None]:
    """Bind ``values`` to every log entry emitted inside the block."""
    with structlog.contextvars.bound_contextvars(**values):
        yield


def identity_digest(value: Optional[str]) -> Optional[str]:
    """Short, stable digest of an identity (email, username) for log correlation."""
    if value is None:
        return None
    normalized = str(value).strip().lower().encode("utf-8")
    return hashlib.sha256(normalized).hexdigest()[:16]


def _is_sensitive(key: str) -> bool:
    lower_key = key.lower()
    if lower_key in _VERBATIM_KEYS or lower_key.endswith(_VERBATIM_SUFFIXES):
        return False
    return any(marker in lower_key for marker in _SENSITIVE_KEYS)


def _mask(value: Any) -> Any:
    if isinstance(value, str):
        if len(value) <= 4:
            return "***"
        return value[:2] + "***" + value[-2:]
    if isinstance(value, bytes):
        return "***"
    return value


def _scrub(values: Mapping[str, Any]) -> Dict[str, Any]:
    scrubbed: Dict[str, Any] = {}
    for key, value in values.items():
        if isinstance(value, Mapping):
            scrubbed[key] = _scrub(value)
        elif _is_sensitive(str(key)):
            scrubbed[key] = _mask(value)
        else:
            scrubbed[key] = value
    return scrubbed


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def _redact_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credentials and PII, including inside nested mappings."""
    return _scrub(event_dict)


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """(Re)configure structlog for the auth core.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: Emit JSON lines; otherwise human-readable console output
        development_mode: Force the colored console renderer
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_credentials,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=development_mode))
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
    log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
