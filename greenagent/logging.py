from __future__ import annotations

import logging
import os
import re
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Dict, Iterator, Optional

import structlog

# Correlation ID of the message or HTTP request being handled
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set or generate a correlation ID for the current message context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


@contextmanager
def bind_sender(platform: str, platform_id: str) -> Iterator[None]:
    """Attach the sender to every log line emitted inside the block."""
    with structlog.contextvars.bound_contextvars(platform=platform, platform_id=platform_id):
        yield


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


# Keys whose values never reach the logs, not even partially
_SIGNING_KEYS = ("private_key", "privatekey", "encryption_secret", "master_secret")
# Credentials that keep a short prefix/suffix for debugging
_CREDENTIAL_KEYS = ("password", "secret", "token", "api_key", "authorization")
# A raw 32-byte hex key embedded in free text (error messages, payload dumps)
_HEX_KEY_RE = re.compile(r"\b(0x)?[0-9a-fA-F]{64}\b")
# Public 32-byte identifiers (tx_hash, work_uid) share the key shape
_PUBLIC_HASH_SUFFIXES = ("hash", "_uid")


def _redact_secrets(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask custodial keys and credentials before rendering."""
    for key in list(event_dict.keys()):
        value = event_dict[key]
        lower_key = key.lower()
        if any(marker in lower_key for marker in _SIGNING_KEYS):
            event_dict[key] = "[redacted]"
        elif any(marker in lower_key for marker in _CREDENTIAL_KEYS):
            if isinstance(value, str) and len(value) > 4:
                event_dict[key] = value[:2] + "***" + value[-2:]
        elif lower_key.endswith(_PUBLIC_HASH_SUFFIXES):
            continue
        elif isinstance(value, str) and len(value) >= 64:
            event_dict[key] = _HEX_KEY_RE.sub("[redacted-key]", value)
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
        _redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if development_mode or not json_output:
        processors = shared_processors + [structlog.dev.ConsoleRenderer(colors=True)]
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


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


_configure_structlog(
    log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
