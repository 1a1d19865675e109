"""Logging helpers: structured context, URL redaction and timing.

Modules keep a module-level ``logger = logging.getLogger(__name__)`` and attach
structured fields through ``extra_context`` so that DEBUG traces can be
filtered by ``event``/``component`` without parsing messages.
"""
from __future__ import annotations

import logging
import os
import re
import sys
import time
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

from ..constants import Constants

_correlation_id: ContextVar[Optional[str]] = ContextVar("mambalite_correlation_id", default=None)

_SENSITIVE_KEYS = ("token", "password", "secret", "authorization")
_USERINFO_RE = re.compile(r"(?P<scheme>[a-zA-Z][a-zA-Z0-9+.-]*://)[^/@\s]+@")
_TOKEN_PATH_RE = re.compile(r"/t/[^/\s]+/")
_QUERY_SECRET_RE = re.compile(r"(?i)([?&](?:token|password|secret|api_key)=)[^&\s]*")

_HANDLER_NAME = "mambalite-stream"


def new_correlation_id() -> str:
    """Start a new correlation id for the current context and return it."""
    cid = uuid.uuid4().hex[:12]
    _correlation_id.set(cid)
    return cid


def get_correlation_id() -> Optional[str]:
    """Return the correlation id of the current context, if any."""
    return _correlation_id.get()


def extra_context(**kwargs: Any) -> Dict[str, Any]:
    """Build an ``extra=`` mapping for structured log records.

    ``None`` values are dropped and sensitive-looking keys are redacted.
    The current correlation id is attached when one is set.
    """
    ctx: Dict[str, Any] = {}
    for key, value in kwargs.items():
        if value is None:
            continue
        if any(s in key.lower() for s in _SENSITIVE_KEYS):
            value = "[REDACTED]"
        ctx[key] = value
    cid = _correlation_id.get()
    if cid and "correlation_id" not in ctx:
        ctx["correlation_id"] = cid
    return ctx


def is_debug_enabled(logger: logging.Logger) -> bool:
    """Return True when DEBUG records of ``logger`` would be emitted."""
    return logger.isEnabledFor(logging.DEBUG)


def redact(text: str) -> str:
    """Strip credentials from free text (URLs embedded in messages included)."""
    if not text:
        return text
    text = _USERINFO_RE.sub(r"\g<scheme>[REDACTED]@", text)
    text = _TOKEN_PATH_RE.sub("/t/[REDACTED]/", text)
    return _QUERY_SECRET_RE.sub(r"\1[REDACTED]", text)


def safe_url(url: Optional[str]) -> str:
    """Return ``url`` with user info, ``/t/<token>/`` segments and secret query values removed."""
    if not url:
        return ""
    return redact(str(url))


class Timer:
    """Context manager measuring wall-clock duration in milliseconds."""

    def __init__(self) -> None:
        self._start: float = 0.0
        self._end: Optional[float] = None

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        self._end = None
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self._end = time.perf_counter()

    def duration_ms(self) -> int:
        """Elapsed milliseconds; still running timers report time so far."""
        end = self._end if self._end is not None else time.perf_counter()
        return int((end - self._start) * 1000)


class _ContextFormatter(logging.Formatter):
    """Formatter that appends ``event``/``outcome`` fields at DEBUG level."""

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        if record.levelno > logging.DEBUG:
            return base
        fields = []
        for key in ("event", "component", "action", "outcome", "target", "duration_ms", "correlation_id"):
            value = getattr(record, key, None)
            if value is not None:
                fields.append(f"{key}={value}")
        if fields:
            return f"{base} ({' '.join(fields)})"
        return base


def level_for_verbosity(verbosity: int, quiet: bool = False) -> int:
    """Map CLI ``-v`` counts (and ``--quiet``) onto a logging level."""
    if quiet:
        return logging.ERROR
    if verbosity <= 0:
        return logging.WARNING
    if verbosity == 1:
        return logging.INFO
    return logging.DEBUG


def configure_logging(level: Optional[int] = None) -> None:
    """Install the package stream handler on the root logger (idempotent).

    The level comes from ``level`` when given, else from the
    ``MAMBALITE_LOG_LEVEL`` environment variable, else WARNING.
    """
    if level is None:
        env_level = os.environ.get(Constants.ENV_LOG_LEVEL, "").strip().upper()
        level = getattr(logging, env_level, logging.WARNING) if env_level else logging.WARNING

    root = logging.getLogger()
    for handler in root.handlers:
        if getattr(handler, "name", None) == _HANDLER_NAME:
            break
    else:
        handler = logging.StreamHandler(sys.stderr)
        handler.set_name(_HANDLER_NAME)
        handler.setFormatter(_ContextFormatter(Constants.LOG_FORMAT))
        root.addHandler(handler)
    root.setLevel(level)
