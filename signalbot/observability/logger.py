"""Structured logging with structlog.

Security: exchange API keys, webhook secrets and listen keys are NEVER
logged. Redaction covers top-level fields, nested mappings (webhook
payloads) and signed Binance query strings that leak into error text.

Modules call ``get_logger(__name__)`` at import time, which installs a
console setup from LOG_LEVEL / LOG_FORMAT. An explicit
``configure_logging()`` from the CLI or API entry point replaces it once.
"""

from __future__ import annotations

import logging
import os
import re
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

import structlog

_REDACTED = "***REDACTED***"

# Fields that must NEVER appear in logs
_REDACTED_FIELDS = frozenset({
    "api_key", "api_secret", "secret", "webhook_secret",
    "listen_key", "listenkey", "signature", "password", "token",
    "x-mbx-apikey",
})

# signature=<hex> / listenKey=<key> inside URLs and exception messages
_QUERY_SECRET_RE = re.compile(r"(signature|listenKey)=[^&\s\"']+", re.IGNORECASE)

# "auto" after get_logger() bootstrapped a default, "explicit" once an
# entry point configured logging deliberately.
_MODE: str | None = None
_HANDLERS: list[logging.Handler] = []


def _scrub(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            k: _REDACTED if str(k).lower() in _REDACTED_FIELDS else _scrub(v)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return type(value)(_scrub(v) for v in value)
    if isinstance(value, str) and "=" in value:
        return _QUERY_SECRET_RE.sub(lambda m: f"{m.group(1)}={_REDACTED}", value)
    return value


def _redact_processor(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: structlog.types.EventDict,
) -> structlog.types.EventDict:
    """Remove sensitive fields from log events."""
    for key in list(event_dict.keys()):
        if key.lower() in _REDACTED_FIELDS:
            event_dict[key] = _REDACTED
        elif key != "event":
            event_dict[key] = _scrub(event_dict[key])
    return event_dict


def _build_handlers(level: int, log_file: str | None) -> list[logging.Handler]:
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(str(log_path)))
    for handler in handlers:
        handler.setLevel(level)
    return handlers


def configure_logging(
    level: str = "INFO",
    fmt: str = "json",
    log_file: str | None = None,
    *,
    _auto: bool = False,
) -> None:
    """Configure structured logging for the application.

    The first explicit call wins; later explicit calls are ignored.
    """
    global _MODE
    if _MODE == "explicit" or (_auto and _MODE is not None):
        return

    log_level = getattr(logging, level.upper(), logging.INFO)
    root = logging.getLogger()
    for handler in _HANDLERS:
        root.removeHandler(handler)
        handler.close()
    _HANDLERS.clear()
    root.setLevel(log_level)

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        _redact_processor,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]
    if fmt == "json":
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    formatter = structlog.stdlib.ProcessorFormatter(
        processor=renderer,
        foreign_pre_chain=shared_processors,
    )
    for handler in _build_handlers(log_level, log_file):
        handler.setFormatter(formatter)
        root.addHandler(handler)
        _HANDLERS.append(handler)

    _MODE = "auto" if _auto else "explicit"


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Return a structlog bound logger."""
    if _MODE is None:
        configure_logging(
            level=os.environ.get("LOG_LEVEL", "INFO"),
            fmt=os.environ.get("LOG_FORMAT", "console"),
            _auto=True,
        )
    return structlog.get_logger(name)


@contextmanager
def log_context(**values: Any) -> Iterator[None]:
    """Attach ``values`` to every log line emitted inside the block."""
    with structlog.contextvars.bound_contextvars(**values):
        yield
