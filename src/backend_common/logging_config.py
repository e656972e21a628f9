"""Structured logging: one line per event, secrets masked."""
from __future__ import annotations

import logging
import sys
from typing import Any, MutableMapping

import structlog

REDACTED = "***"

# Event keys whose values must never reach the log stream.
SENSITIVE_KEYS = frozenset(
    {
        "authorization",
        "password",
        "secret",
        "signature",
        "x-webhook-signature",
    }
)

_CONTROL_CHARS = str.maketrans({"\\": "\\\\", "\n": "\\n", "\r": "\\r", "\t": "\\t"})


def _flatten(value: Any) -> Any:
    if isinstance(value, str):
        return value.translate(_CONTROL_CHARS)
    if isinstance(value, (list, tuple)):
        return [_flatten(item) for item in value]
    if isinstance(value, dict):
        return {key: _flatten(item) for key, item in value.items()}
    return value


def _mask(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            key: REDACTED if str(key).lower() in SENSITIVE_KEYS else _mask(item)
            for key, item in value.items()
        }
    return value


def redact_sensitive(
    _logger: Any, _method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """Replace secrets and signatures with ``***``, including inside header dicts."""
    for key in list(event_dict):
        if key.lower() in SENSITIVE_KEYS:
            event_dict[key] = REDACTED
        else:
            event_dict[key] = _mask(event_dict[key])
    return event_dict


def single_line(
    _logger: Any, _method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """Escape control characters in string values, nested ones included.

    Runs after ``format_exc_info`` so rendered tracebacks stay on one line too.
    """
    for key, value in event_dict.items():
        event_dict[key] = _flatten(value)
    return event_dict


class SingleLineFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        return super().format(record).translate(_CONTROL_CHARS)


def build_processors(json_output: bool = False) -> list[Any]:
    renderer: Any
    if json_output:
        renderer = structlog.processors.JSONRenderer(sort_keys=False)
    else:
        # timestamp=... level=info logger=webhook_service.dispatcher event="..." delivery_id=...
        renderer = structlog.processors.KeyValueRenderer(
            key_order=["timestamp", "level", "logger", "event"],
            drop_missing=True,
        )
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        redact_sensitive,
        single_line,
        renderer,
    ]


def configure_logging(level: str = "INFO", *, json_output: bool = False) -> None:
    """Send stdlib and structlog records to stdout, one line each."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(SingleLineFormatter("%(message)s"))

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level.upper())

    # The trace middleware logs every request; the aiohttp access log would duplicate it.
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)

    structlog.configure(
        processors=build_processors(json_output),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
