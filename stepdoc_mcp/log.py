import logging
import re
import sys
from typing import Any, Dict

import structlog

_JWT_RE = re.compile(r"\beyJ[a-zA-Z0-9_\-]+\.[a-zA-Z0-9_\-]+\.[a-zA-Z0-9_\-]+\b")
_BEARER_RE = re.compile(r"(?i)\bBearer\s+([A-Za-z0-9_\-\.=]+)")

# Event keys whose values are credentials regardless of their shape.
_SECRET_KEYS = {"access_token", "refresh_token", "password", "csrf_token", "authorization"}


def _redact_str(value: str) -> str:
    value = _JWT_RE.sub("***REDACTED***", value)
    return _BEARER_RE.sub("Bearer ***REDACTED***", value)


def redact_event(_, __, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Scrub tokens from every string value before rendering."""
    for key, value in list(event_dict.items()):
        if key.lower() in _SECRET_KEYS and value:
            event_dict[key] = "***REDACTED***"
        elif isinstance(value, str):
            event_dict[key] = _redact_str(value)
    return event_dict


def configure_logging(level: str = "INFO", json_output: bool = False) -> None:
    """Route stdlib and structlog output through one redacting processor chain."""
    shared_processors = [
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        redact_event,
        structlog.processors.format_exc_info,
    ]
    renderer = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer(colors=False)

    formatter = structlog.stdlib.ProcessorFormatter(
        processor=renderer,
        foreign_pre_chain=shared_processors,
    )
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level.upper())

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *shared_processors,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
