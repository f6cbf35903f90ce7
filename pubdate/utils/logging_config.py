import logging
import logging.handlers
import os
import sys
from typing import Any, Dict

import structlog

_configured = False

# Present on every rendered event, ``None`` when unknown.
EVENT_FIELDS = ("event", "correlation_id", "job_id", "url", "status", "elapsed_ms")
CONTEXT_FIELDS = ("correlation_id", "job_id", "url", "attempt", "status", "elapsed_ms")
QUIET_PATHS = frozenset({"/healthz", "/api/ping"})
QUIET_LOGGERS = {"werkzeug": logging.INFO, "urllib3": logging.WARNING, "redis": logging.WARNING}


def _add_job_fields(_: logging.Logger, __: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Copy bound job context onto the event and fill in the fixed fields."""
    context = structlog.contextvars.get_contextvars()
    for key in CONTEXT_FIELDS:
        if key in context:
            event_dict.setdefault(key, context[key])
    if not event_dict.get("event"):
        event_dict["event"] = event_dict.get("message") or event_dict.get("logger") or "log.event"
    for key in EVENT_FIELDS:
        event_dict.setdefault(key, None)
    return event_dict


def _filter_noisy_events(_: logging.Logger, __: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Drop probe chatter and demote per-strategy attempts to debug."""
    level = event_dict.get("level")
    if event_dict.get("path") in QUIET_PATHS and level in {"debug", "info"}:
        raise structlog.DropEvent
    if event_dict.get("event") == "engine.attempt":
        event_dict["level"] = "debug"
    return event_dict


def _processors(plain: bool) -> list:
    chain = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        _add_job_fields,
        _filter_noisy_events,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if plain:
        chain.append(structlog.processors.UnicodeDecoder())
    return chain


def _file_handler(formatter: logging.Formatter) -> logging.Handler:
    log_dir = os.path.join(os.path.dirname(__file__), "..", "..", "instance")
    os.makedirs(log_dir, exist_ok=True)
    handler = logging.handlers.RotatingFileHandler(
        os.path.join(log_dir, "development.log"), maxBytes=5 * 1024 * 1024, backupCount=5
    )
    handler.setFormatter(formatter)
    return handler


def setup_logging(force: bool = False) -> None:
    """Route structlog and stdlib logging through one renderer.

    ``LOG_FORMAT`` picks ``json`` (default) or ``plain`` console output and
    ``LOG_LEVEL`` the root level. In development a rotating file under
    ``instance/`` receives the same records.
    """
    global _configured
    if _configured and not force:
        return

    plain = os.getenv("LOG_FORMAT", "json").strip().lower() == "plain"
    chain = _processors(plain)
    renderer = structlog.dev.ConsoleRenderer(colors=True) if plain else structlog.processors.JSONRenderer()
    formatter = structlog.stdlib.ProcessorFormatter(
        processor=renderer, foreign_pre_chain=chain, fmt="%(message)s"
    )

    structlog.configure(
        processors=[*chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(os.getenv("LOG_LEVEL", "INFO").upper())
    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(formatter)
    root.addHandler(console)
    if os.getenv("ENV") == "development":
        root.addHandler(_file_handler(formatter))

    for name, level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(level)

    _configured = True
