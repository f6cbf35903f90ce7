from __future__ import annotations

from typing import Any, Optional
from uuid import uuid4

import structlog
from flask import g, has_app_context

CORRELATION_KEY = "correlation_id"


def ensure_correlation_id(value: Optional[str] = None) -> str:
    """Bind a correlation id for this request or thread and return it.

    An explicit ``value`` (usually the ``X-Correlation-ID`` header) wins, then
    any id already bound, then a fresh one.
    """
    bound = structlog.contextvars.get_contextvars().get(CORRELATION_KEY)
    if has_app_context():
        bound = bound or g.get(CORRELATION_KEY)
    correlation_id = value or bound or uuid4().hex
    if has_app_context():
        g.correlation_id = correlation_id
    structlog.contextvars.bind_contextvars(correlation_id=correlation_id)
    return correlation_id


def bind_job_context(job_id: Optional[str] = None, **extra: Any) -> None:
    """Bind the job id (and usually its URL) so every log line carries them."""
    fields = {key: value for key, value in extra.items() if value is not None}
    if job_id:
        fields["job_id"] = job_id
    structlog.contextvars.bind_contextvars(**fields)


def update_context(**extra: Any) -> None:
    if extra:
        structlog.contextvars.bind_contextvars(**extra)


def clear_correlation_context() -> None:
    """Forget everything bound for the current request or job."""
    structlog.contextvars.clear_contextvars()
    if has_app_context():
        g.pop(CORRELATION_KEY, None)
