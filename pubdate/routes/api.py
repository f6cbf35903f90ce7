import structlog
from flask import Blueprint, current_app, jsonify, request

from pubdate.data import raw_tables
from pubdate.extensions import limiter
from pubdate.models.job import ExtractOptions
from pubdate.models.site import FetchMethod
from pubdate.services.exceptions import (
    ExtractionError,
    ValidationError,
    to_extraction_error,
)
from pubdate.utils.correlation import clear_correlation_context, ensure_correlation_id

logger = structlog.get_logger(__name__)

bp = Blueprint("api", __name__, url_prefix="/api")

NOT_FOUND_MESSAGE = "Publish date not found"

EMPTY_RESPONSE = {
    "organization": None,
    "title": None,
    "description": None,
    "publishDate": None,
    "modifyDate": None,
    "location": None,
    "method": None,
    "html": None,
    "error": None,
    "errorType": None,
}


def _no_cache(response):
    response.headers["Cache-Control"] = "no-cache"
    return response


def _flag(name: str, default: bool) -> bool:
    raw = request.args.get(name)
    if raw is None:
        return default
    return raw.strip().lower() not in {"false", "0", "no", "off"}


def _error_response(error: ExtractionError) -> dict:
    payload = dict(EMPTY_RESPONSE)
    for key in ("organization", "title", "description"):
        value = error.metadata.get(key)
        if value:
            payload[key] = value
    # Validation messages are meant for the user; everything else reads as "not found".
    payload["error"] = error.message if isinstance(error, ValidationError) else NOT_FOUND_MESSAGE
    payload["errorType"] = error.error_type
    return payload


@bp.route("/get-date")
@limiter.limit(lambda: current_app.config.get("GET_DATE_RATE_LIMIT", "60 per minute"))
def get_date():
    """Extract the publish and modify dates for ``?url=``."""
    ensure_correlation_id(request.headers.get("X-Correlation-ID"))
    services = current_app.extensions["pubdate"]
    url = (request.args.get("url") or "").strip()
    options = ExtractOptions(
        check_modified=_flag("modified", True),
        disable_cache=not _flag("cache", True),
        method=FetchMethod.parse(request.args.get("method")),
        timeout_ms=services.config.JOB_TIMEOUT_MS,
    )
    try:
        result = services.queue.extract(url, options)
    except Exception as exc:
        error = to_extraction_error(exc, url or None)
        if not isinstance(exc, ExtractionError):
            logger.exception("api.get_date_failed", url=url)
        else:
            logger.info(
                "api.get_date_error", url=url, error_type=error.error_type, error=error.message
            )
        payload = _error_response(error)
    else:
        payload = result.to_response()
    finally:
        clear_correlation_context()
    return _no_cache(jsonify(payload))


@bp.route("/ping")
@limiter.exempt
def ping():
    return "", 200


@bp.route("/data")
def data():
    """Serve the bundled per-site tables."""
    return _no_cache(jsonify(raw_tables()))
