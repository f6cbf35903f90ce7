import logging
import os
import random
import threading
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Callable, Optional
from urllib.parse import urlparse

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from pubdate.services.exceptions import FetchCancelled, FetchError, PageNotFoundError
from pubdate.services.metadata import get_article_metadata
from pubdate.utils.text_cleaner import parse_html

logger = logging.getLogger(__name__)

USER_AGENT = os.getenv(
    "FETCH_USER_AGENT",
    "Mozilla/5.0 (compatible; PubdateBot/1.0; +https://github.com/pubdate)",
)
DESKTOP_USER_AGENT = os.getenv(
    "FETCH_DESKTOP_USER_AGENT",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/106.0.0.0 Safari/537.36",
)
REQUEST_TIMEOUT_SECONDS = float(os.getenv("FETCH_REQUEST_TIMEOUT_SECONDS", "30"))
FETCH_MAX_RETRIES = int(os.getenv("FETCH_MAX_RETRIES", "2"))
FETCH_BACKOFF_FACTOR = float(os.getenv("FETCH_BACKOFF_FACTOR", "0.5"))
FETCH_MAX_BACKOFF_SECONDS = float(os.getenv("FETCH_MAX_BACKOFF_SECONDS", "8"))
FETCH_CHUNK_BYTES = int(os.getenv("FETCH_CHUNK_BYTES", str(64 * 1024)))
FETCH_MAX_BYTES = int(os.getenv("FETCH_MAX_BYTES", str(8 * 1024 * 1024)))
ACCEPT_LANG_OPTIONS = [
    value.strip()
    for value in os.getenv(
        "FETCH_ACCEPT_LANGUAGE_OPTIONS", "en-US,en;q=0.9,it;q=0.8,es;q=0.7|en-US,en;q=0.9"
    ).split("|")
    if value.strip()
]
ACCEPT_HEADER_OPTIONS = [
    value.strip()
    for value in os.getenv(
        "FETCH_ACCEPT_OPTIONS",
        "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    ).split("|")
    if value.strip()
]

TRANSIENT_STATUS_CODES = {429, 500, 502, 503, 504}
TRANSIENT_STATUS_CODES.update(range(505, 600))

SleepFn = Callable[[float], None]

_session_lock = threading.Lock()
_session: requests.Session | None = None


def _get_session() -> requests.Session:
    """Process-wide pooled session; urllib3 retries connection-level hiccups."""
    global _session
    with _session_lock:
        if _session is None:
            adapter = HTTPAdapter(
                max_retries=Retry(
                    total=2,
                    backoff_factor=0.3,
                    status_forcelist=sorted(TRANSIENT_STATUS_CODES),
                    allowed_methods=("GET", "HEAD"),
                    raise_on_status=False,
                ),
                pool_connections=16,
                pool_maxsize=32,
            )
            session = requests.Session()
            for prefix in ("https://", "http://"):
                session.mount(prefix, adapter)
            _session = session
        return _session


def _build_headers(user_agent: Optional[str], extra: Optional[dict[str, str]]) -> dict[str, str]:
    headers = {
        "User-Agent": user_agent or USER_AGENT,
        "Accept": random.choice(ACCEPT_HEADER_OPTIONS or ["text/html,*/*;q=0.8"]),
        "Accept-Language": random.choice(ACCEPT_LANG_OPTIONS or ["en-US,en;q=0.9"]),
        "Cache-Control": "max-age=0",
    }
    headers.update(extra or {})
    return headers


def alternate_headers(url: str) -> dict[str, str]:
    """Header profile for the second attempt: desktop browser plus same-origin referrer."""
    parsed = urlparse(url)
    origin = f"{parsed.scheme}://{parsed.netloc}" if parsed.netloc else url
    return {"User-Agent": DESKTOP_USER_AGENT, "Referer": origin}


def _retry_after(response: Optional[requests.Response]) -> Optional[float]:
    value = (response.headers.get("Retry-After") or "").strip() if response is not None else ""
    if not value:
        return None
    if value.isdigit():
        return float(value)
    try:
        moment = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        logger.debug("fetch.bad_retry_after", extra={"value": value})
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    seconds = (moment - datetime.now(timezone.utc)).total_seconds()
    return seconds if seconds > 0 else None


def _decode_body(response: requests.Response, raw: bytes) -> str:
    encoding = response.encoding
    content_type = (response.headers.get("Content-Type") or "").lower()
    if not encoding or (encoding.lower() == "iso-8859-1" and "charset" not in content_type):
        encoding = getattr(response, "apparent_encoding", None) or "utf-8"
    try:
        return raw.decode(encoding, errors="replace")
    except LookupError:
        return raw.decode("utf-8", errors="replace")


def _read_body(
    response: requests.Response, cancel_event: Optional[threading.Event]
) -> Optional[bytes]:
    """Stream the body in chunks; None means the read was cancelled."""
    chunks: list[bytes] = []
    size = 0
    for chunk in response.iter_content(chunk_size=FETCH_CHUNK_BYTES):
        if _cancelled(cancel_event):
            return None
        if chunk:
            chunks.append(chunk)
            size += len(chunk)
        if size >= FETCH_MAX_BYTES:
            break
    return b"".join(chunks)


def _cancelled(cancel_event: Optional[threading.Event]) -> bool:
    return cancel_event is not None and cancel_event.is_set()


CANCELLED = {"error": "Fetch cancelled", "cancelled": True}


def _http_failure(status_code: int) -> dict:
    return {"error": f"Failed to fetch URL: HTTP {status_code}", "status_code": status_code}


def _error_page(
    response: requests.Response, cancel_event: Optional[threading.Event]
) -> Optional[str]:
    try:
        raw = _read_body(response, cancel_event)
    except requests.RequestException as exc:
        logger.debug("fetch.error_page_unreadable", extra={"url": response.url, "error": str(exc)})
        return None
    return _decode_body(response, raw) if raw else None


def fetch_with_resilience(
    url: str,
    *,
    session: Optional[requests.Session] = None,
    timeout: Optional[float] = None,
    user_agent: Optional[str] = None,
    sleep: Optional[SleepFn] = None,
    extra_headers: Optional[dict[str, str]] = None,
    cancel_event: Optional[threading.Event] = None,
) -> dict:
    """GET ``url`` with retries on transient statuses and network errors.

    Returns a payload dict with ``html`` on success, or ``error`` (plus
    ``status_code`` when the server answered, ``cancelled`` when
    ``cancel_event`` fired). Never raises for network problems.
    """
    session = session or _get_session()
    if sleep is None:
        sleep = cancel_event.wait if cancel_event is not None else time.sleep
    started = time.perf_counter()
    backoff = FETCH_BACKOFF_FACTOR
    failure: dict = {}

    for attempt in range(1, FETCH_MAX_RETRIES + 2):
        if attempt > 1:
            wait = min(failure.pop("retry_after", None) or backoff, FETCH_MAX_BACKOFF_SECONDS)
            logger.debug(
                "fetch.retry_sleep",
                extra={"url": url, "attempt": attempt, "sleep_seconds": wait},
            )
            sleep(wait)
            backoff = min(backoff * 2, FETCH_MAX_BACKOFF_SECONDS)
        if _cancelled(cancel_event):
            return dict(CANCELLED)

        headers = _build_headers(user_agent, extra_headers)
        try:
            response = session.get(
                url,
                headers=headers,
                timeout=timeout or REQUEST_TIMEOUT_SECONDS,
                allow_redirects=True,
                stream=True,
            )
        except requests.RequestException as exc:
            logger.warning(
                "fetch.request_exception",
                extra={"url": url, "attempt": attempt, "error": str(exc)},
            )
            failure = {"error": f"Failed to fetch URL: {exc}"}
            continue

        status = response.status_code
        if status in TRANSIENT_STATUS_CODES:
            response.close()
            logger.warning(
                "fetch.retryable_status",
                extra={"url": url, "status": status, "attempt": attempt},
            )
            failure = {**_http_failure(status), "retry_after": _retry_after(response)}
            continue
        if status >= 400:
            logger.error("Non-retriable status %s for %s", status, url)
            failure = _http_failure(status)
            if status == 404:
                failure["error_html"] = _error_page(response, cancel_event)
            response.close()
            return failure

        try:
            raw = _read_body(response, cancel_event)
        except requests.RequestException as exc:
            return {"error": f"Failed to read response body: {exc}"}
        finally:
            response.close()
        if raw is None:
            logger.debug("fetch.cancelled", extra={"url": url, "attempt": attempt})
            return dict(CANCELLED)

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        logger.debug(
            "fetch.success",
            extra={"url": response.url, "status": status, "attempts": attempt, "elapsed_ms": elapsed_ms},
        )
        return {
            "html": _decode_body(response, raw),
            "final_url": response.url,
            "status_code": status,
            "response_headers": dict(response.headers),
            "request_headers": headers,
            "elapsed_ms": elapsed_ms,
        }

    failure.pop("retry_after", None)
    return failure


def fetch_article(
    url: str,
    *,
    session: Optional[requests.Session] = None,
    timeout: Optional[float] = None,
    sleep: Optional[SleepFn] = None,
    cancel_event: Optional[threading.Event] = None,
) -> dict:
    """Fetch article HTML, retrying once with the alternate header profile.

    Raises ``FetchCancelled`` when ``cancel_event`` fires, ``PageNotFoundError``
    on a 404 and ``FetchError`` for every other failure.
    """
    result: dict = {}
    for profile in (None, alternate_headers(url)):
        if profile is not None:
            logger.info("fetch.alternate_profile", extra={"url": url})
        result = fetch_with_resilience(
            url,
            session=session,
            timeout=timeout,
            sleep=sleep,
            extra_headers=profile,
            cancel_event=cancel_event,
        )
        if result.get("cancelled"):
            raise FetchCancelled("Fetch cancelled", url=url)
        if result.get("html"):
            return result
        if "error" not in result:
            result = {"error": "Invalid HTML", "status_code": result.get("status_code")}

    if result.get("status_code") == 404:
        error_html = result.get("error_html")
        metadata = get_article_metadata(parse_html(error_html), url) if error_html else None
        raise PageNotFoundError(result["error"], url=url, metadata=metadata)
    raise FetchError(result.get("error") or "Failed to fetch URL", url=url)
