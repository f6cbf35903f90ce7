from __future__ import annotations

import os
import threading
import time
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable, Optional
from urllib.parse import urlparse

import structlog

from pubdate.data import SiteData, load_site_data
from pubdate.models.job import (
    FAILED,
    SUCCEEDED,
    ExtractOptions,
    Job,
    result_key,
)
from pubdate.models.result import ExtractionResult
from pubdate.services.broker import JobBroker
from pubdate.services.exceptions import (
    ExtractionError,
    JobTimeoutError,
    ValidationError,
)
from pubdate.utils.correlation import bind_job_context, update_context
from pubdate.utils.result_cache import BoundedCache

logger = structlog.get_logger(__name__)

ALLOWED_SCHEMES = frozenset({"http", "https"})
MEDIA_EXTENSIONS = frozenset(
    ext.strip().lower()
    for ext in os.getenv(
        "MEDIA_EXTENSIONS",
        "pdf,jpg,jpeg,png,gif,webp,svg,bmp,tif,tiff,ico,"
        "mp3,wav,ogg,m4a,flac,aac,mp4,m4v,mov,avi,mkv,webm,wmv,flv,"
        "zip,gz,rar,7z,doc,docx,xls,xlsx,ppt,pptx",
    ).split(",")
    if ext.strip()
)


def validate_url(url: Optional[str], site_data: Optional[SiteData] = None) -> str:
    """Return a cleaned URL or raise ``ValidationError`` before any network call."""
    candidate = (url or "").strip()
    parsed = urlparse(candidate)
    if parsed.scheme.lower() not in ALLOWED_SCHEMES or not parsed.hostname:
        raise ValidationError("Please enter a valid URL", url=candidate or None)

    filename = parsed.path.rsplit("/", 1)[-1]
    extension = filename.rpartition(".")[2].lower() if "." in filename else ""
    if extension in MEDIA_EXTENSIONS:
        text = "PDFs" if extension == "pdf" else "media links"
        raise ValidationError(
            f"Parsing publish dates from {text} is not supported", url=candidate
        )

    site_data = site_data or load_site_data()
    if site_data.is_ignored(candidate):
        raise ValidationError("Parsing publish dates from this site is not supported", url=candidate)
    return candidate


class JobQueue:
    """Caller-facing entry point: cache lookup, coalescing and the timed wait.

    Identical requests in flight share one job and one future. A caller that
    times out gets ``JobTimeoutError`` while the job keeps running, so a later
    call can still be served from the cache. An entry whose completion never
    arrives is replaced by a fresh job after ``inflight_ttl_seconds``.
    """

    def __init__(
        self,
        broker: JobBroker,
        result_cache: BoundedCache,
        *,
        site_data: Optional[SiteData] = None,
        max_attempts: int = 3,
        default_timeout_ms: int = 30_000,
        inflight_ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.broker = broker
        self.result_cache = result_cache
        self.site_data = site_data or load_site_data()
        self.max_attempts = max_attempts
        self.default_timeout_ms = default_timeout_ms
        if inflight_ttl_seconds is None:
            inflight_ttl_seconds = broker.lease_seconds * max_attempts
        self.inflight_ttl_seconds = inflight_ttl_seconds
        self.clock = clock
        self._lock = threading.Lock()
        self._inflight: dict[str, tuple[Job, Future, float]] = {}
        self._unsubscribe = broker.subscribe(self._on_completed)

    def close(self) -> None:
        self._unsubscribe()
        with self._lock:
            inflight, self._inflight = self._inflight, {}
        for job, future, _ in inflight.values():
            if not future.done():
                future.set_exception(
                    JobTimeoutError("Job queue closed before completion", url=job.url)
                )

    def pending(self) -> int:
        with self._lock:
            return len(self._inflight)

    def extract(
        self, url: str, options: Optional[ExtractOptions] = None
    ) -> ExtractionResult:
        """Run one extraction and return its result or raise its typed error."""
        options = options or ExtractOptions(timeout_ms=self.default_timeout_ms)
        url = validate_url(url, self.site_data)
        bind_job_context(url=url)

        if not options.disable_cache:
            cached = self.result_cache.get(result_key(url, options.check_modified))
            if cached is not None:
                logger.info(event="jobs.cache_hit", url=url)
                if isinstance(cached, ExtractionError):
                    raise cached
                return cached

        job, future, created = self._submit(url, options)
        update_context(job_id=job.id)
        if not created:
            logger.info(event="jobs.coalesced", url=url, job_id=job.id)

        timeout = max(options.timeout_ms, 1) / 1000.0
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError:
            logger.warning(
                event="jobs.timeout", url=url, job_id=job.id, timeout_ms=options.timeout_ms
            )
            raise JobTimeoutError(
                f"Timed out after {options.timeout_ms} ms", url=url
            ) from None

    def _submit(
        self, url: str, options: ExtractOptions
    ) -> tuple[Job, Future, bool]:
        job = Job(url=url, options=options, max_attempts=self.max_attempts)
        now = self.clock()
        with self._lock:
            existing = self._inflight.get(job.key)
            if existing is not None and now - existing[2] < self.inflight_ttl_seconds:
                return existing[0], existing[1], False
            future: Future = Future()
            self._inflight[job.key] = (job, future, now)
        if existing is not None:
            logger.warning(event="jobs.inflight_expired", url=url, job_id=existing[0].id)
            if not existing[1].done():
                existing[1].set_exception(
                    JobTimeoutError("No completion received for job", url=url)
                )
        try:
            self.broker.enqueue(job)
        except Exception:
            with self._lock:
                self._inflight.pop(job.key, None)
            raise
        logger.info(
            event="jobs.enqueued",
            url=url,
            job_id=job.id,
            priority=options.priority,
            check_modified=options.check_modified,
        )
        return job, future, True

    def _on_completed(self, outcome: dict[str, Any]) -> None:
        key = outcome.get("key")
        with self._lock:
            entry = self._inflight.get(key)
            if entry is None or entry[0].id != outcome.get("job_id"):
                return
            del self._inflight[key]
        job, future, _ = entry

        if outcome.get("status") == SUCCEEDED and outcome.get("result") is not None:
            value: Any = ExtractionResult.from_dict(outcome["result"])
        else:
            value = ExtractionError.from_dict(
                outcome.get("error") or {"error": "Job failed", "url": job.url}
            )
        if outcome.get("cacheable") and not job.options.disable_cache:
            self.result_cache.set(result_key(job.url, job.options.check_modified), value)

        logger.info(
            event="jobs.completed",
            url=job.url,
            job_id=job.id,
            status=outcome.get("status") or FAILED,
        )
        if future.done():
            return
        if isinstance(value, ExtractionError):
            future.set_exception(value)
        else:
            future.set_result(value)


__all__ = ["JobQueue", "MEDIA_EXTENSIONS", "validate_url"]
