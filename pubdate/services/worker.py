from __future__ import annotations

import threading
import time
from typing import Any, Optional

import structlog

from pubdate.data import SiteData, load_site_data
from pubdate.models.job import FAILED, SUCCEEDED, Job, result_key
from pubdate.models.result import ExtractionResult
from pubdate.services.acquisition import PageLoader
from pubdate.services.broker import JobBroker
from pubdate.services.browser import BrowserCluster
from pubdate.services.engine import ExtractionEngine
from pubdate.services.exceptions import (
    DateNotFoundError,
    ExtractionError,
    to_extraction_error,
)
from pubdate.utils.correlation import bind_job_context, clear_correlation_context
from pubdate.utils.result_cache import BoundedCache

logger = structlog.get_logger(__name__)


class WorkerPool:
    """Fixed set of threads pulling jobs from the broker.

    Each job loads its page, runs the engine and acknowledges exactly one
    terminal outcome. Retryable failures go back to the broker with
    exponential backoff until ``max_attempts`` is spent.
    """

    def __init__(
        self,
        broker: JobBroker,
        loader: PageLoader,
        engine: ExtractionEngine,
        result_cache: BoundedCache,
        *,
        method_cache: Optional[BoundedCache] = None,
        cluster: Optional[BrowserCluster] = None,
        site_data: Optional[SiteData] = None,
        concurrency: int = 10,
        backoff_seconds: float = 1.0,
        max_backoff_seconds: float = 30.0,
        idle_close_seconds: float = 60.0,
        poll_seconds: float = 1.0,
        janitor_seconds: Optional[float] = None,
    ) -> None:
        self.broker = broker
        self.loader = loader
        self.engine = engine
        self.result_cache = result_cache
        self.method_cache = method_cache
        self.cluster = cluster
        self.site_data = site_data or load_site_data()
        self.concurrency = max(1, concurrency)
        self.backoff_seconds = backoff_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self.idle_close_seconds = idle_close_seconds
        self.poll_seconds = poll_seconds
        self.janitor_seconds = janitor_seconds or max(broker.lease_seconds / 3, 1.0)
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    # -- lifecycle -----------------------------------------------------

    @property
    def running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._threads = [
            threading.Thread(
                target=self._loop, name=f"pubdate-worker-{index}", daemon=True
            )
            for index in range(self.concurrency)
        ]
        self._threads.append(
            threading.Thread(target=self._janitor, name="pubdate-janitor", daemon=True)
        )
        for thread in self._threads:
            thread.start()
        logger.info(event="worker.started", concurrency=self.concurrency)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []
        logger.info(event="worker.stopped")

    def close(self, clear_cache: bool = False) -> None:
        """Close the browser cluster now and optionally drop both caches."""
        if clear_cache:
            self.result_cache.clear()
            if self.method_cache is not None:
                self.method_cache.clear()
        if self.cluster is not None:
            self.cluster.close()
        logger.info(event="worker.closed", cleared_cache=clear_cache)

    # -- job handling --------------------------------------------------

    def execute(self, job: Job) -> ExtractionResult:
        """Load the page and extract; raises on any failure."""
        site = self.site_data.site_for(job.url)
        page = self.loader.load(job.url, job.options, site)
        result = self.engine.extract(
            page.html, job.url, check_modified=job.options.check_modified
        )
        if not result.found:
            raise DateNotFoundError(
                "Publish date not found", url=job.url, metadata=result.metadata()
            )
        return result

    def backoff_for(self, attempts: int) -> float:
        return min(
            self.backoff_seconds * (2 ** max(attempts - 1, 0)), self.max_backoff_seconds
        )

    def process(self, job: Job) -> Optional[dict[str, Any]]:
        """Run one leased job; returns the acknowledged outcome, or None on retry."""
        bind_job_context(job_id=job.id, url=job.url, attempt=job.attempts)
        started = time.perf_counter()
        try:
            try:
                result = self.execute(job)
            except Exception as exc:
                error = to_extraction_error(exc, job.url)
                elapsed_ms = int((time.perf_counter() - started) * 1000)
                if error.retryable and job.attempts < job.max_attempts:
                    delay = self.backoff_for(job.attempts)
                    job.error = error.message
                    job.errorType = error.error_type
                    logger.warning(
                        event="worker.job_retrying",
                        error_type=error.error_type,
                        error=error.message,
                        attempts=job.attempts,
                        delay_seconds=delay,
                        elapsed_ms=elapsed_ms,
                    )
                    self.broker.retry(job, delay)
                    return None
                job.mark(FAILED, error=error.message, error_type=error.error_type)
                log = logger.info if isinstance(error, DateNotFoundError) else logger.warning
                log(
                    event="worker.job_failed",
                    error_type=error.error_type,
                    error=error.message,
                    attempts=job.attempts,
                    elapsed_ms=elapsed_ms,
                )
                return self._finish(job, error)

            job.mark(SUCCEEDED)
            logger.info(
                event="worker.job_succeeded",
                method=result.method,
                publish_date=result.publish_date.isoformat() if result.publish_date else None,
                attempts=job.attempts,
                elapsed_ms=int((time.perf_counter() - started) * 1000),
            )
            return self._finish(job, result)
        finally:
            self._maybe_schedule_close()
            clear_correlation_context()

    def _finish(self, job: Job, value: ExtractionResult | ExtractionError) -> dict[str, Any]:
        cacheable = not job.options.disable_cache
        if cacheable:
            self.result_cache.set(result_key(job.url, job.options.check_modified), value)
        outcome: dict[str, Any] = {
            "job_id": job.id,
            "key": job.key,
            "url": job.url,
            "status": job.status,
            "attempts": job.attempts,
            "cacheable": cacheable,
            "result": None,
            "error": None,
        }
        if isinstance(value, ExtractionError):
            outcome["error"] = value.to_dict()
        else:
            outcome["result"] = value.to_dict()
        self.broker.ack(job, outcome)
        return outcome

    def _maybe_schedule_close(self) -> None:
        if self.cluster is None or not self.cluster.running:
            return
        if self.broker.pending() == 0:
            self.cluster.schedule_close(self.idle_close_seconds)

    # -- threads -------------------------------------------------------

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                job = self.broker.dequeue(timeout=self.poll_seconds)
            except Exception as exc:
                logger.error(event="worker.dequeue_failed", error=str(exc))
                self._stop.wait(self.poll_seconds)
                continue
            if job is None:
                continue
            if self.cluster is not None:
                self.cluster.cancel_scheduled_close()
            self.process(job)

    def _janitor(self) -> None:
        while not self._stop.wait(self.janitor_seconds):
            try:
                requeued = self.broker.requeue_expired()
            except Exception as exc:
                logger.error(event="worker.requeue_failed", error=str(exc))
                continue
            if requeued:
                logger.info(event="worker.requeued_expired", count=requeued)


__all__ = ["WorkerPool"]
