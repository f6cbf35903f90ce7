from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import structlog

from pubdate.config import ExtractorSettings, settings as default_settings
from pubdate.data import load_site_data
from pubdate.services.acquisition import PageLoader
from pubdate.services.broker import JobBroker, create_broker
from pubdate.services.browser import BrowserCluster
from pubdate.services.engine import ExtractionEngine
from pubdate.services.jobs import JobQueue
from pubdate.services.normalizer import DateNormalizer
from pubdate.services.worker import WorkerPool
from pubdate.utils.result_cache import BoundedCache

logger = structlog.get_logger(__name__)


@dataclass
class ExtractorServices:
    """Everything one process needs to accept and run extraction jobs."""

    config: ExtractorSettings
    result_cache: BoundedCache
    method_cache: BoundedCache
    engine: ExtractionEngine
    cluster: Optional[BrowserCluster]
    loader: PageLoader
    broker: JobBroker
    workers: WorkerPool
    queue: JobQueue

    def shutdown(self) -> None:
        self.workers.stop()
        self.queue.close()
        self.workers.close()
        self.loader.shutdown()
        self.broker.close()
        logger.info(event="runtime.shutdown")


def build_services(
    config: Optional[ExtractorSettings] = None,
    *,
    broker: Optional[JobBroker] = None,
    cluster: Optional[BrowserCluster] = None,
) -> ExtractorServices:
    config = config or default_settings
    site_data = load_site_data()

    result_cache = BoundedCache(
        config.CACHE_MAX_ITEMS, config.CACHE_TTL_SECONDS, name="results"
    )
    method_cache = BoundedCache(
        config.CACHE_MAX_ITEMS, config.FETCH_METHOD_CACHE_TTL_SECONDS, name="fetch_methods"
    )
    engine = ExtractionEngine(DateNormalizer(site_data=site_data), site_data)

    if cluster is None and config.RENDER_ENABLED:
        cluster = BrowserCluster(
            config.BROWSER_CONCURRENCY, config.BROWSER_NAVIGATION_TIMEOUT_MS
        )
    loader = PageLoader(
        method_cache=method_cache,
        renderer=cluster.render if cluster is not None else None,
        render_delay=config.RENDER_DELAY_SECONDS,
        max_workers=max(config.WORKER_CONCURRENCY * 2, 2),
    )

    broker = broker or create_broker(
        config.QUEUE_BACKEND,
        redis_url=config.REDIS_URL,
        prefix=config.QUEUE_PREFIX,
        lease_seconds=config.JOB_LEASE_SECONDS,
    )
    workers = WorkerPool(
        broker,
        loader,
        engine,
        result_cache,
        method_cache=method_cache,
        cluster=cluster,
        site_data=site_data,
        concurrency=config.WORKER_CONCURRENCY,
        backoff_seconds=config.JOB_BACKOFF_SECONDS,
        max_backoff_seconds=config.JOB_MAX_BACKOFF_SECONDS,
        idle_close_seconds=config.BROWSER_IDLE_SECONDS,
    )
    queue = JobQueue(
        broker,
        result_cache,
        site_data=site_data,
        max_attempts=config.JOB_MAX_ATTEMPTS,
        default_timeout_ms=config.JOB_TIMEOUT_MS,
    )
    logger.info(
        event="runtime.built",
        queue_backend=config.QUEUE_BACKEND,
        render_enabled=cluster is not None,
        concurrency=config.WORKER_CONCURRENCY,
    )
    return ExtractorServices(
        config=config,
        result_cache=result_cache,
        method_cache=method_cache,
        engine=engine,
        cluster=cluster,
        loader=loader,
        broker=broker,
        workers=workers,
        queue=queue,
    )


__all__ = ["ExtractorServices", "build_services"]
