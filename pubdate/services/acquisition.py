from __future__ import annotations

import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Callable, Optional

import structlog

from pubdate.data import normalise_hostname
from pubdate.models.job import ExtractOptions
from pubdate.models.site import FetchMethod, SiteConfig
from pubdate.services.exceptions import (
    ExtractionError,
    FetchCancelled,
    FetchError,
    JobTimeoutError,
    PageNotFoundError,
    to_extraction_error,
)
from pubdate.services.fetch import fetch_article
from pubdate.utils.result_cache import BoundedCache

logger = structlog.get_logger(__name__)

LoadFn = Callable[..., dict]


@dataclass(frozen=True)
class LoadedPage:
    html: str
    final_url: str
    method: FetchMethod
    status_code: Optional[int] = None


class PageLoader:
    """Obtain article HTML by racing a plain fetch against a browser render.

    A forced method (caller, then site table) or the memoized per-host
    preference is used on its own. Otherwise the fetch starts at once and the
    render only after ``render_delay`` seconds if the fetch has not already
    succeeded; the first success cancels the other side and is memoized.
    """

    def __init__(
        self,
        *,
        method_cache: BoundedCache,
        fetcher: LoadFn = fetch_article,
        renderer: Optional[LoadFn] = None,
        render_delay: float = 2.0,
        max_workers: int = 20,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.method_cache = method_cache
        self.fetcher = fetcher
        self.renderer = renderer
        self.render_delay = render_delay
        self.clock = clock
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="page-loader"
        )

    @property
    def render_enabled(self) -> bool:
        return self.renderer is not None

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def _call(self, method: FetchMethod, url: str, cancel_event: threading.Event, timeout: float) -> LoadedPage:
        if method is FetchMethod.RENDER:
            if self.renderer is None:
                raise FetchError("Rendering is disabled", url=url)
            payload = self.renderer(
                url, cancel_event=cancel_event, timeout_ms=int(timeout * 1000)
            )
        else:
            payload = self.fetcher(url, cancel_event=cancel_event, timeout=timeout)
        return LoadedPage(
            html=payload["html"],
            final_url=payload.get("final_url") or url,
            method=method,
            status_code=payload.get("status_code"),
        )

    def _forced_method(
        self, host: str, options: ExtractOptions, site: Optional[SiteConfig]
    ) -> tuple[Optional[FetchMethod], str]:
        if options.method is not None:
            return options.method, "caller"
        if site is not None and site.fetch_method is not None:
            return site.fetch_method, "site"
        if not options.disable_cache:
            cached = self.method_cache.get(host)
            if cached is not None:
                return FetchMethod(cached), "memoized"
        return None, ""

    def _remember(self, host: str, method: FetchMethod, options: ExtractOptions) -> None:
        if not options.disable_cache:
            self.method_cache.set(host, method.value)

    def load(
        self,
        url: str,
        options: Optional[ExtractOptions] = None,
        site: Optional[SiteConfig] = None,
    ) -> LoadedPage:
        options = options or ExtractOptions()
        host = normalise_hostname(url)
        timeout = max(options.timeout_ms, 1) / 1000.0
        deadline = self.clock() + timeout

        method, reason = self._forced_method(host, options, site)
        if method is FetchMethod.RENDER and not self.render_enabled:
            method = FetchMethod.FETCH
        if method is not None:
            logger.debug(event="acquisition.forced", url=url, method=method.value, reason=reason)
            page = self._call(method, url, threading.Event(), timeout)
            if reason != "caller":
                self._remember(host, method, options)
            return page

        return self._race(url, host, options, deadline)

    def _race(
        self, url: str, host: str, options: ExtractOptions, deadline: float
    ) -> LoadedPage:
        cancel_events = {
            FetchMethod.FETCH: threading.Event(),
            FetchMethod.RENDER: threading.Event(),
        }

        def remaining() -> float:
            return max(deadline - self.clock(), 0.0)

        def submit(method: FetchMethod) -> Future:
            return self._executor.submit(
                self._call, method, url, cancel_events[method], max(remaining(), 0.001)
            )

        pending: dict[Future, FetchMethod] = {}
        fetch_future = submit(FetchMethod.FETCH)
        pending[fetch_future] = FetchMethod.FETCH

        errors: dict[FetchMethod, ExtractionError] = {}
        render_started = False

        try:
            if self.render_enabled:
                done, _ = wait([fetch_future], timeout=min(self.render_delay, remaining()))
                if fetch_future in done and fetch_future.exception() is None:
                    return self._win(fetch_future, host, options, url)
                if remaining() > 0:
                    pending[submit(FetchMethod.RENDER)] = FetchMethod.RENDER
                    render_started = True

            while pending:
                time_left = remaining()
                if time_left <= 0:
                    raise JobTimeoutError("Page acquisition timed out", url=url)
                done, _ = wait(list(pending), timeout=time_left, return_when=FIRST_COMPLETED)
                for future in done:
                    method = pending.pop(future)
                    exc = future.exception()
                    if exc is None:
                        return self._win(future, host, options, url)
                    errors[method] = to_extraction_error(exc, url)
                    logger.info(
                        event="acquisition.side_failed",
                        url=url,
                        method=method.value,
                        error_type=errors[method].error_type,
                        error=errors[method].message,
                    )
        finally:
            for event in cancel_events.values():
                event.set()

        logger.warning(
            event="acquisition.failed",
            url=url,
            render_started=render_started,
            errors={key.value: value.message for key, value in errors.items()},
        )
        for error in errors.values():
            if isinstance(error, PageNotFoundError):
                raise error
        for error in errors.values():
            if not isinstance(error, FetchCancelled):
                raise error
        raise FetchError("Failed to load page", url=url)

    def _win(
        self, future: Future, host: str, options: ExtractOptions, url: str
    ) -> LoadedPage:
        page: LoadedPage = future.result()
        self._remember(host, page.method, options)
        logger.info(event="acquisition.success", url=url, method=page.method.value)
        return page


__all__ = ["LoadedPage", "PageLoader"]
