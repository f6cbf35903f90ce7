from __future__ import annotations

import os
import queue
import threading
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import structlog
from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import sync_playwright

from pubdate.services.exceptions import (
    ExtractionError,
    FetchCancelled,
    FetchError,
    PageNotFoundError,
)
from pubdate.services.fetch import DESKTOP_USER_AGENT
from pubdate.services.metadata import get_article_metadata
from pubdate.utils.text_cleaner import parse_html

logger = structlog.get_logger(__name__)

BROWSER_LAUNCH_ARGS = [
    arg.strip()
    for arg in os.getenv(
        "BROWSER_LAUNCH_ARGS",
        "--no-sandbox,--disable-setuid-sandbox,--disable-dev-shm-usage,"
        "--ignore-certificate-errors,--disable-gpu",
    ).split(",")
    if arg.strip()
]
ALLOWED_RESOURCE_TYPES = frozenset({"document"})
CANCEL_POLL_SECONDS = 0.25


class PlaywrightHandle:
    """A running Playwright driver plus one Chromium browser."""

    def __init__(self) -> None:
        self._playwright = sync_playwright().start()
        self.browser = self._playwright.chromium.launch(
            headless=True, args=BROWSER_LAUNCH_ARGS
        )

    def new_context(self, **kwargs: Any) -> Any:
        return self.browser.new_context(**kwargs)

    def close(self) -> None:
        try:
            self.browser.close()
        finally:
            self._playwright.stop()


BrowserFactory = Callable[[], Any]


@dataclass
class RenderTask:
    url: str
    cancel_event: threading.Event
    timeout_ms: int
    future: Future = field(default_factory=Future)


class BrowserCluster:
    """Pool of browser slots, started on first use and closed when idle.

    Each slot is a thread that owns its own driver and browser, since
    Playwright's sync objects must stay on the thread that created them.
    Page creation is serialized across slots.
    """

    def __init__(
        self,
        max_concurrency: int = 2,
        navigation_timeout_ms: int = 30_000,
        *,
        browser_factory: BrowserFactory = PlaywrightHandle,
        user_agent: str = DESKTOP_USER_AGENT,
    ) -> None:
        self.max_concurrency = max(1, max_concurrency)
        self.navigation_timeout_ms = navigation_timeout_ms
        self.browser_factory = browser_factory
        self.user_agent = user_agent
        self._tasks: "queue.Queue[Optional[RenderTask]]" = queue.Queue()
        self._slots: list[threading.Thread] = []
        self._lifecycle_lock = threading.Lock()
        self._page_lock = threading.Lock()
        self._close_timer: Optional[threading.Timer] = None
        self.launches = 0

    @property
    def running(self) -> bool:
        return bool(self._slots)

    def start(self) -> None:
        with self._lifecycle_lock:
            self._start_locked()

    def _start_locked(self) -> None:
        if self._slots:
            return
        self._tasks = queue.Queue()
        for index in range(self.max_concurrency):
            thread = threading.Thread(
                target=self._slot_main,
                args=(self._tasks,),
                name=f"browser-slot-{index}",
                daemon=True,
            )
            thread.start()
            self._slots.append(thread)
        logger.info(event="browser.cluster_started", slots=self.max_concurrency)

    def submit(
        self,
        url: str,
        *,
        cancel_event: Optional[threading.Event] = None,
        timeout_ms: Optional[int] = None,
    ) -> Future:
        self.cancel_scheduled_close()
        task = RenderTask(
            url=url,
            cancel_event=cancel_event or threading.Event(),
            timeout_ms=timeout_ms or self.navigation_timeout_ms,
        )
        with self._lifecycle_lock:
            self._start_locked()
            self._tasks.put(task)
        return task.future

    def render(
        self,
        url: str,
        *,
        cancel_event: Optional[threading.Event] = None,
        timeout_ms: Optional[int] = None,
    ) -> dict:
        cancel_event = cancel_event or threading.Event()
        future = self.submit(url, cancel_event=cancel_event, timeout_ms=timeout_ms)
        while True:
            try:
                return future.result(timeout=CANCEL_POLL_SECONDS)
            except FutureTimeoutError:
                if cancel_event.is_set():
                    future.cancel()
                    raise FetchCancelled("Render cancelled", url=url)

    def schedule_close(self, delay: float) -> None:
        with self._lifecycle_lock:
            if not self._slots:
                return
            if self._close_timer is not None:
                self._close_timer.cancel()
            timer = threading.Timer(delay, self.close)
            timer.daemon = True
            self._close_timer = timer
            timer.start()
        logger.debug(event="browser.close_scheduled", delay_seconds=delay)

    def cancel_scheduled_close(self) -> None:
        with self._lifecycle_lock:
            if self._close_timer is not None:
                self._close_timer.cancel()
                self._close_timer = None

    def close(self, timeout: float = 10.0) -> None:
        with self._lifecycle_lock:
            if self._close_timer is not None:
                self._close_timer.cancel()
                self._close_timer = None
            slots, self._slots = self._slots, []
            for _ in slots:
                self._tasks.put(None)
        current = threading.current_thread()
        for thread in slots:
            if thread is not current:
                thread.join(timeout)
        if slots:
            logger.info(event="browser.cluster_closed", slots=len(slots))

    # -- slot internals ------------------------------------------------

    def _slot_main(self, tasks: "queue.Queue[Optional[RenderTask]]") -> None:
        handle = None
        try:
            while True:
                task = tasks.get()
                if task is None:
                    break
                if not task.future.set_running_or_notify_cancel():
                    continue
                if task.cancel_event.is_set():
                    task.future.set_exception(FetchCancelled("Render cancelled", url=task.url))
                    continue
                try:
                    if handle is None:
                        handle = self.browser_factory()
                        self.launches += 1
                    result = self._render(handle, task)
                except BaseException as exc:  # delivered to the waiting caller
                    task.future.set_exception(exc)
                else:
                    task.future.set_result(result)
        finally:
            if handle is not None:
                try:
                    handle.close()
                except Exception as exc:  # pragma: no cover - best effort shutdown
                    logger.warning(event="browser.close_failed", error=str(exc))

    def _render(self, handle: Any, task: RenderTask) -> dict:
        url = task.url
        cancel_event = task.cancel_event
        with self._page_lock:
            context = handle.new_context(
                java_script_enabled=False,
                user_agent=self.user_agent,
                ignore_https_errors=True,
            )
            page = context.new_page()

        def _route(route: Any) -> None:
            if cancel_event.is_set():
                route.abort()
            elif route.request.resource_type in ALLOWED_RESOURCE_TYPES:
                route.continue_()
            else:
                route.abort()

        try:
            page.route("**/*", _route)
            response = page.goto(url, wait_until="domcontentloaded", timeout=task.timeout_ms)
            if cancel_event.is_set():
                raise FetchCancelled("Render cancelled", url=url)
            html = page.content()
            status = response.status if response is not None else None
            if status == 404:
                metadata = get_article_metadata(parse_html(html), url)
                raise PageNotFoundError("Page not found", url=url, metadata=metadata)
            if status is not None and status >= 400:
                raise FetchError(f"Render failed: HTTP {status}", url=url)
            logger.debug(event="browser.rendered", url=url, status_code=status)
            return {"html": html, "final_url": page.url, "status_code": status}
        except ExtractionError:
            raise
        except PlaywrightError as exc:
            if cancel_event.is_set():
                raise FetchCancelled("Render cancelled", url=url) from exc
            raise FetchError(f"Playwright failed to render URL: {exc}", url=url) from exc
        finally:
            try:
                context.close()
            except PlaywrightError:
                logger.debug(event="browser.context_close_failed", url=url)


__all__ = ["BrowserCluster", "PlaywrightHandle", "RenderTask"]
