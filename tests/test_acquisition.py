import threading

import pytest

from pubdate.models.job import ExtractOptions
from pubdate.models.site import FetchMethod
from pubdate.services.acquisition import PageLoader
from pubdate.services.exceptions import (
    FetchCancelled,
    FetchError,
    JobTimeoutError,
    PageNotFoundError,
)
from pubdate.utils.result_cache import BoundedCache

URL = "https://www.example.com/story"


class FakeFetcher:
    def __init__(self, html="<html>fetched</html>", error=None, block=False):
        self.html = html
        self.error = error
        self.block = block
        self.calls = []
        self.events = []

    def __call__(self, url, cancel_event=None, timeout=None):
        self.calls.append(url)
        self.events.append(cancel_event)
        if self.block:
            cancel_event.wait(5)
            raise FetchCancelled("Fetch cancelled", url=url)
        if self.error is not None:
            raise self.error
        return {"html": self.html, "final_url": url, "status_code": 200}


class FakeRenderer:
    def __init__(self, html="<html>rendered</html>", error=None):
        self.html = html
        self.error = error
        self.calls = []

    def __call__(self, url, cancel_event=None, timeout_ms=None):
        self.calls.append((url, timeout_ms))
        if self.error is not None:
            raise self.error
        return {"html": self.html, "final_url": url, "status_code": 200}


@pytest.fixture()
def method_cache():
    return BoundedCache(10, 60, name="methods")


def _loader(method_cache, fetcher, renderer=None, render_delay=0.05):
    return PageLoader(
        method_cache=method_cache,
        fetcher=fetcher,
        renderer=renderer,
        render_delay=render_delay,
        max_workers=4,
    )


def test_fast_fetch_never_starts_render(method_cache):
    fetcher, renderer = FakeFetcher(), FakeRenderer()
    loader = _loader(method_cache, fetcher, renderer, render_delay=2.0)
    try:
        page = loader.load(URL, ExtractOptions(timeout_ms=5000))
    finally:
        loader.shutdown()

    assert page.method is FetchMethod.FETCH
    assert page.html == "<html>fetched</html>"
    assert renderer.calls == []
    assert method_cache.get("example.com") == "fetch"


def test_memoized_render_skips_fetch(method_cache):
    method_cache.set("example.com", "render")
    fetcher, renderer = FakeFetcher(), FakeRenderer()
    loader = _loader(method_cache, fetcher, renderer)
    try:
        page = loader.load(URL, ExtractOptions(timeout_ms=4000))
    finally:
        loader.shutdown()

    assert page.method is FetchMethod.RENDER
    assert fetcher.calls == []
    assert renderer.calls == [(URL, 4000)]


def test_render_wins_after_fetch_fails(method_cache):
    fetcher = FakeFetcher(error=FetchError("HTTP 403", url=URL))
    renderer = FakeRenderer()
    loader = _loader(method_cache, fetcher, renderer)
    try:
        page = loader.load(URL, ExtractOptions(timeout_ms=5000))
    finally:
        loader.shutdown()

    assert page.method is FetchMethod.RENDER
    assert page.html == "<html>rendered</html>"
    assert method_cache.get("example.com") == "render"


def test_losing_fetch_is_cancelled(method_cache):
    fetcher = FakeFetcher(block=True)
    renderer = FakeRenderer()
    loader = _loader(method_cache, fetcher, renderer, render_delay=0.01)
    try:
        page = loader.load(URL, ExtractOptions(timeout_ms=5000))
    finally:
        loader.shutdown()

    assert page.method is FetchMethod.RENDER
    assert fetcher.events[0].is_set()


def test_page_not_found_preferred_over_fetch_error(method_cache):
    fetcher = FakeFetcher(error=FetchError("Connection reset", url=URL))
    renderer = FakeRenderer(error=PageNotFoundError("HTTP 404", url=URL, metadata={"title": "Gone"}))
    loader = _loader(method_cache, fetcher, renderer)
    try:
        with pytest.raises(PageNotFoundError) as excinfo:
            loader.load(URL, ExtractOptions(timeout_ms=5000))
    finally:
        loader.shutdown()

    assert excinfo.value.metadata == {"title": "Gone"}
    assert method_cache.get("example.com") is None


def test_caller_forced_method_is_not_memoized(method_cache):
    fetcher, renderer = FakeFetcher(), FakeRenderer()
    loader = _loader(method_cache, fetcher, renderer)
    try:
        page = loader.load(URL, ExtractOptions(method=FetchMethod.FETCH))
    finally:
        loader.shutdown()

    assert page.method is FetchMethod.FETCH
    assert renderer.calls == []
    assert method_cache.get("example.com") is None


def test_site_forced_render_falls_back_to_fetch_without_renderer(method_cache, site_data):
    url = "https://www.nytimes.com/2024/06/14/world/story.html"
    fetcher = FakeFetcher()
    loader = _loader(method_cache, fetcher)
    try:
        page = loader.load(url, ExtractOptions(), site_data.site_for(url))
    finally:
        loader.shutdown()

    assert page.method is FetchMethod.FETCH
    assert fetcher.calls == [url]


def test_disable_cache_ignores_memoized_method(method_cache):
    method_cache.set("example.com", "render")
    fetcher, renderer = FakeFetcher(), FakeRenderer()
    loader = _loader(method_cache, fetcher, renderer, render_delay=2.0)
    try:
        page = loader.load(URL, ExtractOptions(disable_cache=True, timeout_ms=5000))
    finally:
        loader.shutdown()

    assert page.method is FetchMethod.FETCH
    assert method_cache.get("example.com") == "render"


def test_blocking_fetch_without_renderer_times_out(method_cache):
    fetcher = FakeFetcher(block=True)
    loader = _loader(method_cache, fetcher)
    try:
        with pytest.raises(JobTimeoutError):
            loader.load(URL, ExtractOptions(timeout_ms=50))
    finally:
        loader.shutdown()

    assert fetcher.events[0].is_set()
    assert isinstance(fetcher.events[0], threading.Event)
