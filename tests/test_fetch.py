import threading

import pytest

from pubdate.services import fetch
from pubdate.services.exceptions import FetchCancelled, FetchError, PageNotFoundError


class FakeResponse:
    def __init__(self, status_code=200, body=b"<html><body>ok</body></html>", headers=None):
        self.status_code = status_code
        self.headers = headers or {"Content-Type": "text/html; charset=utf-8"}
        self.url = "https://example.com/final"
        self.encoding = "utf-8"
        self.apparent_encoding = "utf-8"
        self._body = body
        self.closed = False

    def iter_content(self, chunk_size=1):
        yield self._body

    def close(self):
        self.closed = True


class FakeSession:
    def __init__(self, responses):
        self._responses = list(responses)
        self.calls = []

    def get(self, url, **kwargs):
        self.calls.append({"url": url, **kwargs})
        return self._responses.pop(0)


def test_fetch_success_returns_payload():
    session = FakeSession([FakeResponse()])

    payload = fetch.fetch_with_resilience("https://example.com/a", session=session)

    assert payload["html"] == "<html><body>ok</body></html>"
    assert payload["final_url"] == "https://example.com/final"
    assert payload["status_code"] == 200
    assert session.calls[0]["stream"] is True


def test_transient_status_is_retried():
    sleeps = []
    session = FakeSession([FakeResponse(status_code=503), FakeResponse()])

    payload = fetch.fetch_with_resilience(
        "https://example.com/a", session=session, sleep=sleeps.append
    )

    assert payload["status_code"] == 200
    assert len(session.calls) == 2
    assert sleeps == [fetch.FETCH_BACKOFF_FACTOR]


def test_retry_after_header_caps_wait():
    sleeps = []
    session = FakeSession(
        [FakeResponse(status_code=429, headers={"Retry-After": "120"}), FakeResponse()]
    )

    fetch.fetch_with_resilience("https://example.com/a", session=session, sleep=sleeps.append)

    assert sleeps == [fetch.FETCH_MAX_BACKOFF_SECONDS]


def test_fetch_article_404_retries_with_desktop_profile():
    session = FakeSession([FakeResponse(status_code=404), FakeResponse(status_code=404)])

    with pytest.raises(PageNotFoundError) as excinfo:
        fetch.fetch_article("https://example.com/missing", session=session)

    assert excinfo.value.url == "https://example.com/missing"
    second_headers = session.calls[1]["headers"]
    assert second_headers["User-Agent"] == fetch.DESKTOP_USER_AGENT
    assert second_headers["Referer"] == "https://example.com"


def test_fetch_article_404_keeps_error_page_metadata():
    page = (
        b"<html><head><title>Page Missing - Example News</title>"
        b'<meta name="description" content="We could not find that story">'
        b"</head><body>gone</body></html>"
    )
    session = FakeSession(
        [FakeResponse(status_code=404, body=page), FakeResponse(status_code=404, body=page)]
    )

    with pytest.raises(PageNotFoundError) as excinfo:
        fetch.fetch_article("https://example.com/missing", session=session)

    metadata = excinfo.value.metadata
    assert metadata["title"] == "Page Missing"
    assert metadata["description"] == "We could not find that story"
    assert metadata["organization"] == "example.com"


def test_fetch_article_other_failures_raise_fetch_error():
    session = FakeSession([FakeResponse(status_code=403), FakeResponse(status_code=403)])

    with pytest.raises(FetchError) as excinfo:
        fetch.fetch_article("https://example.com/a", session=session)

    assert not isinstance(excinfo.value, PageNotFoundError)
    assert "HTTP 403" in str(excinfo.value)


def test_fetch_article_empty_body_tries_alternate_profile():
    session = FakeSession([FakeResponse(body=b""), FakeResponse()])

    payload = fetch.fetch_article("https://example.com/a", session=session)

    assert payload["html"].startswith("<html>")
    assert len(session.calls) == 2


def test_cancelled_fetch_raises():
    cancel = threading.Event()
    cancel.set()
    session = FakeSession([FakeResponse()])

    with pytest.raises(FetchCancelled):
        fetch.fetch_article("https://example.com/a", session=session, cancel_event=cancel)

    assert session.calls == []
