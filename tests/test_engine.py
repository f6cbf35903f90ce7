from datetime import date

from pubdate.models.candidate import DateLocation


def _page(head: str = "", body: str = "") -> str:
    return f"<html><head>{head}</head><body>{body}</body></html>"


META_HEAD = (
    "<title>Story - Example News</title>"
    '<meta property="og:site_name" content="Example News">'
    '<meta property="article:published_time" content="2024-05-01T10:00:00Z">'
)


def test_meta_tag_end_to_end(engine):
    result = engine.extract(_page(META_HEAD, "<p>Hello</p>"), "https://example.com/story")

    assert result.publish_date == date(2024, 5, 1)
    assert result.location is DateLocation.META
    assert result.method == "meta"
    assert result.html == (
        '<meta property="article:published_time" content="2024-05-01T10:00:00Z">'
    )
    assert result.organization == "Example News"
    assert result.title == "Story"
    assert result.modify_date is None


def test_recent_url_date_end_to_end(engine):
    result = engine.extract(_page(body="<p>No markup dates</p>"), "https://example.com/2024/06/14/some-story")

    assert result.publish_date == date(2024, 6, 14)
    assert result.location is DateLocation.URL
    assert result.method == "url"
    assert result.html == "https://example.com/2024/06/14/some-story"


def test_recent_url_beats_meta(engine):
    head = '<meta property="article:published_time" content="2024-06-01">'
    result = engine.extract(_page(head), "https://example.com/2024/06/14/some-story")
    assert result.method == "url"
    assert result.publish_date == date(2024, 6, 14)


def test_old_url_date_yields_to_markup(engine):
    head = '<meta property="article:published_time" content="2023-02-11">'
    result = engine.extract(_page(head), "https://example.com/2023/02/10/old-story")
    assert result.method == "meta"
    assert result.publish_date == date(2023, 2, 11)


def test_old_url_date_used_as_last_resort(engine):
    result = engine.extract(_page(body="<p>Nothing</p>"), "https://example.com/2023/02/10/old-story")
    assert result.method == "url_fallback"
    assert result.publish_date == date(2023, 2, 10)
    assert result.location is DateLocation.URL


def test_embedded_json_string_with_modify_date(engine):
    script = (
        '<script>window.__DATA__ = {"datePublished":"2024-04-02T08:00:00-04:00",'
        '"dateModified":"2024-04-05T09:00:00-04:00"};</script>'
    )
    result = engine.extract(_page(body=script), "https://example.com/story", check_modified=True)

    assert result.publish_date == date(2024, 4, 2)
    assert result.modify_date == date(2024, 4, 5)
    assert result.method == "html_string"
    assert result.location is DateLocation.STRING
    assert result.html == '{ "datePublished": "2024-04-02T08:00:00-04:00" }'


def test_modify_date_not_after_publish_is_dropped(engine):
    script = (
        '<script>var d = {"datePublished":"2024-04-05",'
        '"dateModified":"2024-04-05"};</script>'
    )
    result = engine.extract(_page(body=script), "https://example.com/story", check_modified=True)
    assert result.publish_date == date(2024, 4, 5)
    assert result.modify_date is None


def test_linked_data_block(engine):
    block = (
        '<script type="application/ld+json">{"@type": "NewsArticle", '
        '"headline": "Big Story", "datePublished" : "2024-04-02T08:00:00Z", '
        '"publisher": {"@type": "Organization", "name": "Daily Planet"}}</script>'
    )
    result = engine.extract(_page(block), "https://example.com/story")

    assert result.method == "linked_data"
    assert result.location is DateLocation.DATA
    assert result.publish_date == date(2024, 4, 2)
    assert result.html == '{ "datePublished": "2024-04-02T08:00:00Z" }'
    assert result.organization == "Daily Planet"
    assert result.title == "Big Story"


def test_selector_text(engine):
    body = '<span class="post-date">Posted on June 1, 2024</span>'
    result = engine.extract(_page(body=body), "https://example.com/story")
    assert result.method == "selectors"
    assert result.location is DateLocation.ELEMENT
    assert result.publish_date == date(2024, 6, 1)


def test_time_element_in_article(engine):
    body = '<article><time datetime="2024-02-20T10:00:00Z">Feb 20</time></article>'
    result = engine.extract(_page(body=body), "https://example.com/story")
    assert result.method == "time_elements"
    assert result.location is DateLocation.ATTRIBUTE
    assert result.publish_date == date(2024, 2, 20)


def test_generic_selector_requires_single_match(engine):
    single = engine.extract(
        _page(body='<div class="date">March 3, 2024</div>'), "https://example.com/story"
    )
    assert single.method == "generic_selectors"
    assert single.publish_date == date(2024, 3, 3)

    repeated = engine.extract(
        _page(
            body='<div class="date">March 3, 2024</div><div class="date">March 4, 2024</div>'
        ),
        "https://example.com/story",
    )
    assert repeated.publish_date is None
    assert repeated.method is None


def test_site_override_selector_attribute(engine):
    head = '<meta property="article:published_time" content="2024-05-01">'
    body = '<time data-testid="timestamp" datetime="2024-06-10T08:00:00.000Z">10 June</time>'
    result = engine.extract(_page(head, body), "https://www.bbc.com/news/articles/abc")
    assert result.method == "site_override"
    assert result.location is DateLocation.ATTRIBUTE
    assert result.publish_date == date(2024, 6, 10)


def test_site_override_stop_if_not_found_halts_chain(engine):
    head = '<meta property="article:published_time" content="2024-05-01">'
    result = engine.extract(_page(head), "https://www.npr.org/2024/06/14/story")
    assert result.publish_date is None
    assert result.organization == "npr.org"


def test_video_page_absolute_date(engine):
    script = '<script>var ytInitialData = {"dateText":{"simpleText":"Jun 3, 2024"}};</script>'
    result = engine.extract(_page(body=script), "https://www.youtube.com/watch?v=abc")
    assert result.method == "video_page"
    assert result.publish_date == date(2024, 6, 3)


def test_video_page_relative_date(engine):
    script = (
        '<script>var ytInitialData = {"dateText":{"simpleText":"Streamed 2 days ago"}};'
        "</script>"
    )
    result = engine.extract(_page(body=script), "https://www.youtube.com/watch?v=abc")
    assert result.publish_date == date(2024, 6, 13)


def test_not_found_keeps_metadata(engine):
    head = (
        '<meta property="og:title" content="A quiet page">'
        '<meta name="description" content="Nothing dated here">'
    )
    result = engine.extract(_page(head, "<p>Hi</p>"), "https://www.example.org/about")

    assert not result.found
    assert result.metadata() == {
        "organization": "example.org",
        "title": "A quiet page",
        "description": "Nothing dated here",
    }


def test_find_date_single_pass(engine):
    candidate, method = engine.find_date(_page(META_HEAD), "https://example.com/story")
    assert method == "meta"
    assert candidate.value == date(2024, 5, 1)


def test_structured_data_beats_generic_selector(engine):
    block = '<script type="application/ld+json">{"datePublished" : "2024-03-01"}</script>'
    body = '<div class="date">March 9, 2024</div>'
    result = engine.extract(_page(block, body), "https://example.com/story")
    assert result.method == "linked_data"
    assert result.publish_date == date(2024, 3, 1)


def test_scenarios_with_clock_near_the_date(site_data):
    from datetime import datetime

    from pubdate.services.engine import ExtractionEngine
    from pubdate.services.normalizer import DateNormalizer

    march = ExtractionEngine(
        DateNormalizer(clock=lambda: datetime(2021, 3, 5, 9, 0), site_data=site_data), site_data
    )

    meta = march.extract(
        _page('<meta property="article:published_time" content="2021-03-04T10:00:00Z">'),
        "https://example.com/a",
    )
    assert meta.publish_date == date(2021, 3, 4)
    assert meta.location is DateLocation.META

    url = march.extract(_page(body="<p>text</p>"), "https://example.com/2021/03/04/headline")
    assert url.publish_date == date(2021, 3, 4)
    assert url.method == "url"


def test_short_numeric_text_is_not_a_date(engine):
    rating = engine.extract(
        _page(body='<div class="byline">By Jo Smith | Rated 4/5</div>'),
        "https://example.com/story",
    )
    assert rating.publish_date is None
    assert rating.method is None

    fraction = engine.extract(
        _page(body='<article><span class="date">5/6</span></article>'),
        "https://example.com/story",
    )
    assert fraction.publish_date is None
