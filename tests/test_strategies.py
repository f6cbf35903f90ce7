from datetime import date

import pytest

from pubdate.models.candidate import DateLocation
from pubdate.services import strategies
from pubdate.services.strategies import (
    STRATEGY_REGISTRY,
    DateStrategy,
    PageContext,
    StrategyRegistry,
    check_html_string,
    check_url,
    get_path,
)
from pubdate.utils.text_cleaner import format_json_fragment, parse_html


def _context(normalizer, site_data, html="<html></html>", url="https://example.com/a", **kwargs):
    return PageContext(
        html=html,
        url=url,
        soup=parse_html(html),
        normalizer=normalizer,
        data=site_data,
        **kwargs,
    )


def test_registry_orders_by_name_and_skips_unknown():
    first = DateStrategy("first", lambda context: None)
    second = DateStrategy("second", lambda context: None)
    registry = StrategyRegistry([first, second])

    assert registry.ordered(["second", "missing", "first", "second"]) == [second, first]
    assert registry.get("missing") is None
    assert len(registry.all()) == 2


def test_default_registry_has_every_chain_step():
    from pubdate.services.engine import STRATEGY_ORDER

    assert [strategy.name for strategy in STRATEGY_REGISTRY.ordered(STRATEGY_ORDER)] == list(
        STRATEGY_ORDER
    )


@pytest.mark.parametrize(
    "data, path, expected",
    [
        ({"a": {"b": [{"c": 1}]}}, "a.b[0].c", 1),
        ({"a": [1, 2]}, "a[5]", None),
        ({"a": "x"}, "a.b", None),
        ({"dates": {"published": "2024-01-02"}}, "dates.published", "2024-01-02"),
    ],
)
def test_get_path(data, path, expected):
    assert get_path(data, path) == expected


def test_check_url_compact_date(normalizer, site_data):
    context = _context(normalizer, site_data, url="https://example.com/news/20240610/story")
    candidate = check_url(context)
    assert candidate.value == date(2024, 6, 10)
    assert candidate.location is DateLocation.URL


def test_check_url_respects_skip_list(normalizer, site_data):
    context = _context(normalizer, site_data, url="https://edition.cnn.com/videos/2024/06/10/clip")
    assert check_url(context) is None


def test_old_url_date_is_deferred(normalizer, site_data):
    context = _context(normalizer, site_data, url="https://example.com/2022/01/15/story")
    assert strategies.url_strategy(context) is None
    assert context.deferred.value == date(2022, 1, 15)
    assert strategies.url_fallback_strategy(context) is context.deferred


def test_html_string_prefers_publish_key(normalizer, site_data):
    html = '{"createdAt":"2024-01-05","publishedAt":"2024-02-10"}'
    candidate = check_html_string(_context(normalizer, site_data, html=html))
    assert candidate.value == date(2024, 2, 10)
    assert candidate.html == '"publishedAt":"2024-02-10"'


def test_html_string_with_explicit_key(normalizer, site_data):
    html = "<script>var config = {'releaseTime': '2024-03-09'};</script>"
    candidate = check_html_string(_context(normalizer, site_data, html=html), key="releaseTime")
    assert candidate.value == date(2024, 3, 9)
    assert candidate.location is DateLocation.STRING


def test_linked_data_string_block_uses_json_location(normalizer, site_data):
    html = (
        '<script type="application/ld+json">{"datePublished": "2024-05-05",}</script>'
    )
    candidate = strategies.check_linked_data(_context(normalizer, site_data, html=html))
    assert candidate.value == date(2024, 5, 5)
    assert candidate.location is DateLocation.JSON


def test_linked_data_path_override(normalizer, site_data):
    html = (
        '<script type="application/ld+json">'
        '{"article": {"dates": [{"first": "2024-04-04"}]}}</script>'
    )
    candidate = strategies.check_linked_data(
        _context(normalizer, site_data, html=html), path="article.dates[0].first"
    )
    assert candidate.value == date(2024, 4, 4)
    assert candidate.has_structured_origin
    assert candidate.html == '{ "article.dates[0].first": "2024-04-04" }'


def test_meta_fragment_keeps_matched_attribute_only(normalizer, site_data):
    html = (
        '<html><head><meta itemprop="datePublished" data-extra="x" '
        'content="2024-03-01"></head></html>'
    )
    candidate = strategies.meta_strategy(_context(normalizer, site_data, html=html))
    assert candidate.html == '<meta itemprop="datePublished" content="2024-03-01">'
    assert candidate.location is DateLocation.META


def test_modify_pass_uses_modify_tables(normalizer, site_data):
    html = (
        '<html><head><meta property="article:published_time" content="2024-03-01">'
        '<meta property="article:modified_time" content="2024-03-08"></head></html>'
    )
    context = _context(normalizer, site_data, html=html, check_modified=True)
    assert strategies.meta_strategy(context).value == date(2024, 3, 8)


def test_dynamic_class_tokens(normalizer, site_data):
    html = '<div class="c-byline__meta">By Sam <span>May 30, 2024</span></div>'
    candidate = strategies.check_selectors(_context(normalizer, site_data, html=html))
    assert candidate.value == date(2024, 5, 30)


def test_format_json_fragment():
    assert format_json_fragment("datePublished", "2024-01-01") == (
        '{ "datePublished": "2024-01-01" }'
    )
    assert format_json_fragment(None) is None
