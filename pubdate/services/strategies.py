from __future__ import annotations

import html as html_lib
import os
import re
from dataclasses import dataclass, field
from functools import cached_property
from typing import Any, Callable, Iterable, Optional
from urllib.parse import urlparse

import structlog
from bs4 import BeautifulSoup

from pubdate.data import SiteData, normalise_hostname
from pubdate.models.candidate import CandidateDate, DateLocation
from pubdate.models.site import (
    LinkedDataOverride,
    RawHtmlOverride,
    SelectorOverride,
    SiteConfig,
)
from pubdate.services.metadata import get_linked_data
from pubdate.services.normalizer import DateNormalizer
from pubdate.utils.text_cleaner import format_json_fragment, inner_text, outer_html

logger = structlog.get_logger(__name__)

URL_RECENT_DAYS = int(os.getenv("URL_RECENT_DAYS", "3"))

META_ATTRIBUTES = ("name", "property", "itemprop", "http-equiv")
GENERIC_SELECTORS = (".date", "#date", ".byline", ".data", ".datetime", ".submitted")
PUBLISH_TIME_SELECTOR = "article time[datetime], time[pubdate]"
MODIFY_TIME_SELECTOR = "time[updatedate], time[modifydate], time[dt-updated]"
PUBLISH_TIME_ATTRIBUTES = ("pubdate", "datetime")
MODIFY_TIME_ATTRIBUTES = ("updatedate", "modifydate", "dt-updated", "datetime")

_URL_DATE = re.compile(
    r"([./\-_]?(19|20)\d{2})[./\-_]?(([0-3]?[0-9][./\-_])|(\w{3,5}[./\-_]))([0-3]?[0-9][./\-]?)"
)
_URL_COMPACT_DATE = re.compile(r"/(\d{8})/")
_JSON_VALUE = re.compile(r"""(?:["'] ?: ?["'])([ :.a-zA-Z0-9_-]*)(?:["'])""")


@dataclass
class PageContext:
    """Per-request state shared by the strategies of one pass."""

    html: str
    url: str
    soup: BeautifulSoup
    normalizer: DateNormalizer
    data: SiteData
    check_modified: bool = False
    deferred: Optional[CandidateDate] = None
    halted: bool = False
    _linked_data: Optional[list[Any]] = field(default=None, repr=False)

    @cached_property
    def hostname(self) -> str:
        return normalise_hostname(self.url)

    @cached_property
    def path(self) -> str:
        return urlparse(self.url).path or "/"

    @cached_property
    def site(self) -> Optional[SiteConfig]:
        return self.data.site_for(self.url)

    @cached_property
    def html_only(self) -> bool:
        return self.data.is_html_only(self.url)

    @property
    def linked_data(self) -> list[Any]:
        if self._linked_data is None:
            self._linked_data = get_linked_data(self.soup)
        return self._linked_data

    def parse(
        self,
        value: Any,
        location: DateLocation,
        *,
        ignore_length: bool = False,
    ) -> Optional[CandidateDate]:
        if value is None or isinstance(value, (dict, list, bool)):
            return None
        return self.normalizer.parse(str(value), self.url, location, ignore_length)

    def parse_text(self, value: Any, location: DateLocation) -> Optional[CandidateDate]:
        if not value:
            return None
        return self.normalizer.parse_text(str(value), self.url, location)


StrategyFn = Callable[[PageContext], Optional[CandidateDate]]
PredicateFn = Callable[[PageContext], bool]


def _always(_: PageContext) -> bool:
    return True


@dataclass(frozen=True)
class DateStrategy:
    name: str
    fn: StrategyFn
    applies: PredicateFn = _always

    def run(self, context: PageContext) -> Optional[CandidateDate]:
        return self.fn(context)


class StrategyRegistry:
    def __init__(self, strategies: Iterable[DateStrategy]):
        self._strategies: dict[str, DateStrategy] = {
            strategy.name: strategy for strategy in strategies
        }

    def get(self, name: str) -> Optional[DateStrategy]:
        return self._strategies.get(name)

    def ordered(self, names: Iterable[str]) -> list[DateStrategy]:
        seen: set[str] = set()
        ordered: list[DateStrategy] = []
        for name in names:
            if name in seen:
                continue
            strategy = self.get(name)
            if strategy is None:
                continue
            ordered.append(strategy)
            seen.add(name)
        return ordered

    def all(self) -> list[DateStrategy]:
        return list(self._strategies.values())


def _select(root: Any, selector: str) -> list[Any]:
    try:
        return root.select(selector)
    except Exception as exc:  # soupsieve rejects malformed site selectors
        logger.debug(event="strategy.bad_selector", selector=selector, error=str(exc))
        return []


# -- raw HTML ------------------------------------------------------------


def check_html_string(
    context: PageContext,
    key: Optional[str] = None,
    text: Optional[str] = None,
    location: DateLocation = DateLocation.STRING,
) -> Optional[CandidateDate]:
    source = context.html if text is None else text
    if not source:
        return None

    keys = [key] if key else list(context.data.keys_for(context.data.json_keys, context.check_modified))
    if not keys:
        return None
    joined = "|".join(re.escape(item) for item in keys)
    pattern = re.compile(
        rf"""(?:(?:'|"|\b)(?:{joined})(?:'|")?: ?(?:'|"))([a-zA-Z0-9_.\-:+, /]*)(?:'|")""",
        re.I,
    )
    matches = list(pattern.finditer(source))
    if not matches:
        return None

    chosen = matches[0]
    for match in matches:
        if "publish" in match.group(0).lower():
            chosen = match
            break

    value = _JSON_VALUE.search(chosen.group(0))
    if value and value.group(1):
        candidate = context.parse(value.group(1), location)
        if candidate:
            return candidate.with_html(chosen.group(0))

    candidate = context.parse(matches[0].group(1), location)
    if candidate:
        return candidate.with_html(matches[0].group(1))
    return None


def html_string_strategy(context: PageContext) -> Optional[CandidateDate]:
    return check_html_string(context)


# -- URL -----------------------------------------------------------------


def check_url(context: PageContext) -> Optional[CandidateDate]:
    url = context.url
    if context.data.skips_url(url):
        return None

    for pattern in (_URL_DATE, _URL_COMPACT_DATE):
        match = pattern.search(url)
        if not match:
            continue
        candidate = context.parse(match.group(0).strip("./-_"), DateLocation.URL)
        if candidate:
            return candidate.with_html(url)
    return None


def url_strategy(context: PageContext) -> Optional[CandidateDate]:
    candidate = check_url(context)
    if candidate and context.normalizer.is_recent(candidate, URL_RECENT_DAYS):
        return candidate
    # Older path dates are only trusted once every markup signal has failed.
    context.deferred = candidate
    return None


def url_fallback_strategy(context: PageContext) -> Optional[CandidateDate]:
    return context.deferred


# -- structured data -----------------------------------------------------


def get_path(data: Any, path: str) -> Any:
    """Resolve ``a.b[0].c`` against nested dicts and lists."""
    current = data
    for part in (piece for piece in re.split(r"[.\[\]]", path) if piece):
        if isinstance(current, list) and part.isdigit():
            index = int(part)
            current = current[index] if index < len(current) else None
        elif isinstance(current, dict):
            current = current.get(part)
        else:
            return None
        if current is None:
            return None
    return current


def check_linked_data(
    context: PageContext, path: Optional[str] = None
) -> Optional[CandidateDate]:
    keys = context.data.keys_for(context.data.json_keys, context.check_modified)
    for data in context.linked_data:
        if isinstance(data, dict):
            if path:
                value = get_path(data, path)
                candidate = context.parse(value, DateLocation.DATA)
                if candidate:
                    return candidate.with_html(
                        format_json_fragment(path, value), structured=True
                    )
            for key in keys:
                value = data.get(key)
                if not value:
                    continue
                candidate = context.parse(value, DateLocation.DATA)
                if candidate:
                    return candidate.with_html(
                        format_json_fragment(key, value), structured=True
                    )
        elif isinstance(data, str):
            candidate = check_html_string(context, text=data, location=DateLocation.JSON)
            if candidate:
                return candidate
    return None


def linked_data_strategy(context: PageContext) -> Optional[CandidateDate]:
    return check_linked_data(context)


# -- meta tags -----------------------------------------------------------


def meta_strategy(context: PageContext) -> Optional[CandidateDate]:
    names = context.data.keys_for(context.data.meta_attributes, context.check_modified)
    if not names:
        return None
    pattern = re.compile("|".join(names), re.I)

    for meta in context.soup.find_all("meta"):
        attribute_name = next((name for name in META_ATTRIBUTES if meta.get(name)), None)
        if attribute_name is None:
            continue
        attribute = meta.get(attribute_name)
        if not isinstance(attribute, str) or not pattern.search(attribute):
            continue
        content = meta.get("content")
        candidate = context.parse(content, DateLocation.META)
        if candidate:
            fragment = '<meta {}="{}" content="{}">'.format(
                attribute_name,
                html_lib.escape(attribute, quote=True),
                html_lib.escape(content, quote=True),
            )
            return candidate.with_html(fragment)
    return None


# -- selectors -----------------------------------------------------------


def check_child_nodes(context: PageContext, parent: Any) -> Optional[CandidateDate]:
    for child in getattr(parent, "children", ()):
        candidate = context.parse_text(inner_text(child), DateLocation.ELEMENT)
        if candidate:
            return candidate.with_html(outer_html(child))
    return None


def _selector_tokens(context: PageContext) -> list[str]:
    tokens = list(context.data.keys_for(context.data.selectors, context.check_modified))
    words = ["byline"]
    words.extend(["update", "modify"] if context.check_modified else ["publish"])
    class_test = re.compile(
        rf'(?:(?:class|id)=")([ a-zA-Z0-9_-]*({"|".join(words)})[ a-zA-Z0-9_-]*)(?:"?)',
        re.I | re.M,
    )
    for match in class_test.finditer(context.html):
        token = match.group(1)
        if token not in tokens:
            tokens.append(token)
    return tokens


def _prefix_selector(token: str) -> str:
    token = token.replace('"', '\\"')
    return (
        f'[itemprop^="{token}" i], [class^="{token}" i], '
        f'[id^="{token}" i], input[name^="{token}" i]'
    )


def check_selectors(
    context: PageContext, override: Optional[SelectorOverride] = None
) -> Optional[CandidateDate]:
    if override is not None:
        selector_strings = [override.key]
    else:
        selector_strings = [_prefix_selector(token) for token in _selector_tokens(context)]

    for selector in selector_strings:
        for element in _select(context.soup, selector):
            if override is not None and override.attribute:
                is_inner_text = override.attribute == "innerText"
                value = inner_text(element) if is_inner_text else element.get(override.attribute)
                location = DateLocation.ELEMENT if is_inner_text else DateLocation.ATTRIBUTE
                candidate = context.parse(value, location, ignore_length=True)
                return candidate.with_html(outer_html(element)) if candidate else None

            date_element = element.find("time") or element
            attribute_value = (
                date_element.get("datetime")
                or date_element.get("content")
                or date_element.get("datepublished")
            )
            if attribute_value:
                candidate = context.parse(attribute_value, DateLocation.ATTRIBUTE)
                if candidate:
                    return candidate.with_html(outer_html(date_element))

            text = inner_text(date_element)
            value = text or date_element.get("value")
            location = DateLocation.ELEMENT if text else DateLocation.ATTRIBUTE
            candidate = context.parse_text(value, location)
            if candidate:
                return candidate.with_html(outer_html(date_element))

            candidate = check_child_nodes(context, element)
            if candidate:
                return candidate
    return None


def selectors_strategy(context: PageContext) -> Optional[CandidateDate]:
    return check_selectors(context)


def time_elements_strategy(context: PageContext) -> Optional[CandidateDate]:
    if context.check_modified:
        selector, attributes = MODIFY_TIME_SELECTOR, MODIFY_TIME_ATTRIBUTES
    else:
        selector, attributes = PUBLISH_TIME_SELECTOR, PUBLISH_TIME_ATTRIBUTES

    for element in _select(context.soup, selector):
        attribute_value = next(
            (element.get(name) for name in attributes if element.get(name)), None
        )
        value = attribute_value or inner_text(element)
        location = DateLocation.ATTRIBUTE if attribute_value else DateLocation.ELEMENT
        candidate = context.parse_text(value, location)
        if candidate:
            return candidate.with_html(outer_html(element))
        candidate = check_child_nodes(context, element)
        if candidate:
            return candidate
    return None


def generic_selectors_strategy(context: PageContext) -> Optional[CandidateDate]:
    for selector in GENERIC_SELECTORS:
        elements = _select(
            context.soup,
            f"article {selector}, .article {selector}, #article {selector}, "
            f"header {selector}, {selector}",
        )
        # Several matches usually means unrelated teasers; skip the selector.
        if len(elements) != 1:
            continue
        element = elements[0]
        candidate = context.parse_text(inner_text(element), DateLocation.ELEMENT)
        if candidate:
            return candidate.with_html(outer_html(element))
        candidate = check_child_nodes(context, element)
        if candidate:
            return candidate
    return None


# -- site overrides ------------------------------------------------------


def site_override_strategy(context: PageContext) -> Optional[CandidateDate]:
    site = context.site
    if site is None or not site.applies_to(context.path, context.check_modified):
        return None

    override = site.override
    candidate: Optional[CandidateDate] = None
    if isinstance(override, SelectorOverride):
        candidate = check_selectors(context, override)
    elif isinstance(override, RawHtmlOverride):
        candidate = check_html_string(context, key=override.key)
    elif isinstance(override, LinkedDataOverride):
        candidate = check_linked_data(context, path=override.path)

    if site.stop_if_not_found:
        context.halted = True
    return candidate


# -- video pages ---------------------------------------------------------


def video_page_strategy(context: PageContext) -> Optional[CandidateDate]:
    context.halted = True
    months = "|".join(re.escape(month) for month in context.data.months)
    absolute = re.search(
        rf"""(?:ytInitialData[\s\S]*?dateText["'].*?)((?:{months})\.? \d{{1,2}}, \d{{4}})(?:['"])""",
        context.html,
        re.I,
    )
    if absolute:
        candidate = context.parse(absolute.group(1), DateLocation.STRING)
        if candidate:
            return candidate.with_html(absolute.group(0)[-200:])

    relative = re.search(
        r"""(?:ytInitialData[\s\S]*?dateText["'].*?["'](?:\w+ )*) ?(\d+) ((?:second|minute|hour|day|week|month|year)s?) ago(?:['"])""",
        context.html,
        re.I,
    )
    if relative:
        phrase = f"{relative.group(1)} {relative.group(2)} ago"
        candidate = context.parse(phrase, DateLocation.STRING)
        if candidate:
            return candidate.with_html(phrase)
    return None


def _not_modify_pass(context: PageContext) -> bool:
    return not context.check_modified


DEFAULT_STRATEGIES: tuple[DateStrategy, ...] = (
    DateStrategy(
        "video_page",
        video_page_strategy,
        lambda context: context.data.is_video_page(context.url),
    ),
    DateStrategy(
        "site_override",
        site_override_strategy,
        lambda context: context.site is not None,
    ),
    DateStrategy(
        "html_string",
        html_string_strategy,
        lambda context: not context.html_only
        and not context.data.skips_html_string(context.url),
    ),
    DateStrategy(
        "url",
        url_strategy,
        lambda context: not context.html_only and not context.check_modified,
    ),
    DateStrategy("linked_data", linked_data_strategy),
    DateStrategy("meta", meta_strategy),
    DateStrategy("selectors", selectors_strategy),
    DateStrategy("time_elements", time_elements_strategy),
    DateStrategy("generic_selectors", generic_selectors_strategy, _not_modify_pass),
    DateStrategy(
        "url_fallback",
        url_fallback_strategy,
        lambda context: context.deferred is not None,
    ),
)

STRATEGY_REGISTRY = StrategyRegistry(DEFAULT_STRATEGIES)

__all__ = [
    "DateStrategy",
    "PageContext",
    "StrategyRegistry",
    "STRATEGY_REGISTRY",
    "check_html_string",
    "check_linked_data",
    "check_selectors",
    "check_url",
    "get_path",
]
