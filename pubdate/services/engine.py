from __future__ import annotations

import time
from typing import Any, Optional, Tuple

import structlog
from bs4 import BeautifulSoup

from pubdate.data import SiteData, load_site_data
from pubdate.models.candidate import CandidateDate
from pubdate.models.result import ExtractionResult
from pubdate.services.metadata import get_article_metadata
from pubdate.services.normalizer import DateNormalizer
from pubdate.services.strategies import (
    STRATEGY_REGISTRY,
    PageContext,
    StrategyRegistry,
)
from pubdate.utils.text_cleaner import (
    format_json_fragment,
    looks_like_json_pair,
    parse_html,
)

logger = structlog.get_logger(__name__)

STRATEGY_ORDER: Tuple[str, ...] = (
    "video_page",
    "site_override",
    "html_string",
    "url",
    "linked_data",
    "meta",
    "selectors",
    "time_elements",
    "generic_selectors",
    "url_fallback",
)


def _debug_fragment(candidate: Optional[CandidateDate]) -> Optional[str]:
    if candidate is None or not candidate.html:
        return None
    fragment = candidate.html.strip()
    if not candidate.has_structured_origin and looks_like_json_pair(fragment):
        return format_json_fragment(fragment)
    return fragment


class ExtractionEngine:
    """Runs the ordered strategy chain over one page."""

    def __init__(
        self,
        normalizer: Optional[DateNormalizer] = None,
        site_data: Optional[SiteData] = None,
        registry: StrategyRegistry = STRATEGY_REGISTRY,
        order: Tuple[str, ...] = STRATEGY_ORDER,
    ) -> None:
        self.site_data = site_data or load_site_data()
        self.normalizer = normalizer or DateNormalizer(site_data=self.site_data)
        self.registry = registry
        self.order = order

    def _context(
        self, html: str, url: str, check_modified: bool, soup: Optional[BeautifulSoup]
    ) -> PageContext:
        return PageContext(
            html=html or "",
            url=url,
            soup=soup if soup is not None else parse_html(html or ""),
            normalizer=self.normalizer,
            data=self.site_data,
            check_modified=check_modified,
        )

    def _run(self, context: PageContext) -> Tuple[Optional[CandidateDate], Optional[str]]:
        for strategy in self.registry.ordered(self.order):
            if not strategy.applies(context):
                continue
            started = time.perf_counter()
            candidate = strategy.run(context)
            elapsed_ms = int((time.perf_counter() - started) * 1000)
            status = "success" if candidate else ("halted" if context.halted else "empty")
            logger.debug(
                event="engine.attempt",
                strategy=strategy.name,
                url=context.url,
                check_modified=context.check_modified,
                status=status,
                elapsed_ms=elapsed_ms,
            )
            if candidate:
                return candidate, strategy.name
            if context.halted:
                break
        return None, None

    def find_date(
        self,
        html: str,
        url: str,
        check_modified: bool = False,
        soup: Optional[BeautifulSoup] = None,
    ) -> Tuple[Optional[CandidateDate], Optional[str]]:
        """One pass of the chain; returns the candidate and the strategy name."""
        return self._run(self._context(html, url, check_modified, soup))

    def extract(
        self,
        html: str,
        url: str,
        check_modified: bool = False,
        soup: Optional[BeautifulSoup] = None,
    ) -> ExtractionResult:
        context = self._context(html, url, False, soup)
        metadata: dict[str, Any] = get_article_metadata(
            context.soup, url, linked_data=context.linked_data
        )
        publish, method = self._run(context)

        modify: Optional[CandidateDate] = None
        if publish and check_modified:
            modify_context = self._context(html, url, True, context.soup)
            modify_context._linked_data = context.linked_data
            modify, _ = self._run(modify_context)
            # A modification date is only meaningful when it follows publication.
            if modify and modify.value <= publish.value:
                modify = None

        result = ExtractionResult(
            publish_date=publish.value if publish else None,
            modify_date=modify.value if modify else None,
            location=publish.location if publish else None,
            method=method,
            html=_debug_fragment(publish),
            organization=metadata.get("organization"),
            title=metadata.get("title"),
            description=metadata.get("description"),
        )
        logger.info(
            event="engine.result",
            url=url,
            status="found" if result.found else "not_found",
            method=method,
            publish_date=result.publish_date.isoformat() if result.publish_date else None,
        )
        return result


__all__ = ["ExtractionEngine", "STRATEGY_ORDER"]
