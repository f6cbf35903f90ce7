from __future__ import annotations

import json
import re
from typing import Any, Iterable, Optional

from bs4 import BeautifulSoup

from pubdate.data import normalise_hostname
from pubdate.utils.text_cleaner import inner_text

LINKED_DATA_SELECTOR = 'script[type="application/ld+json"], script[type="application/json"]'


def _flatten(value: Any) -> list[Any]:
    if isinstance(value, list):
        flattened: list[Any] = []
        for item in value:
            flattened.extend(_flatten(item))
        return flattened
    if isinstance(value, dict) and isinstance(value.get("@graph"), list):
        return [value, *_flatten(value["@graph"])]
    return [value]


def get_linked_data(soup: BeautifulSoup) -> list[Any]:
    """Decoded structured-data blocks; undecodable blocks come back as raw text."""
    blocks: list[Any] = []
    for node in soup.select(LINKED_DATA_SELECTOR):
        content = node.string if node.string is not None else node.get_text()
        try:
            blocks.extend(_flatten(json.loads(content)))
        except (TypeError, ValueError):
            blocks.append(content)
    return blocks


def _first_string(*values: Any) -> Optional[str]:
    for value in values:
        if value and isinstance(value, str):
            return value
    return None


def _meta_content(soup: BeautifulSoup, selectors: Iterable[str]) -> Optional[str]:
    for selector in selectors:
        node = soup.select_one(selector)
        if node is not None and node.get("content"):
            return node["content"]
    return None


def get_article_metadata(
    soup: BeautifulSoup, url: str, linked_data: Optional[list[Any]] = None
) -> dict[str, Optional[str]]:
    organization: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None

    for data in linked_data if linked_data is not None else get_linked_data(soup):
        if not isinstance(data, dict):
            continue
        publisher = data.get("publisher")
        publisher_name = publisher.get("name") if isinstance(publisher, dict) else None
        organization = organization or _first_string(publisher_name, data.get("name"))
        title = title or _first_string(data.get("headline"))
        description = description or _first_string(data.get("description"))
        if organization and title and description:
            break

    organization = organization or _meta_content(
        soup,
        (
            'meta[property="og:site_name"]',
            'meta[property="twitter:title"]',
            'meta[name="application-name"]',
        ),
    )
    organization = organization or normalise_hostname(url) or None

    if not title:
        title = _meta_content(
            soup, ('meta[property="og:title"]', 'meta[property="twitter:title"]')
        )
    if not title:
        title = inner_text(soup.select_one("article h1")) or None
    if not title and soup.title is not None:
        title = re.sub(r" ?[-|][^-|]+$", "", inner_text(soup.title)) or None

    if organization and title and organization != title:
        escaped = re.escape(organization.strip())
        title = re.sub(rf"^{escaped} [-|]|[-|] {escaped}$", "", title).strip()

    description = description or _meta_content(
        soup,
        (
            'meta[property="og:description"]',
            'meta[property="twitter:description"]',
            'meta[name="description"]',
        ),
    )

    return {
        "organization": organization.strip() if organization else None,
        "title": title.strip() if title else None,
        "description": description.strip() if description else None,
    }


__all__ = ["get_article_metadata", "get_linked_data", "LINKED_DATA_SELECTOR"]
