"""Helpers to normalise text and fragments pulled out of article markup."""

import html
import re
import unicodedata
from typing import Any, Optional

from bs4 import BeautifulSoup, NavigableString, Tag

_CONTROL_CHARS = {
    "\u200b",  # zero-width space
    "\u200c",  # zero-width non-joiner
    "\u200d",  # zero-width joiner
    "\ufeff",  # zero-width no-break space / BOM
}

_STYLE_BLOCK = re.compile(r"<style.*>\s?[^<]*</style>")
_JSON_PAIR = re.compile(r'"[^"]+": ?"[^"]+"')


def _strip_control_chars(text: str) -> str:
    for char in _CONTROL_CHARS:
        text = text.replace(char, "")
    return text


def clean_text(raw_text: Optional[str]) -> str:
    """Collapse whitespace and invisible characters into a single line."""
    if not raw_text:
        return ""

    text = html.unescape(raw_text)
    text = unicodedata.normalize("NFKC", text)
    text = text.replace("\u00a0", " ")
    text = _strip_control_chars(text)
    text = re.sub(r"[\n\r]+|\s{2,}", " ", text)
    return text.strip()


def strip_styles(raw_html: str) -> str:
    """Drop inline stylesheets so CSS text never reaches the date scanners."""
    return _STYLE_BLOCK.sub("", raw_html or "")


def parse_html(raw_html: str) -> BeautifulSoup:
    try:
        return BeautifulSoup(strip_styles(raw_html), "lxml")
    except Exception:  # pragma: no cover - fallback parser
        return BeautifulSoup(strip_styles(raw_html), "html.parser")


def inner_text(node: Any) -> str:
    if node is None:
        return ""
    if isinstance(node, NavigableString):
        return clean_text(str(node))
    if isinstance(node, Tag):
        return clean_text(node.get_text(" "))
    return clean_text(str(node))


def outer_html(node: Any) -> str:
    return str(node).strip() if node is not None else ""


def format_json_fragment(key: Optional[str], value: Any = None) -> Optional[str]:
    """Render ``{ "key": "value" }`` for diagnostics."""
    key = (key or "").strip()
    if not key:
        return None
    value = str(value).strip() if value is not None else ""
    fragment = f'{{ "{key}": "{value}" }}' if value else f"{{ {key} }}"
    fragment = re.sub(r'^{[^"]+', "{ ", fragment)
    fragment = re.sub(r'([^"])+}$', r"\1 }", fragment)
    fragment = re.sub(r'":([^ ])', r'": \1', fragment)
    return re.sub(r" {2,}", " ", fragment)


def looks_like_json_pair(fragment: Optional[str]) -> bool:
    return bool(fragment and _JSON_PAIR.search(fragment))
