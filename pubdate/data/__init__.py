from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from functools import lru_cache
from importlib import resources
from typing import Any, Optional
from urllib.parse import urlparse

from pubdate.models.site import DatePreference, SiteConfig

TABLE_NAMES = (
    "sites",
    "json_keys",
    "meta_attributes",
    "selectors",
    "months",
    "tlds",
    "html_only",
    "ignore",
    "skip",
)


def _load_json(name: str) -> Any:
    source = resources.files(__name__).joinpath(f"{name}.json")
    with source.open("r", encoding="utf-8") as handle:
        return json.load(handle)


def normalise_hostname(url_or_host: str) -> str:
    """Lowercase hostname with a leading ``www.`` removed."""
    host = url_or_host or ""
    if "://" in host:
        host = urlparse(host).hostname or ""
    host = host.strip().lower()
    return re.sub(r"^www\.", "", host)


@dataclass(frozen=True)
class SiteData:
    sites: dict[str, SiteConfig] = field(default_factory=dict)
    json_keys: dict[str, tuple[str, ...]] = field(default_factory=dict)
    meta_attributes: dict[str, tuple[str, ...]] = field(default_factory=dict)
    selectors: dict[str, tuple[str, ...]] = field(default_factory=dict)
    months: tuple[str, ...] = ()
    tlds: dict[str, DatePreference] = field(default_factory=dict)
    html_only: tuple[str, ...] = ()
    ignore: tuple[str, ...] = ()
    html_string_skip: tuple[str, ...] = ()
    url_skip: tuple[str, ...] = ()
    video_domains: tuple[str, ...] = ()

    def site_for(self, url: str) -> Optional[SiteConfig]:
        return self.sites.get(normalise_hostname(url))

    def keys_for(self, table: dict[str, tuple[str, ...]], check_modified: bool):
        return table.get("modify" if check_modified else "publish", ())

    def preference_for(self, url: Optional[str]) -> DatePreference:
        if not url:
            return DatePreference()
        tld = normalise_hostname(url).rsplit(".", 1)[-1]
        return self.tlds.get(tld, DatePreference())

    def is_html_only(self, url: str) -> bool:
        host = normalise_hostname(url)
        return any(domain in host for domain in self.html_only)

    def is_ignored(self, url: str) -> bool:
        host = normalise_hostname(url)
        return any(host == domain or host.endswith(f".{domain}") for domain in self.ignore)

    def is_video_page(self, url: str) -> bool:
        host = normalise_hostname(url)
        return any(host == domain or host.endswith(f".{domain}") for domain in self.video_domains)

    def skips_html_string(self, url: str) -> bool:
        return any(fragment in url for fragment in self.html_string_skip)

    def skips_url(self, url: str) -> bool:
        return any(fragment in url for fragment in self.url_skip)


def _split_table(raw: dict[str, list[str]]) -> dict[str, tuple[str, ...]]:
    return {
        "publish": tuple(raw.get("publish", ())),
        "modify": tuple(raw.get("modify", ())),
    }


@lru_cache(maxsize=1)
def load_site_data() -> SiteData:
    """Read the bundled tables once; the result is shared and immutable."""
    skip = _load_json("skip")
    return SiteData(
        sites={
            normalise_hostname(host): SiteConfig.from_raw(raw)
            for host, raw in _load_json("sites").items()
        },
        json_keys=_split_table(_load_json("json_keys")),
        meta_attributes=_split_table(_load_json("meta_attributes")),
        selectors=_split_table(_load_json("selectors")),
        months=tuple(month.lower() for month in _load_json("months")),
        tlds={
            tld.lower(): DatePreference.from_raw(raw)
            for tld, raw in _load_json("tlds").items()
        },
        html_only=tuple(_load_json("html_only")),
        ignore=tuple(_load_json("ignore")),
        html_string_skip=tuple(skip.get("html_string", ())),
        url_skip=tuple(skip.get("url", ())),
        video_domains=tuple(skip.get("video", ())),
    )


def raw_tables() -> dict[str, Any]:
    """The bundled tables exactly as shipped, for the data endpoint."""
    return {name: _load_json(name) for name in TABLE_NAMES}


__all__ = ["SiteData", "load_site_data", "normalise_hostname", "raw_tables"]
