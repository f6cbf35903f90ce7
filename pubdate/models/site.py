from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union


class FetchMethod(str, Enum):
    FETCH = "fetch"
    RENDER = "render"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["FetchMethod"]:
        """Accept the legacy ``puppeteer`` spelling alongside ``render``."""
        if not value:
            return None
        normalised = str(value).strip().lower()
        if normalised in {"puppeteer", "browser", "playwright"}:
            return cls.RENDER
        try:
            return cls(normalised)
        except ValueError:
            return None


@dataclass(frozen=True)
class SelectorOverride:
    """Trust a single CSS selector; ``attribute`` may be ``innerText``."""

    key: str
    attribute: Optional[str] = None


@dataclass(frozen=True)
class RawHtmlOverride:
    """Search the raw HTML for one JSON-style key."""

    key: str


@dataclass(frozen=True)
class LinkedDataOverride:
    """Read a dotted path (``a.b[0].c``) from structured data blocks."""

    path: Optional[str] = None


SiteOverride = Union[SelectorOverride, RawHtmlOverride, LinkedDataOverride]


@dataclass(frozen=True)
class SiteConfig:
    override: Optional[SiteOverride] = None
    path_pattern: Optional[str] = None
    fetch_method: Optional[FetchMethod] = None
    stop_if_not_found: bool = False
    check_modified: bool = False

    @classmethod
    def from_raw(cls, raw: Union[str, dict]) -> "SiteConfig":
        # A bare string is shorthand for a selector that is trusted exclusively.
        if isinstance(raw, str):
            return cls(override=SelectorOverride(key=raw), stop_if_not_found=True)

        key = raw.get("key")
        method = (raw.get("method") or ("selector" if key else None) or "").lower()
        override: Optional[SiteOverride] = None
        if method == "selector" and key:
            override = SelectorOverride(key=key, attribute=raw.get("attribute"))
        elif method == "html" and key:
            override = RawHtmlOverride(key=key)
        elif method in {"linkeddata", "linked_data"}:
            override = LinkedDataOverride(path=key)

        return cls(
            override=override,
            path_pattern=raw.get("path"),
            fetch_method=FetchMethod.parse(raw.get("fetchWith")),
            stop_if_not_found=bool(raw.get("stopIfNotFound", False)),
            check_modified=bool(raw.get("checkModified", False)),
        )

    def applies_to(self, path: str, check_modified: bool) -> bool:
        if self.override is None:
            return False
        if check_modified and not self.check_modified:
            return False
        if self.path_pattern and not re.search(self.path_pattern, path or "", re.I):
            return False
        return True


@dataclass(frozen=True)
class DatePreference:
    """Which orderings a locale accepts for ambiguous numeric dates."""

    mdy: bool = True
    dmy: bool = False
    ymd: bool = True

    @property
    def year_first(self) -> bool:
        return self.ymd and not self.mdy and not self.dmy

    @property
    def day_first(self) -> bool:
        return self.dmy and not self.mdy

    @classmethod
    def from_raw(cls, raw: dict) -> "DatePreference":
        base = cls()
        return cls(
            mdy=bool(raw.get("MDY", base.mdy)),
            dmy=bool(raw.get("DMY", base.dmy)),
            ymd=bool(raw.get("YMD", base.ymd)),
        )


MDY = DatePreference(mdy=True, dmy=False, ymd=True)
DMY = DatePreference(mdy=False, dmy=True, ymd=True)
YMD = DatePreference(mdy=False, dmy=False, ymd=True)
