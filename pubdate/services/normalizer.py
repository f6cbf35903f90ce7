from __future__ import annotations

import os
import re
from datetime import date, datetime, timedelta
from typing import Callable, Optional, Sequence, Union

from dateutil import parser as date_parser
from dateutil.relativedelta import relativedelta

from pubdate.data import SiteData, load_site_data
from pubdate.models.candidate import CandidateDate, DateLocation
from pubdate.models.site import DatePreference

Clock = Callable[[], datetime]

DATE_MAX_LENGTH = int(os.getenv("DATE_MAX_LENGTH", "100"))
DATE_MAX_AGE_YEARS = int(os.getenv("DATE_MAX_AGE_YEARS", "19"))
DATE_MIN_CHARS = 5
DATE_MIN_DIGITS = 3

TIMEZONE_ABBREVIATIONS = ("est", "cst", "mst", "pst", "edt", "cdt", "mdt", "pdt")
RELATIVE_UNITS = {
    "second": "seconds",
    "minute": "minutes",
    "hour": "hours",
    "day": "days",
    "week": "weeks",
    "month": "months",
    "year": "years",
}

_RELATIVE_PATTERN = re.compile(
    r"\b(\d+|an?)\s+(second|minute|hour|day|week|month|year)s?\s+ago\b", re.I
)
_ORDINAL_PATTERN = re.compile(r"(\d+)(st|nd|rd|th)", re.I)
_PREFIX_PATTERN = re.compile(r"^.*(from|original|published|modified)[^ ]*", re.I)
_NUMERIC_DATE_PATTERN = re.compile(r"^\d{1,2}[./-]\d{1,2}[./-]\d{1,4}$")
_NUMERIC_RUN = re.compile(r"\d+(?:\s*[./-]\s*\d+)+")
_PUBLISHED_PATTERN = re.compile(r"(?:published):? (.*$)", re.I)
_WEEKDAY_PREFIX = re.compile(
    r".*(Monday|Tuesday|Wednesday|Thursday|Friday|Saturday|Sunday)", re.I
)

# Two distinct defaults reveal which fields dateutil filled in on its own.
_DEFAULT_A = datetime(2000, 1, 1)
_DEFAULT_B = datetime(2004, 2, 2)
_YEAR_FIRST = re.compile(r"^\s*\d{4}[-/.]")


def _leading_int(value: object) -> Optional[int]:
    match = re.match(r"\s*(\d+)", str(value))
    return int(match.group(1)) if match else None


class DateNormalizer:
    """Turn raw date-like strings into validated calendar dates.

    Every accepted value goes through the plausibility filter: on or before
    tomorrow, no older than ``max_age_years``, a source string of at least five
    characters holding three digits, and never the 1st of January of the
    current year unless it is currently January.
    """

    def __init__(
        self,
        *,
        clock: Clock = datetime.now,
        site_data: Optional[SiteData] = None,
        max_length: int = DATE_MAX_LENGTH,
        max_age_years: int = DATE_MAX_AGE_YEARS,
    ) -> None:
        self.clock = clock
        self.site_data = site_data or load_site_data()
        self.max_length = max_length
        self.max_age_years = max_age_years
        months = self.site_data.months
        joined = "|".join(re.escape(month) for month in months)
        self._months = months
        self._month_window = re.compile(
            rf"((((?:{joined})\.?\s+\d{{1,2}})|(\d{{1,2}}\s+(?:{joined})\.?)),?\s+\d{{2,4}}\b)",
            re.I,
        )
        self._month_phrase = re.compile(
            rf"\b(?:{joined})\w*\.? \d{{1,2}},? {{1,2}}(?:\d{{4}}|\d{{2}})\b", re.I
        )

    # -- clock helpers -------------------------------------------------

    def today(self) -> date:
        return self.clock().date()

    def tomorrow(self) -> date:
        return self.today() + timedelta(days=1)

    def preference_for(self, url: Optional[str]) -> DatePreference:
        return self.site_data.preference_for(url)

    # -- plausibility --------------------------------------------------

    def is_plausible(self, value: date, source: str = "", computed: bool = False) -> bool:
        today = self.today()
        tomorrow = self.tomorrow()
        if value > tomorrow:
            return False
        if value < today - relativedelta(years=self.max_age_years):
            return False
        if tomorrow.month != 1 and value == date(today.year, 1, 1):
            return False
        if computed:
            return True
        digits = sum(ch.isdigit() for ch in source)
        return len(source) >= DATE_MIN_CHARS and digits >= DATE_MIN_DIGITS

    def is_recent(
        self, candidate: Union[CandidateDate, date, None], days: int = 31
    ) -> bool:
        if candidate is None:
            return False
        value = candidate.value if isinstance(candidate, CandidateDate) else candidate
        tomorrow = self.tomorrow()
        return tomorrow - timedelta(days=days) <= value <= tomorrow

    # -- parsing -------------------------------------------------------

    def _calendar(self, text: str, preference: DatePreference) -> Optional[date]:
        text = text.strip()
        if not text:
            return None
        options = dict(
            dayfirst=preference.day_first and not _YEAR_FIRST.match(text),
            yearfirst=preference.year_first,
            ignoretz=True,
        )
        try:
            first = date_parser.parse(text, default=_DEFAULT_A, **options)
            second = date_parser.parse(text, default=_DEFAULT_B, **options)
        except (ValueError, OverflowError, TypeError):
            return None
        if first.month != second.month:
            return None
        year = first.year if first.year == second.year else self.today().year
        day = first.day if first.day == second.day else 1
        try:
            return date(year, first.month, day)
        except ValueError:
            return None

    def _accept(
        self, text: str, preference: DatePreference
    ) -> Optional[date]:
        value = self._calendar(text, preference)
        if value is not None and self.is_plausible(value, text.strip()):
            return value
        return None

    def _from_resolved(self, resolved: Optional[str], source: str) -> Optional[date]:
        if not resolved:
            return None
        month, day, year = (int(part) for part in resolved.split("-"))
        try:
            value = date(year, month, day)
        except ValueError:
            return None
        return value if self.is_plausible(value, source) else None

    def _relative(self, text: str) -> Optional[date]:
        match = _RELATIVE_PATTERN.search(text)
        if not match:
            return None
        amount_raw, unit = match.groups()
        amount = 1 if amount_raw.lower() in {"a", "an"} else int(amount_raw)
        moment = self.clock() - relativedelta(**{RELATIVE_UNITS[unit.lower()]: amount})
        value = moment.date()
        return value if self.is_plausible(value, computed=True) else None

    def _candidate(
        self, value: date, location: Optional[DateLocation]
    ) -> CandidateDate:
        return CandidateDate(value=value, location=location)

    def parse(
        self,
        value: Optional[str],
        url: Optional[str] = None,
        location: Optional[DateLocation] = None,
        ignore_length: bool = False,
    ) -> Optional[CandidateDate]:
        if value is None:
            return None
        text = str(value).strip()
        if not text:
            return None
        if not ignore_length and len(text) > self.max_length:
            return None

        preference = self.preference_for(url)
        parsed = self._accept(text, preference)
        if parsed:
            return self._candidate(parsed, location)

        segments = text.split("|")
        if len(segments) > 1:
            for segment in segments:
                candidate = self.parse(segment, url, location, ignore_length)
                if candidate:
                    return candidate

        text = _ORDINAL_PATTERN.sub(r"\1", text)
        text = _PREFIX_PATTERN.sub("", text).strip()
        parsed = self._accept(text, preference)
        if parsed:
            return self._candidate(parsed, location)

        lowered = text.lower()
        for abbreviation in TIMEZONE_ABBREVIATIONS:
            index = lowered.find(abbreviation)
            if index > 0:
                parsed = self._accept(text[:index], preference)
                if parsed:
                    return self._candidate(parsed, location)

        window = self._month_window.search(text)
        if window:
            parsed = self._accept(window.group(0), preference)
            if parsed:
                return self._candidate(parsed, location)

        for month in self._months:
            if month not in lowered:
                continue
            start_match = re.search(rf"(\d{{1,4}} )?{re.escape(month)}", text, re.I)
            year_match = re.search(r"\d{4}", text)
            start = start_match.start() if start_match else 0
            end = year_match.end() if year_match else len(text)
            if end <= start:
                continue
            parsed = self._accept(text[start:end], preference)
            if parsed:
                return self._candidate(parsed, location)

        parsed = self._digit_only(re.sub(r"[ ./-]", "", text), url)
        if parsed:
            return self._candidate(parsed, location)

        parsed = self._relative(text)
        if parsed:
            return self._candidate(parsed, location)

        if "today" in lowered:
            return self._candidate(self.today(), location)

        return None

    def parse_text(
        self,
        value: Optional[str],
        url: Optional[str] = None,
        location: Optional[DateLocation] = None,
    ) -> Optional[CandidateDate]:
        """More aggressive parse for visible element text."""
        if not value or not str(value).strip():
            return None
        text = str(value).strip()
        candidate = self.parse(text, url, location)
        if candidate:
            return candidate

        text = re.sub(r"\b\d{1,2}:\d{1,2}.*", "", text)
        text = re.sub(r"([-/]\d{2,4}) .*", r"\1", text).strip()
        candidate = self.parse(text, url, location)
        if candidate:
            return candidate

        numeric = _NUMERIC_RUN.search(text)
        parsed = self._from_resolved(
            self.resolve_ambiguous_parts(text, url), numeric.group(0) if numeric else text
        )
        if parsed:
            return self._candidate(parsed, location)

        match = _NUMERIC_DATE_PATTERN.search(text)
        if match:
            candidate = self.parse(match.group(0), url, location)
            if candidate:
                return candidate

        match = _PUBLISHED_PATTERN.search(text)
        if match:
            candidate = self.parse(match.group(1), url, location)
            if candidate:
                return candidate

        match = self._month_phrase.search(text)
        if match:
            candidate = self.parse(match.group(0), url, location)
            if candidate:
                return candidate

        stripped = re.sub(r"\bat\b|\bon\b|,", "", text)
        stripped = re.sub(r"(\d{4}).*", r"\1", stripped)
        stripped = re.sub(r"(\d)(st|nd|rd|th)\b", r"\1", stripped)
        stripped = re.sub(r"posted:*", "", stripped, flags=re.I)
        stripped = _WEEKDAY_PREFIX.sub("", stripped).strip()
        return self.parse(stripped, url, location)

    # -- ambiguous numeric parts --------------------------------------

    def resolve_ambiguous_parts(
        self,
        value: Union[str, Sequence[Union[str, int]], None],
        url: Optional[str] = None,
        preference: Optional[DatePreference] = None,
    ) -> Optional[str]:
        """Decide day/month/year for three numeric tokens; returns ``M-D-YYYY``."""
        if not value:
            return None
        if isinstance(value, str):
            text = re.sub(r"[\n\r]+|\s{2,}", " ", value).strip()
            tokens = re.sub(r"[./-]", "-", text).split("-")
        else:
            tokens = [str(item) for item in value]

        if len(tokens) > 1:
            tokens[0] = re.sub(r"\S*\s", "", tokens[0])

        preference = preference or self.preference_for(url)
        first = _leading_int(tokens[0])
        second = _leading_int(tokens[1]) if len(tokens) > 1 else None
        if first is None or second is None:
            return None

        tomorrow = self.tomorrow()
        century = str(tomorrow.year)[:2]
        first_token = tokens[0].strip()
        third_raw = tokens[2] if len(tokens) > 2 else None

        if third_raw is not None and _leading_int(third_raw) is not None:
            third = re.sub(r"(\d{2,4})\b.*", r"\1", third_raw.strip())
            if len(first_token) == 4:
                if len(third) == 4:
                    return None
                year, month, day = first, second, _leading_int(third)
            elif preference.year_first and len(first_token) == 2 and len(third) == 2:
                year, month, day = int(century + first_token), second, int(third)
            else:
                if not re.fullmatch(r"\d{2,4}", third):
                    return None
                if len(third) == 2:
                    third = century + third
                year = int(third)
                day, month = (second, first) if preference.mdy else (first, second)
        else:
            year = tomorrow.year
            day, month = (second, first) if preference.mdy else (first, second)

        if month > 12:
            day, month = month, day

        if (
            year == tomorrow.year
            and month == tomorrow.month
            and day > tomorrow.day
            and day <= 12
            and (day, month) <= (tomorrow.month, tomorrow.day)
        ):
            day, month = month, day

        if day > 31 or month > 12 or year > tomorrow.year:
            return None
        if day < 1 or month < 1 or year < 1:
            return None
        return f"{month}-{day}-{year}"

    def _digit_only(self, digits: str, url: Optional[str]) -> Optional[date]:
        if not digits:
            return None
        match = re.search(r"\b(\d{6}|\d{8})\b", re.sub(r"/|-\.", "", digits))
        if not match:
            embedded = re.search(r"\d{8}", digits)
            if not embedded:
                return None
            try:
                value = datetime.strptime(embedded.group(0), "%Y%m%d").date()
            except ValueError:
                return None
            return value if self.is_plausible(value, embedded.group(0)) else None

        raw = match.group(0)
        if len(raw) == 6:
            return self._from_resolved(
                self.resolve_ambiguous_parts([raw[0:2], raw[2:4], raw[4:6]], url), raw
            )
        for tokens in ([raw[0:2], raw[2:4], raw[4:]], [raw[0:4], raw[4:6], raw[6:]]):
            parsed = self._from_resolved(self.resolve_ambiguous_parts(tokens, url), raw)
            if parsed:
                return parsed
        return None


__all__ = ["DateNormalizer", "Clock"]
