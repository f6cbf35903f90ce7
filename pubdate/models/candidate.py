from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Optional


class DateLocation(str, Enum):
    """Where in the page a date was found."""

    ELEMENT = "HTML Element"
    ATTRIBUTE = "HTML Attribute"
    STRING = "HTML String"
    JSON = "JSON String"
    URL = "Article URL"
    DATA = "Structured Data"
    META = "Meta Tag"

    @property
    def is_structured(self) -> bool:
        return self in {DateLocation.DATA, DateLocation.META, DateLocation.JSON}


@dataclass(frozen=True)
class CandidateDate:
    """A calendar date that passed the plausibility filter."""

    value: date
    location: Optional[DateLocation] = None
    html: Optional[str] = None
    has_structured_origin: bool = False

    def with_html(
        self, html: Optional[str], *, structured: Optional[bool] = None
    ) -> "CandidateDate":
        return CandidateDate(
            value=self.value,
            location=self.location,
            html=html,
            has_structured_origin=(
                self.has_structured_origin if structured is None else structured
            ),
        )

    def isoformat(self) -> str:
        return self.value.isoformat()
