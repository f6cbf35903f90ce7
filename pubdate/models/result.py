from __future__ import annotations

from dataclasses import dataclass, asdict
from datetime import date
from typing import Any, Optional

from pubdate.models.candidate import DateLocation


def _parse_date(value: Any) -> Optional[date]:
    if value is None or isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


@dataclass
class ExtractionResult:
    """Outcome of one extraction; dates are day-granular and may be absent."""

    publish_date: Optional[date] = None
    modify_date: Optional[date] = None
    location: Optional[DateLocation] = None
    method: Optional[str] = None
    html: Optional[str] = None
    organization: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None

    @property
    def found(self) -> bool:
        return self.publish_date is not None

    def metadata(self) -> dict[str, Optional[str]]:
        return {
            "organization": self.organization,
            "title": self.title,
            "description": self.description,
        }

    def to_dict(self) -> dict[str, Any]:
        """Serialise with ISO dates so the payload survives JSON transports."""
        data = asdict(self)
        for key in ("publish_date", "modify_date"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        if self.location is not None:
            data["location"] = self.location.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExtractionResult":
        payload = dict(data)
        payload["publish_date"] = _parse_date(payload.get("publish_date"))
        payload["modify_date"] = _parse_date(payload.get("modify_date"))
        location = payload.get("location")
        payload["location"] = DateLocation(location) if location else None
        allowed = cls.__dataclass_fields__.keys()
        return cls(**{key: value for key, value in payload.items() if key in allowed})

    def to_response(self) -> dict[str, Any]:
        """Shape used by the HTTP front end."""
        return {
            "organization": self.organization,
            "title": self.title,
            "description": self.description,
            "publishDate": self.publish_date.isoformat() if self.publish_date else None,
            "modifyDate": self.modify_date.isoformat() if self.modify_date else None,
            "location": self.location.value if self.location else None,
            "method": self.method,
            "html": self.html,
            "error": None,
            "errorType": None,
        }
