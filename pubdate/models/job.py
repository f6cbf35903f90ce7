from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

from pubdate.models.site import FetchMethod

QUEUED = "QUEUED"
RUNNING = "RUNNING"
SUCCEEDED = "SUCCEEDED"
FAILED = "FAILED"
RETRYING = "RETRYING"

TERMINAL_STATUSES = frozenset({SUCCEEDED, FAILED})


@dataclass(frozen=True)
class ExtractOptions:
    check_modified: bool = False
    disable_cache: bool = False
    method: Optional[FetchMethod] = None
    timeout_ms: int = 30_000
    priority: int = 0

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["method"] = self.method.value if self.method else None
        return data

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "ExtractOptions":
        data = dict(data or {})
        data["method"] = FetchMethod.parse(data.get("method"))
        allowed = cls.__dataclass_fields__.keys()
        return cls(**{key: value for key, value in data.items() if key in allowed})


def job_key(url: str, options: ExtractOptions) -> str:
    """Stable identity for coalescing; timeout and priority do not change the work."""
    material = json.dumps(
        {
            "url": url,
            "check_modified": options.check_modified,
            "disable_cache": options.disable_cache,
            "method": options.method.value if options.method else None,
        },
        sort_keys=True,
    )
    return hashlib.sha1(material.encode("utf-8")).hexdigest()


def result_key(url: str, check_modified: bool = False) -> str:
    """Result-cache key; one entry per URL and pass."""
    return f"{url}|modified" if check_modified else url


@dataclass
class Job:
    """A unit of extraction work travelling through the broker."""

    url: str
    options: ExtractOptions = field(default_factory=ExtractOptions)
    key: str = ""
    id: str = ""
    status: str = QUEUED
    attempts: int = 0
    max_attempts: int = 3
    error: Optional[str] = None
    errorType: Optional[str] = None
    createdAt: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updatedAt: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        if not self.key:
            self.key = job_key(self.url, self.options)
        if not self.id:
            self.id = f"{self.key}:{uuid4().hex[:12]}"

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def mark(self, status: str, *, error: Optional[str] = None, error_type: Optional[str] = None) -> None:
        self.status = status
        self.error = error
        self.errorType = error_type
        self.updatedAt = datetime.now(timezone.utc)

    def to_dict(self):
        """Convert dataclass to a JSON-friendly dictionary."""
        data = asdict(self)
        data["options"] = self.options.to_dict()
        data["createdAt"] = self.createdAt.isoformat()
        data["updatedAt"] = self.updatedAt.isoformat()
        return data

    @classmethod
    def from_dict(cls, data):
        """Rebuild a Job from a broker payload."""
        data = dict(data)
        data["options"] = ExtractOptions.from_dict(data.get("options"))
        for date_field in ["createdAt", "updatedAt"]:
            if date_field not in data:
                continue
            value = data[date_field]
            if isinstance(value, str):
                value = datetime.fromisoformat(value)
            if isinstance(value, datetime) and value.tzinfo is None:
                value = value.replace(tzinfo=timezone.utc)
            data[date_field] = value
        return cls(**data)
