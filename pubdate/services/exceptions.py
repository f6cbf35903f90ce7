from __future__ import annotations

from typing import Any, Optional

MAX_MESSAGE_LENGTH = 500


class ExtractionError(Exception):
    """Base class for extraction pipeline errors."""

    error_type = "server"
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        url: str | None = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        message = str(message or self.__class__.__name__)
        if len(message) > MAX_MESSAGE_LENGTH:
            message = message[:MAX_MESSAGE_LENGTH]
        super().__init__(message)
        self.message = message
        self.url = url
        self.metadata = metadata or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.message,
            "errorType": self.error_type,
            "url": self.url,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExtractionError":
        error_cls = _ERRORS_BY_TYPE.get(data.get("errorType") or "", InternalError)
        return error_cls(
            data.get("error") or "", url=data.get("url"), metadata=data.get("metadata")
        )


class ValidationError(ExtractionError):
    """The URL was rejected before any network call."""

    error_type = "validation"


class FetchError(ExtractionError):
    """Network instability or a bad status while acquiring the page."""

    error_type = "fetch"
    retryable = True


class FetchCancelled(FetchError):
    """The losing side of an acquisition race was stopped."""

    retryable = False


class JobTimeoutError(ExtractionError):
    error_type = "timeout"
    retryable = True


class PageNotFoundError(ExtractionError):
    """The server answered 404; metadata scraped from the error page is kept."""

    error_type = "page-not-found"


class DateNotFoundError(ExtractionError):
    """The page loaded but no plausible date was found."""

    error_type = "not-found"


class InternalError(ExtractionError):
    error_type = "server"
    retryable = True


_ERRORS_BY_TYPE: dict[str, type[ExtractionError]] = {
    ValidationError.error_type: ValidationError,
    FetchError.error_type: FetchError,
    JobTimeoutError.error_type: JobTimeoutError,
    PageNotFoundError.error_type: PageNotFoundError,
    DateNotFoundError.error_type: DateNotFoundError,
    InternalError.error_type: InternalError,
}


def to_extraction_error(exc: BaseException, url: str | None = None) -> ExtractionError:
    """Map any raised exception into the taxonomy."""
    if isinstance(exc, ExtractionError):
        if url and not exc.url:
            exc.url = url
        return exc
    if isinstance(exc, TimeoutError):
        return JobTimeoutError(str(exc) or "Timed out", url=url)
    if isinstance(exc, (ConnectionError, OSError)):
        return FetchError(str(exc), url=url)
    return InternalError(f"{exc.__class__.__name__}: {exc}", url=url)


__all__ = [
    "ExtractionError",
    "ValidationError",
    "FetchError",
    "FetchCancelled",
    "JobTimeoutError",
    "PageNotFoundError",
    "DateNotFoundError",
    "InternalError",
    "to_extraction_error",
]
