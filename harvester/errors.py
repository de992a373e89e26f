"""
harvester.errors

Error taxonomy shared by fetchers, extraction, enrichment and stage workers.

Every per-record failure ends up as one ErrorCategory on the staging row, so
the health summary can break terminal failures down by cause.
"""

from __future__ import annotations

from enum import Enum

RETRYABLE_STATUS = (408, 425, 429, 500, 502, 503, 504)


class ErrorCategory(str, Enum):
    TRANSPORT = "transport"
    HTTP_STATUS = "http_status"
    EXTRACTION = "extraction"
    ENRICHMENT = "enrichment"
    VALIDATION = "validation"
    INTERNAL = "internal"


class HarvestError(Exception):
    """Base class for all pipeline errors."""

    category: ErrorCategory = ErrorCategory.INTERNAL
    retryable: bool = False


class TransportError(HarvestError):
    """DNS failure, timeout, connection reset. Always retryable."""

    category = ErrorCategory.TRANSPORT
    retryable = True


class HttpStatusError(HarvestError):
    """The server answered, but not with a success status."""

    category = ErrorCategory.HTTP_STATUS

    def __init__(self, status_code: int, url: str, message: str | None = None) -> None:
        self.status_code = int(status_code)
        self.url = url
        super().__init__(message or f"HTTP {self.status_code} for {url}")

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return self.status_code in RETRYABLE_STATUS


class ExtractionError(HarvestError):
    """Malformed structured data or unexpected markup shape."""

    category = ErrorCategory.EXTRACTION


class EnrichmentError(HarvestError):
    """Geocoding / embedding dependency failure (quota, rate limit, 5xx)."""

    category = ErrorCategory.ENRICHMENT

    def __init__(self, message: str, *, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


class RecordValidationError(HarvestError):
    """A record is missing data the pipeline cannot do without."""

    category = ErrorCategory.VALIDATION


class InvalidTransitionError(HarvestError):
    """A write tried to move a record along an edge the state machine forbids."""

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"transition {current} -> {target} is not allowed")


class ConfigError(HarvestError):
    """Invalid settings or source file."""


def categorize(exc: BaseException) -> ErrorCategory:
    """Map any exception to the category stored on the staging row."""
    if isinstance(exc, HarvestError):
        return exc.category
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return ErrorCategory.TRANSPORT
    return ErrorCategory.INTERNAL


def is_retryable(exc: BaseException) -> bool:
    """Default retry predicate used by call_with_retry."""
    if isinstance(exc, HarvestError):
        return bool(exc.retryable)
    return isinstance(exc, (TimeoutError, ConnectionError))
